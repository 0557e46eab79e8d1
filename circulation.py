import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

from config import CirculationPolicy
from errors import NotFound, RejectReason, Rejected, Transient
from fine_policy import compute_fine, overdue_days
from models import MONEY_Q, Book, Borrowing, BorrowingStatus, Member, MemberStatus, money
from reservations import NoReservations, ReservationChecker
from store import LibraryStore

logger = logging.getLogger("library.circulation")


class CirculationEngine:
    """
    Owns the borrowing lifecycle and the available_copies count of books.

    Rules enforced:
        (1) Only active members without overdue items may borrow
        (2) At most `max_loans_per_member` open loans, one per title
        (3) Loans are due `loan_period_days` after issue
        (4) Up to `max_renewals` renewals, not while overdue or reserved
        (5) Fines accrue at return per the fine policy and may be paid down
            but never increased by a payment

    Every mutation runs in one store transaction; a failed precondition
    leaves the store untouched.
    """

    def __init__(
        self,
        store: LibraryStore,
        policy: Optional[CirculationPolicy] = None,
        today: Callable[[], date] = date.today,
        reservations: Optional[ReservationChecker] = None,
    ) -> None:
        self.store = store
        self.policy = policy or CirculationPolicy()
        self.today = today
        self.reservations = reservations or NoReservations()

    # Public API

    async def issue(self, member_id: int, book_id: int) -> Borrowing:
        """
        Lends one copy of a book to a member.

        Raises:
            NotFound: member or book does not exist
            Rejected: MEMBER_SUSPENDED, MEMBER_HAS_OVERDUE,
                MEMBER_LIMIT_EXCEEDED, BOOK_UNAVAILABLE, DUPLICATE_LOAN
        """
        logger.info("issue called | member_id=%s book_id=%s", member_id, book_id)
        today = self.today()

        async with self.store.transaction() as session:
            member = await self._get_member(member_id, session)
            if member.status != MemberStatus.ACTIVE:
                raise self._reject(RejectReason.MEMBER_SUSPENDED, f"Member {member_id} is suspended")

            await self.store.lock_member(member_id, session=session)
            open_loans = await self.store.list_borrowings(
                member_id=member_id, status=BorrowingStatus.ISSUED, session=session
            )
            if any(b.is_overdue(today) for b in open_loans):
                raise self._reject(
                    RejectReason.MEMBER_HAS_OVERDUE,
                    f"Member {member_id} has overdue books and cannot borrow new books",
                )
            if len(open_loans) >= self.policy.max_loans_per_member:
                raise self._reject(
                    RejectReason.MEMBER_LIMIT_EXCEEDED,
                    f"Member {member_id} already has {len(open_loans)} books "
                    f"(limit {self.policy.max_loans_per_member})",
                )

            book = await self._get_book(book_id, session)
            if book.available_copies <= 0:
                raise self._reject(RejectReason.BOOK_UNAVAILABLE, f"Book {book_id} is not available")
            if any(b.book_id == book_id for b in open_loans):
                raise self._reject(RejectReason.DUPLICATE_LOAN, f"Member {member_id} already has book {book_id} issued")

            # Conditional decrement: a concurrent issue that took the last
            # copy makes this miss instead of going negative.
            if not await self.store.take_copy(book_id, session=session):
                raise self._reject(RejectReason.BOOK_UNAVAILABLE, f"Book {book_id} is not available")

            borrowing = Borrowing(
                borrow_id=await self.store.next_id("borrowings", session=session),
                member_id=member_id,
                book_id=book_id,
                issue_date=today,
                due_date=today + timedelta(days=self.policy.loan_period_days),
            )
            await self.store.insert_borrowing(borrowing, session=session)

        logger.info(
            "issue successful | borrow_id=%s member_id=%s book_id=%s due=%s",
            borrowing.borrow_id, member_id, book_id, borrowing.due_date,
        )
        return borrowing

    async def issue_with_retry(self, member_id: int, book_id: int, attempts: int = 2) -> Borrowing:
        """
        issue() that survives Transient failures.

        An ambiguous failure may still have committed, so before each retry
        the open (member, book) loan is looked up and returned if present.
        """
        attempts = max(1, attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.issue(member_id, book_id)
            except Transient:
                existing = await self.find_issued(member_id, book_id)
                if existing is not None:
                    logger.info("issue retry found committed loan | borrow_id=%s", existing.borrow_id)
                    return existing
                if attempt == attempts:
                    raise
                logger.warning(
                    "issue transient failure, retrying | member_id=%s book_id=%s attempt=%s",
                    member_id, book_id, attempt,
                )
        raise AssertionError("unreachable")

    async def return_borrowing(self, borrow_id: int) -> Borrowing:
        """
        Closes a loan, finalizes its fine and puts the copy back.

        Raises:
            NotFound: borrowing does not exist
            Rejected: ALREADY_RETURNED
        """
        logger.info("return called | borrow_id=%s", borrow_id)
        today = self.today()

        async with self.store.transaction() as session:
            borrowing = await self._get_borrowing(borrow_id, session)
            if borrowing.status != BorrowingStatus.ISSUED:
                raise self._reject(RejectReason.ALREADY_RETURNED, f"Borrowing {borrow_id} is already returned")

            days = overdue_days(borrowing.due_date, today)
            fine = money(borrowing.fine_amount + compute_fine(days, self.policy))
            returned = borrowing.model_copy(
                update={
                    "status": BorrowingStatus.RETURNED,
                    "return_date": today,
                    "fine_amount": fine,
                }
            )
            await self.store.update_borrowing(returned, session=session)
            # Capped at total_copies by the store
            await self.store.put_back_copy(borrowing.book_id, session=session)

        logger.info(
            "return successful | borrow_id=%s overdue_days=%s fine=%s", borrow_id, days, returned.fine_amount
        )
        return returned

    async def renew(self, borrow_id: int) -> Borrowing:
        """
        Extends the due date of an open loan.

        Raises:
            NotFound: borrowing does not exist
            Rejected: NOT_ISSUED, RENEWAL_LIMIT_EXCEEDED, BOOK_RESERVED,
                CANNOT_RENEW_OVERDUE
        """
        logger.info("renew called | borrow_id=%s", borrow_id)
        today = self.today()

        async with self.store.transaction() as session:
            borrowing = await self._get_borrowing(borrow_id, session)
            if borrowing.status != BorrowingStatus.ISSUED:
                raise self._reject(RejectReason.NOT_ISSUED, "Only issued books can be renewed")
            if borrowing.renewal_count >= self.policy.max_renewals:
                raise self._reject(
                    RejectReason.RENEWAL_LIMIT_EXCEEDED,
                    f"Borrowing {borrow_id} has reached the maximum of {self.policy.max_renewals} renewals",
                )
            if await self.reservations.has_active_reservation(borrowing.book_id, borrowing.member_id):
                raise self._reject(
                    RejectReason.BOOK_RESERVED, "Book is reserved by another member and cannot be renewed"
                )
            if borrowing.is_overdue(today):
                raise self._reject(
                    RejectReason.CANNOT_RENEW_OVERDUE, "Overdue books must be returned, not renewed"
                )

            renewed = borrowing.model_copy(
                update={
                    "due_date": borrowing.due_date + timedelta(days=self.policy.renewal_period_days),
                    "renewal_count": borrowing.renewal_count + 1,
                }
            )
            await self.store.update_borrowing(renewed, session=session)

        logger.info(
            "renew successful | borrow_id=%s due=%s renewals=%s", borrow_id, renewed.due_date, renewed.renewal_count
        )
        return renewed

    async def pay_fine(self, borrow_id: int, amount) -> Borrowing:
        """
        Pays down the fine on a borrowing.

        Raises:
            NotFound: borrowing does not exist
            Rejected: INVALID_AMOUNT, AMOUNT_EXCEEDS_FINE
        """
        logger.info("pay_fine called | borrow_id=%s amount=%s", borrow_id, amount)
        payment = self._parse_amount(amount)

        async with self.store.transaction() as session:
            borrowing = await self._get_borrowing(borrow_id, session)
            if payment > borrowing.fine_amount:
                raise self._reject(
                    RejectReason.AMOUNT_EXCEEDS_FINE,
                    f"Payment {payment} exceeds outstanding fine {money(borrowing.fine_amount)}",
                )
            paid = borrowing.model_copy(update={"fine_amount": money(borrowing.fine_amount - payment)})
            await self.store.update_borrowing(paid, session=session)

        logger.info("pay_fine successful | borrow_id=%s remaining=%s", borrow_id, paid.fine_amount)
        return paid

    # Read side

    async def get_borrowing(self, borrow_id: int) -> Borrowing:
        return await self._get_borrowing(borrow_id)

    async def find_issued(self, member_id: int, book_id: int) -> Optional[Borrowing]:
        """The open loan for (member, book), if any."""
        loans = await self.store.list_borrowings(
            member_id=member_id, book_id=book_id, status=BorrowingStatus.ISSUED
        )
        return loans[0] if loans else None

    async def list_borrowings(
        self,
        status: Optional[BorrowingStatus] = None,
        member_id: Optional[int] = None,
        book_id: Optional[int] = None,
        overdue: bool = False,
    ) -> List[Borrowing]:
        if overdue:
            status = BorrowingStatus.ISSUED
        return await self.store.list_borrowings(
            member_id=member_id,
            book_id=book_id,
            status=status,
            due_before=self.today() if overdue else None,
        )

    async def list_overdue(self) -> List[Borrowing]:
        loans = await self.list_borrowings(overdue=True)
        return sorted(loans, key=lambda b: (b.due_date, b.borrow_id))

    async def member_loans(self, member_id: int) -> List[Borrowing]:
        """Open loans of a member, earliest due first."""
        await self._get_member(member_id)
        loans = await self.store.list_borrowings(member_id=member_id, status=BorrowingStatus.ISSUED)
        return sorted(loans, key=lambda b: (b.due_date, b.borrow_id))

    async def member_history(self, member_id: int) -> List[Borrowing]:
        """Every borrowing of a member, newest first."""
        await self._get_member(member_id)
        loans = await self.store.list_borrowings(member_id=member_id)
        return sorted(loans, key=lambda b: (b.issue_date, b.borrow_id), reverse=True)

    async def member_outstanding(self, member_id: int) -> Decimal:
        loans = await self.store.list_borrowings(member_id=member_id)
        return money(sum((b.fine_amount for b in loans), Decimal("0")))

    def accrued_fine(self, borrowing: Borrowing) -> Decimal:
        """Fine an open loan would be charged if returned today; not stored."""
        if borrowing.status != BorrowingStatus.ISSUED:
            return money(0)
        return compute_fine(overdue_days(borrowing.due_date, self.today()), self.policy)

    # Internal Helpers

    async def _get_member(self, member_id: int, session=None) -> Member:
        member = await self.store.get_member(member_id, session=session)
        if member is None:
            raise NotFound("Member", member_id)
        return member

    async def _get_book(self, book_id: int, session=None) -> Book:
        book = await self.store.get_book(book_id, session=session)
        if book is None:
            raise NotFound("Book", book_id)
        return book

    async def _get_borrowing(self, borrow_id: int, session=None) -> Borrowing:
        borrowing = await self.store.get_borrowing(borrow_id, session=session)
        if borrowing is None:
            raise NotFound("Borrowing", borrow_id)
        return borrowing

    @staticmethod
    def _reject(reason: RejectReason, message: str) -> Rejected:
        logger.info("rejected | reason=%s | %s", reason.value, message)
        return Rejected(reason, message)

    @classmethod
    def _parse_amount(cls, amount) -> Decimal:
        try:
            payment = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise cls._reject(RejectReason.INVALID_AMOUNT, f"Invalid payment amount: {amount!r}")
        if not payment.is_finite() or payment <= 0:
            raise cls._reject(RejectReason.INVALID_AMOUNT, "Payment amount must be positive")
        if payment != payment.quantize(MONEY_Q):
            raise cls._reject(RejectReason.INVALID_AMOUNT, "Payment amount must have at most two decimal places")
        return money(payment)
