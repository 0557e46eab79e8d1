import logging
from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional

from errors import Conflict, NotFound, RejectReason, Rejected
from models import (
    Book,
    BookCreate,
    BookUpdate,
    BorrowingStatus,
    Member,
    MemberCreate,
    MemberStatus,
    MemberUpdate,
)
from store import LibraryStore

logger = logging.getLogger("library.admin")


class CatalogService:
    """Book administration. available_copies only moves with total_copies here."""

    def __init__(self, store: LibraryStore) -> None:
        self.store = store

    async def create_book(self, data: BookCreate) -> Book:
        async with self.store.transaction() as session:
            if data.isbn and await self.store.find_book_by_isbn(data.isbn, session=session):
                raise Conflict(f"Book with ISBN {data.isbn} already exists")
            book = Book(
                book_id=await self.store.next_id("books", session=session),
                **data.model_dump(exclude={"total_copies"}),
                total_copies=data.total_copies,
                available_copies=data.total_copies,
            )
            await self.store.insert_book(book, session=session)
        logger.info("book created | book_id=%s title=%s", book.book_id, book.title)
        return book

    async def get_book(self, book_id: int) -> Book:
        book = await self.store.get_book(book_id)
        if book is None:
            raise NotFound("Book", book_id)
        return book

    async def list_books(
        self, search: Optional[str] = None, category: Optional[str] = None, available_only: bool = False
    ) -> List[Book]:
        return await self.store.list_books(search=search, category=category, available_only=available_only)

    async def categories(self) -> List[str]:
        books = await self.store.list_books()
        return sorted({b.category for b in books if b.category})

    async def update_book(self, book_id: int, data: BookUpdate) -> Book:
        changes = data.model_dump(exclude_unset=True)
        async with self.store.transaction() as session:
            book = await self._require(book_id, session)
            if changes.get("isbn") and changes["isbn"] != book.isbn:
                other = await self.store.find_book_by_isbn(changes["isbn"], session=session)
                if other is not None:
                    raise Conflict(f"Book with ISBN {changes['isbn']} already exists")
            total = changes.pop("total_copies", None)
            if total is not None:
                issued = await self._issued_count(book_id, session)
                if total < issued:
                    raise Rejected(
                        RejectReason.COPIES_IN_USE,
                        f"Cannot set total copies to {total}: {issued} copies are currently issued",
                    )
                changes["total_copies"] = total
                changes["available_copies"] = total - issued
            updated = Book(**{**book.model_dump(), **changes})
            await self.store.update_book(updated, session=session)
        logger.info("book updated | book_id=%s fields=%s", book_id, sorted(data.model_dump(exclude_unset=True)))
        return updated

    async def add_copies(self, book_id: int, copies: int) -> Book:
        """Add more copies of an existing book"""
        if copies <= 0:
            raise ValueError("Number of copies must be positive")
        async with self.store.transaction() as session:
            book = await self._require(book_id, session)
            updated = book.model_copy(
                update={
                    "total_copies": book.total_copies + copies,
                    "available_copies": book.available_copies + copies,
                }
            )
            await self.store.update_book(updated, session=session)
        logger.info("copies added | book_id=%s copies=%s total=%s", book_id, copies, updated.total_copies)
        return updated

    async def remove_copies(self, book_id: int, copies: int) -> Book:
        """Remove copies of a book (only if not borrowed)"""
        if copies <= 0:
            raise ValueError("Number of copies must be positive")
        async with self.store.transaction() as session:
            book = await self._require(book_id, session)
            if copies > book.available_copies:
                raise Rejected(
                    RejectReason.COPIES_IN_USE,
                    f"Cannot remove {copies} copies. Only {book.available_copies} copies are available (not borrowed)",
                )
            if copies >= book.total_copies:
                raise Rejected(
                    RejectReason.COPIES_IN_USE,
                    "A book keeps at least one copy; delete the book to discontinue it",
                )
            updated = book.model_copy(
                update={
                    "total_copies": book.total_copies - copies,
                    "available_copies": book.available_copies - copies,
                }
            )
            await self.store.update_book(updated, session=session)
        logger.info("copies removed | book_id=%s copies=%s total=%s", book_id, copies, updated.total_copies)
        return updated

    async def delete_book(self, book_id: int) -> Book:
        async with self.store.transaction() as session:
            book = await self._require(book_id, session)
            issued = await self._issued_count(book_id, session)
            if issued > 0:
                raise Rejected(
                    RejectReason.BOOK_HAS_ACTIVE_LOANS,
                    f"Cannot delete book. {issued} copies are currently issued",
                )
            removed = await self.store.delete_borrowings(book_id=book_id, session=session)
            await self.store.delete_book(book_id, session=session)
        logger.info("book deleted | book_id=%s borrowings_removed=%s", book_id, removed)
        return book

    async def _require(self, book_id: int, session) -> Book:
        book = await self.store.get_book(book_id, session=session)
        if book is None:
            raise NotFound("Book", book_id)
        return book

    async def _issued_count(self, book_id: int, session) -> int:
        loans = await self.store.list_borrowings(book_id=book_id, status=BorrowingStatus.ISSUED, session=session)
        return len(loans)


class MemberService:
    """Member roster administration, including suspension."""

    def __init__(self, store: LibraryStore, today: Callable[[], date] = date.today) -> None:
        self.store = store
        self.today = today

    async def create_member(self, data: MemberCreate, session=None) -> Member:
        """Creates a member; joins the caller's transaction when `session` is given."""
        if session is not None:
            return await self._create_member(data, session)
        async with self.store.transaction() as session:
            member = await self._create_member(data, session)
        return member

    async def _create_member(self, data: MemberCreate, session) -> Member:
        email = str(data.email) if data.email else None
        if email and await self.store.find_member_by_email(email, session=session):
            raise Conflict(f"Member with email {email} already exists")
        member = Member(
            member_id=await self.store.next_id("members", session=session),
            full_name=data.full_name,
            email=email,
            phone=data.phone,
            status=MemberStatus.ACTIVE,
            join_date=self.today(),
        )
        await self.store.insert_member(member, session=session)
        logger.info("member created | member_id=%s", member.member_id)
        return member

    async def get_member(self, member_id: int) -> Member:
        member = await self.store.get_member(member_id)
        if member is None:
            raise NotFound("Member", member_id)
        return member

    async def list_members(self, search: Optional[str] = None, status: Optional[MemberStatus] = None) -> List[Member]:
        return await self.store.list_members(search=search, status=status)

    async def update_member(self, member_id: int, data: MemberUpdate) -> Member:
        changes = data.model_dump(exclude_unset=True)
        if changes.get("email") is not None:
            changes["email"] = str(changes["email"])
        async with self.store.transaction() as session:
            member = await self._require(member_id, session)
            email = changes.get("email")
            if email and (member.email or "").lower() != email.lower():
                other = await self.store.find_member_by_email(email, session=session)
                if other is not None:
                    raise Conflict(f"Member with email {email} already exists")
            updated = Member(**{**member.model_dump(), **changes})
            await self.store.update_member(updated, session=session)
        logger.info("member updated | member_id=%s fields=%s", member_id, sorted(changes))
        return updated

    async def suspend(self, member_id: int) -> Member:
        return await self._set_status(member_id, MemberStatus.SUSPENDED)

    async def activate(self, member_id: int) -> Member:
        return await self._set_status(member_id, MemberStatus.ACTIVE)

    async def delete_member(self, member_id: int) -> Member:
        """
        Removes a member and their borrowing history.

        Refused while the member holds an issued book or owes any fine.
        """
        async with self.store.transaction() as session:
            member = await self._require(member_id, session)
            loans = await self.store.list_borrowings(member_id=member_id, session=session)
            active = [b for b in loans if b.status == BorrowingStatus.ISSUED]
            if active:
                raise Rejected(
                    RejectReason.MEMBER_HAS_ACTIVE_LOANS,
                    f"Cannot delete member with active loans ({len(active)})",
                )
            outstanding = sum((b.fine_amount for b in loans), Decimal("0"))
            if outstanding > 0:
                raise Rejected(
                    RejectReason.MEMBER_HAS_OUTSTANDING_FINES,
                    f"Cannot delete member with outstanding fines ({outstanding:.2f})",
                )
            await self.store.delete_borrowings(member_id=member_id, session=session)
            await self.store.deactivate_users_of_member(member_id, session=session)
            await self.store.delete_member(member_id, session=session)
        logger.info("member deleted | member_id=%s", member_id)
        return member

    async def _set_status(self, member_id: int, status: MemberStatus) -> Member:
        async with self.store.transaction() as session:
            member = await self._require(member_id, session)
            if member.status == status:
                return member
            updated = member.model_copy(update={"status": status})
            await self.store.update_member(updated, session=session)
        logger.info("member status changed | member_id=%s status=%s", member_id, status.value)
        return updated

    async def _require(self, member_id: int, session) -> Member:
        member = await self.store.get_member(member_id, session=session)
        if member is None:
            raise NotFound("Member", member_id)
        return member
