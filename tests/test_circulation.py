import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from circulation import CirculationEngine
from config import CirculationPolicy
from errors import NotFound, RejectReason, Rejected, Transient
from models import BookCreate, BorrowingStatus, MemberCreate
from services import CatalogService, MemberService

from conftest import TODAY, FlakyStore


async def assert_rejected(coro, reason: RejectReason):
    with pytest.raises(Rejected) as exc:
        await coro
    assert exc.value.reason == reason
    return exc.value


# ---------- issue ----------
async def test_issue_sets_due_date_and_takes_a_copy(engine, store, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)

    assert borrowing.status == BorrowingStatus.ISSUED
    assert borrowing.issue_date == TODAY
    assert borrowing.due_date == TODAY + timedelta(days=14)
    assert borrowing.fine_amount == Decimal("0.00")
    assert borrowing.renewal_count == 0
    assert (await store.get_book(book.book_id)).available_copies == 2
    assert await store.get_borrowing(borrowing.borrow_id) == borrowing


async def test_issue_unknown_member_or_book(engine, member, book):
    with pytest.raises(NotFound):
        await engine.issue(999, book.book_id)
    with pytest.raises(NotFound):
        await engine.issue(member.member_id, 999)


async def test_suspended_member_cannot_borrow(engine, members, member, book):
    await members.suspend(member.member_id)
    await assert_rejected(engine.issue(member.member_id, book.book_id), RejectReason.MEMBER_SUSPENDED)


async def test_member_with_overdue_loan_cannot_borrow(engine, clock, member, book, add_book):
    await engine.issue(member.member_id, book.book_id)
    other = await add_book("Emma")
    clock.advance(15)  # due date was yesterday

    await assert_rejected(engine.issue(member.member_id, other.book_id), RejectReason.MEMBER_HAS_OVERDUE)


async def test_loan_due_today_is_not_overdue(engine, clock, member, book, add_book):
    await engine.issue(member.member_id, book.book_id)
    other = await add_book("Emma")
    clock.advance(14)

    borrowing = await engine.issue(member.member_id, other.book_id)
    assert borrowing.book_id == other.book_id


async def test_loan_limit(engine, member, add_book):
    for i in range(5):
        b = await add_book(f"Book {i}")
        await engine.issue(member.member_id, b.book_id)
    sixth = await add_book("Book 5")

    await assert_rejected(engine.issue(member.member_id, sixth.book_id), RejectReason.MEMBER_LIMIT_EXCEEDED)


async def test_loan_limit_follows_policy(store, clock, member, add_book):
    engine = CirculationEngine(store, policy=CirculationPolicy(max_loans_per_member=1), today=clock)
    first = await add_book("First")
    second = await add_book("Second")
    await engine.issue(member.member_id, first.book_id)

    await assert_rejected(engine.issue(member.member_id, second.book_id), RejectReason.MEMBER_LIMIT_EXCEEDED)


async def test_no_copies_left(engine, store, member, add_member, add_book):
    single = await add_book("Only One", copies=1)
    other = await add_member("Bob")
    await engine.issue(other.member_id, single.book_id)

    await assert_rejected(engine.issue(member.member_id, single.book_id), RejectReason.BOOK_UNAVAILABLE)
    assert (await store.get_book(single.book_id)).available_copies == 0


async def test_same_title_twice_is_a_duplicate(engine, member, book):
    await engine.issue(member.member_id, book.book_id)
    await assert_rejected(engine.issue(member.member_id, book.book_id), RejectReason.DUPLICATE_LOAN)


async def test_rejection_order_suspended_before_overdue(engine, members, clock, member, book, add_book):
    await engine.issue(member.member_id, book.book_id)
    clock.advance(20)
    await members.suspend(member.member_id)
    other = await add_book("Other")

    await assert_rejected(engine.issue(member.member_id, other.book_id), RejectReason.MEMBER_SUSPENDED)


async def test_rejection_order_unavailable_before_duplicate(engine, member, add_book):
    single = await add_book("Only One", copies=1)
    await engine.issue(member.member_id, single.book_id)

    await assert_rejected(engine.issue(member.member_id, single.book_id), RejectReason.BOOK_UNAVAILABLE)


async def test_concurrent_issues_for_the_last_copy(engine, store, member, add_member, add_book):
    single = await add_book("Only One", copies=1)
    other = await add_member("Bob")

    results = await asyncio.gather(
        engine.issue(member.member_id, single.book_id),
        engine.issue(other.member_id, single.book_id),
        return_exceptions=True,
    )

    issued = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Rejected)]
    assert len(issued) == 1
    assert [r.reason for r in rejected] == [RejectReason.BOOK_UNAVAILABLE]
    assert (await store.get_book(single.book_id)).available_copies == 0
    assert len(await store.list_borrowings(book_id=single.book_id)) == 1


async def test_failed_issue_leaves_store_untouched(engine, store, members, member, book):
    await members.suspend(member.member_id)
    before = await store.get_book(book.book_id)

    with pytest.raises(Rejected):
        await engine.issue(member.member_id, book.book_id)

    assert await store.get_book(book.book_id) == before
    assert await store.list_borrowings() == []


async def test_store_duplicate_backstop_rolls_back_copy(engine, store, member, book, monkeypatch):
    await engine.issue(member.member_id, book.book_id)

    # Hide the open loan from the precheck so only the store constraint sees it
    real_list = store.list_borrowings

    async def blind(*args, **kwargs):
        if kwargs.get("status") == BorrowingStatus.ISSUED and kwargs.get("book_id") is None:
            return []
        return await real_list(*args, **kwargs)

    monkeypatch.setattr(store, "list_borrowings", blind)
    await assert_rejected(engine.issue(member.member_id, book.book_id), RejectReason.DUPLICATE_LOAN)

    assert (await store.get_book(book.book_id)).available_copies == 2


# ---------- return ----------
async def test_return_on_time_has_no_fine(engine, store, clock, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    clock.advance(3)

    returned = await engine.return_borrowing(borrowing.borrow_id)

    assert returned.status == BorrowingStatus.RETURNED
    assert returned.return_date == clock()
    assert returned.fine_amount == Decimal("0.00")
    assert (await store.get_book(book.book_id)).available_copies == 3


async def test_return_ten_days_late(engine, clock, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    clock.advance(24)

    returned = await engine.return_borrowing(borrowing.borrow_id)

    assert returned.fine_amount == Decimal("5.00")


async def test_return_twice(engine, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    await engine.return_borrowing(borrowing.borrow_id)

    await assert_rejected(engine.return_borrowing(borrowing.borrow_id), RejectReason.ALREADY_RETURNED)


async def test_return_unknown(engine):
    with pytest.raises(NotFound):
        await engine.return_borrowing(42)


async def test_return_never_exceeds_total_copies(engine, store, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    # Drifted data: the count was already restored by hand
    restored = (await store.get_book(book.book_id)).model_copy(update={"available_copies": 3})
    await store.update_book(restored)

    await engine.return_borrowing(borrowing.borrow_id)

    assert (await store.get_book(book.book_id)).available_copies == 3


async def test_book_can_be_borrowed_again_after_return(engine, member, book):
    first = await engine.issue(member.member_id, book.book_id)
    await engine.return_borrowing(first.borrow_id)

    second = await engine.issue(member.member_id, book.book_id)
    assert second.borrow_id != first.borrow_id


# ---------- renew ----------
async def test_renew_extends_due_date(engine, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)

    renewed = await engine.renew(borrowing.borrow_id)

    assert renewed.due_date == borrowing.due_date + timedelta(days=14)
    assert renewed.renewal_count == 1


async def test_renewal_limit(engine, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    await engine.renew(borrowing.borrow_id)
    await engine.renew(borrowing.borrow_id)

    await assert_rejected(engine.renew(borrowing.borrow_id), RejectReason.RENEWAL_LIMIT_EXCEEDED)


async def test_cannot_renew_returned(engine, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    await engine.return_borrowing(borrowing.borrow_id)

    await assert_rejected(engine.renew(borrowing.borrow_id), RejectReason.NOT_ISSUED)


async def test_cannot_renew_overdue(engine, clock, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    clock.advance(15)

    await assert_rejected(engine.renew(borrowing.borrow_id), RejectReason.CANNOT_RENEW_OVERDUE)


async def test_cannot_renew_reserved(engine, reservations, member, add_member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    other = await add_member("Bob")
    reservations.hold(book.book_id, other.member_id)

    await assert_rejected(engine.renew(borrowing.borrow_id), RejectReason.BOOK_RESERVED)


async def test_own_reservation_does_not_block_renewal(engine, reservations, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    reservations.hold(book.book_id, member.member_id)

    renewed = await engine.renew(borrowing.borrow_id)
    assert renewed.renewal_count == 1


async def test_renewal_limit_checked_before_overdue(engine, clock, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    await engine.renew(borrowing.borrow_id)
    await engine.renew(borrowing.borrow_id)
    clock.advance(60)

    await assert_rejected(engine.renew(borrowing.borrow_id), RejectReason.RENEWAL_LIMIT_EXCEEDED)


# ---------- pay_fine ----------
@pytest.fixture
async def fined(engine, clock, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    clock.advance(24)
    return await engine.return_borrowing(borrowing.borrow_id)


async def test_overpayment_rejected(engine, fined):
    await assert_rejected(engine.pay_fine(fined.borrow_id, Decimal("6.00")), RejectReason.AMOUNT_EXCEEDS_FINE)
    assert (await engine.get_borrowing(fined.borrow_id)).fine_amount == Decimal("5.00")


async def test_full_payment(engine, fined):
    paid = await engine.pay_fine(fined.borrow_id, Decimal("5.00"))
    assert paid.fine_amount == Decimal("0.00")


async def test_partial_payments(engine, fined):
    await engine.pay_fine(fined.borrow_id, "1.25")
    paid = await engine.pay_fine(fined.borrow_id, 2)
    assert paid.fine_amount == Decimal("1.75")


async def test_partial_payments_reach_exactly_zero(engine, fined):
    for amount in ("1.10", "2.35", "0.05", "1.50"):
        paid = await engine.pay_fine(fined.borrow_id, amount)

    assert paid.fine_amount == Decimal("0.00")
    await assert_rejected(engine.pay_fine(fined.borrow_id, "0.01"), RejectReason.AMOUNT_EXCEEDS_FINE)


@pytest.mark.parametrize("amount", [0, "-1", "0.001", "abc", "NaN"])
async def test_invalid_payment_amounts(engine, fined, amount):
    await assert_rejected(engine.pay_fine(fined.borrow_id, amount), RejectReason.INVALID_AMOUNT)


async def test_pay_fine_unknown_borrowing(engine):
    with pytest.raises(NotFound):
        await engine.pay_fine(7, "1.00")


async def test_member_outstanding_sums_fines(engine, clock, member, book):
    borrowing = await engine.issue(member.member_id, book.book_id)
    clock.advance(16)
    await engine.return_borrowing(borrowing.borrow_id)

    assert await engine.member_outstanding(member.member_id) == Decimal("1.00")


# ---------- retry ----------
@pytest.fixture
async def flaky(clock, policy):
    store = FlakyStore()
    book = await CatalogService(store).create_book(BookCreate(title="Tide", author="A", total_copies=2))
    member = await MemberService(store, today=clock).create_member(MemberCreate(full_name="Mo"))
    engine = CirculationEngine(store, policy=policy, today=clock)
    return store, engine, member.member_id, book.book_id


async def test_retry_after_failure_before_commit(flaky):
    store, engine, member_id, book_id = flaky
    store.fail_before_commit = 1

    borrowing = await engine.issue_with_retry(member_id, book_id, attempts=2)

    assert borrowing.status == BorrowingStatus.ISSUED
    assert len(await store.list_borrowings()) == 1
    assert (await store.get_book(book_id)).available_copies == 1


async def test_retry_returns_loan_committed_before_the_failure(flaky):
    store, engine, member_id, book_id = flaky
    store.fail_after_commit = 1

    borrowing = await engine.issue_with_retry(member_id, book_id, attempts=2)

    assert [b.borrow_id for b in await store.list_borrowings()] == [borrowing.borrow_id]
    assert (await store.get_book(book_id)).available_copies == 1


async def test_retry_gives_up(flaky):
    store, engine, member_id, book_id = flaky
    store.fail_before_commit = 3

    with pytest.raises(Transient):
        await engine.issue_with_retry(member_id, book_id, attempts=2)

    assert await store.list_borrowings() == []
    assert (await store.get_book(book_id)).available_copies == 2


# ---------- read side ----------
async def test_copy_count_invariant_through_a_busy_day(engine, store, clock, add_member, add_book):
    books = [await add_book(f"B{i}", copies=2) for i in range(3)]
    people = [await add_member(f"M{i}") for i in range(3)]
    loans = []
    for m in people:
        for b in books[:2]:
            try:
                loans.append(await engine.issue(m.member_id, b.book_id))
            except Rejected:
                pass
    clock.advance(5)
    await engine.return_borrowing(loans[0].borrow_id)
    await engine.renew(loans[1].borrow_id)

    for b in books:
        stored = await store.get_book(b.book_id)
        issued = await store.list_borrowings(book_id=b.book_id, status=BorrowingStatus.ISSUED)
        assert stored.available_copies == stored.total_copies - len(issued)
        assert 0 <= stored.available_copies <= stored.total_copies


async def test_overdue_listing_and_accrued_fine(engine, clock, member, add_member, book, add_book):
    late = await engine.issue(member.member_id, book.book_id)
    clock.advance(10)
    other = await add_member("Bob")
    fresh_book = await add_book("Fresh")
    await engine.issue(other.member_id, fresh_book.book_id)
    clock.advance(7)  # first loan is 3 days late, second is not due

    overdue = await engine.list_overdue()

    assert [b.borrow_id for b in overdue] == [late.borrow_id]
    assert engine.accrued_fine(overdue[0]) == Decimal("1.50")
    # Nothing is written until the book comes back
    assert (await engine.get_borrowing(late.borrow_id)).fine_amount == Decimal("0.00")


async def test_member_loans_and_history(engine, clock, member, book, add_book):
    first = await engine.issue(member.member_id, book.book_id)
    clock.advance(1)
    second_book = await add_book("Second")
    second = await engine.issue(member.member_id, second_book.book_id)
    await engine.return_borrowing(first.borrow_id)

    assert [b.borrow_id for b in await engine.member_loans(member.member_id)] == [second.borrow_id]
    assert [b.borrow_id for b in await engine.member_history(member.member_id)] == [
        second.borrow_id,
        first.borrow_id,
    ]
    with pytest.raises(NotFound):
        await engine.member_loans(404)


async def test_find_issued(engine, member, book):
    assert await engine.find_issued(member.member_id, book.book_id) is None
    borrowing = await engine.issue(member.member_id, book.book_id)
    assert (await engine.find_issued(member.member_id, book.book_id)).borrow_id == borrowing.borrow_id
