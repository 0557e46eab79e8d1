"""
Read-only projections over books, members and borrowings for dashboards.

Nothing here writes to the store.
"""

from collections import Counter, defaultdict
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List

from config import CirculationPolicy
from errors import NotFound
from fine_policy import compute_fine, overdue_days
from models import BorrowingStatus, MemberStatus, money
from store import LibraryStore


def _month_key(d: date) -> str:
    return d.strftime("%Y-%m")


def _last_months(today: date, count: int) -> List[str]:
    """`count` YYYY-MM keys ending with the current month, oldest first."""
    year, month = today.year, today.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


class ReportingAggregator:
    def __init__(
        self,
        store: LibraryStore,
        policy: CirculationPolicy = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.policy = policy or CirculationPolicy()
        self.today = today

    async def library_stats(self) -> dict:
        today = self.today()
        books = await self.store.list_books()
        members = await self.store.list_members()
        borrowings = await self.store.list_borrowings()

        issued = [b for b in borrowings if b.status == BorrowingStatus.ISSUED]
        categories: Dict[str, dict] = {}
        for book in books:
            key = book.category or "Uncategorized"
            row = categories.setdefault(key, {"category": key, "book_count": 0, "total_copies": 0})
            row["book_count"] += 1
            row["total_copies"] += book.total_copies

        months = _last_months(today, 12)
        per_month = Counter(_month_key(b.issue_date) for b in borrowings)

        return {
            "total_books": len(books),
            "total_members": sum(1 for m in members if m.status == MemberStatus.ACTIVE),
            "active_loans": len(issued),
            "overdue_loans": sum(1 for b in issued if b.is_overdue(today)),
            "total_fines": money(sum((b.fine_amount for b in borrowings), Decimal("0"))),
            "category_distribution": sorted(categories.values(), key=lambda r: (-r["book_count"], r["category"])),
            "member_status_distribution": [
                {"status": s.value, "member_count": sum(1 for m in members if m.status == s)} for s in MemberStatus
            ],
            "borrowing_trends": [{"month": m, "borrowings": per_month.get(m, 0)} for m in months],
        }

    async def popular_books(self, limit: int = 10) -> List[dict]:
        books = {b.book_id: b for b in await self.store.list_books()}
        counts = Counter(b.book_id for b in await self.store.list_borrowings())
        ranked = sorted(
            (book_id for book_id in counts if book_id in books),
            key=lambda book_id: (-counts[book_id], books[book_id].title),
        )
        return [
            {
                "book_id": book_id,
                "title": books[book_id].title,
                "author": books[book_id].author,
                "isbn": books[book_id].isbn,
                "category": books[book_id].category,
                "borrow_count": counts[book_id],
            }
            for book_id in ranked[:limit]
        ]

    async def member_activity(self, limit: int = 10) -> List[dict]:
        members = await self.store.list_members()
        by_member = defaultdict(list)
        for b in await self.store.list_borrowings():
            by_member[b.member_id].append(b)

        rows = []
        for m in members:
            loans = by_member.get(m.member_id, [])
            rows.append(
                {
                    "member_id": m.member_id,
                    "full_name": m.full_name,
                    "email": m.email,
                    "status": m.status.value,
                    "join_date": m.join_date,
                    "total_borrows": len(loans),
                    "active_loans": sum(1 for b in loans if b.status == BorrowingStatus.ISSUED),
                    "total_fines": money(sum((b.fine_amount for b in loans), Decimal("0"))),
                }
            )
        rows.sort(key=lambda r: (-r["total_borrows"], r["full_name"]))
        return rows[:limit]

    async def overdue_report(self) -> List[dict]:
        today = self.today()
        loans = await self.store.list_borrowings(status=BorrowingStatus.ISSUED, due_before=today)
        rows = []
        for b in sorted(loans, key=lambda b: (b.due_date, b.borrow_id)):
            member = await self.store.get_member(b.member_id)
            book = await self.store.get_book(b.book_id)
            days = overdue_days(b.due_date, today)
            rows.append(
                {
                    "borrow_id": b.borrow_id,
                    "member_id": b.member_id,
                    "member_name": member.full_name if member else None,
                    "member_email": member.email if member else None,
                    "book_id": b.book_id,
                    "book_title": book.title if book else None,
                    "issue_date": b.issue_date,
                    "due_date": b.due_date,
                    "days_overdue": days,
                    "accrued_fine": compute_fine(days, self.policy),
                }
            )
        return rows

    async def fines_report(self) -> dict:
        borrowings = await self.store.list_borrowings()
        unpaid = [b for b in borrowings if b.fine_amount > 0]
        return {
            "fines": [
                {
                    "borrow_id": b.borrow_id,
                    "member_id": b.member_id,
                    "book_id": b.book_id,
                    "issue_date": b.issue_date,
                    "due_date": b.due_date,
                    "return_date": b.return_date,
                    "fine_amount": money(b.fine_amount),
                }
                for b in sorted(unpaid, key=lambda b: (-b.fine_amount, b.borrow_id))
            ],
            "summary": {
                "total_unpaid": money(sum((b.fine_amount for b in unpaid), Decimal("0"))),
                "unpaid_count": len(unpaid),
                "paid_count": sum(1 for b in borrowings if b.fine_amount == 0 and b.return_date is not None),
            },
        }

    async def inventory_report(self) -> dict:
        books = await self.store.list_books()
        return {
            "books": [
                {
                    "book_id": b.book_id,
                    "title": b.title,
                    "author": b.author,
                    "isbn": b.isbn,
                    "category": b.category,
                    "publication_year": b.publication_year,
                    "total_copies": b.total_copies,
                    "available_copies": b.available_copies,
                    "issued_copies": b.total_copies - b.available_copies,
                }
                for b in books
            ],
            "summary": {
                "total_titles": len(books),
                "total_copies": sum(b.total_copies for b in books),
                "available_copies": sum(b.available_copies for b in books),
                "issued_copies": sum(b.total_copies - b.available_copies for b in books),
                "out_of_stock": sum(1 for b in books if b.available_copies == 0),
            },
        }

    async def member_fines(self, member_id: int) -> dict:
        member = await self.store.get_member(member_id)
        if member is None:
            raise NotFound("Member", member_id)
        loans = await self.store.list_borrowings(member_id=member_id)
        return {
            "member_id": member.member_id,
            "full_name": member.full_name,
            "outstanding_fines": money(sum((b.fine_amount for b in loans), Decimal("0"))),
            "borrowings": [
                {
                    "borrow_id": b.borrow_id,
                    "book_id": b.book_id,
                    "issue_date": b.issue_date,
                    "due_date": b.due_date,
                    "return_date": b.return_date,
                    "fine_amount": money(b.fine_amount),
                    "status": b.status.value,
                }
                for b in loans
                if b.fine_amount > 0
            ],
        }
