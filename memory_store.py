import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Dict, List, Optional

from errors import Conflict, RejectReason, Rejected
from models import Book, Borrowing, BorrowingStatus, Member, MemberStatus, User
from store import LibraryStore

logger = logging.getLogger("library.store")


class MemoryStore(LibraryStore):
    """
    Process-local store used by tests and by STORE_BACKEND=memory.

    Transactions are serialized by an asyncio.Lock and state is snapshotted
    on entry, so a failed transaction leaves no trace.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counters: Dict[str, int] = {}
        self._books: Dict[int, Book] = {}
        self._members: Dict[int, Member] = {}
        self._borrowings: Dict[int, Borrowing] = {}
        self._users: Dict[int, User] = {}

    def _snapshot(self):
        return (
            dict(self._counters),
            dict(self._books),
            dict(self._members),
            dict(self._borrowings),
            dict(self._users),
        )

    def _restore(self, snapshot) -> None:
        (
            self._counters,
            self._books,
            self._members,
            self._borrowings,
            self._users,
        ) = snapshot

    @asynccontextmanager
    async def transaction(self):
        # Records are replaced, never mutated in place, so a shallow copy of
        # each table is a complete snapshot.
        async with self._lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                logger.debug("transaction rolled back")
                raise

    async def ping(self) -> bool:
        return True

    async def next_id(self, name: str, session=None) -> int:
        self._counters[name] = self._counters.get(name, 0) + 1
        return self._counters[name]

    # ---------- Books ----------
    async def get_book(self, book_id: int, session=None) -> Optional[Book]:
        book = self._books.get(book_id)
        return book.model_copy() if book else None

    async def find_book_by_isbn(self, isbn: str, session=None) -> Optional[Book]:
        for b in self._books.values():
            if b.isbn is not None and b.isbn == isbn:
                return b.model_copy()
        return None

    async def list_books(self, search=None, category=None, available_only=False, session=None) -> List[Book]:
        t = (search or "").lower().strip()

        def matches(b: Book) -> bool:
            if category and (b.category or "").lower() != category.lower():
                return False
            if available_only and b.available_copies <= 0:
                return False
            if not t:
                return True
            return (
                t in b.title.lower()
                or t in b.author.lower()
                or t in (b.isbn or "").lower()
                or t in (b.category or "").lower()
            )

        books = [b.model_copy() for b in self._books.values() if matches(b)]
        return sorted(books, key=lambda b: (b.title.lower(), b.book_id))

    async def insert_book(self, book: Book, session=None) -> None:
        if book.isbn and await self.find_book_by_isbn(book.isbn):
            raise Conflict(f"Book with ISBN {book.isbn} already exists")
        self._books[book.book_id] = book.model_copy()

    async def update_book(self, book: Book, session=None) -> None:
        if book.isbn:
            other = await self.find_book_by_isbn(book.isbn)
            if other and other.book_id != book.book_id:
                raise Conflict(f"Book with ISBN {book.isbn} already exists")
        self._books[book.book_id] = book.model_copy()

    async def delete_book(self, book_id: int, session=None) -> bool:
        return self._books.pop(book_id, None) is not None

    async def take_copy(self, book_id: int, session=None) -> bool:
        book = self._books.get(book_id)
        if book is None or book.available_copies <= 0:
            return False
        self._books[book_id] = book.model_copy(update={"available_copies": book.available_copies - 1})
        return True

    async def put_back_copy(self, book_id: int, session=None) -> bool:
        book = self._books.get(book_id)
        if book is None or book.available_copies >= book.total_copies:
            return False
        self._books[book_id] = book.model_copy(update={"available_copies": book.available_copies + 1})
        return True

    # ---------- Members ----------
    async def get_member(self, member_id: int, session=None) -> Optional[Member]:
        member = self._members.get(member_id)
        return member.model_copy() if member else None

    async def find_member_by_email(self, email: str, session=None) -> Optional[Member]:
        for m in self._members.values():
            if m.email is not None and m.email.lower() == email.lower():
                return m.model_copy()
        return None

    async def list_members(self, search=None, status=None, session=None) -> List[Member]:
        t = (search or "").lower().strip()
        members = [
            m.model_copy()
            for m in self._members.values()
            if (status is None or m.status == status)
            and (not t or t in m.full_name.lower() or t in (m.email or "").lower())
        ]
        return sorted(members, key=lambda m: (m.full_name.lower(), m.member_id))

    async def insert_member(self, member: Member, session=None) -> None:
        if member.email and await self.find_member_by_email(member.email):
            raise Conflict(f"Member with email {member.email} already exists")
        self._members[member.member_id] = member.model_copy()

    async def update_member(self, member: Member, session=None) -> None:
        if member.email:
            other = await self.find_member_by_email(member.email)
            if other and other.member_id != member.member_id:
                raise Conflict(f"Member with email {member.email} already exists")
        self._members[member.member_id] = member.model_copy()

    async def delete_member(self, member_id: int, session=None) -> bool:
        return self._members.pop(member_id, None) is not None

    async def lock_member(self, member_id: int, session=None) -> None:
        # The transaction lock already serializes everything.
        return None

    # ---------- Borrowings ----------
    async def get_borrowing(self, borrow_id: int, session=None) -> Optional[Borrowing]:
        borrowing = self._borrowings.get(borrow_id)
        return borrowing.model_copy() if borrowing else None

    async def list_borrowings(
        self, member_id=None, book_id=None, status=None, due_before: Optional[date] = None, session=None
    ) -> List[Borrowing]:
        return [
            b.model_copy()
            for _, b in sorted(self._borrowings.items())
            if (member_id is None or b.member_id == member_id)
            and (book_id is None or b.book_id == book_id)
            and (status is None or b.status == status)
            and (due_before is None or b.due_date < due_before)
        ]

    async def insert_borrowing(self, borrowing: Borrowing, session=None) -> None:
        if borrowing.status == BorrowingStatus.ISSUED:
            for b in self._borrowings.values():
                if (
                    b.status == BorrowingStatus.ISSUED
                    and b.member_id == borrowing.member_id
                    and b.book_id == borrowing.book_id
                ):
                    raise Rejected(RejectReason.DUPLICATE_LOAN, "Member already has this book issued")
        self._borrowings[borrowing.borrow_id] = borrowing.model_copy()

    async def update_borrowing(self, borrowing: Borrowing, session=None) -> None:
        self._borrowings[borrowing.borrow_id] = borrowing.model_copy()

    async def delete_borrowings(self, member_id=None, book_id=None, session=None) -> int:
        doomed = [
            k
            for k, b in self._borrowings.items()
            if (member_id is None or b.member_id == member_id)
            and (book_id is None or b.book_id == book_id)
        ]
        for k in doomed:
            del self._borrowings[k]
        return len(doomed)

    # ---------- Users ----------
    async def get_user(self, user_id: int, session=None) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def find_user(self, username: str, session=None) -> Optional[User]:
        for u in self._users.values():
            if u.username == username:
                return u.model_copy()
        return None

    async def insert_user(self, user: User, session=None) -> None:
        if await self.find_user(user.username):
            raise Conflict("Username already exists")
        self._users[user.user_id] = user.model_copy()

    async def deactivate_users_of_member(self, member_id: int, session=None) -> int:
        count = 0
        for k, u in list(self._users.items()):
            if u.member_id == member_id:
                self._users[k] = u.model_copy(update={"active": False, "member_id": None})
                count += 1
        return count
