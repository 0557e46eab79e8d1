"""
Persistence contract shared by the MongoDB store (database.py) and the
in-memory store (memory_store.py).

Every method takes an optional `session`. Inside `async with
store.transaction() as session:` pass it through so that all reads and
writes belong to one atomic unit; on any exception nothing is committed.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import AsyncContextManager, List, Optional

from models import Book, Borrowing, BorrowingStatus, Member, MemberStatus, User


class LibraryStore(ABC):
    @abstractmethod
    def transaction(self) -> AsyncContextManager:
        """Serializable unit of work across books, members and borrowings."""

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def next_id(self, name: str, session=None) -> int:
        """Auto-increment identity per collection."""

    # ---------- Books ----------
    @abstractmethod
    async def get_book(self, book_id: int, session=None) -> Optional[Book]: ...

    @abstractmethod
    async def find_book_by_isbn(self, isbn: str, session=None) -> Optional[Book]: ...

    @abstractmethod
    async def list_books(
        self,
        search: Optional[str] = None,
        category: Optional[str] = None,
        available_only: bool = False,
        session=None,
    ) -> List[Book]:
        """Books ordered by title. `search` matches title, author, isbn or category."""

    @abstractmethod
    async def insert_book(self, book: Book, session=None) -> None: ...

    @abstractmethod
    async def update_book(self, book: Book, session=None) -> None: ...

    @abstractmethod
    async def delete_book(self, book_id: int, session=None) -> bool: ...

    @abstractmethod
    async def take_copy(self, book_id: int, session=None) -> bool:
        """Decrement available_copies only if it is above zero."""

    @abstractmethod
    async def put_back_copy(self, book_id: int, session=None) -> bool:
        """Increment available_copies only if it is below total_copies."""

    # ---------- Members ----------
    @abstractmethod
    async def get_member(self, member_id: int, session=None) -> Optional[Member]: ...

    @abstractmethod
    async def find_member_by_email(self, email: str, session=None) -> Optional[Member]: ...

    @abstractmethod
    async def list_members(
        self,
        search: Optional[str] = None,
        status: Optional[MemberStatus] = None,
        session=None,
    ) -> List[Member]:
        """Members ordered by full name."""

    @abstractmethod
    async def insert_member(self, member: Member, session=None) -> None: ...

    @abstractmethod
    async def update_member(self, member: Member, session=None) -> None: ...

    @abstractmethod
    async def delete_member(self, member_id: int, session=None) -> bool: ...

    @abstractmethod
    async def lock_member(self, member_id: int, session=None) -> None:
        """Make concurrent transactions on the same member conflict."""

    # ---------- Borrowings ----------
    @abstractmethod
    async def get_borrowing(self, borrow_id: int, session=None) -> Optional[Borrowing]: ...

    @abstractmethod
    async def list_borrowings(
        self,
        member_id: Optional[int] = None,
        book_id: Optional[int] = None,
        status: Optional[BorrowingStatus] = None,
        due_before: Optional[date] = None,
        session=None,
    ) -> List[Borrowing]:
        """Borrowings ordered by borrow_id."""

    @abstractmethod
    async def insert_borrowing(self, borrowing: Borrowing, session=None) -> None: ...

    @abstractmethod
    async def update_borrowing(self, borrowing: Borrowing, session=None) -> None: ...

    @abstractmethod
    async def delete_borrowings(
        self, member_id: Optional[int] = None, book_id: Optional[int] = None, session=None
    ) -> int: ...

    # ---------- Users ----------
    @abstractmethod
    async def get_user(self, user_id: int, session=None) -> Optional[User]: ...

    @abstractmethod
    async def find_user(self, username: str, session=None) -> Optional[User]: ...

    @abstractmethod
    async def insert_user(self, user: User, session=None) -> None: ...

    @abstractmethod
    async def deactivate_users_of_member(self, member_id: int, session=None) -> int: ...
