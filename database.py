import functools
import logging
import re
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Type

from bson import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
    WTimeoutError,
)
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern
from pydantic import BaseModel

from errors import Conflict, RejectReason, Rejected, Transient
from models import Book, Borrowing, BorrowingStatus, Member, MemberStatus, User
from store import LibraryStore

logger = logging.getLogger("library.store")

TRANSIENT_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")


# --- Document mapping ---
def to_document(model: BaseModel, id_field: str) -> dict:
    """Model -> BSON-safe dict keyed by `_id`."""
    doc = {}
    for key, value in model.model_dump().items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, date) and not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        elif isinstance(value, Decimal):
            value = Decimal128(value)
        doc[key] = value
    doc["_id"] = doc.pop(id_field)
    return doc


def from_document(doc: Optional[dict], model: Type[BaseModel], id_field: str):
    if doc is None:
        return None
    data = {}
    for key, value in doc.items():
        if key == "_id":
            continue
        if isinstance(value, Decimal128):
            value = value.to_decimal()
        elif isinstance(value, datetime):
            # Only calendar dates are stored
            value = value.date()
        data[key] = value
    data[id_field] = doc["_id"]
    return model(**data)


def _as_datetime(d: date) -> datetime:
    return datetime.combine(d, time.min)


def is_transient(exc: PyMongoError) -> bool:
    if isinstance(exc, (ConnectionFailure, ExecutionTimeout, WTimeoutError)):
        return True
    return any(exc.has_error_label(label) for label in TRANSIENT_LABELS)


@asynccontextmanager
async def translate_errors():
    try:
        yield
    except DuplicateKeyError as exc:
        raise Conflict(f"Duplicate value: {exc.details.get('keyValue') if exc.details else exc}") from exc
    except PyMongoError as exc:
        if is_transient(exc):
            logger.warning("transient store failure | %s", exc)
            raise Transient(f"Store temporarily unavailable: {exc}") from exc
        raise


def guarded(fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        async with translate_errors():
            return await fn(*args, **kwargs)

    return wrapper


class MongoStore(LibraryStore):
    """
    MongoDB store over Motor. Transactions need a replica set (a
    single-node replica set is enough for development).
    """

    def __init__(self, client: AsyncIOMotorClient, database_name: str = "library_db"):
        self.client = client
        self.db = client[database_name]

    @classmethod
    def from_url(cls, mongo_url: str, database_name: str = "library_db") -> "MongoStore":
        return cls(AsyncIOMotorClient(mongo_url), database_name)

    def close(self) -> None:
        self.client.close()

    async def ensure_indexes(self) -> None:
        await self.db.books.create_index(
            "isbn", unique=True, partialFilterExpression={"isbn": {"$type": "string"}}
        )
        await self.db.members.create_index(
            "email", unique=True, partialFilterExpression={"email": {"$type": "string"}}
        )
        # Backstop for DUPLICATE_LOAN: one open loan per (member, book)
        await self.db.borrowings.create_index(
            [("member_id", ASCENDING), ("book_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": BorrowingStatus.ISSUED.value},
            name="one_issued_loan_per_member_book",
        )
        await self.db.borrowings.create_index([("status", ASCENDING), ("due_date", ASCENDING)])
        await self.db.borrowings.create_index("book_id")
        await self.db.users.create_index("username", unique=True)
        logger.info("indexes ensured on %s", self.db.name)

    @asynccontextmanager
    async def transaction(self):
        async with translate_errors():
            async with await self.client.start_session() as session:
                async with session.start_transaction(
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                ):
                    yield session

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.error("MongoDB connection failed: %s", e)
            return False

    # --- Auto Increment Function ---
    @guarded
    async def next_id(self, name: str, session=None) -> int:
        counter = await self.db.counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"sequence_value": 1}},
            return_document=ReturnDocument.AFTER,
            upsert=True,
            session=session,
        )
        return counter["sequence_value"]

    # ---------- Books ----------
    @guarded
    async def get_book(self, book_id: int, session=None) -> Optional[Book]:
        doc = await self.db.books.find_one({"_id": book_id}, session=session)
        return from_document(doc, Book, "book_id")

    @guarded
    async def find_book_by_isbn(self, isbn: str, session=None) -> Optional[Book]:
        doc = await self.db.books.find_one({"isbn": isbn}, session=session)
        return from_document(doc, Book, "book_id")

    @guarded
    async def list_books(self, search=None, category=None, available_only=False, session=None) -> List[Book]:
        filt = {}
        if search:
            # Basic case-insensitive search on title/author/isbn/category
            filt["$or"] = [
                {"title": {"$regex": re.escape(search), "$options": "i"}},
                {"author": {"$regex": re.escape(search), "$options": "i"}},
                {"isbn": {"$regex": re.escape(search), "$options": "i"}},
                {"category": {"$regex": re.escape(search), "$options": "i"}},
            ]
        if category:
            filt["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
        if available_only:
            filt["available_copies"] = {"$gt": 0}
        books = []
        async for doc in self.db.books.find(filt, session=session).sort("title", ASCENDING):
            books.append(from_document(doc, Book, "book_id"))
        return books

    @guarded
    async def insert_book(self, book: Book, session=None) -> None:
        await self.db.books.insert_one(to_document(book, "book_id"), session=session)

    @guarded
    async def update_book(self, book: Book, session=None) -> None:
        await self.db.books.replace_one({"_id": book.book_id}, to_document(book, "book_id"), session=session)

    @guarded
    async def delete_book(self, book_id: int, session=None) -> bool:
        result = await self.db.books.delete_one({"_id": book_id}, session=session)
        return result.deleted_count == 1

    @guarded
    async def take_copy(self, book_id: int, session=None) -> bool:
        result = await self.db.books.update_one(
            {"_id": book_id, "available_copies": {"$gt": 0}},
            {"$inc": {"available_copies": -1}},
            session=session,
        )
        return result.modified_count == 1

    @guarded
    async def put_back_copy(self, book_id: int, session=None) -> bool:
        result = await self.db.books.update_one(
            {"_id": book_id, "$expr": {"$lt": ["$available_copies", "$total_copies"]}},
            {"$inc": {"available_copies": 1}},
            session=session,
        )
        return result.modified_count == 1

    # ---------- Members ----------
    @guarded
    async def get_member(self, member_id: int, session=None) -> Optional[Member]:
        doc = await self.db.members.find_one({"_id": member_id}, session=session)
        return from_document(doc, Member, "member_id")

    @guarded
    async def find_member_by_email(self, email: str, session=None) -> Optional[Member]:
        doc = await self.db.members.find_one(
            {"email": {"$regex": f"^{re.escape(email)}$", "$options": "i"}}, session=session
        )
        return from_document(doc, Member, "member_id")

    @guarded
    async def list_members(self, search=None, status: Optional[MemberStatus] = None, session=None) -> List[Member]:
        filt = {}
        if search:
            filt["$or"] = [
                {"full_name": {"$regex": re.escape(search), "$options": "i"}},
                {"email": {"$regex": re.escape(search), "$options": "i"}},
            ]
        if status is not None:
            filt["status"] = status.value
        members = []
        async for doc in self.db.members.find(filt, session=session).sort("full_name", ASCENDING):
            members.append(from_document(doc, Member, "member_id"))
        return members

    @guarded
    async def insert_member(self, member: Member, session=None) -> None:
        await self.db.members.insert_one(to_document(member, "member_id"), session=session)

    @guarded
    async def update_member(self, member: Member, session=None) -> None:
        await self.db.members.update_one(
            {"_id": member.member_id},
            {"$set": {k: v for k, v in to_document(member, "member_id").items() if k != "_id"}},
            session=session,
        )

    @guarded
    async def delete_member(self, member_id: int, session=None) -> bool:
        result = await self.db.members.delete_one({"_id": member_id}, session=session)
        return result.deleted_count == 1

    @guarded
    async def lock_member(self, member_id: int, session=None) -> None:
        # A write to the member document makes concurrent issues for the
        # same member fail with a write conflict instead of both passing
        # the loan-limit check.
        await self.db.members.update_one({"_id": member_id}, {"$inc": {"lock_version": 1}}, session=session)

    # ---------- Borrowings ----------
    @guarded
    async def get_borrowing(self, borrow_id: int, session=None) -> Optional[Borrowing]:
        doc = await self.db.borrowings.find_one({"_id": borrow_id}, session=session)
        return from_document(doc, Borrowing, "borrow_id")

    @guarded
    async def list_borrowings(
        self, member_id=None, book_id=None, status=None, due_before: Optional[date] = None, session=None
    ) -> List[Borrowing]:
        filt = {}
        if member_id is not None:
            filt["member_id"] = member_id
        if book_id is not None:
            filt["book_id"] = book_id
        if status is not None:
            filt["status"] = status.value
        if due_before is not None:
            filt["due_date"] = {"$lt": _as_datetime(due_before)}
        records = []
        async for doc in self.db.borrowings.find(filt, session=session).sort("_id", ASCENDING):
            records.append(from_document(doc, Borrowing, "borrow_id"))
        return records

    async def insert_borrowing(self, borrowing: Borrowing, session=None) -> None:
        try:
            async with translate_errors():
                await self.db.borrowings.insert_one(to_document(borrowing, "borrow_id"), session=session)
        except Conflict as exc:
            raise Rejected(RejectReason.DUPLICATE_LOAN, "Member already has this book issued") from exc

    @guarded
    async def update_borrowing(self, borrowing: Borrowing, session=None) -> None:
        await self.db.borrowings.replace_one(
            {"_id": borrowing.borrow_id}, to_document(borrowing, "borrow_id"), session=session
        )

    @guarded
    async def delete_borrowings(self, member_id=None, book_id=None, session=None) -> int:
        filt = {}
        if member_id is not None:
            filt["member_id"] = member_id
        if book_id is not None:
            filt["book_id"] = book_id
        result = await self.db.borrowings.delete_many(filt, session=session)
        return result.deleted_count

    # ---------- Users ----------
    @guarded
    async def get_user(self, user_id: int, session=None) -> Optional[User]:
        doc = await self.db.users.find_one({"_id": user_id}, session=session)
        return from_document(doc, User, "user_id")

    @guarded
    async def find_user(self, username: str, session=None) -> Optional[User]:
        doc = await self.db.users.find_one({"username": username}, session=session)
        return from_document(doc, User, "user_id")

    @guarded
    async def insert_user(self, user: User, session=None) -> None:
        await self.db.users.insert_one(to_document(user, "user_id"), session=session)

    @guarded
    async def deactivate_users_of_member(self, member_id: int, session=None) -> int:
        result = await self.db.users.update_many(
            {"member_id": member_id}, {"$set": {"active": False, "member_id": None}}, session=session
        )
        return result.modified_count
