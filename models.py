from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

MONEY_Q = Decimal("0.01")


def money(x) -> Decimal:
    return Decimal(str(x)).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


class Role(str, Enum):
    LIBRARIAN = "LIBRARIAN"
    MEMBER = "MEMBER"


class MemberStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class BorrowingStatus(str, Enum):
    ISSUED = "ISSUED"
    RETURNED = "RETURNED"


# ---------- Auth ----------
class User(BaseModel):
    user_id: int
    username: str
    password_hash: str
    role: Role = Role.MEMBER
    member_id: Optional[int] = None
    active: bool = True


class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=6)
    role: Role = Role.MEMBER
    # Only used when registering a MEMBER; a new member record is created
    full_name: Optional[str] = Field(None, max_length=120)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30, pattern=r"^[\d\s\-\+\(\)]+$")


class UserResponse(BaseModel):
    user_id: int
    username: str
    role: Role
    member_id: Optional[int] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ---------- Books ----------
class Book(BaseModel):
    book_id: int
    isbn: Optional[str] = None
    title: str
    author: str
    category: Optional[str] = None
    publication_year: Optional[int] = None
    total_copies: int = Field(1, ge=1)
    available_copies: int = Field(1, ge=0)


def _not_null(value):
    if value is None:
        raise ValueError("field cannot be null")
    return value


def _check_year(value: Optional[int]) -> Optional[int]:
    if value is not None and not 1000 <= value <= date.today().year + 1:
        raise ValueError("publication_year must be a valid year")
    return value


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, max_length=20)
    category: Optional[str] = Field(None, max_length=100)
    publication_year: Optional[int] = None
    total_copies: int = Field(1, ge=1, le=9999)

    @field_validator("publication_year")
    @classmethod
    def valid_year(cls, value):
        return _check_year(value)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, max_length=20)
    category: Optional[str] = Field(None, max_length=100)
    publication_year: Optional[int] = None
    total_copies: Optional[int] = Field(None, ge=1, le=9999)

    @field_validator("publication_year")
    @classmethod
    def valid_year(cls, value):
        return _check_year(value)

    @field_validator("title", "author", "total_copies")
    @classmethod
    def required_fields(cls, value):
        return _not_null(value)


class BookResponse(Book):
    issued_copies: int

    @classmethod
    def from_book(cls, book: Book) -> "BookResponse":
        return cls(**book.model_dump(), issued_copies=book.total_copies - book.available_copies)


# ---------- Members ----------
class Member(BaseModel):
    member_id: int
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    status: MemberStatus = MemberStatus.ACTIVE
    join_date: date


class MemberCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=120)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30, pattern=r"^[\d\s\-\+\(\)]+$")


class MemberUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=120)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30, pattern=r"^[\d\s\-\+\(\)]+$")
    status: Optional[MemberStatus] = None

    @field_validator("full_name", "status")
    @classmethod
    def required_fields(cls, value):
        return _not_null(value)


# ---------- Borrowings ----------
class Borrowing(BaseModel):
    borrow_id: int
    member_id: int
    book_id: int
    issue_date: date
    due_date: date
    return_date: Optional[date] = None
    fine_amount: Decimal = Field(Decimal("0.00"), ge=0)
    status: BorrowingStatus = BorrowingStatus.ISSUED
    renewal_count: int = Field(0, ge=0)

    def is_overdue(self, today: date) -> bool:
        """Overdue is derived from the clock, never stored."""
        return self.status == BorrowingStatus.ISSUED and self.due_date < today


class IssueRequest(BaseModel):
    member_id: int
    book_id: int


class FinePayment(BaseModel):
    amount: Decimal


class BorrowingResponse(Borrowing):
    overdue: bool = False
    overdue_days: int = 0
    accrued_fine: Decimal = Decimal("0.00")
    member_name: Optional[str] = None
    book_title: Optional[str] = None
