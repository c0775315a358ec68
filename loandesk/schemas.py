from datetime import date, datetime
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar
from pydantic import BaseModel, ConfigDict

from loandesk.models import DEFAULT_SYNOPSIS, Role


T = TypeVar("T")


class BookBase(BaseModel):
    """
    Base schema with common book fields.

    Field rules (non-blank, ISBN checksum, uniqueness, ...) are not declared
    here. The book service checks them all in one pass so every violation
    is reported together.
    """

    title: str
    author: str
    publisher: str
    publication_date: date
    isbn: str
    genre_id: Optional[int] = None
    cover_path: str = ""
    synopsis: str = DEFAULT_SYNOPSIS


class BookCreate(BookBase):
    pass


class BookUpdate(BookBase):
    """Schema for updating a book. The stored book is replaced as a whole."""

    pass


class Book(BookBase):
    """Schema for book responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int


class CopyCreate(BaseModel):
    price: Decimal = Decimal("0")


class Copy(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: int
    price: Decimal
    is_available: bool


class MemberBase(BaseModel):
    username: str
    first_name: str
    last_name: str
    role: Role = Role.USER
    course_year: Optional[str] = None
    program: Optional[str] = None


class MemberCreate(MemberBase):
    """
    Schema for registering a member.

    api_key is optional; without one the member cannot call the API
    directly but can still borrow through a librarian.
    """

    api_key: Optional[str] = None


class Member(MemberBase):
    """Schema for member responses. The API key is never echoed back."""

    model_config = ConfigDict(from_attributes=True)

    id: int


class BorrowRequest(BaseModel):
    """duration_days falls back to the configured loan duration when omitted."""

    member_id: int
    duration_days: Optional[int] = None


class Loan(BaseModel):
    """
    Schema for loan responses.

    date_returned is null while the loan is active.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    copy_id: int
    member_id: int
    date_borrowed: datetime
    due_date: datetime
    date_returned: Optional[datetime] = None


class OverdueLoan(BaseModel):
    """
    One row of the overdue listing, joined with copy, book and member data.

    price is the replacement price of the copy on loan.
    """

    loan_id: int
    copy_id: int
    book_title: str
    member_id: int
    member_name: str
    date_borrowed: datetime
    due_date: datetime
    price: Decimal
    days_overdue: int


class Page(BaseModel, Generic[T]):
    """A page of results plus the total number of matching rows."""

    results: List[T]
    row_count: int
