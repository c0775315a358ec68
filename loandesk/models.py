import enum
from datetime import datetime
from loandesk.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)


DEFAULT_SYNOPSIS = "No synopsis available"


class Role(str, enum.Enum):
    """Roles a member can hold. The role decides what the member may do."""

    ADMIN = "admin"
    LIBRARIAN = "librarian"
    USER = "user"


class Genre(Base):
    """Genre a book can be filed under. Only used as a lookup target."""

    __tablename__ = "genres"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)

    books = relationship("Book", back_populates="genre")


class Book(Base):
    """
    Book model representing a title in the catalogue.

    Relationships:
    - Many books belong to one genre (many-to-one, optional)
    - One book has many physical copies (one-to-many)

    A book is never removed while any of its copies has loan history,
    so the copies relationship only cascades for copies without loans.
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, unique=True, nullable=False, index=True)
    author = Column(String, nullable=False)
    publisher = Column(String, nullable=False)
    publication_date = Column(Date, nullable=False)
    isbn = Column(String, nullable=False, index=True)
    genre_id = Column(Integer, ForeignKey("genres.id"), nullable=True)
    cover_path = Column(String, default="", nullable=False)
    synopsis = Column(String, default=DEFAULT_SYNOPSIS, nullable=False)

    genre = relationship("Genre", back_populates="books")

    copies = relationship(
        "Copy",
        back_populates="book",
        cascade="all, delete-orphan",
    )


class Copy(Base):
    """
    Copy model representing one borrowable instance of a book.

    is_available mirrors whether the copy has an active loan. Borrowing
    flips it with a conditional UPDATE, so two borrowers racing for the
    same copy cannot both win.
    """

    __tablename__ = "copies"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    price = Column(Numeric(10, 2), default=0, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)

    book = relationship("Book", back_populates="copies")
    loans = relationship("Loan", back_populates="copy")


class Member(Base):
    """Library member. api_key identifies the member on the HTTP surface."""

    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    role = Column(Enum(Role), default=Role.USER, nullable=False)
    course_year = Column(String, nullable=True)
    program = Column(String, nullable=True)
    api_key = Column(String, unique=True, nullable=True, index=True)

    loans = relationship("Loan", back_populates="member")

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Loan(Base):
    """
    Loan model linking a copy to the member who borrowed it.

    Business Logic:
    - date_returned is NULL while the loan is active
    - due_date is date_borrowed plus the loan duration
    - overdue is never stored; it is evaluated against the clock at query time
    - loans are kept after return as the borrowing history

    The partial unique index allows at most one active loan per copy.
    """

    __tablename__ = "loans"
    __table_args__ = (
        Index(
            "uq_loans_active_copy",
            "copy_id",
            unique=True,
            sqlite_where=text("date_returned IS NULL"),
            postgresql_where=text("date_returned IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    copy_id = Column(Integer, ForeignKey("copies.id"), nullable=False)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    date_borrowed = Column(DateTime, default=datetime.now, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)
    date_returned = Column(DateTime, nullable=True)

    copy = relationship("Copy", back_populates="loans")
    member = relationship("Member", back_populates="loans")
