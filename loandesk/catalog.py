import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from loandesk import models
from loandesk import schemas
from loandesk import validation
from loandesk.auth import (
    Capability,
    is_admin,
    is_librarian_or_admin,
    is_self_or_staff,
)
from loandesk.gateway import (
    LoanRepository,
    NotFoundError,
    PersistenceError,
    Repository,
)
from loandesk.models import Role
from loandesk.results import (
    ErrorKind,
    FieldError,
    ListResult,
    OperationResult,
    error,
    fail,
    fail_list,
    forbidden_errors,
    ok,
    ok_list,
)


logger = logging.getLogger(__name__)


def _persistence_failure(entity: str) -> OperationResult:
    return fail(
        ErrorKind.PERSISTENCE,
        [error(entity, "persistence", f"Could not save {entity}")],
    )


class BookService:
    """
    Catalogue maintenance. Every operation is reserved to administrators.

    Create and update run the full rule set and report all violations
    together; storage is only touched when nothing failed.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.clock = clock
        self.books = Repository(db, models.Book)
        self.copies = Repository(db, models.Copy)
        self.loans = LoanRepository(db)

    def _validate(self, data: schemas.BookBase, book_id=None) -> List[FieldError]:
        errors = []
        if not validation.is_value_unique(
            self.db, models.Book.title, data.title, exclude_id=book_id
        ):
            errors.append(error("title", "not_unique", "Title already exists"))
        if not validation.exists(self.db, models.Genre, data.genre_id):
            errors.append(error("genre_id", "invalid", "ID is invalid"))
        if not validation.is_not_blank(data.title):
            errors.append(error("title", "required", "Title is required"))
        if not validation.is_not_blank(data.author):
            errors.append(error("author", "required", "Author is required"))
        if not validation.is_not_blank(data.publisher):
            errors.append(error("publisher", "required", "Publisher is required"))
        if not validation.is_date_on_or_before_today(
            data.publication_date, today=self.clock()
        ):
            errors.append(
                error(
                    "publication_date",
                    "in_future",
                    "Date must be before or on the present date",
                )
            )
        if not validation.is_valid_isbn(data.isbn):
            errors.append(
                error(
                    "isbn",
                    "invalid",
                    "Invalid ISBN. Make sure the ISBN is in ISBN-10 or ISBN-13 format",
                )
            )
        return errors

    def create_book(
        self, capability: Capability, data: schemas.BookCreate
    ) -> OperationResult:
        if not is_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        errors = self._validate(data)
        if errors:
            return fail(ErrorKind.VALIDATION, errors)

        try:
            book = self.books.create(models.Book(**data.model_dump()))
        except PersistenceError:
            return _persistence_failure("book")

        logger.info("Book %s created: %s", book.id, book.title)
        return ok(schemas.Book.model_validate(book))

    def update_book(
        self, capability: Capability, book_id: int, data: schemas.BookUpdate
    ) -> OperationResult:
        """
        Replace every field of a stored book.

        The title may stay the same; uniqueness ignores the book itself.
        """
        if not is_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        errors = self._validate(data, book_id=book_id)
        if errors:
            return fail(ErrorKind.VALIDATION, errors)

        try:
            book = self.books.get_by_id(book_id)
        except NotFoundError:
            return fail(
                ErrorKind.NOT_FOUND, [error("book_id", "not_found", "Book not found")]
            )

        for key, value in data.model_dump().items():
            setattr(book, key, value)

        try:
            book = self.books.update(book)
        except PersistenceError:
            return _persistence_failure("book")

        logger.info("Book %s updated", book.id)
        return ok(schemas.Book.model_validate(book))

    def get_book_by_id(self, capability: Capability, book_id: int) -> OperationResult:
        if not is_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        try:
            book = self.books.get_by_id(book_id)
        except NotFoundError:
            return fail(
                ErrorKind.NOT_FOUND, [error("book_id", "not_found", "Book not found")]
            )
        return ok(schemas.Book.model_validate(book))

    def get_all_books(self, capability: Capability, page: int = 1) -> ListResult:
        if not is_admin(capability):
            return fail_list(ErrorKind.FORBIDDEN, forbidden_errors())

        if not validation.is_valid_page(page):
            return fail_list(
                ErrorKind.VALIDATION, [error("page", "invalid", "Invalid page")]
            )

        books, row_count = self.books.get_all(page)
        return ok_list([schemas.Book.model_validate(book) for book in books], row_count)

    def remove_book(self, capability: Capability, book_id: int) -> OperationResult:
        """
        Delete a book together with its copies.

        Loans are kept as history, so a book whose copies were ever lent
        out cannot be removed.
        """
        if not is_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        if self.loans.has_history_for_book(book_id):
            return fail(
                ErrorKind.CONFLICT,
                [
                    error(
                        "book_id",
                        "has_loans",
                        "Book has loan history and cannot be removed",
                    )
                ],
            )

        try:
            removed = self.books.remove(book_id)
        except PersistenceError:
            return _persistence_failure("book")

        if not removed:
            return fail(
                ErrorKind.NOT_FOUND, [error("book_id", "not_found", "Book not found")]
            )

        logger.info("Book %s removed", book_id)
        return ok(True)

    def add_copy(
        self, capability: Capability, book_id: int, price: Decimal
    ) -> OperationResult:
        if not is_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        if not validation.is_non_negative(price):
            return fail(
                ErrorKind.VALIDATION,
                [error("price", "invalid", "Price must not be negative")],
            )

        try:
            self.books.get_by_id(book_id)
        except NotFoundError:
            return fail(
                ErrorKind.NOT_FOUND, [error("book_id", "not_found", "Book not found")]
            )

        try:
            copy = self.copies.create(
                models.Copy(book_id=book_id, price=price, is_available=True)
            )
        except PersistenceError:
            return _persistence_failure("copy")

        return ok(schemas.Copy.model_validate(copy))


class MemberService:
    """Member registration, lookup and listing."""

    def __init__(self, db: Session):
        self.db = db
        self.members = Repository(db, models.Member)

    def create_member(
        self, capability: Capability, data: schemas.MemberCreate
    ) -> OperationResult:
        if not is_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        errors = []
        if not validation.is_value_unique(
            self.db, models.Member.username, data.username
        ):
            errors.append(error("username", "not_unique", "Username already exists"))
        if not validation.is_not_blank(data.username):
            errors.append(error("username", "required", "Username is required"))
        if not validation.is_not_blank(data.first_name):
            errors.append(error("first_name", "required", "First name is required"))
        if not validation.is_not_blank(data.last_name):
            errors.append(error("last_name", "required", "Last name is required"))
        if data.api_key is not None and not validation.is_value_unique(
            self.db, models.Member.api_key, data.api_key
        ):
            errors.append(error("api_key", "not_unique", "API key already in use"))
        if errors:
            return fail(ErrorKind.VALIDATION, errors)

        try:
            member = self.members.create(models.Member(**data.model_dump()))
        except PersistenceError:
            return _persistence_failure("member")

        logger.info("Member %s registered as %s", member.username, member.role.value)
        return ok(schemas.Member.model_validate(member))

    def get_member(self, capability: Capability, member_id: int) -> OperationResult:
        if not is_self_or_staff(capability, member_id):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        try:
            member = self.members.get_by_id(member_id)
        except NotFoundError:
            return fail(
                ErrorKind.NOT_FOUND,
                [error("member_id", "not_found", "Member not found")],
            )
        return ok(schemas.Member.model_validate(member))

    def get_all_members(
        self,
        capability: Capability,
        page: int = 1,
        role: Optional[Role] = Role.USER,
    ) -> ListResult:
        """
        Page through members so staff can pick one, e.g. to review their
        overdue loans.

        Only plain users are listed by default; pass role=None for everyone.
        """
        if not is_librarian_or_admin(capability):
            return fail_list(ErrorKind.FORBIDDEN, forbidden_errors())

        if not validation.is_valid_page(page):
            return fail_list(
                ErrorKind.VALIDATION, [error("page", "invalid", "Invalid page")]
            )

        stmt = select(models.Member)
        if role is not None:
            stmt = stmt.where(models.Member.role == role)
        members, row_count = self.members.paginate(
            stmt.order_by(models.Member.id), page
        )
        return ok_list(
            [schemas.Member.model_validate(member) for member in members], row_count
        )
