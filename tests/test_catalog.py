from loandesk import models
from loandesk import schemas
from loandesk.catalog import BookService, MemberService
from loandesk.loans import LoanService
from loandesk.results import ErrorKind

import logging
import pytest
from datetime import date
from decimal import Decimal


@pytest.fixture
def books(db, clock):
    return BookService(db, clock=clock)


@pytest.fixture
def members(db):
    return MemberService(db)


def book_data(**overrides):
    data = {
        "title": "1984",
        "author": "George Orwell",
        "publisher": "Secker & Warburg",
        "publication_date": date(1949, 6, 8),
        "isbn": "9780451524935",
    }
    data.update(overrides)
    return schemas.BookCreate(**data)


def codes(outcome):
    return {(e.field, e.code) for e in outcome.errors}


def test_create_book(books, admin):
    outcome = books.create_book(admin, book_data())

    assert outcome.is_success
    book = outcome.result
    assert book.id is not None
    assert book.title == "1984"
    assert book.cover_path == ""
    assert book.synopsis == models.DEFAULT_SYNOPSIS


def test_create_book_with_genre(books, db, admin):
    genre = models.Genre(name="Dystopian Fiction")
    db.add(genre)
    db.commit()

    outcome = books.create_book(admin, book_data(genre_id=genre.id))

    assert outcome.is_success
    assert outcome.result.genre_id == genre.id


def test_create_book_requires_admin(books, db, librarian):
    outcome = books.create_book(librarian, book_data())

    assert outcome.error_kind == ErrorKind.FORBIDDEN
    assert codes(outcome) == {("permission", "forbidden")}
    assert db.query(models.Book).count() == 0


def test_blank_and_duplicate_title_reported_together(books, db, admin):
    """
    A title that is both empty and already taken yields both errors.
    """
    db.add(
        models.Book(
            title="",
            author="Anonymous",
            publisher="Nobody",
            publication_date=date(2000, 1, 1),
            isbn="0306406152",
        )
    )
    db.commit()

    outcome = books.create_book(admin, book_data(title=""))

    assert outcome.error_kind == ErrorKind.VALIDATION
    assert {("title", "not_unique"), ("title", "required")} <= codes(outcome)


def test_every_violation_is_collected(books, admin, clock):
    outcome = books.create_book(
        admin,
        book_data(
            title="  ",
            author="",
            publisher="",
            publication_date=date(2024, 3, 2),
            isbn="9780451524936",
            genre_id=42,
        ),
    )

    assert outcome.error_kind == ErrorKind.VALIDATION
    assert codes(outcome) == {
        ("genre_id", "invalid"),
        ("title", "required"),
        ("author", "required"),
        ("publisher", "required"),
        ("publication_date", "in_future"),
        ("isbn", "invalid"),
    }


def test_publication_today_is_accepted(books, admin, clock):
    outcome = books.create_book(admin, book_data(publication_date=clock.now.date()))

    assert outcome.is_success


def test_update_book_keeps_own_title(books, admin):
    book = books.create_book(admin, book_data()).result

    outcome = books.update_book(
        admin, book.id, schemas.BookUpdate(**book_data(author="Eric Blair").model_dump())
    )

    assert outcome.is_success
    assert outcome.result.author == "Eric Blair"
    assert outcome.result.title == "1984"


def test_update_book_to_taken_title(books, admin):
    books.create_book(admin, book_data(title="Animal Farm", isbn="0306406152"))
    book = books.create_book(admin, book_data()).result

    outcome = books.update_book(
        admin, book.id, schemas.BookUpdate(**book_data(title="Animal Farm").model_dump())
    )

    assert outcome.error_kind == ErrorKind.VALIDATION
    assert codes(outcome) == {("title", "not_unique")}


def test_update_unknown_book(books, admin):
    outcome = books.update_book(
        admin, 999, schemas.BookUpdate(**book_data().model_dump())
    )

    assert outcome.error_kind == ErrorKind.NOT_FOUND


def test_get_book_by_id(books, admin):
    book = books.create_book(admin, book_data()).result

    assert books.get_book_by_id(admin, book.id).result == book
    assert books.get_book_by_id(admin, 999).error_kind == ErrorKind.NOT_FOUND


def test_get_all_books_paginates(books, admin):
    books.books.page_size = 2
    for title, isbn in [
        ("A", "0306406152"),
        ("B", "0441172717"),
        ("C", "080442957X"),
    ]:
        assert books.create_book(admin, book_data(title=title, isbn=isbn)).is_success

    first = books.get_all_books(admin, 1)
    second = books.get_all_books(admin, 2)

    assert first.row_count == 3
    assert [b.title for b in first.results] == ["A", "B"]
    assert [b.title for b in second.results] == ["C"]


def test_get_all_books_rejects_page_zero(books, admin):
    outcome = books.get_all_books(admin, 0)

    assert outcome.error_kind == ErrorKind.VALIDATION
    assert codes(outcome) == {("page", "invalid")}


def test_remove_book_with_copies(books, db, admin):
    book = books.create_book(admin, book_data()).result
    books.add_copy(admin, book.id, Decimal("9.99"))

    outcome = books.remove_book(admin, book.id)

    assert outcome.is_success
    assert db.query(models.Book).count() == 0
    assert db.query(models.Copy).count() == 0


def test_remove_book_with_loan_history_conflicts(
    books, db, admin, librarian, make_member, clock
):
    book = books.create_book(admin, book_data()).result
    copy = books.add_copy(admin, book.id, Decimal("9.99")).result
    member = make_member("ana")
    loans = LoanService(db, clock=clock)
    loan = loans.borrow(librarian, copy.id, member.id, 7).result
    loans.return_loan(librarian, loan.id)

    outcome = books.remove_book(admin, book.id)

    assert outcome.error_kind == ErrorKind.CONFLICT
    assert db.query(models.Loan).count() == 1


def test_remove_unknown_book(books, admin):
    assert books.remove_book(admin, 999).error_kind == ErrorKind.NOT_FOUND


def test_add_copy(books, admin):
    book = books.create_book(admin, book_data()).result

    outcome = books.add_copy(admin, book.id, Decimal("15.00"))

    assert outcome.is_success
    assert outcome.result.book_id == book.id
    assert outcome.result.price == Decimal("15.00")
    assert outcome.result.is_available is True


def test_add_copy_rejects_negative_price(books, admin):
    book = books.create_book(admin, book_data()).result

    outcome = books.add_copy(admin, book.id, Decimal("-1"))

    assert outcome.error_kind == ErrorKind.VALIDATION


def test_add_copy_to_unknown_book(books, admin):
    assert books.add_copy(admin, 999, Decimal("1")).error_kind == ErrorKind.NOT_FOUND


def test_create_member(members, admin):
    outcome = members.create_member(
        admin,
        schemas.MemberCreate(
            username="juan_54",
            first_name="Juan",
            last_name="Dela Cruz",
            role=models.Role.USER,
            course_year="3",
            program="BSIT",
            api_key="juan-key",
        ),
    )

    assert outcome.is_success
    assert outcome.result.username == "juan_54"
    assert not hasattr(outcome.result, "api_key")


def test_create_member_collects_errors(members, admin, make_member):
    make_member("juan_54", api_key="taken")

    outcome = members.create_member(
        admin,
        schemas.MemberCreate(
            username="juan_54", first_name="", last_name=" ", api_key="taken"
        ),
    )

    assert outcome.error_kind == ErrorKind.VALIDATION
    assert codes(outcome) == {
        ("username", "not_unique"),
        ("first_name", "required"),
        ("last_name", "required"),
        ("api_key", "not_unique"),
    }


def test_create_member_requires_admin(members, librarian):
    outcome = members.create_member(
        librarian,
        schemas.MemberCreate(username="x", first_name="X", last_name="Y"),
    )

    assert outcome.error_kind == ErrorKind.FORBIDDEN


def test_get_member_self_or_staff(members, librarian, make_member, as_member):
    ana = make_member("ana")
    ben = make_member("ben")

    assert members.get_member(as_member(ana), ana.id).result.username == "ana"
    assert members.get_member(librarian, ben.id).is_success
    assert members.get_member(as_member(ana), ben.id).error_kind == ErrorKind.FORBIDDEN
    assert members.get_member(librarian, 999).error_kind == ErrorKind.NOT_FOUND


def test_get_all_members_lists_users_page_by_page(
    members, librarian, make_member
):
    members.members.page_size = 2
    make_member("maria", role=models.Role.LIBRARIAN)
    for name in ("ana", "ben", "carl"):
        make_member(name)

    first = members.get_all_members(librarian, 1)
    second = members.get_all_members(librarian, 2)

    assert first.is_success
    assert first.row_count == 3
    assert [m.username for m in first.results] == ["ana", "ben"]
    assert [m.username for m in second.results] == ["carl"]


def test_get_all_members_by_role_or_everyone(members, admin, make_member):
    make_member("maria", role=models.Role.LIBRARIAN)
    make_member("ana")

    staff = members.get_all_members(admin, 1, role=models.Role.LIBRARIAN)
    everyone = members.get_all_members(admin, 1, role=None)

    assert [m.username for m in staff.results] == ["maria"]
    assert everyone.row_count == 2


def test_get_all_members_rejects_page_zero(members, librarian):
    outcome = members.get_all_members(librarian, 0)

    assert outcome.error_kind == ErrorKind.VALIDATION
    assert codes(outcome) == {("page", "invalid")}


def test_get_all_members_requires_staff(members, make_member, as_member):
    ana = make_member("ana")

    outcome = members.get_all_members(as_member(ana), 1)

    assert outcome.error_kind == ErrorKind.FORBIDDEN


def test_book_changes_are_logged(books, admin, caplog):
    caplog.set_level(logging.INFO, logger="loandesk.catalog")
    book = books.create_book(admin, book_data()).result

    books.update_book(
        admin, book.id, schemas.BookUpdate(**book_data(author="Eric Blair").model_dump())
    )
    books.remove_book(admin, book.id)

    messages = [r.getMessage() for r in caplog.records]
    assert f"Book {book.id} updated" in messages
    assert f"Book {book.id} removed" in messages
