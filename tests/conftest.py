from loandesk import models
from loandesk.auth import Capability
from loandesk.database import Base, get_db
from loandesk.endpoints import app

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

START = datetime(2024, 3, 1, 9, 0, 0)


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    """
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class FakeClock:
    """Callable clock for the services. Time only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def setup_database():
    """
    Create all tables before each test and drop them afterwards.

    Every test starts from an empty database.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def admin():
    return Capability(member_id=None, role=models.Role.ADMIN)


@pytest.fixture
def librarian():
    return Capability(member_id=None, role=models.Role.LIBRARIAN)


@pytest.fixture
def make_member(db):
    """Factory inserting a member row directly."""

    def _make(username, role=models.Role.USER, api_key=None):
        member = models.Member(
            username=username,
            first_name=username.capitalize(),
            last_name="Reader",
            role=role,
            course_year="2",
            program="BSCS",
            api_key=api_key,
        )
        db.add(member)
        db.commit()
        db.refresh(member)
        return member

    return _make


@pytest.fixture
def make_copy(db):
    """Factory inserting a book (once per title) and one copy of it."""

    def _make(title="Dune", price="12.50"):
        book = db.query(models.Book).filter(models.Book.title == title).first()
        if book is None:
            book = models.Book(
                title=title,
                author="Frank Herbert",
                publisher="Chilton",
                publication_date=date(1965, 8, 1),
                isbn="9780441172719",
            )
            db.add(book)
            db.commit()
        copy = models.Copy(book_id=book.id, price=Decimal(price), is_available=True)
        db.add(copy)
        db.commit()
        db.refresh(copy)
        return copy

    return _make


@pytest.fixture
def as_member():
    """Build the capability a member would present for themself."""

    def _capability(member):
        return Capability(member_id=member.id, role=member.role)

    return _capability


@pytest.fixture
def session_factory():
    """Open extra sessions on the test database, e.g. one per thread."""
    return TestingSessionLocal
