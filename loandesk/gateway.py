import os
import logging
from typing import Generic, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loandesk import models


PAGE_SIZE = int(os.getenv("PAGE_SIZE", "10"))

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class GatewayError(Exception):
    """Base class for failures the services translate into results."""


class NotFoundError(GatewayError):
    def __init__(self, model, entity_id):
        self.model = model
        self.entity_id = entity_id
        super().__init__(f"{model.__name__} with id {entity_id} not found")


class PersistenceError(GatewayError):
    """A write was rejected by the database, typically a constraint."""


class Repository(Generic[ModelT]):
    """
    Storage access for one ORM model.

    Internal Working:
    - get_by_id() raises NotFoundError instead of returning None
    - create() and update() commit immediately; a constraint violation
      rolls the session back and surfaces as PersistenceError
    - get_all() pages through rows ordered by id and also reports the
      total row count so callers can render page controls

    Other SQLAlchemy errors are not caught here and propagate as fatal.
    """

    def __init__(self, db: Session, model: Type[ModelT], page_size: int = PAGE_SIZE):
        self.db = db
        self.model = model
        self.page_size = page_size

    def create(self, entity: ModelT) -> ModelT:
        self.db.add(entity)
        self._commit()
        self.db.refresh(entity)
        return entity

    def get_by_id(self, entity_id: int) -> ModelT:
        entity = self.db.get(self.model, entity_id)
        if entity is None:
            raise NotFoundError(self.model, entity_id)
        return entity

    def get_all(self, page: int = 1) -> Tuple[List[ModelT], int]:
        return self.paginate(select(self.model).order_by(self.model.id), page)

    def paginate(self, stmt, page: int) -> Tuple[List, int]:
        """Run stmt for one page. stmt must already carry its ordering."""
        row_count = self.db.scalar(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        )
        rows = self.db.scalars(
            stmt.offset((page - 1) * self.page_size).limit(self.page_size)
        ).all()
        return list(rows), row_count

    def update(self, entity: ModelT) -> ModelT:
        self._commit()
        self.db.refresh(entity)
        return entity

    def remove(self, entity_id: int) -> bool:
        entity = self.db.get(self.model, entity_id)
        if entity is None:
            return False
        self.db.delete(entity)
        self._commit()
        return True

    def _commit(self):
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("%s write rejected: %s", self.model.__name__, exc.orig)
            raise PersistenceError(str(exc.orig)) from exc


class LoanRepository(Repository[models.Loan]):
    """Loan queries that go beyond plain id lookups."""

    def __init__(self, db: Session, page_size: int = PAGE_SIZE):
        super().__init__(db, models.Loan, page_size)

    def active_for_member(self, member_id: int) -> List[models.Loan]:
        stmt = (
            select(models.Loan)
            .where(
                models.Loan.member_id == member_id,
                models.Loan.date_returned.is_(None),
            )
            .order_by(models.Loan.due_date, models.Loan.id)
        )
        return list(self.db.scalars(stmt).all())

    def overdue(
        self, now, page: int, member_id: Optional[int] = None
    ) -> Tuple[List[models.Loan], int]:
        stmt = select(models.Loan).where(
            models.Loan.date_returned.is_(None),
            models.Loan.due_date < now,
        )
        if member_id is not None:
            stmt = stmt.where(models.Loan.member_id == member_id)
        stmt = stmt.order_by(models.Loan.due_date, models.Loan.id)
        return self.paginate(stmt, page)

    def has_history_for_book(self, book_id: int) -> bool:
        stmt = (
            select(func.count())
            .select_from(models.Loan)
            .join(models.Copy, models.Loan.copy_id == models.Copy.id)
            .where(models.Copy.book_id == book_id)
        )
        return self.db.scalar(stmt) > 0
