import os
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from loandesk import models
from loandesk import schemas
from loandesk import validation
from loandesk.auth import Capability, is_librarian_or_admin, is_self_or_staff
from loandesk.gateway import (
    LoanRepository,
    NotFoundError,
    PersistenceError,
    Repository,
)
from loandesk.results import (
    ErrorKind,
    ListResult,
    OperationResult,
    error,
    fail,
    fail_list,
    forbidden_errors,
    ok,
    ok_list,
)


LOAN_DURATION_DAYS = int(os.getenv("LOAN_DURATION_DAYS", "14"))
MAX_LOAN_DURATION_DAYS = int(os.getenv("MAX_LOAN_DURATION_DAYS", "365"))

logger = logging.getLogger(__name__)


class LoanService:
    """
    Borrowing, returning and overdue tracking.

    Every call reads the store afresh; nothing is cached between calls.
    clock returns the current time and is injectable so that due dates
    and overdue checks can be evaluated at any moment.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.clock = clock
        self.loans = LoanRepository(db)
        self.copies = Repository(db, models.Copy)
        self.members = Repository(db, models.Member)

    def borrow(
        self,
        capability: Capability,
        copy_id: int,
        member_id: int,
        duration_days: Optional[int] = None,
    ) -> OperationResult:
        """
        Lend a copy to a member.

        Business Logic:
        1. Only librarians and admins may lend
        2. The loan must last between one day and MAX_LOAN_DURATION_DAYS
        3. Both the copy and the member must exist
        4. The copy must not be on loan already

        Internal Working:
        - The availability check and the loan insert share one transaction
        - The copy is claimed with UPDATE ... WHERE is_available, so only
          one of two concurrent borrowers sees a row change
        - The partial unique index on active loans rejects anything that
          slips past the flag; the transaction is then rolled back

        Returns:
            OperationResult carrying a schemas.Loan on success
        """
        if not is_librarian_or_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        if duration_days is None:
            duration_days = LOAN_DURATION_DAYS

        if not (
            validation.is_positive_int(duration_days)
            and duration_days <= MAX_LOAN_DURATION_DAYS
        ):
            return fail(ErrorKind.VALIDATION, [_invalid_duration()])

        missing = []
        try:
            self.copies.get_by_id(copy_id)
        except NotFoundError:
            missing.append(error("copy_id", "not_found", "Copy not found"))
        try:
            self.members.get_by_id(member_id)
        except NotFoundError:
            missing.append(error("member_id", "not_found", "Member not found"))
        if missing:
            return fail(ErrorKind.NOT_FOUND, missing)

        now = self.clock()
        try:
            due_date = now + timedelta(days=duration_days)
        except OverflowError:
            return fail(ErrorKind.VALIDATION, [_invalid_duration()])

        claimed = self.db.execute(
            update(models.Copy)
            .where(models.Copy.id == copy_id, models.Copy.is_available == True)
            .values(is_available=False)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            self.db.rollback()
            logger.warning("Copy %s is already on loan", copy_id)
            return fail(ErrorKind.CONFLICT, [_copy_on_loan()])

        loan = models.Loan(
            copy_id=copy_id,
            member_id=member_id,
            date_borrowed=now,
            due_date=due_date,
            date_returned=None,
        )
        try:
            self.loans.create(loan)
        except PersistenceError:
            logger.warning("Copy %s already has an active loan", copy_id)
            return fail(ErrorKind.CONFLICT, [_copy_on_loan()])

        logger.info(
            "Copy %s lent to member %s until %s", copy_id, member_id, loan.due_date
        )
        return ok(schemas.Loan.model_validate(loan))

    def return_loan(self, capability: Capability, loan_id: int) -> OperationResult:
        """
        Close an active loan and put the copy back on the shelf.

        A loan can only be returned once. Returning an unknown or already
        returned loan fails with NOT_FOUND, since there is no active loan
        with that id.
        """
        if not is_librarian_or_admin(capability):
            return fail(ErrorKind.FORBIDDEN, forbidden_errors())

        try:
            loan = self.loans.get_by_id(loan_id)
        except NotFoundError:
            return fail(
                ErrorKind.NOT_FOUND,
                [error("loan_id", "not_found", "Loan not found")],
            )

        if loan.date_returned is not None:
            return fail(ErrorKind.NOT_FOUND, [_already_returned()])

        now = self.clock()
        closed = self.db.execute(
            update(models.Loan)
            .where(models.Loan.id == loan_id, models.Loan.date_returned.is_(None))
            .values(date_returned=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if closed != 1:
            self.db.rollback()
            logger.warning("Loan %s was returned concurrently", loan_id)
            return fail(ErrorKind.NOT_FOUND, [_already_returned()])

        self.db.execute(
            update(models.Copy)
            .where(models.Copy.id == loan.copy_id)
            .values(is_available=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(loan)

        logger.info("Loan %s returned, copy %s available", loan_id, loan.copy_id)
        return ok(schemas.Loan.model_validate(loan))

    def get_active_loans_for_member(
        self, capability: Capability, member_id: int
    ) -> ListResult:
        """Loans the member has not returned yet, soonest due first."""
        if not is_self_or_staff(capability, member_id):
            return fail_list(ErrorKind.FORBIDDEN, forbidden_errors())

        try:
            self.members.get_by_id(member_id)
        except NotFoundError:
            return fail_list(
                ErrorKind.NOT_FOUND,
                [error("member_id", "not_found", "Member not found")],
            )

        loans = [
            schemas.Loan.model_validate(loan)
            for loan in self.loans.active_for_member(member_id)
        ]
        return ok_list(loans, len(loans))

    def get_overdue_loans(
        self,
        capability: Capability,
        member_id: Optional[int] = None,
        page: int = 1,
    ) -> ListResult:
        """
        List active loans whose due date has passed.

        A loan due exactly now is not overdue yet. Without member_id the
        listing covers every member and is restricted to staff. Results are
        ordered oldest due date first, then by loan id.
        """
        if member_id is None:
            allowed = is_librarian_or_admin(capability)
        else:
            allowed = is_self_or_staff(capability, member_id)
        if not allowed:
            return fail_list(ErrorKind.FORBIDDEN, forbidden_errors())

        if not validation.is_valid_page(page):
            return fail_list(
                ErrorKind.VALIDATION, [error("page", "invalid", "Invalid page")]
            )

        if member_id is not None:
            try:
                self.members.get_by_id(member_id)
            except NotFoundError:
                return fail_list(
                    ErrorKind.NOT_FOUND,
                    [error("member_id", "not_found", "Member not found")],
                )

        now = self.clock()
        loans, row_count = self.loans.overdue(now, page, member_id=member_id)
        return ok_list([_overdue_row(loan, now) for loan in loans], row_count)


def _overdue_row(loan: models.Loan, now: datetime) -> schemas.OverdueLoan:
    return schemas.OverdueLoan(
        loan_id=loan.id,
        copy_id=loan.copy_id,
        book_title=loan.copy.book.title,
        member_id=loan.member_id,
        member_name=loan.member.full_name,
        date_borrowed=loan.date_borrowed,
        due_date=loan.due_date,
        price=loan.copy.price,
        days_overdue=(now - loan.due_date).days,
    )


def _invalid_duration():
    return error(
        "duration_days",
        "invalid",
        f"Loan duration must be between 1 and {MAX_LOAN_DURATION_DAYS} days",
    )


def _copy_on_loan():
    return error("copy_id", "on_loan", "Copy is already on loan")


def _already_returned():
    return error("loan_id", "already_returned", "Loan has already been returned")
