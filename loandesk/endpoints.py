from loandesk import models
from loandesk import schemas
from loandesk.auth import Capability, get_capability
from loandesk.catalog import BookService, MemberService
from loandesk.database import engine, get_db
from loandesk.loans import LoanService
from loandesk.models import Role
from loandesk.results import ErrorKind

import os
import logging
from typing import List, Optional
from sqlalchemy.orm import Session
from fastapi import FastAPI, Depends, HTTPException, status, Query


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Library Loan Service",
    description="Catalogue, members, loans and overdue tracking for a lending library",
    version="1.0.0",
)


STATUS_BY_KIND = {
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.PERSISTENCE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def unwrap(outcome):
    """
    Turn a failed service result into an HTTPException.

    The detail keeps the error kind and the full field error list, so a
    client can show each message next to the field it belongs to.
    """
    if not outcome.is_success:
        raise HTTPException(
            status_code=STATUS_BY_KIND[outcome.error_kind],
            detail={
                "kind": outcome.error_kind.value,
                "errors": [e.model_dump() for e in outcome.errors],
            },
        )
    return outcome


def book_service(db: Session = Depends(get_db)) -> BookService:
    return BookService(db)


def member_service(db: Session = Depends(get_db)) -> MemberService:
    return MemberService(db)


def loan_service(db: Session = Depends(get_db)) -> LoanService:
    return LoanService(db)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring and load balancers."""
    return {"status": "healthy", "service": "library-loans"}


@app.post(
    "/books",
    response_model=schemas.Book,
    status_code=status.HTTP_201_CREATED,
)
def create_book(
    book: schemas.BookCreate,
    capability: Capability = Depends(get_capability),
    service: BookService = Depends(book_service),
):
    """
    Add a book to the catalogue (admin only).

    All field rules are checked together; a 422 lists every violation.
    """
    return unwrap(service.create_book(capability, book)).result


@app.get("/books", response_model=schemas.Page[schemas.Book])
def list_books(
    page: int = Query(1),
    capability: Capability = Depends(get_capability),
    service: BookService = Depends(book_service),
):
    outcome = unwrap(service.get_all_books(capability, page))
    return {"results": outcome.results, "row_count": outcome.row_count}


@app.get("/books/{book_id}", response_model=schemas.Book)
def get_book(
    book_id: int,
    capability: Capability = Depends(get_capability),
    service: BookService = Depends(book_service),
):
    return unwrap(service.get_book_by_id(capability, book_id)).result


@app.put("/books/{book_id}", response_model=schemas.Book)
def update_book(
    book_id: int,
    book: schemas.BookUpdate,
    capability: Capability = Depends(get_capability),
    service: BookService = Depends(book_service),
):
    return unwrap(service.update_book(capability, book_id, book)).result


@app.delete("/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_book(
    book_id: int,
    capability: Capability = Depends(get_capability),
    service: BookService = Depends(book_service),
):
    """Remove a book and its copies. Refused with 409 once any copy was lent."""
    unwrap(service.remove_book(capability, book_id))


@app.post(
    "/books/{book_id}/copies",
    response_model=schemas.Copy,
    status_code=status.HTTP_201_CREATED,
)
def add_copy(
    book_id: int,
    copy: schemas.CopyCreate,
    capability: Capability = Depends(get_capability),
    service: BookService = Depends(book_service),
):
    return unwrap(service.add_copy(capability, book_id, copy.price)).result


@app.post(
    "/members",
    response_model=schemas.Member,
    status_code=status.HTTP_201_CREATED,
)
def create_member(
    member: schemas.MemberCreate,
    capability: Capability = Depends(get_capability),
    service: MemberService = Depends(member_service),
):
    return unwrap(service.create_member(capability, member)).result


@app.get("/members", response_model=schemas.Page[schemas.Member])
def list_members(
    page: int = Query(1),
    role: Role = Query(Role.USER),
    capability: Capability = Depends(get_capability),
    service: MemberService = Depends(member_service),
):
    """Members with the given role (default: plain users), for staff to pick from."""
    outcome = unwrap(service.get_all_members(capability, page, role))
    return {"results": outcome.results, "row_count": outcome.row_count}


@app.get("/members/{member_id}", response_model=schemas.Member)
def get_member(
    member_id: int,
    capability: Capability = Depends(get_capability),
    service: MemberService = Depends(member_service),
):
    return unwrap(service.get_member(capability, member_id)).result


@app.get("/members/{member_id}/loans", response_model=List[schemas.Loan])
def list_active_loans(
    member_id: int,
    capability: Capability = Depends(get_capability),
    service: LoanService = Depends(loan_service),
):
    """Loans the member still has out."""
    return unwrap(service.get_active_loans_for_member(capability, member_id)).results


@app.post(
    "/copies/{copy_id}/borrow",
    response_model=schemas.Loan,
    status_code=status.HTTP_201_CREATED,
)
def borrow_copy(
    copy_id: int,
    request: schemas.BorrowRequest,
    capability: Capability = Depends(get_capability),
    service: LoanService = Depends(loan_service),
):
    """
    Lend a copy to a member (librarian or admin).

    Internal Working:
    1. get_capability resolves the X-API-Key header into a Capability
    2. LoanService.borrow claims the copy and inserts the loan in one transaction
    3. unwrap() maps a failed result onto its HTTP status

    Returns 409 if the copy is already on loan.
    """
    outcome = service.borrow(
        capability, copy_id, request.member_id, request.duration_days
    )
    return unwrap(outcome).result


@app.post("/loans/{loan_id}/return", response_model=schemas.Loan)
def return_loan(
    loan_id: int,
    capability: Capability = Depends(get_capability),
    service: LoanService = Depends(loan_service),
):
    """Close a loan. A loan that is unknown or already returned gives 404."""
    return unwrap(service.return_loan(capability, loan_id)).result


@app.get("/loans/overdue", response_model=schemas.Page[schemas.OverdueLoan])
def list_overdue_loans(
    member_id: Optional[int] = Query(None),
    page: int = Query(1),
    capability: Capability = Depends(get_capability),
    service: LoanService = Depends(loan_service),
):
    """
    Overdue loans, oldest due date first.

    Internal Working:
    1. Active loans with due_date strictly before now are selected
    2. Copy, book and member rows are joined in for title, price and name
    3. The page is cut by the gateway; row_count is the total match count

    Without member_id the listing spans all members and needs a
    librarian or admin key.
    """
    outcome = unwrap(service.get_overdue_loans(capability, member_id, page))
    return {"results": outcome.results, "row_count": outcome.row_count}
