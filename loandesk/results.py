import enum
from typing import Generic, List, Optional, TypeVar
from pydantic import BaseModel


T = TypeVar("T")

PERMISSION_FIELD = "permission"


class ErrorKind(str, enum.Enum):
    """
    Kinds of failure an operation can report.

    FORBIDDEN is checked first and short-circuits everything else.
    VALIDATION carries every violated rule at once so the caller can fix
    all fields in one go. PERSISTENCE hides storage details from callers.
    """

    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PERSISTENCE = "persistence"


class FieldError(BaseModel):
    """One violated rule, keyed by the offending input field."""

    field: str
    code: str
    message: str


class OperationResult(BaseModel, Generic[T]):
    """
    Outcome of a service operation that returns at most one item.

    is_success is True exactly when error_kind is None.
    """

    is_success: bool
    result: Optional[T] = None
    error_kind: Optional[ErrorKind] = None
    errors: List[FieldError] = []


class ListResult(BaseModel, Generic[T]):
    """Outcome of a paginated listing. row_count is the total, not the page size."""

    is_success: bool
    results: List[T] = []
    row_count: int = 0
    error_kind: Optional[ErrorKind] = None
    errors: List[FieldError] = []


def ok(result=None) -> OperationResult:
    return OperationResult(is_success=True, result=result)


def ok_list(results, row_count: int) -> ListResult:
    return ListResult(is_success=True, results=results, row_count=row_count)


def fail(kind: ErrorKind, errors: List[FieldError]) -> OperationResult:
    return OperationResult(is_success=False, error_kind=kind, errors=errors)


def fail_list(kind: ErrorKind, errors: List[FieldError]) -> ListResult:
    return ListResult(is_success=False, error_kind=kind, errors=errors)


def error(field: str, code: str, message: str) -> FieldError:
    return FieldError(field=field, code=code, message=message)


def forbidden_errors() -> List[FieldError]:
    return [error(PERMISSION_FIELD, "forbidden", "Forbidden")]
