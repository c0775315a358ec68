"""
Field checks used by the services before anything reaches storage.

Each check answers a single yes/no question. The callers run every check
they need and collect the failures, so a form with three bad fields
reports all three at once.
"""

import re
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session


_NON_ALPHANUMERIC = re.compile(r"[^0-9A-Za-z]")


def is_not_blank(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


def is_date_on_or_before_today(value, today: Optional[date] = None) -> bool:
    """True if value (a date or datetime) is not later than today."""
    if value is None:
        return False
    if isinstance(value, datetime):
        value = value.date()
    if today is None:
        today = date.today()
    elif isinstance(today, datetime):
        today = today.date()
    return value <= today


def is_valid_isbn(value: Optional[str]) -> bool:
    """
    Check an ISBN-10 or ISBN-13 checksum.

    Separators such as hyphens and spaces are ignored.

    ISBN-10: digits weighted 10 down to 1 must sum to a multiple of 11.
    The last character may be 'X', standing for 10.

    ISBN-13: digits weighted alternately 1 and 3 must sum to a multiple of 10.
    """
    if value is None:
        return False

    isbn = _NON_ALPHANUMERIC.sub("", value).upper()

    if len(isbn) == 10:
        if not isbn[:9].isdigit():
            return False
        if not (isbn[9].isdigit() or isbn[9] == "X"):
            return False
        total = 0
        for position, char in enumerate(isbn):
            digit = 10 if char == "X" else int(char)
            total += digit * (10 - position)
        return total % 11 == 0

    if len(isbn) == 13:
        if not isbn.isdigit():
            return False
        total = sum(
            int(char) * (3 if position % 2 else 1)
            for position, char in enumerate(isbn)
        )
        return total % 10 == 0

    return False


def is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def is_valid_page(page: Any) -> bool:
    """Pages are numbered from 1."""
    return is_positive_int(page)


def is_non_negative(value: Any) -> bool:
    return value is not None and value >= 0


def is_value_unique(
    db: Session, column, value: Any, exclude_id: Optional[int] = None
) -> bool:
    """
    True if no row holds value in column.

    column is a mapped attribute such as models.Book.title. The row with
    exclude_id is ignored, which lets an update keep its own value.
    """
    model = column.class_
    stmt = select(func.count()).select_from(model).where(column == value)
    if exclude_id is not None:
        stmt = stmt.where(model.id != exclude_id)
    return db.scalar(stmt) == 0


def exists(db: Session, model, entity_id: Optional[int]) -> bool:
    """Foreign key check. A missing (None) reference counts as valid."""
    if entity_id is None:
        return True
    return db.get(model, entity_id) is not None
