import os
from typing import Optional
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session
from fastapi.security import APIKeyHeader
from fastapi import Depends, HTTPException, Security, status

from loandesk import models
from loandesk.database import get_db
from loandesk.models import Role


AUTH_KEY = os.getenv("AUTH_KEY", "dev-secret-key-12345")
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class Capability(BaseModel):
    """
    Who is acting, passed explicitly into every service operation.

    member_id is None for the bootstrap administrator key, which does not
    belong to any member row.
    """

    member_id: Optional[int] = None
    role: Role

    model_config = {"frozen": True}


def is_admin(capability: Capability) -> bool:
    return capability.role == Role.ADMIN


def is_librarian_or_admin(capability: Capability) -> bool:
    return capability.role in (Role.ADMIN, Role.LIBRARIAN)


def is_self_or_staff(capability: Capability, member_id: int) -> bool:
    """Staff may act on anyone; a plain member only on themself."""
    return is_librarian_or_admin(capability) or capability.member_id == member_id


def get_capability(
    api_key: str = Security(api_key_header), db: Session = Depends(get_db)
) -> Capability:
    """
    Dependency resolving the X-API-Key header into a Capability.

    Internal Working:
    1. FastAPI extracts the X-API-Key header value
    2. The bootstrap AUTH_KEY maps to an administrator with no member row
    3. Any other key is looked up in members.api_key
    4. The member's role becomes the capability's role

    Raises:
        HTTPException: 401 if key is missing, 403 if key is unknown
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API Key is missing. Include it in the 'X-API-Key' header.",
        )

    if api_key == AUTH_KEY:
        return Capability(member_id=None, role=Role.ADMIN)

    member = db.scalars(
        select(models.Member).where(models.Member.api_key == api_key)
    ).first()
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API Key. Access denied.",
        )

    return Capability(member_id=member.id, role=member.role)
