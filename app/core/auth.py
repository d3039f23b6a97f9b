"""
Owner identity for key management endpoints.
"""
import logging
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from app.core.config import settings

logger = logging.getLogger(__name__)

owner_header = APIKeyHeader(name="X-User-ID", auto_error=False)


class Owner:
    """The principal on whose behalf keys are listed and managed."""
    def __init__(self, id: str, source: str):
        self.id = id
        self.source = source  # "header" or "default"


def get_current_owner(user_id: Optional[str] = Security(owner_header)) -> Owner:
    """
    Dependency resolving the calling owner.

    Uses the X-User-ID header when present, otherwise DEFAULT_OWNER_ID if it is
    configured.

    Raises:
        HTTPException: 401 if no owner can be determined
    """
    if user_id and user_id.strip():
        return Owner(id=user_id.strip(), source="header")

    if settings.DEFAULT_OWNER_ID and settings.DEFAULT_OWNER_ID.strip():
        logger.debug("X-User-ID missing, falling back to DEFAULT_OWNER_ID")
        return Owner(id=settings.DEFAULT_OWNER_ID.strip(), source="default")

    logger.warning("Owner identity missing from request")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing user identity",
        headers={"WWW-Authenticate": "X-User-ID"},
    )
