"""Dependency injection for FastAPI endpoints."""

from typing import Generator, Optional
from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session

from ..core.database import SessionLocal
from ..core.middleware import get_current_company


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency for FastAPI.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_optional_company_id(x_company_id: Optional[int] = Header(None)) -> Optional[int]:
    """Company making the request, if it identified itself."""
    return get_current_company() or x_company_id


def get_company_id(x_company_id: Optional[int] = Header(None)) -> int:
    """
    Company making the request.

    Raises:
        HTTPException: 401 when no X-Company-ID header was sent
    """
    company_id = get_optional_company_id(x_company_id)
    if company_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Company-ID header is required"
        )
    return company_id
