"""Health check endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text

from ...config import settings
from ..deps import get_db

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Liveness probe - always returns ok if app is running.

    Returns:
        dict: Health status
    """
    return {
        "status": "healthy",
        "environment": settings.environment,
        "demo_mode": settings.xero_demo_mode,
    }


@router.get("/health/ready")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe - checks the database.

    Args:
        db: Database session

    Returns:
        dict: Readiness status with dependency checks
    """
    errors = []

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        errors.append(f"database: {str(e)}")

    if errors:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "errors": errors}
        )

    return {"status": "ready", "database": "ok"}
