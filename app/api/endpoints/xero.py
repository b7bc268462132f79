"""Xero connection and data endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
import logging

from ...schemas.ledger import (
    IntegrationSettingsRequest,
    IntegrationSettingsResponse,
    AuthorizationUrlResponse,
    TenantResponse,
    CallbackResponse,
    ConnectionStatusResponse,
    ResourceResponse,
)
from ...services.factory import build_controller
from ...services.lifecycle import TokenLifecycleController
from ...services.resource_fetcher import PASSTHROUGH_PARAMS
from ..deps import get_db, get_company_id, get_optional_company_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/xero", tags=["xero"])


def get_lifecycle_controller(db: Session = Depends(get_db)) -> TokenLifecycleController:
    """
    Dependency for TokenLifecycleController with injected services.

    Args:
        db: Database session

    Returns:
        TokenLifecycleController instance
    """
    return build_controller(db)


# ============================================================================
# Configuration
# ============================================================================

@router.put("/settings", response_model=IntegrationSettingsResponse)
def save_settings(
    request: IntegrationSettingsRequest,
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """Create or update the company's Xero app credentials."""
    controller.configure(
        company_id,
        client_id=request.client_id,
        callback_url=request.callback_url,
        client_secret=request.client_secret,
    )
    return controller.get_settings(company_id)


@router.get("/settings", response_model=IntegrationSettingsResponse)
def get_settings(
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """Return the stored configuration with the secret masked."""
    result = controller.get_settings(company_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Xero settings not found")
    return result


@router.delete("/settings")
def delete_settings(
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """Remove configuration and tokens."""
    if not controller.delete_configuration(company_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Xero settings not found")
    return {"status": "deleted"}


# ============================================================================
# Authorization flow
# ============================================================================

@router.get("/authorize", response_model=AuthorizationUrlResponse)
def authorize(
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """Issue a consent URL with a fresh one-time state."""
    auth_request = controller.build_authorization_url(company_id)
    return {"url": auth_request.url, "state": auth_request.state}


@router.get("/callback", response_model=CallbackResponse)
def callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    company_id: Optional[int] = Depends(get_optional_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """
    Handle the redirect back from Xero.

    The company is taken from the state; when the caller also identifies
    itself it must be the company that started the flow.
    """
    if error:
        logger.warning(f"Xero authorization denied: {error}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "status": "error",
                "message": "Authorization denied by user",
                "error": error
            }
        )

    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code or state parameter"
        )

    result = controller.handle_callback(code, state, company_id)
    return {
        "company_id": result.company_id,
        "tenants": [t.to_dict() for t in result.tenants],
        "expires_at": result.expires_at,
    }


@router.post("/disconnect")
def disconnect(
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """Drop the tokens; client credentials are kept."""
    controller.disconnect(company_id)
    return {"status": "disconnected", "message": "Disconnected from Xero. Client credentials preserved."}


# ============================================================================
# Status
# ============================================================================

@router.get("/status", response_model=ConnectionStatusResponse)
def connection_status(
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    report = controller.get_status(company_id)
    return JSONResponse(
        content={
            "status": report.status.value,
            "connected": report.connected,
            "message": report.message,
            "tenants": [t.to_dict() for t in report.tenants],
            "expires_at": report.expires_at.isoformat() if report.expires_at else None,
            "error_code": report.error_code,
        },
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


@router.get("/tenants", response_model=list[TenantResponse])
def tenants(
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    return [t.to_dict() for t in controller.list_tenants(company_id)]


# ============================================================================
# Data
# ============================================================================

@router.get("/data/{resource_name}", response_model=ResourceResponse)
def get_resource(
    resource_name: str,
    request: Request,
    tenant_id: Optional[str] = Query(None),
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """Fetch one Xero resource; supported query parameters are passed through."""
    params = {key: request.query_params[key] for key in PASSTHROUGH_PARAMS if key in request.query_params}
    return controller.fetch_resource(company_id, resource_name, tenant_hint=tenant_id, params=params)


@router.get("/dashboard")
def dashboard(
    tenant_id: Optional[str] = Query(None),
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    """Aggregated dashboard; ``partial`` is true when any sub-fetch failed."""
    return controller.get_dashboard(company_id, tenant_hint=tenant_id)


@router.get("/financial-summary")
def financial_summary(
    tenant_id: Optional[str] = Query(None),
    company_id: int = Depends(get_company_id),
    controller: TokenLifecycleController = Depends(get_lifecycle_controller),
):
    return controller.get_financial_summary(company_id, tenant_hint=tenant_id)
