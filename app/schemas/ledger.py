from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class IntegrationSettingsRequest(BaseModel):
    client_id: str = Field(..., min_length=1)
    client_secret: Optional[str] = None  # Omit on update to keep the stored secret
    callback_url: str = Field(..., min_length=1)


class IntegrationSettingsResponse(BaseModel):
    company_id: int
    client_id: str
    client_secret: Optional[str] = None  # Masked
    callback_url: str
    has_tokens: bool
    expires_at: Optional[datetime] = None


class AuthorizationUrlResponse(BaseModel):
    url: str
    state: str


class TenantResponse(BaseModel):
    tenant_id: str
    tenant_name: Optional[str] = None
    tenant_type: Optional[str] = None


class CallbackResponse(BaseModel):
    company_id: int
    tenants: List[TenantResponse]
    expires_at: datetime


class ConnectionStatusResponse(BaseModel):
    status: str
    connected: bool
    message: str
    tenants: List[TenantResponse] = []
    expires_at: Optional[datetime] = None
    error_code: Optional[str] = None


class ResourceResponse(BaseModel):
    data: Any
    meta: Dict[str, Any]
