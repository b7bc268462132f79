from .ledger import (
    IntegrationSettingsRequest,
    IntegrationSettingsResponse,
    AuthorizationUrlResponse,
    TenantResponse,
    CallbackResponse,
    ConnectionStatusResponse,
    ResourceResponse,
)

__all__ = [
    "IntegrationSettingsRequest",
    "IntegrationSettingsResponse",
    "AuthorizationUrlResponse",
    "TenantResponse",
    "CallbackResponse",
    "ConnectionStatusResponse",
    "ResourceResponse",
]
