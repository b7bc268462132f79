"""Wiring of the ledger integration services."""

from typing import Optional
import threading

import httpx
from sqlalchemy.orm import Session

from ..config import settings
from ..core.throttle import OutboundThrottle, outbound_throttle
from .authorization import AuthorizationUrlBuilder
from .credential_store import CredentialStore
from .demo_ledger import DemoResourceFetcher, DemoTenantResolver
from .lifecycle import TokenLifecycleController
from .resource_fetcher import ResourceFetcher
from .state_registry import StateRegistry
from .tenant_resolver import TenantResolver
from .token_exchanger import TokenExchanger

_http_client: Optional[httpx.Client] = None
_http_client_lock = threading.Lock()


def get_http_client() -> httpx.Client:
    """Process-wide HTTP client; per-call timeouts are set by each service."""
    global _http_client
    with _http_client_lock:
        if _http_client is None:
            _http_client = httpx.Client(headers={"User-Agent": "compliance-ledger-integration/1.0"})
        return _http_client


def close_http_client() -> None:
    global _http_client
    with _http_client_lock:
        if _http_client is not None:
            _http_client.close()
            _http_client = None


def build_controller(
    db: Session,
    http_client: Optional[httpx.Client] = None,
    throttle: Optional[OutboundThrottle] = None,
) -> TokenLifecycleController:
    """
    Assemble a TokenLifecycleController for one database session.

    Args:
        db: Database session
        http_client: Client used for every Xero call (shared one by default)
        throttle: Outbound spacing (process-wide one by default)
    """
    http_client = http_client or get_http_client()
    throttle = throttle or outbound_throttle

    credential_store = CredentialStore(db)
    state_registry = StateRegistry(db, ttl_seconds=settings.oauth_state_ttl_seconds)
    url_builder = AuthorizationUrlBuilder(
        credential_store,
        state_registry,
        authorize_url=settings.xero_authorize_url,
        scopes=settings.scope_string,
    )
    exchanger = TokenExchanger(
        credential_store,
        state_registry,
        http_client,
        token_url=settings.xero_token_url,
        timeout=settings.xero_token_timeout,
    )
    fetcher = ResourceFetcher(
        credential_store,
        exchanger,
        http_client,
        throttle=throttle,
        api_base_url=settings.xero_api_base_url,
        timeout=settings.xero_api_timeout,
        rate_limit_cooldown=settings.xero_rate_limit_cooldown,
    )
    resolver = TenantResolver(
        fetcher,
        connections_url=settings.xero_connections_url,
        timeout=settings.xero_connections_timeout,
    )

    if settings.xero_demo_mode:
        resolver = DemoTenantResolver()
        fetcher = DemoResourceFetcher()

    return TokenLifecycleController(
        credential_store,
        state_registry,
        url_builder,
        exchanger,
        resolver,
        fetcher,
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
        dashboard_page_size=settings.xero_dashboard_page_size,
        demo_mode=settings.xero_demo_mode,
    )
