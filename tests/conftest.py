"""Pytest configuration and fixtures."""

import os
import threading
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import Mock

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

# Set test environment variables BEFORE importing app
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("XERO_MIN_REQUEST_INTERVAL", "0.001")
os.environ.setdefault("XERO_RATE_LIMIT_COOLDOWN", "0.01")

from app.models import Base
from app.core.database import get_db
from app.core.security import init_token_encryption
from app.core.throttle import OutboundThrottle
from app.services.authorization import AuthorizationUrlBuilder
from app.services.credential_store import CredentialStore
from app.services.lifecycle import TokenLifecycleController
from app.services.resource_fetcher import ResourceFetcher
from app.services.state_registry import StateRegistry
from app.services.tenant_resolver import TenantResolver
from app.services.token_exchanger import TokenExchanger


# Test database URL
TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

AUTHORIZE_URL = "https://login.xero.com/identity/connect/authorize"
TOKEN_URL = "https://identity.xero.com/connect/token"
CONNECTIONS_URL = "https://api.xero.com/connections"
API_BASE_URL = "https://api.xero.com/api.xro/2.0"
SCOPES = "openid profile email accounting.transactions accounting.contacts accounting.settings offline_access"


class FakeXero:
    """Scripted stand-in for the Xero HTTP endpoints, served via httpx.MockTransport.

    Responses queued for a (method, url) pair are served in order; the last
    one keeps being served once the queue is down to a single entry.
    """

    AUTHORIZE_URL = AUTHORIZE_URL
    TOKEN_URL = TOKEN_URL
    CONNECTIONS_URL = CONNECTIONS_URL
    API_BASE_URL = API_BASE_URL

    def __init__(self):
        self.requests = []
        self._routes = {}
        self._lock = threading.Lock()

    def add(self, method, url, status_code=200, json=None, headers=None, exception=None, responder=None):
        self._routes.setdefault((method, url), []).append({
            "status_code": status_code,
            "json": json,
            "headers": headers or {},
            "exception": exception,
            "responder": responder,
        })

    def add_token(self, access_token="access-1", refresh_token="refresh-1", expires_in=1800):
        self.add("POST", TOKEN_URL, json={
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": expires_in,
            "token_type": "Bearer",
        })

    def add_token_error(self, error, status_code=400):
        self.add("POST", TOKEN_URL, status_code=status_code, json={"error": error})

    def add_connections(self, *tenant_ids, status_code=200):
        body = [
            {"tenantId": tenant_id, "tenantName": f"Org {tenant_id}", "tenantType": "ORGANISATION"}
            for tenant_id in tenant_ids
        ]
        self.add("GET", CONNECTIONS_URL, status_code=status_code, json=body if status_code == 200 else None)

    def add_resource(self, endpoint, status_code=200, json=None, headers=None, exception=None):
        self.add("GET", f"{API_BASE_URL}/{endpoint}", status_code, json, headers, exception)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url.copy_with(query=None))
        with self._lock:
            self.requests.append(request)
            entries = self._routes.get((request.method, url))
            if not entries:
                return httpx.Response(500, json={"unrouted": url})
            entry = entries.pop(0) if len(entries) > 1 else entries[0]
        if entry["responder"] is not None:
            return entry["responder"](request)
        if entry["exception"] is not None:
            raise entry["exception"]("simulated failure", request=request)
        return httpx.Response(entry["status_code"], json=entry["json"], headers=entry["headers"])

    def calls(self, url, method=None):
        return [
            r for r in self.requests
            if str(r.url.copy_with(query=None)) == url and (method is None or r.method == method)
        ]

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture(scope="session", autouse=True)
def token_encryption():
    """Initialize the global Fernet instance used by the credential store."""
    init_token_encryption(os.environ["TOKEN_ENCRYPTION_KEY"])


@pytest.fixture(scope="function")
def db():
    """Create test database session."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db):
    """Factory for extra sessions on the test database (one per thread)."""
    return TestingSessionLocal


@pytest.fixture
def fake_xero():
    return FakeXero()


def build_services(db, fake_xero, clock=datetime.utcnow):
    """Full service stack against the fake Xero, with no real sleeping."""
    http_client = fake_xero.client()
    sleep = Mock()
    throttle = OutboundThrottle(0.1, sleep=Mock())
    store = CredentialStore(db)
    states = StateRegistry(db, ttl_seconds=600, clock=clock)
    builder = AuthorizationUrlBuilder(store, states, authorize_url=AUTHORIZE_URL, scopes=SCOPES)
    exchanger = TokenExchanger(store, states, http_client, token_url=TOKEN_URL, clock=clock)
    fetcher = ResourceFetcher(
        store, exchanger, http_client, throttle=throttle, api_base_url=API_BASE_URL,
        rate_limit_cooldown=2.0, sleep=sleep,
    )
    resolver = TenantResolver(fetcher, connections_url=CONNECTIONS_URL)
    controller = TokenLifecycleController(
        store, states, builder, exchanger, resolver, fetcher, clock=clock,
    )
    return SimpleNamespace(
        store=store, states=states, builder=builder, exchanger=exchanger, resolver=resolver,
        fetcher=fetcher, controller=controller, throttle=throttle, sleep=sleep, http=http_client,
    )


@pytest.fixture
def services(db, fake_xero):
    return build_services(db, fake_xero)


@pytest.fixture
def stack_factory(fake_xero):
    """Build a service stack on another session, sharing the same fake Xero."""
    return lambda session: build_services(session, fake_xero)


@pytest.fixture
def configured_company(services):
    """Company 1 with client id 'abc', secret 'xyz' and callback https://app/cb."""
    services.store.save_config(1, client_id="abc", callback_url="https://app/cb", client_secret="xyz")
    return 1


@pytest.fixture
def connected_company(services, configured_company):
    """Company 1 holding tokens valid for another hour."""
    services.store.write_tokens(
        configured_company, "access-0", "refresh-0", datetime.utcnow() + timedelta(hours=1)
    )
    return configured_company


@pytest.fixture(scope="function")
def client(db, fake_xero):
    """Create test client without the Redis rate limiter, talking to the fake Xero."""
    from fastapi import FastAPI
    from fastapi.middleware.cors import CORSMiddleware
    from app.core.middleware import CompanyContextMiddleware, RequestLoggingMiddleware
    from app.core.exceptions import register_exception_handlers
    from app.api.deps import get_db as api_get_db
    from app.api.endpoints.health import router as health_router
    from app.api.endpoints.xero import router as xero_router, get_lifecycle_controller
    from app.core.metrics import metrics_router

    test_app = FastAPI(
        title="Compliance Ledger Integration API",
        version="1.0.0",
        debug=True
    )

    register_exception_handlers(test_app)

    test_app.add_middleware(RequestLoggingMiddleware)
    test_app.add_middleware(CompanyContextMiddleware)
    test_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    test_app.include_router(health_router, tags=["health"])
    test_app.include_router(xero_router)
    test_app.include_router(metrics_router, tags=["monitoring"])

    stack = build_services(db, fake_xero)

    def override_get_db():
        try:
            yield db
        finally:
            pass

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[api_get_db] = override_get_db
    test_app.dependency_overrides[get_lifecycle_controller] = lambda: stack.controller
    with TestClient(test_app) as test_client:
        test_client.services = stack
        yield test_client
    test_app.dependency_overrides.clear()
