"""Token lifecycle controller for the Xero integration.

Ties the credential store, state registry, token exchanger, tenant
resolver and resource fetcher together and exposes the operations the
API layer uses. The connection status is computed in one place
(``get_status``) from the stored configuration and tokens plus one live
check; it is never persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import enum
import logging

from ..core.exceptions import (
    LedgerIntegrationError,
    TokenExchangeError,
    TokenRefreshError,
    NoRefreshTokenError,
    InvalidRefreshTokenError,
    RefreshTimeoutError,
    UnauthorizedError,
    ReauthorizationRequiredError,
    RateLimitExceededError,
    RemoteAPIError,
)
from ..core.metrics import track_oauth_callback, track_tokens_cleared
from ..core.security import mask_secret
from .authorization import AuthorizationRequest, AuthorizationUrlBuilder
from .credential_store import CredentialStore
from .resource_fetcher import (
    ResourceFetcher,
    collection_key_for,
    endpoint_for,
    extract_collection,
    MAX_PAGE_SIZE,
)
from .state_registry import StateRegistry
from .tenant_resolver import Tenant, TenantResolver
from .token_exchanger import TokenExchanger

logger = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    """Derived state of a company's Xero connection."""
    NOT_CONFIGURED = "not_configured"
    NOT_AUTHORIZED = "not_authorized"
    CONNECTED = "connected"
    TOKEN_EXPIRED = "token_expired"
    REFRESH_FAILED = "refresh_failed"
    CONNECTION_FAILED = "connection_failed"


STATUS_MESSAGES = {
    ConnectionStatus.NOT_CONFIGURED: "Xero integration is not configured",
    ConnectionStatus.NOT_AUTHORIZED: "Xero is configured but not connected",
    ConnectionStatus.CONNECTED: "Connected to Xero",
    ConnectionStatus.TOKEN_EXPIRED: "Xero access has expired and could not be renewed yet",
    ConnectionStatus.REFRESH_FAILED: "Xero access could not be renewed",
    ConnectionStatus.CONNECTION_FAILED: "Xero rejected the connection check; reconnect required",
}


@dataclass
class ConnectionReport:
    status: ConnectionStatus
    tenants: List[Tenant] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    error_code: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def message(self) -> str:
        return STATUS_MESSAGES[self.status]


@dataclass
class CallbackResult:
    company_id: int
    tenants: List[Tenant]
    expires_at: datetime


def parse_amount(value: Any, field_name: str = "amount") -> float:
    """Parse a loosely typed numeric field; missing or invalid values count as zero."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        logger.warning(f"Boolean value in numeric field {field_name}; counting as 0")
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Unparsable {field_name} value {value!r}; counting as 0")
        return 0.0
    if number != number or number in (float("inf"), float("-inf")):
        logger.warning(f"Non-finite {field_name} value {value!r}; counting as 0")
        return 0.0
    return number


class TokenLifecycleController:
    """Entry point for the Xero connection and data operations."""

    def __init__(
        self,
        credential_store: CredentialStore,
        state_registry: StateRegistry,
        url_builder: AuthorizationUrlBuilder,
        token_exchanger: TokenExchanger,
        tenant_resolver: TenantResolver,
        resource_fetcher: ResourceFetcher,
        refresh_buffer_seconds: int = 300,
        dashboard_page_size: int = 10,
        demo_mode: bool = False,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.credentials = credential_store
        self.states = state_registry
        self.url_builder = url_builder
        self.exchanger = token_exchanger
        self.resolver = tenant_resolver
        self.fetcher = resource_fetcher
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self.dashboard_page_size = min(dashboard_page_size, MAX_PAGE_SIZE)
        self.demo_mode = demo_mode
        self.clock = clock

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, company_id: int, client_id: str, callback_url: str, client_secret: Optional[str] = None):
        return self.credentials.save_config(company_id, client_id, callback_url, client_secret)

    def get_settings(self, company_id: int) -> Optional[Dict[str, Any]]:
        config = self.credentials.get_config(company_id)
        if config is None:
            return None
        tokens = self.credentials.get_tokens(company_id)
        return {
            "company_id": company_id,
            "client_id": config.client_id,
            "client_secret": mask_secret(config.client_secret),
            "callback_url": config.callback_url,
            "has_tokens": tokens is not None,
            "expires_at": tokens.expires_at if tokens else None,
        }

    def delete_configuration(self, company_id: int) -> bool:
        return self.credentials.delete_config(company_id)

    # ------------------------------------------------------------------
    # Authorization flow
    # ------------------------------------------------------------------

    def build_authorization_url(self, company_id: int) -> AuthorizationRequest:
        return self.url_builder.build(company_id)

    def handle_callback(self, code: str, state: str, company_id: Optional[int] = None) -> CallbackResult:
        """
        Complete the consent flow: consume the state, exchange the code and
        record the organisations the user granted access to.
        """
        try:
            record = self.exchanger.exchange_code(code, state, company_id)
        except LedgerIntegrationError as e:
            track_oauth_callback(e.error_code)
            raise

        try:
            tenants = self.resolver.list_tenants(record.company_id, record.access_token)
        except (RemoteAPIError, RateLimitExceededError, UnauthorizedError) as e:
            logger.warning(
                f"Xero connected for company {record.company_id} but listing tenants failed: {e.message}"
            )
            tenants = []
        else:
            self.credentials.save_tenants(record.company_id, [t.to_dict() for t in tenants])
        track_oauth_callback("success")
        logger.info(f"Xero connected for company {record.company_id} with {len(tenants)} tenant(s)")
        return CallbackResult(company_id=record.company_id, tenants=tenants, expires_at=record.expires_at)

    def disconnect(self, company_id: int) -> None:
        """Forget the tokens; the integration configuration stays."""
        self.credentials.clear_tokens(company_id, reason="disconnect")
        track_tokens_cleared("disconnect")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, company_id: int) -> ConnectionReport:
        """
        Compute the connection status.

        An expired token gets one inline refresh attempt. A live token is
        verified with one connections call; if that call fails the tokens
        are cleared and CONNECTION_FAILED is reported.
        """
        if self.credentials.get_config(company_id) is None:
            return ConnectionReport(ConnectionStatus.NOT_CONFIGURED)

        tokens = self.credentials.get_tokens(company_id)
        if tokens is None:
            return ConnectionReport(ConnectionStatus.NOT_AUTHORIZED)

        if tokens.is_expired(self.clock()):
            try:
                tokens = self.exchanger.refresh(company_id)
            except InvalidRefreshTokenError as e:
                return ConnectionReport(ConnectionStatus.NOT_AUTHORIZED, error_code=e.error_code)
            except NoRefreshTokenError as e:
                self.credentials.clear_tokens(company_id, reason="missing_refresh_token")
                track_tokens_cleared("missing_refresh_token")
                return ConnectionReport(ConnectionStatus.NOT_AUTHORIZED, error_code=e.error_code)
            except RefreshTimeoutError as e:
                return ConnectionReport(
                    ConnectionStatus.TOKEN_EXPIRED, expires_at=tokens.expires_at, error_code=e.error_code
                )
            except (TokenRefreshError, TokenExchangeError) as e:
                return ConnectionReport(
                    ConnectionStatus.REFRESH_FAILED, expires_at=tokens.expires_at, error_code=e.error_code
                )

        try:
            tenants = self.resolver.list_tenants(company_id, tokens.access_token)
        except TokenExchangeError as e:
            logger.warning(f"Connection check for company {company_id} hit a client error: {e.message}")
            return ConnectionReport(
                ConnectionStatus.REFRESH_FAILED, expires_at=tokens.expires_at, error_code=e.error_code
            )
        except LedgerIntegrationError as e:
            logger.warning(f"Connection check failed for company {company_id}: {e.message}; clearing tokens")
            self.credentials.clear_tokens(company_id, reason="connection_check_failed")
            track_tokens_cleared("connection_check_failed")
            return ConnectionReport(ConnectionStatus.CONNECTION_FAILED, error_code=e.error_code)

        self.credentials.save_tenants(company_id, [t.to_dict() for t in tenants])
        # the check may have refreshed the tokens
        tokens = self.credentials.get_tokens(company_id) or tokens
        return ConnectionReport(ConnectionStatus.CONNECTED, tenants=tenants, expires_at=tokens.expires_at)

    def list_tenants(self, company_id: int) -> List[Tenant]:
        if self.demo_mode:
            return self.resolver.list_tenants(company_id)
        access_token = self._ensure_access_token(company_id)
        tenants = self.resolver.list_tenants(company_id, access_token)
        self.credentials.save_tenants(company_id, [t.to_dict() for t in tenants])
        return tenants

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    def fetch_resource(
        self,
        company_id: int,
        resource_name: str,
        tenant_hint: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Fetch one resource and return ``{"data": ..., "meta": ...}``."""
        endpoint = endpoint_for(resource_name)
        tenant_id = self._resolve_tenant(company_id, tenant_hint)
        document = self.fetcher.fetch(company_id, tenant_id, resource_name, params)

        key = collection_key_for(resource_name)
        data = document
        if isinstance(document, dict) and key in document:
            data = document[key]
        count = len(data) if isinstance(data, list) else (1 if data else 0)

        return {
            "data": data,
            "meta": {
                "tenant_id": tenant_id,
                "resource": resource_name,
                "endpoint": endpoint,
                "count": count,
                "is_demo_data": self.demo_mode,
                "timestamp": self.clock().isoformat(),
            },
        }

    def get_dashboard(self, company_id: int, tenant_hint: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate invoices, contacts, bank transactions, accounts and the
        organisation profile. A failed sub-fetch is reported in
        ``resources``/``failed_resources``; figures that depend on it are None.
        """
        tenant_id = self._resolve_tenant(company_id, tenant_hint)
        page = {"page": 1, "pageSize": self.dashboard_page_size}
        data, outcomes = self._collect(company_id, tenant_id, [
            ("invoices", page),
            ("contacts", page),
            ("bank-transactions", page),
            ("accounts", None),
            ("organization", None),
        ])

        invoices = data.get("invoices")
        contacts = data.get("contacts")
        transactions = data.get("bank-transactions")
        accounts = data.get("accounts")
        organisations = data.get("organization")

        summary = {
            "total_invoices": len(invoices) if invoices is not None else None,
            "total_contacts": len(contacts) if contacts is not None else None,
            "total_transactions": len(transactions) if transactions is not None else None,
            "total_accounts": len(accounts) if accounts is not None else None,
            "total_amount": None,
            "paid_invoices": None,
            "overdue_invoices": None,
            "draft_invoices": None,
        }
        if invoices is not None:
            summary["total_amount"] = round(sum(parse_amount(i.get("Total"), "Total") for i in invoices), 2)
            summary["paid_invoices"] = sum(1 for i in invoices if parse_amount(i.get("AmountPaid"), "AmountPaid") > 0)
            summary["overdue_invoices"] = sum(1 for i in invoices if i.get("Status") == "OVERDUE")
            summary["draft_invoices"] = sum(1 for i in invoices if i.get("Status") == "DRAFT")

        failed = [name for name, outcome in outcomes.items() if not outcome["ok"]]
        return {
            "tenant_id": tenant_id,
            "summary": summary,
            "recent_invoices": (invoices or [])[:5],
            "recent_contacts": (contacts or [])[:5],
            "recent_transactions": (transactions or [])[:5],
            "accounts": (accounts or [])[:10],
            "organization": organisations[0] if organisations else {},
            "resources": outcomes,
            "failed_resources": failed,
            "partial": bool(failed),
            "is_demo_data": self.demo_mode,
            "last_updated": self.clock().isoformat(),
        }

    def get_financial_summary(self, company_id: int, tenant_hint: Optional[str] = None) -> Dict[str, Any]:
        """Revenue figures from the first page of invoices, plus the contact count."""
        tenant_id = self._resolve_tenant(company_id, tenant_hint)
        page = {"page": 1, "pageSize": MAX_PAGE_SIZE}
        data, outcomes = self._collect(company_id, tenant_id, [
            ("invoices", page),
            ("contacts", page),
        ])

        summary: Dict[str, Any] = {
            "total_revenue": None,
            "paid_revenue": None,
            "outstanding_revenue": None,
            "overdue_amount": None,
            "invoice_count": None,
            "average_invoice_value": None,
            "paid_percentage": None,
            "contact_count": len(data["contacts"]) if "contacts" in data else None,
        }
        invoices = data.get("invoices")
        if invoices is not None:
            total = paid = overdue = 0.0
            for invoice in invoices:
                invoice_total = parse_amount(invoice.get("Total"), "Total")
                amount_paid = parse_amount(invoice.get("AmountPaid"), "AmountPaid")
                total += invoice_total
                paid += amount_paid
                if invoice.get("Status") == "OVERDUE":
                    overdue += invoice_total - amount_paid
            summary.update({
                "total_revenue": round(total, 2),
                "paid_revenue": round(paid, 2),
                "outstanding_revenue": round(total - paid, 2),
                "overdue_amount": round(overdue, 2),
                "invoice_count": len(invoices),
                "average_invoice_value": round(total / len(invoices), 2) if invoices else 0.0,
                "paid_percentage": round(paid / total * 100, 1) if total > 0 else 0.0,
            })

        failed = [name for name, outcome in outcomes.items() if not outcome["ok"]]
        return {
            "tenant_id": tenant_id,
            "summary": summary,
            "resources": outcomes,
            "failed_resources": failed,
            "partial": bool(failed),
            "is_demo_data": self.demo_mode,
            "last_updated": self.clock().isoformat(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_access_token(self, company_id: int) -> str:
        """Return a usable access token, refreshing when expired or about to expire."""
        self.credentials.require_config(company_id)
        tokens = self.credentials.get_tokens(company_id)
        if tokens is None:
            raise ReauthorizationRequiredError(company_id, reason="Xero is not connected")

        now = self.clock()
        if tokens.is_expired(now):
            return self.fetcher.recover_access_token(company_id)
        if tokens.is_expired(now, buffer_seconds=self.refresh_buffer_seconds):
            try:
                return self.fetcher.recover_access_token(company_id)
            except UnauthorizedError:
                logger.info(f"Proactive refresh failed for company {company_id}; current token still valid")
        return tokens.access_token

    def _resolve_tenant(self, company_id: int, tenant_hint: Optional[str]) -> str:
        if self.demo_mode:
            return self.resolver.resolve(company_id, hint=tenant_hint)
        access_token = self._ensure_access_token(company_id)
        return self.resolver.resolve(company_id, access_token, tenant_hint)

    def _collect(
        self,
        company_id: int,
        tenant_id: str,
        plan: List[Tuple[str, Optional[Dict[str, Any]]]],
    ) -> Tuple[Dict[str, List[dict]], Dict[str, Dict[str, Any]]]:
        """Run each fetch independently, recording per-resource outcomes."""
        data: Dict[str, List[dict]] = {}
        outcomes: Dict[str, Dict[str, Any]] = {}
        for resource_name, params in plan:
            try:
                document = self.fetcher.fetch(company_id, tenant_id, resource_name, params)
            except ReauthorizationRequiredError:
                raise
            except LedgerIntegrationError as e:
                logger.warning(f"Dashboard fetch of {resource_name} failed for company {company_id}: {e.message}")
                outcomes[resource_name] = {"ok": False, "error_code": e.error_code, "message": e.user_message}
                continue
            items = extract_collection(document, resource_name)
            if items is None:
                logger.warning(f"Dashboard fetch of {resource_name} for company {company_id} had no collection")
                outcomes[resource_name] = {
                    "ok": False,
                    "error_code": "unexpected_response",
                    "message": f"Xero returned no {collection_key_for(resource_name)} collection",
                }
                continue
            data[resource_name] = items
            outcomes[resource_name] = {"ok": True, "count": len(items)}
        return data, outcomes
