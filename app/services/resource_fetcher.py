"""Rate-limited access to Xero accounting resources.

Every remote Xero read, including the connections list, goes through
ResourceFetcher.request, which applies the shared outbound spacing, one
retry after a 429 cooldown, and one refresh-and-retry after a 401.
"""

from typing import Any, Callable, Dict, List, Optional
import logging
import math
import time

import httpx

from ..core.exceptions import (
    NoRefreshTokenError,
    InvalidRefreshTokenError,
    TokenRefreshError,
    UnauthorizedError,
    ReauthorizationRequiredError,
    RateLimitExceededError,
    RemoteAPIError,
    UnknownResourceError,
)
from ..core.metrics import track_remote_request, track_remote_latency, track_tokens_cleared
from ..core.throttle import OutboundThrottle
from .credential_store import CredentialStore
from .token_exchanger import TokenExchanger

logger = logging.getLogger(__name__)


# Resource name -> Xero endpoint
RESOURCE_ENDPOINTS: Dict[str, str] = {
    "invoices": "Invoices",
    "contacts": "Contacts",
    "accounts": "Accounts",
    "bank-transactions": "BankTransactions",
    "organization": "Organisation",
    "items": "Items",
    "tax-rates": "TaxRates",
    "tracking-categories": "TrackingCategories",
    "purchase-orders": "PurchaseOrders",
    "receipts": "Receipts",
    "credit-notes": "CreditNotes",
    "manual-journals": "ManualJournals",
    "prepayments": "Prepayments",
    "overpayments": "Overpayments",
    "quotes": "Quotes",
}

PASSTHROUGH_PARAMS = (
    "where", "order", "page", "pageSize", "includeArchived",
    "IDs", "ContactIDs", "fromDate", "toDate", "status",
)

# Responses are keyed by the plural name, which differs from the endpoint here
RESPONSE_KEYS: Dict[str, str] = {
    "organization": "Organisations",
}

MAX_PAGE_SIZE = 100


def endpoint_for(resource_name: str) -> str:
    try:
        return RESOURCE_ENDPOINTS[resource_name]
    except KeyError:
        raise UnknownResourceError(resource_name, sorted(RESOURCE_ENDPOINTS))


def collection_key_for(resource_name: str) -> str:
    return RESPONSE_KEYS.get(resource_name) or endpoint_for(resource_name)


def build_query(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Keep supported query parameters, dropping empty values and capping pageSize."""
    query = {}
    for key in PASSTHROUGH_PARAMS:
        value = (params or {}).get(key)
        if value is None or value == "":
            continue
        if key == "pageSize":
            try:
                value = min(int(value), MAX_PAGE_SIZE)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric pageSize {value!r}")
                continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        query[key] = str(value)
    return query


def extract_collection(document: Any, resource_name: str) -> Optional[List[dict]]:
    """
    Return the list stored under the resource's plural key.

    Non-object entries are dropped. Returns None when the document carries
    no such collection at all.
    """
    if isinstance(document, list):
        return [item for item in document if isinstance(item, dict)]
    if not isinstance(document, dict):
        return None
    items = document.get(collection_key_for(resource_name))
    if isinstance(items, list):
        return [item for item in items if isinstance(item, dict)]
    if isinstance(items, dict):
        return [items]
    return None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:1000]


class ResourceFetcher:
    """Fetches one named resource for one tenant."""

    def __init__(
        self,
        credential_store: CredentialStore,
        token_exchanger: TokenExchanger,
        http_client: httpx.Client,
        throttle: OutboundThrottle,
        api_base_url: str,
        timeout: float = 30.0,
        rate_limit_cooldown: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credentials = credential_store
        self.exchanger = token_exchanger
        self.http = http_client
        self.throttle = throttle
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limit_cooldown = rate_limit_cooldown
        self._sleep = sleep

    def fetch(
        self,
        company_id: int,
        tenant_id: str,
        resource_name: str,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        """
        Fetch a resource document.

        Args:
            company_id: Company whose tokens are used
            tenant_id: Xero organisation id
            resource_name: Key of RESOURCE_ENDPOINTS
            params: Query parameters (unsupported keys are dropped)
            access_token: Token to use; read from the store when omitted

        Returns:
            The decoded JSON document

        Raises:
            UnknownResourceError, RateLimitExceededError, UnauthorizedError,
            ReauthorizationRequiredError, RemoteAPIError
        """
        endpoint = endpoint_for(resource_name)
        response = self.request(
            company_id,
            f"{self.api_base_url}/{endpoint}",
            resource_name,
            access_token=access_token,
            tenant_id=tenant_id,
            query=build_query(params),
        )
        return self.decode(response, company_id, resource_name)

    def request(
        self,
        company_id: int,
        url: str,
        label: str,
        access_token: Optional[str] = None,
        tenant_id: Optional[str] = None,
        query: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        GET a Xero URL under the shared 429/401 policy.

        The tenant header is only sent when ``tenant_id`` is given. Returns
        the 200 response; anything else ends in an exception.
        """
        if access_token is None:
            tokens = self.credentials.get_tokens(company_id)
            if tokens is None:
                raise ReauthorizationRequiredError(company_id, reason="No Xero tokens stored")
            access_token = tokens.access_token

        def send(token: str) -> httpx.Response:
            return self._send(url, token, tenant_id, query or {}, label, company_id, timeout)

        response = send(access_token)

        if response.status_code == 429:
            logger.warning(
                f"Xero throttled {label} for company {company_id}; "
                f"retrying once after {self.rate_limit_cooldown}s"
            )
            self._sleep(self.rate_limit_cooldown)
            response = send(access_token)
            if response.status_code == 429:
                raise RateLimitExceededError(
                    self._retry_after(response), company_id=company_id, details={"resource": label}
                )

        if response.status_code == 401:
            logger.info(f"Xero rejected access token for company {company_id}; refreshing once")
            access_token = self.recover_access_token(company_id)
            response = send(access_token)
            if response.status_code == 401:
                raise UnauthorizedError(company_id, details={"resource": label, "after_refresh": True})
            if response.status_code == 429:
                raise RateLimitExceededError(
                    self._retry_after(response), company_id=company_id, details={"resource": label}
                )

        if response.status_code != 200:
            body = _response_body(response)
            logger.error(f"Xero returned HTTP {response.status_code} for {label} (company {company_id})")
            raise RemoteAPIError(
                f"{label} returned HTTP {response.status_code}",
                remote_status=response.status_code,
                remote_body=body,
                company_id=company_id,
                resource=label,
            )
        return response

    def decode(self, response: httpx.Response, company_id: int, label: str) -> Any:
        try:
            return response.json()
        except ValueError:
            raise RemoteAPIError(
                f"{label} returned a non-JSON body",
                remote_status=response.status_code,
                remote_body=response.text[:1000],
                company_id=company_id,
                resource=label,
            )

    def recover_access_token(self, company_id: int) -> str:
        """
        Refresh after the remote rejected or expired the access token.

        Irrecoverable failures leave the company with no tokens and raise
        ReauthorizationRequiredError; transient ones keep the tokens and
        raise UnauthorizedError. A rejected client configuration propagates
        as InvalidClientError.
        """
        try:
            return self.exchanger.refresh(company_id).access_token
        except InvalidRefreshTokenError:
            raise ReauthorizationRequiredError(company_id, reason="Refresh token rejected")
        except NoRefreshTokenError:
            self.credentials.clear_tokens(company_id, reason="missing_refresh_token")
            track_tokens_cleared("missing_refresh_token")
            raise ReauthorizationRequiredError(company_id, reason="No refresh token stored")
        except TokenRefreshError as e:
            logger.warning(f"Transient refresh failure for company {company_id}: {e.message}")
            raise UnauthorizedError(company_id, details={"refresh_error": e.error_code})

    def _send(
        self,
        url: str,
        access_token: str,
        tenant_id: Optional[str],
        query: Dict[str, str],
        resource_name: str,
        company_id: int,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        if tenant_id:
            headers["Xero-tenant-id"] = tenant_id

        self.throttle.wait()
        try:
            with track_remote_latency(resource_name):
                response = self.http.get(
                    url,
                    params=query,
                    headers=headers,
                    timeout=timeout if timeout is not None else self.timeout,
                )
        except httpx.TimeoutException:
            track_remote_request(resource_name, "timeout")
            raise RemoteAPIError(f"{resource_name} request timed out", company_id=company_id, resource=resource_name)
        except httpx.HTTPError as e:
            track_remote_request(resource_name, "network_error")
            raise RemoteAPIError(f"{resource_name} request failed: {e}", company_id=company_id, resource=resource_name)

        track_remote_request(resource_name, response.status_code)
        return response

    def _retry_after(self, response: httpx.Response) -> int:
        header = response.headers.get("Retry-After")
        try:
            return max(1, int(header))
        except (TypeError, ValueError):
            return max(1, math.ceil(self.rate_limit_cooldown))
