"""Resolves which Xero organisation (tenant) a request targets."""

from dataclasses import dataclass, asdict
from typing import List, Optional
import logging

from ..core.exceptions import NoTenantsError
from .resource_fetcher import ResourceFetcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    tenant_name: Optional[str] = None
    tenant_type: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class TenantResolver:
    """Lists Xero connections and picks the tenant to use."""

    def __init__(
        self,
        fetcher: ResourceFetcher,
        connections_url: str,
        timeout: float = 10.0,
    ):
        self.fetcher = fetcher
        self.connections_url = connections_url
        self.timeout = timeout

    def list_tenants(self, company_id: int, access_token: Optional[str] = None) -> List[Tenant]:
        """
        Call the Xero connections endpoint.

        The call goes through the fetcher, so it gets the same spacing,
        429 retry and 401 refresh as resource reads.

        Raises:
            RemoteAPIError: non-200 response or network failure
            RateLimitExceededError, UnauthorizedError, ReauthorizationRequiredError
        """
        response = self.fetcher.request(
            company_id,
            self.connections_url,
            "connections",
            access_token=access_token,
            timeout=self.timeout,
        )
        entries = self.fetcher.decode(response, company_id, "connections")
        if not isinstance(entries, list):
            entries = []

        tenants = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("tenantId"):
                logger.warning("Skipping malformed Xero connection entry")
                continue
            tenants.append(Tenant(
                tenant_id=entry["tenantId"],
                tenant_name=entry.get("tenantName") or entry.get("organisationName"),
                tenant_type=entry.get("tenantType"),
            ))
        return tenants

    def resolve(self, company_id: int, access_token: Optional[str] = None, hint: Optional[str] = None) -> str:
        """
        Return the tenant id to use.

        A non-empty ``hint`` is returned unchanged without a remote call;
        Xero itself rejects ids the user has no access to.

        Raises:
            NoTenantsError: the connections list is empty
        """
        if isinstance(hint, str) and hint.strip():
            return hint

        tenants = self.list_tenants(company_id, access_token)
        if not tenants:
            raise NoTenantsError(company_id)

        logger.debug(f"Resolved tenant {tenants[0].tenant_id} for company {company_id}")
        return tenants[0].tenant_id
