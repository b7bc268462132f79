"""Builds the Xero consent URL for a company."""

from dataclasses import dataclass
from urllib.parse import urlencode
import logging

from .credential_store import CredentialStore
from .state_registry import StateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str


class AuthorizationUrlBuilder:
    """Composes the authorize URL from stored credentials and a fresh state."""

    def __init__(
        self,
        credential_store: CredentialStore,
        state_registry: StateRegistry,
        authorize_url: str,
        scopes: str,
    ):
        self.credentials = credential_store
        self.states = state_registry
        self.authorize_url = authorize_url
        self.scopes = scopes

    def build(self, company_id: int) -> AuthorizationRequest:
        """
        Issue a state and return the consent URL.

        The callback URL is sent exactly as stored; the code exchange must
        present the identical value.

        Raises:
            NotConfiguredError: no configuration or missing client id/secret
        """
        config = self.credentials.require_config(company_id)

        self.states.sweep_expired()
        state = self.states.issue(company_id)

        query = urlencode([
            ("response_type", "code"),
            ("client_id", config.client_id),
            ("redirect_uri", config.callback_url),
            ("scope", self.scopes),
            ("state", state),
        ])
        url = f"{self.authorize_url}?{query}"

        logger.info(f"Built Xero authorization URL for company {company_id}")
        return AuthorizationRequest(url=url, state=state)
