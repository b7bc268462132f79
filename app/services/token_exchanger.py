"""Authorization-code and refresh-token exchanges against the Xero token endpoint."""

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
import logging

import httpx

from ..core.exceptions import (
    TokenExchangeError,
    InvalidGrantError,
    InvalidClientError,
    InvalidRedirectUriError,
    TokenRefreshError,
    NoRefreshTokenError,
    InvalidRefreshTokenError,
    RefreshTimeoutError,
)
from ..core.metrics import track_token_refresh, track_tokens_cleared, track_remote_latency
from .credential_store import ClientCredentials, CredentialStore, TokenRecord
from .state_registry import StateRegistry

logger = logging.getLogger(__name__)

# Used when the token response omits expires_in (Xero access tokens live 30 minutes)
DEFAULT_EXPIRES_IN = 1800


def _remote_error(response: httpx.Response) -> Dict[str, Optional[str]]:
    """Extract ``error``/``error_description`` from a token endpoint response."""
    try:
        body = response.json()
    except ValueError:
        return {"error": None, "error_description": response.text[:500] or None}
    if not isinstance(body, dict):
        return {"error": None, "error_description": str(body)[:500]}
    return {
        "error": body.get("error"),
        "error_description": body.get("error_description"),
    }


class TokenExchanger:
    """Exchanges codes and refresh tokens for new token sets."""

    def __init__(
        self,
        credential_store: CredentialStore,
        state_registry: StateRegistry,
        http_client: httpx.Client,
        token_url: str,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.credentials = credential_store
        self.states = state_registry
        self.http = http_client
        self.token_url = token_url
        self.timeout = timeout
        self.clock = clock

    def _post(self, config: ClientCredentials, data: Dict[str, str]) -> httpx.Response:
        with track_remote_latency("token"):
            return self.http.post(
                self.token_url,
                data=data,
                auth=(config.client_id, config.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )

    def _parse_tokens(self, response: httpx.Response, fallback_refresh_token: Optional[str] = None) -> Optional[tuple]:
        """Return (access, refresh, expires_at), or None if the payload is unusable."""
        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token") or fallback_refresh_token
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            logger.warning(f"Unparsable expires_in in token response: {payload.get('expires_in')!r}")
            expires_in = DEFAULT_EXPIRES_IN
        if not access_token or not refresh_token:
            return None
        return access_token, refresh_token, self.clock() + timedelta(seconds=expires_in)

    def exchange_code(self, code: str, state: str, company_id: Optional[int] = None) -> TokenRecord:
        """
        Exchange an authorization code for a token set.

        The state is consumed before anything else; a rejected state means
        no request is sent and nothing is written.

        Args:
            code: Authorization code from the callback
            state: State returned with the callback
            company_id: Company presenting the callback, when known

        Returns:
            The stored token set

        Raises:
            InvalidOrExpiredStateError, NotConfiguredError, InvalidGrantError,
            InvalidClientError, InvalidRedirectUriError, TokenExchangeError
        """
        owner = self.states.consume(state, company_id)
        config = self.credentials.require_config(owner)

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.callback_url,
        }
        try:
            response = self._post(config, data)
        except httpx.TimeoutException:
            logger.error(f"Code exchange timed out for company {owner}")
            raise TokenExchangeError("token endpoint timed out", company_id=owner)
        except httpx.HTTPError as e:
            logger.error(f"Code exchange request failed for company {owner}: {e}")
            raise TokenExchangeError(str(e), company_id=owner)

        if response.status_code != 200:
            remote = _remote_error(response)
            error = remote["error"]
            logger.error(f"Code exchange rejected for company {owner}: {error} {remote['error_description']}")
            if error == "invalid_grant":
                raise InvalidGrantError(company_id=owner, details=remote)
            if error == "invalid_client":
                raise InvalidClientError(company_id=owner, details=remote)
            if error == "invalid_redirect_uri":
                raise InvalidRedirectUriError(company_id=owner, details=remote)
            raise TokenExchangeError(
                error or f"HTTP {response.status_code}",
                company_id=owner,
                details={**remote, "remote_status": response.status_code},
            )

        parsed = self._parse_tokens(response)
        if parsed is None:
            raise TokenExchangeError("malformed token response", company_id=owner)
        access_token, refresh_token, expires_at = parsed
        record = self.credentials.write_tokens(owner, access_token, refresh_token, expires_at)
        logger.info(f"Authorization code exchanged for company {owner}")
        return record

    def refresh(self, company_id: int) -> TokenRecord:
        """
        Obtain a new token set with the stored refresh token.

        A rejected refresh token (``invalid_grant``) clears the whole token
        set before raising. Timeouts and other transient failures leave the
        stored tokens untouched.

        Raises:
            NotConfiguredError, NoRefreshTokenError, InvalidRefreshTokenError,
            InvalidClientError, RefreshTimeoutError, TokenRefreshError
        """
        config = self.credentials.require_config(company_id)
        tokens = self.credentials.get_tokens(company_id)
        if tokens is None:
            track_token_refresh("no_refresh_token")
            raise NoRefreshTokenError(company_id)

        data = {"grant_type": "refresh_token", "refresh_token": tokens.refresh_token}
        try:
            response = self._post(config, data)
        except httpx.TimeoutException:
            track_token_refresh("timeout")
            logger.warning(f"Token refresh timed out for company {company_id}")
            raise RefreshTimeoutError(company_id)
        except httpx.HTTPError as e:
            track_token_refresh("transport_error")
            logger.warning(f"Token refresh request failed for company {company_id}: {e}")
            raise TokenRefreshError(company_id, reason=f"Token refresh request failed: {e}")

        if response.status_code != 200:
            remote = _remote_error(response)
            error = remote["error"]
            if error == "invalid_grant":
                track_token_refresh("invalid_grant")
                logger.warning(f"Refresh token rejected for company {company_id}; clearing tokens")
                self.credentials.clear_tokens(company_id, reason="invalid_refresh_token")
                track_tokens_cleared("invalid_refresh_token")
                raise InvalidRefreshTokenError(company_id, details=remote)
            if error == "invalid_client":
                track_token_refresh("invalid_client")
                logger.error(f"Client credentials rejected during refresh for company {company_id}")
                raise InvalidClientError(company_id=company_id, details=remote)
            track_token_refresh("error")
            logger.error(f"Token refresh failed for company {company_id}: HTTP {response.status_code} {error}")
            raise TokenRefreshError(
                company_id,
                details={**remote, "remote_status": response.status_code},
            )

        parsed = self._parse_tokens(response, fallback_refresh_token=tokens.refresh_token)
        if parsed is None:
            track_token_refresh("error")
            raise TokenRefreshError(company_id, reason="Malformed token response")
        access_token, refresh_token, expires_at = parsed
        record = self.credentials.write_tokens(company_id, access_token, refresh_token, expires_at)
        track_token_refresh("success")
        logger.info(f"Refreshed Xero tokens for company {company_id}")
        return record
