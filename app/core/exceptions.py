"""
Custom exception handling for the ledger integration.

Every failure the OAuth flow or the remote data path can produce is a
subclass of LedgerIntegrationError. Each carries a machine-readable
error code and the corrective action the end user has to take, so callers
never have to collapse distinct failures into one generic message.
"""

import uuid
from typing import Optional, Dict, Any
from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


# Corrective actions surfaced to the end user
ACTION_RECONFIGURE = "reconfigure"
ACTION_RECONNECT = "reconnect"
ACTION_RESTART_AUTHORIZATION = "restart_authorization"
ACTION_RETRY = "retry"
ACTION_CONNECT_ORGANISATION = "connect_organisation"


# ============================================================================
# Base Exception Class
# ============================================================================

class LedgerIntegrationError(Exception):
    """Base exception class for all ledger integration errors."""

    error_code = "ledger_error"

    def __init__(
        self,
        message: str,
        user_message: str,
        status_code: int = 500,
        company_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        action: Optional[str] = None,
    ):
        self.message = message
        self.user_message = user_message
        self.status_code = status_code
        self.company_id = company_id
        self.details = details or {}
        self.action = action
        self.correlation_id = str(uuid.uuid4())
        super().__init__(message)


# ============================================================================
# Configuration Exceptions
# ============================================================================

class NotConfiguredError(LedgerIntegrationError):
    """Raised when a company has no usable integration configuration."""

    error_code = "not_configured"

    def __init__(self, company_id: int, reason: str = "Xero integration is not configured"):
        super().__init__(
            message=f"{reason} for company {company_id}",
            user_message="Xero is not set up for this company. Add the client ID, secret and callback URL first.",
            status_code=status.HTTP_400_BAD_REQUEST,
            company_id=company_id,
            action=ACTION_RECONFIGURE,
        )


class ValidationError(LedgerIntegrationError):
    """Raised when input validation fails."""

    error_code = "validation_error"

    def __init__(self, field: str, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Validation error: {field} - {reason}",
            user_message=f"Please check the value of {field}: {reason}",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={**(details or {}), "field": field},
        )


class UnknownResourceError(ValidationError):
    """Raised when a resource name is not one the fetcher knows about."""

    error_code = "unknown_resource"

    def __init__(self, resource_name: str, valid_resources: list):
        super().__init__(
            field="resource_name",
            reason=f"unsupported resource '{resource_name}'",
            details={"valid_resources": valid_resources},
        )


# ============================================================================
# Authorization Flow Exceptions
# ============================================================================

class InvalidOrExpiredStateError(LedgerIntegrationError):
    """Raised when a callback presents an unknown, expired or reused state."""

    error_code = "invalid_or_expired_state"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="OAuth state is unknown, expired or already used",
            user_message="This authorization link has expired. Start the Xero connection again.",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            action=ACTION_RESTART_AUTHORIZATION,
        )


class TokenExchangeError(LedgerIntegrationError):
    """Raised when the token endpoint rejects a request for an unclassified reason."""

    error_code = "exchange_failed"

    def __init__(
        self,
        reason: str,
        company_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        user_message: str = "Xero did not accept the authorization. Please try again.",
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        action: str = ACTION_RETRY,
    ):
        super().__init__(
            message=f"Token exchange failed: {reason}",
            user_message=user_message,
            status_code=status_code,
            company_id=company_id,
            details=details,
            action=action,
        )


class InvalidGrantError(TokenExchangeError):
    """Authorization code expired or already used."""

    error_code = "invalid_grant"

    def __init__(self, company_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            reason="invalid_grant",
            company_id=company_id,
            details=details,
            user_message="The authorization code expired or was already used. Connect to Xero again.",
            status_code=status.HTTP_400_BAD_REQUEST,
            action=ACTION_RESTART_AUTHORIZATION,
        )


class InvalidClientError(TokenExchangeError):
    """Client ID or secret rejected by the token endpoint."""

    error_code = "invalid_client"

    def __init__(self, company_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            reason="invalid_client",
            company_id=company_id,
            details=details,
            user_message="Xero rejected the client credentials. Check the client ID and secret.",
            status_code=status.HTTP_400_BAD_REQUEST,
            action=ACTION_RECONFIGURE,
        )


class InvalidRedirectUriError(TokenExchangeError):
    """Callback URL does not match the one registered with the Xero app."""

    error_code = "invalid_redirect_uri"

    def __init__(self, company_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            reason="invalid_redirect_uri",
            company_id=company_id,
            details=details,
            user_message="The callback URL does not match the one registered in the Xero app.",
            status_code=status.HTTP_400_BAD_REQUEST,
            action=ACTION_RECONFIGURE,
        )


# ============================================================================
# Token Refresh Exceptions
# ============================================================================

class TokenRefreshError(LedgerIntegrationError):
    """Transient refresh failure; stored tokens are left untouched."""

    error_code = "refresh_failed"

    def __init__(
        self,
        company_id: int,
        reason: str = "Token refresh failed",
        details: Optional[Dict[str, Any]] = None,
        user_message: str = "Could not refresh the Xero connection. Please try again shortly.",
        status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE,
        action: str = ACTION_RETRY,
    ):
        super().__init__(
            message=f"{reason} for company {company_id}",
            user_message=user_message,
            status_code=status_code,
            company_id=company_id,
            details=details,
            action=action,
        )


class NoRefreshTokenError(TokenRefreshError):
    """No refresh token is stored for the company."""

    error_code = "no_refresh_token"

    def __init__(self, company_id: int):
        super().__init__(
            company_id=company_id,
            reason="No refresh token available",
            user_message="Xero is not connected. Connect to Xero to continue.",
            status_code=status.HTTP_401_UNAUTHORIZED,
            action=ACTION_RECONNECT,
        )


class InvalidRefreshTokenError(TokenRefreshError):
    """The refresh token itself was rejected; only a new consent can fix it."""

    error_code = "invalid_refresh_token"

    def __init__(self, company_id: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            company_id=company_id,
            reason="Refresh token rejected by Xero",
            details=details,
            user_message="The Xero connection has expired. Reconnect to Xero.",
            status_code=status.HTTP_401_UNAUTHORIZED,
            action=ACTION_RECONNECT,
        )


class RefreshTimeoutError(TokenRefreshError):
    """Token endpoint did not answer in time."""

    error_code = "refresh_timeout"

    def __init__(self, company_id: int):
        super().__init__(
            company_id=company_id,
            reason="Token refresh timed out",
            user_message="Xero did not respond in time. Please try again shortly.",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        )


# ============================================================================
# Remote API Exceptions
# ============================================================================

class UnauthorizedError(LedgerIntegrationError):
    """Remote rejected the access token and recovery failed transiently."""

    error_code = "unauthorized"

    def __init__(self, company_id: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Xero rejected the access token for company {company_id}",
            user_message="Xero could not verify the connection right now. Please try again shortly.",
            status_code=status.HTTP_401_UNAUTHORIZED,
            company_id=company_id,
            details=details,
            action=ACTION_RETRY,
        )


class ReauthorizationRequiredError(LedgerIntegrationError):
    """Stored tokens are gone or irrecoverable; the user has to consent again."""

    error_code = "reauthorization_required"

    def __init__(self, company_id: int, reason: str = "Tokens are invalid", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"{reason} for company {company_id}",
            user_message="The Xero connection has expired. Reconnect to Xero.",
            status_code=status.HTTP_401_UNAUTHORIZED,
            company_id=company_id,
            details=details,
            action=ACTION_RECONNECT,
        )


class RateLimitExceededError(LedgerIntegrationError):
    """Raised when Xero keeps throttling after the single internal retry."""

    error_code = "rate_limited"

    def __init__(
        self,
        retry_after: int,
        company_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"Rate limit exceeded. Retry after {retry_after} seconds",
            user_message=f"Xero is receiving too many requests. Try again in {retry_after} seconds.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            company_id=company_id,
            details={**(details or {}), "retry_after": retry_after},
            action=ACTION_RETRY,
        )
        self.retry_after = retry_after


class NoTenantsError(LedgerIntegrationError):
    """The Xero user has not granted access to any organisation."""

    error_code = "no_tenants"

    def __init__(self, company_id: Optional[int] = None):
        super().__init__(
            message=f"No Xero organisations available for company {company_id}",
            user_message="No Xero organisation is connected. Grant access to an organisation in Xero.",
            status_code=status.HTTP_409_CONFLICT,
            company_id=company_id,
            action=ACTION_CONNECT_ORGANISATION,
        )


class RemoteAPIError(LedgerIntegrationError):
    """Any other Xero failure, surfaced with the remote status and body."""

    error_code = "remote_api_error"

    def __init__(
        self,
        error_message: str,
        remote_status: Optional[int] = None,
        remote_body: Any = None,
        company_id: Optional[int] = None,
        resource: Optional[str] = None,
    ):
        super().__init__(
            message=f"Xero API error: {error_message}",
            user_message="Xero returned an error. Please try again later.",
            status_code=remote_status or status.HTTP_503_SERVICE_UNAVAILABLE,
            company_id=company_id,
            details={"remote_status": remote_status, "remote_body": remote_body, "resource": resource},
            action=ACTION_RETRY,
        )
        self.remote_status = remote_status
        self.remote_body = remote_body


# ============================================================================
# Exception Handlers
# ============================================================================

def _error_content(exc: LedgerIntegrationError) -> Dict[str, Any]:
    content = {
        "error": exc.__class__.__name__,
        "error_code": exc.error_code,
        "message": exc.user_message,
        "action": exc.action,
        "correlation_id": exc.correlation_id,
    }
    if exc.details:
        content["details"] = exc.details
    return content


async def ledger_exception_handler(request: Request, exc: LedgerIntegrationError) -> JSONResponse:
    """
    Generic handler for all LedgerIntegrationError instances.

    Logs the error with correlation ID and returns the user-facing message.
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"[{exc.correlation_id}] {exc.__class__.__name__}: {exc.message}",
        extra={
            "correlation_id": exc.correlation_id,
            "company_id": exc.company_id,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_content(exc),
        headers={"X-Correlation-ID": exc.correlation_id}
    )


async def reauthorization_error_handler(request: Request, exc: LedgerIntegrationError) -> JSONResponse:
    """Handler for errors that can only be fixed by reconnecting to Xero."""
    logger.warning(
        f"[{exc.correlation_id}] Xero connection lost for company {exc.company_id}: {exc.message}",
        extra={
            "correlation_id": exc.correlation_id,
            "company_id": exc.company_id,
            "path": request.url.path,
        }
    )

    content = _error_content(exc)
    content["action_required"] = "reconnect"
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers={"X-Correlation-ID": exc.correlation_id}
    )


async def rate_limit_error_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """
    Specialized handler for rate limit errors.

    Includes Retry-After header.
    """
    logger.warning(
        f"[{exc.correlation_id}] Xero rate limit exceeded for company {exc.company_id}",
        extra={
            "correlation_id": exc.correlation_id,
            "company_id": exc.company_id,
            "retry_after": exc.retry_after,
            "path": request.url.path,
        }
    )

    content = _error_content(exc)
    content["retry_after"] = exc.retry_after
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers={
            "X-Correlation-ID": exc.correlation_id,
            "Retry-After": str(exc.retry_after),
        }
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Fallback handler for unhandled exceptions.

    Logs the error and returns a generic error message.
    """
    correlation_id = str(uuid.uuid4())

    logger.exception(
        f"[{correlation_id}] Unhandled exception: {str(exc)}",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "Something went wrong on our side. Please try again later.",
            "correlation_id": correlation_id,
        },
        headers={"X-Correlation-ID": correlation_id}
    )


# ============================================================================
# Exception Handler Registration
# ============================================================================

def register_exception_handlers(app):
    """
    Register all exception handlers with the FastAPI application.

    Args:
        app: FastAPI application instance
    """
    # Register specific handlers first
    app.add_exception_handler(ReauthorizationRequiredError, reauthorization_error_handler)
    app.add_exception_handler(InvalidRefreshTokenError, reauthorization_error_handler)
    app.add_exception_handler(NoRefreshTokenError, reauthorization_error_handler)
    app.add_exception_handler(RateLimitExceededError, rate_limit_error_handler)

    # Register generic handler for all LedgerIntegrationError instances
    app.add_exception_handler(LedgerIntegrationError, ledger_exception_handler)

    # Register fallback handler for unhandled exceptions
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered successfully")
