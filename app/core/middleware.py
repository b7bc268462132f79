"""Middleware for rate limiting, company resolution, and request logging."""

import logging
import time
import uuid
from typing import Optional, Callable
from contextvars import ContextVar

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

COMPANY_HEADER = "X-Company-ID"

# Context variable for the calling company
company_context: ContextVar[Optional[int]] = ContextVar("company_context", default=None)
request_id_context: ContextVar[Optional[str]] = ContextVar("request_id_context", default=None)


def get_current_company() -> Optional[int]:
    """Get current company ID from context."""
    return company_context.get()


def get_current_request_id() -> Optional[str]:
    """Get current request correlation ID from context."""
    return request_id_context.get()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window inbound rate limiting per company per route group.

    Limits:
    - OAuth routes (authorize/callback): 20 requests per minute
    - Ledger data routes (data/dashboard/financial-summary): 60 requests per minute
    - Default: 100 requests per minute
    """

    LIMITS = {
        "oauth": {"requests": 20, "window": 60},
        "ledger_data": {"requests": 60, "window": 60},
        "default": {"requests": 100, "window": 60},
    }

    def __init__(self, app: ASGIApp, redis_client: Redis):
        super().__init__(app)
        self.redis = redis_client

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Check rate limits before processing request."""
        # Skip rate limiting for probes and metrics
        if request.url.path in ["/health", "/health/ready", "/metrics", "/"]:
            return await call_next(request)

        company_id = company_context.get()
        if not company_id:
            # No company context, nothing to key the limit on
            return await call_next(request)

        group = self._get_group_from_path(request.url.path)
        allowed, retry_after = await self.check_rate_limit(company_id, group)

        if not allowed:
            logger.warning(
                f"Rate limit exceeded for company={company_id}, group={group}, "
                f"retry_after={retry_after}s"
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "rate_limit_exceeded",
                    "message": f"Too many requests. Try again in {retry_after} seconds.",
                    "retry_after": retry_after
                },
                headers={"Retry-After": str(retry_after)}
            )

        return await call_next(request)

    def _get_group_from_path(self, path: str) -> str:
        if path.endswith("/authorize") or path.endswith("/callback"):
            return "oauth"
        if "/data/" in path or path.endswith("/dashboard") or path.endswith("/financial-summary"):
            return "ledger_data"
        return "default"

    async def check_rate_limit(self, company_id: int, group: str) -> tuple[bool, int]:
        """Check if request is within rate limit.

        Uses Redis INCR with expiration for distributed counting.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        key = f"ratelimit:{company_id}:{group}"
        limit = self.LIMITS.get(group, self.LIMITS["default"])

        try:
            current = await self.redis.incr(key)

            # Set expiration on first request
            if current == 1:
                await self.redis.expire(key, limit["window"])

            if current > limit["requests"]:
                ttl = await self.redis.ttl(key)
                # TTL returns -1 if key has no expiry, -2 if key doesn't exist
                return False, ttl if ttl > 0 else limit["window"]

            return True, 0
        except Exception as e:
            # On Redis error, allow request but log error
            logger.error(f"Rate limit check failed: {e}")
            return True, 0


class CompanyContextMiddleware(BaseHTTPMiddleware):
    """Read the calling company from the X-Company-ID header.

    Authentication happens upstream; this only makes the id available to
    dependencies and the other middleware for the request's lifetime.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        raw = request.headers.get(COMPANY_HEADER)
        token = None
        if raw:
            try:
                token = company_context.set(int(raw))
                logger.debug(f"Company context set: {raw}")
            except ValueError:
                logger.warning(f"Ignoring non-numeric {COMPANY_HEADER} header: {raw!r}")

        try:
            return await call_next(request)
        finally:
            if token is not None:
                company_context.reset(token)
            else:
                company_context.set(None)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log request and response details with correlation ID."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response."""
        correlation_id = str(uuid.uuid4())
        request_id_context.set(correlation_id)

        start_time = time.time()
        company_id = company_context.get()

        logger.info(
            f"Request started: method={request.method} path={request.url.path} "
            f"company={company_id or 'anonymous'} correlation_id={correlation_id}"
        )

        try:
            response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                f"Request completed: method={request.method} path={request.url.path} "
                f"status={response.status_code} duration_ms={duration_ms:.2f} "
                f"company={company_id or 'anonymous'} correlation_id={correlation_id}"
            )

            response.headers.setdefault("X-Correlation-ID", correlation_id)
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: method={request.method} path={request.url.path} "
                f"duration_ms={duration_ms:.2f} company={company_id or 'anonymous'} "
                f"correlation_id={correlation_id} error={str(e)}",
                exc_info=True
            )

            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "internal_server_error",
                    "correlation_id": correlation_id
                },
                headers={"X-Correlation-ID": correlation_id}
            )
        finally:
            request_id_context.set(None)
