"""FastAPI application entry point."""

import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from .config import settings
from .core.security import init_token_encryption
from .models import Base
from .core.database import engine
from .core.middleware import RateLimitMiddleware, CompanyContextMiddleware, RequestLoggingMiddleware
from .core.exceptions import register_exception_handlers
from .services.factory import close_http_client

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Compliance Ledger Integration API",
    description="Xero OAuth2 connection, token lifecycle and ledger data access",
    version="1.0.0",
    debug=settings.debug
)

# Register exception handlers
register_exception_handlers(app)

# Redis client for inbound rate limiting
redis_client = Redis.from_url(
    settings.redis_url,
    encoding="utf-8",
    decode_responses=True,
    socket_connect_timeout=5,
    socket_timeout=5,
    retry_on_timeout=True,
    health_check_interval=30
)

# Last added runs first: company context, then logging, then rate limit
app.add_middleware(RateLimitMiddleware, redis_client=redis_client)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CompanyContextMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    try:
        logger.info("Starting ledger integration API...")
        logger.info(f"Environment: {settings.environment}")
        if settings.xero_demo_mode:
            logger.warning("XERO_DEMO_MODE is enabled; ledger data is canned demo data")

        try:
            await redis_client.ping()
            logger.info("Redis connection verified - ready for rate limiting")
        except Exception as e:
            logger.error(f"Redis connection test failed: {e}")
            logger.warning("Continuing without Redis rate limiting")

        logger.info("Initializing token encryption...")
        init_token_encryption(settings.token_encryption_key)

        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ready")

        logger.info("Ledger integration API started successfully")
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Shutting down ledger integration API...")
    close_http_client()
    await redis_client.close()
    logger.info("Redis client closed")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Compliance Ledger Integration API",
        "version": "1.0.0",
        "docs": "/docs"
    }


# Register API routers
from .api.endpoints.health import router as health_router  # noqa: E402
from .api.endpoints.xero import router as xero_router  # noqa: E402
from .core.metrics import metrics_router  # noqa: E402

app.include_router(health_router, tags=["health"])
app.include_router(xero_router)
app.include_router(metrics_router, tags=["monitoring"])
