"""Celery tasks for maintenance operations."""

from celery import shared_task
from datetime import datetime, timedelta
import logging

from ..config import settings
from ..core.database import SessionLocal
from ..core.exceptions import LedgerIntegrationError, InvalidRefreshTokenError
from ..core.metrics import update_integration_gauges as set_integration_gauges
from ..core.security import init_token_encryption
from ..services.credential_store import CredentialStore
from ..services.factory import build_controller
from ..services.state_registry import StateRegistry

logger = logging.getLogger(__name__)


@shared_task(name="app.tasks.maintenance_tasks.sweep_expired_auth_states")
def sweep_expired_auth_states():
    """Delete OAuth states older than the TTL."""
    db = SessionLocal()
    try:
        removed = StateRegistry(db, ttl_seconds=settings.oauth_state_ttl_seconds).sweep_expired()
        logger.info(f"Auth state sweep complete: {removed} removed")
        return removed
    except Exception as e:
        logger.error(f"Error in sweep_expired_auth_states: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@shared_task(name="app.tasks.maintenance_tasks.refresh_expiring_tokens")
def refresh_expiring_tokens():
    """Refresh Xero tokens that expire within the refresh buffer.

    Rejected refresh tokens are cleared by the exchanger; transient
    failures are left for the next run.
    """
    init_token_encryption(settings.token_encryption_key)
    db = SessionLocal()
    try:
        store = CredentialStore(db)
        exchanger = build_controller(db).exchanger

        cutoff_time = datetime.utcnow() + timedelta(seconds=settings.token_refresh_buffer_seconds)
        company_ids = store.list_expiring(cutoff_time)

        refreshed_count = 0
        cleared_count = 0
        failed_count = 0

        for company_id in company_ids:
            try:
                exchanger.refresh(company_id)
                refreshed_count += 1
            except InvalidRefreshTokenError:
                cleared_count += 1
            except LedgerIntegrationError as e:
                failed_count += 1
                logger.error(f"Failed to refresh token for company {company_id}: {e.message}")

        logger.info(
            f"Token refresh complete: {refreshed_count} refreshed, {cleared_count} cleared, "
            f"{failed_count} failed, {len(company_ids)} total"
        )
        return {
            "refreshed": refreshed_count,
            "cleared": cleared_count,
            "failed": failed_count,
            "total": len(company_ids),
        }
    except Exception as e:
        logger.error(f"Error in refresh_expiring_tokens: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@shared_task(name="app.tasks.maintenance_tasks.update_integration_gauges")
def update_integration_gauges():
    """Publish configured/connected integration counts."""
    db = SessionLocal()
    try:
        store = CredentialStore(db)
        configured = store.count_configured()
        connected = store.count_connected()
        set_integration_gauges(configured, connected)
        return {"configured": configured, "connected": connected}
    finally:
        db.close()
