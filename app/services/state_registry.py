"""One-time CSRF state tokens for the Xero authorization flow."""

from datetime import datetime, timedelta
from typing import Callable, Optional
import logging
import secrets

from sqlalchemy import select, delete
from sqlalchemy.orm import Session

from ..core.exceptions import InvalidOrExpiredStateError
from ..models.integration import AuthState

logger = logging.getLogger(__name__)


class StateRegistry:
    """Issues and consumes single-use authorization states.

    ``consume`` removes the row with a conditional DELETE and only succeeds
    when that statement removed exactly one row, so two racing callbacks
    with the same state produce one success and one failure.
    """

    def __init__(
        self,
        db: Session,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def issue(self, company_id: int) -> str:
        """Generate, store and return a fresh state for ``company_id``."""
        state = secrets.token_hex(16)
        # Duplicate values are rejected by the primary key
        self.db.add(AuthState(state=state, company_id=company_id, created_at=self.clock()))
        self.db.commit()
        logger.debug(f"Issued OAuth state for company {company_id}")
        return state

    def consume(self, state: Optional[str], company_id: Optional[int] = None) -> int:
        """Validate and delete a state, returning the company that issued it.

        Raises:
            InvalidOrExpiredStateError: state is unknown, expired, already
                used, or was issued for a different company.
        """
        if not state:
            raise InvalidOrExpiredStateError()

        owner = self.db.scalar(select(AuthState.company_id).where(AuthState.state == state))
        if owner is None:
            logger.warning("OAuth state not found or already consumed")
            raise InvalidOrExpiredStateError()

        cutoff = self.clock() - self.ttl
        result = self.db.execute(
            delete(AuthState).where(AuthState.state == state, AuthState.created_at > cutoff)
        )
        if result.rowcount != 1:
            # Either expired or consumed concurrently; drop any expired leftover
            self.db.execute(delete(AuthState).where(AuthState.state == state))
            self.db.commit()
            logger.warning(f"OAuth state for company {owner} expired or already consumed")
            raise InvalidOrExpiredStateError()
        self.db.commit()

        if company_id is not None and company_id != owner:
            logger.warning(f"OAuth state issued for company {owner} presented by company {company_id}")
            raise InvalidOrExpiredStateError(details={"reason": "company_mismatch"})

        logger.info(f"Consumed OAuth state for company {owner}")
        return owner

    def sweep_expired(self) -> int:
        """Delete all states older than the TTL. Returns the number removed."""
        cutoff = self.clock() - self.ttl
        result = self.db.execute(delete(AuthState).where(AuthState.created_at <= cutoff))
        self.db.commit()
        if result.rowcount:
            logger.info(f"Swept {result.rowcount} expired OAuth states")
        return result.rowcount
