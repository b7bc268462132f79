"""Persistence of per-company Xero credentials and tokens."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from ..core.exceptions import NotConfiguredError, ValidationError
from ..core.security import encrypt_token, decrypt_token
from ..models.integration import IntegrationConfig, TokenSet, AuthState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientCredentials:
    """Decrypted integration configuration."""
    company_id: int
    client_id: str
    client_secret: str
    callback_url: str


@dataclass(frozen=True)
class TokenRecord:
    """Decrypted snapshot of a company's token set."""
    company_id: int
    access_token: str
    refresh_token: str
    expires_at: datetime
    tenants: List[dict] = field(default_factory=list)

    def is_expired(self, now: Optional[datetime] = None, buffer_seconds: int = 0) -> bool:
        now = now or datetime.utcnow()
        return self.expires_at <= now + timedelta(seconds=buffer_seconds)


class CredentialStore:
    """Reads and writes IntegrationConfig and TokenSet rows.

    Token writes and clears are each a single UPDATE of all three token
    columns, so concurrent refreshes resolve as last-write-wins without
    ever mixing fields from two responses.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Integration configuration
    # ------------------------------------------------------------------

    def get_config(self, company_id: int) -> Optional[ClientCredentials]:
        config = self.db.get(IntegrationConfig, company_id, populate_existing=True)
        if config is None:
            return None
        return ClientCredentials(
            company_id=config.company_id,
            client_id=config.client_id,
            client_secret=decrypt_token(config.client_secret_encrypted),
            callback_url=config.callback_url,
        )

    def require_config(self, company_id: int) -> ClientCredentials:
        """Return the configuration or raise NotConfiguredError."""
        credentials = self.get_config(company_id)
        if credentials is None:
            raise NotConfiguredError(company_id)
        if not credentials.client_id or not credentials.client_secret:
            raise NotConfiguredError(company_id, reason="Client ID or secret missing")
        if not credentials.callback_url:
            raise NotConfiguredError(company_id, reason="Callback URL missing")
        return credentials

    def save_config(
        self,
        company_id: int,
        client_id: str,
        callback_url: str,
        client_secret: Optional[str] = None,
    ) -> IntegrationConfig:
        """Create or update the configuration. Tokens are never touched here.

        ``client_secret`` may be omitted on update to keep the stored one.
        """
        client_id = (client_id or "").strip()
        callback_url = (callback_url or "").strip()
        if not client_id:
            raise ValidationError("client_id", "must not be empty")
        if not callback_url.startswith(("http://", "https://")):
            raise ValidationError("callback_url", "must be an absolute http(s) URL")

        config = self.db.get(IntegrationConfig, company_id)
        if config is None:
            if not client_secret:
                raise ValidationError("client_secret", "must not be empty")
            config = IntegrationConfig(
                company_id=company_id,
                client_id=client_id,
                client_secret_encrypted=encrypt_token(client_secret),
                callback_url=callback_url,
            )
            self.db.add(config)
            self.db.add(TokenSet(company_id=company_id))
            logger.info(f"Created Xero configuration for company {company_id}")
        else:
            config.client_id = client_id
            config.callback_url = callback_url
            if client_secret:
                config.client_secret_encrypted = encrypt_token(client_secret)
            if self.db.get(TokenSet, company_id) is None:
                self.db.add(TokenSet(company_id=company_id))
            logger.info(f"Updated Xero configuration for company {company_id}")

        self.db.commit()
        self.db.refresh(config)
        return config

    def delete_config(self, company_id: int) -> bool:
        """Remove configuration, tokens and pending states for a company."""
        self.db.execute(delete(TokenSet).where(TokenSet.company_id == company_id))
        self.db.execute(delete(AuthState).where(AuthState.company_id == company_id))
        result = self.db.execute(
            delete(IntegrationConfig).where(IntegrationConfig.company_id == company_id)
        )
        self.db.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted Xero configuration for company {company_id}")
        return deleted

    # ------------------------------------------------------------------
    # Token set
    # ------------------------------------------------------------------

    def get_tokens(self, company_id: int) -> Optional[TokenRecord]:
        """Return the current tokens, or None if the company is not authorized."""
        token_set = self.db.get(TokenSet, company_id, populate_existing=True)
        if token_set is None or not token_set.access_token:
            return None
        if not token_set.refresh_token or token_set.expires_at is None:
            # Written as a unit, so this only happens after manual edits
            logger.warning(f"Incomplete token set for company {company_id}")
            return None
        return TokenRecord(
            company_id=company_id,
            access_token=decrypt_token(token_set.access_token),
            refresh_token=decrypt_token(token_set.refresh_token),
            expires_at=token_set.expires_at,
            tenants=list(token_set.tenants or []),
        )

    def write_tokens(
        self,
        company_id: int,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> TokenRecord:
        """Replace the whole token set in one statement."""
        result = self.db.execute(
            update(TokenSet)
            .where(TokenSet.company_id == company_id)
            .values(
                access_token=encrypt_token(access_token),
                refresh_token=encrypt_token(refresh_token),
                expires_at=expires_at,
                updated_at=datetime.utcnow(),
            )
        )
        if result.rowcount == 0:
            self.db.rollback()
            raise NotConfiguredError(company_id)
        self.db.commit()
        logger.info(f"Stored new Xero tokens for company {company_id}, expires at {expires_at.isoformat()}")
        return TokenRecord(
            company_id=company_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    def clear_tokens(self, company_id: int, reason: str = "disconnect") -> None:
        """Null all token columns in one statement; configuration is kept."""
        self.db.execute(
            update(TokenSet)
            .where(TokenSet.company_id == company_id)
            .values(
                access_token=None,
                refresh_token=None,
                expires_at=None,
                tenants=None,
                updated_at=datetime.utcnow(),
            )
        )
        self.db.commit()
        logger.info(f"Cleared Xero tokens for company {company_id} ({reason})")

    def save_tenants(self, company_id: int, tenants: List[dict]) -> None:
        """Cache the most recently observed tenant list."""
        self.db.execute(
            update(TokenSet)
            .where(TokenSet.company_id == company_id, TokenSet.access_token.isnot(None))
            .values(tenants=tenants)
        )
        self.db.commit()

    # ------------------------------------------------------------------
    # Queries for maintenance jobs and metrics
    # ------------------------------------------------------------------

    def list_expiring(self, before: datetime) -> List[int]:
        """Company ids holding a refresh token whose access token expires before ``before``."""
        rows = self.db.execute(
            select(TokenSet.company_id).where(
                TokenSet.refresh_token.isnot(None),
                TokenSet.expires_at.isnot(None),
                TokenSet.expires_at < before,
            )
        )
        return [row[0] for row in rows]

    def count_configured(self) -> int:
        return self.db.scalar(select(func.count()).select_from(IntegrationConfig)) or 0

    def count_connected(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        return self.db.scalar(
            select(func.count()).select_from(TokenSet).where(
                TokenSet.access_token.isnot(None),
                TokenSet.expires_at > now,
            )
        ) or 0
