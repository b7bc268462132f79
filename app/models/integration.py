"""Ledger integration models: configuration, tokens and OAuth state."""

from sqlalchemy import String, Integer, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional

from .base import Base


class IntegrationConfig(Base):
    """Per-company Xero app credentials."""

    __tablename__ = "integration_configs"

    company_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    client_id: Mapped[str] = mapped_column(String(255))
    client_secret_encrypted: Mapped[str] = mapped_column(Text)
    callback_url: Mapped[str] = mapped_column(String(2048))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    token_set = relationship(
        "TokenSet", back_populates="config", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<IntegrationConfig(company_id={self.company_id}, client_id={self.client_id})>"


class TokenSet(Base):
    """Current OAuth tokens for a company.

    The row lives as long as the IntegrationConfig; a cleared token set has
    all three token columns set to NULL.
    """

    __tablename__ = "token_sets"

    company_id: Mapped[int] = mapped_column(
        ForeignKey("integration_configs.company_id", ondelete="CASCADE"), primary_key=True
    )
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Encrypted
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Encrypted
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    tenants: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # Last observed connections
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    config = relationship("IntegrationConfig", back_populates="token_set")

    def __repr__(self) -> str:
        return f"<TokenSet(company_id={self.company_id}, expires_at={self.expires_at})>"


class AuthState(Base):
    """One-time CSRF state issued with an authorization URL."""

    __tablename__ = "auth_states"

    state: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<AuthState(company_id={self.company_id}, created_at={self.created_at})>"
