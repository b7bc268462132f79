"""Database models."""

from .base import Base
from .integration import IntegrationConfig, TokenSet, AuthState

__all__ = [
    "Base",
    "IntegrationConfig",
    "TokenSet",
    "AuthState",
]
