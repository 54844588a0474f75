"""
Credential Store

Holds the user-supplied API key for the generation service. A key set
explicitly wins over the GEMINI_API_KEY environment setting. The store is
locked while a run is active so the key cannot change mid-run.
"""

from typing import Optional

from ungrid.core.config import settings
from ungrid.core.exceptions import RunActiveError, ValidationError
from ungrid.core.logging import get_logger

logger = get_logger(__name__)


class CredentialStore:
    """In-memory credential provider with get/set/has_usable capabilities."""

    def __init__(self, fallback_key: Optional[str] = None):
        self._key: Optional[str] = None
        self._fallback_key = fallback_key
        self._locked = False

    @classmethod
    def from_settings(cls) -> "CredentialStore":
        return cls(fallback_key=settings.GEMINI_API_KEY)

    def get(self) -> Optional[str]:
        """Return the active key, explicit key first, then the env fallback."""
        return self._key or self._fallback_key or None

    def set(self, key: str) -> None:
        if self._locked:
            raise RunActiveError("Credentials cannot change while a run is active")
        key = (key or "").strip()
        if not key:
            raise ValidationError("API key must not be empty")
        self._key = key
        logger.info("credential_updated", source="manual")

    def clear(self) -> None:
        if self._locked:
            raise RunActiveError("Credentials cannot change while a run is active")
        self._key = None

    def has_usable(self) -> bool:
        return bool(self.get())

    @property
    def source(self) -> Optional[str]:
        if self._key:
            return "manual"
        if self._fallback_key:
            return "environment"
        return None

    def lock(self) -> None:
        self._locked = True

    def unlock(self) -> None:
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked
