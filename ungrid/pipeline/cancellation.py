"""
Cooperative cancellation primitives.

CancellationToken is created per run and checked before every external
call and again after it resolves. RunGuard is the single "a run is
active" flag shared by every orchestrator of a session.
"""

from contextlib import contextmanager
from typing import Optional

from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import RunActiveError


class CancellationToken:
    """One-shot cancellation flag for a single run."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class RunGuard:
    """At most one active run per session.

    While held, the credential store is locked so the key stays fixed
    for the whole run.
    """

    def __init__(self, credentials: Optional[CredentialStore] = None):
        self.credentials = credentials
        self._owner: Optional[str] = None

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @property
    def is_active(self) -> bool:
        return self._owner is not None

    def acquire(self, owner: str):
        if self._owner is not None:
            raise RunActiveError(
                f"A '{self._owner}' run is already active",
                details={"active_run": self._owner}
            )
        self._owner = owner
        if self.credentials:
            self.credentials.lock()

    def release(self, owner: str):
        if self._owner != owner:
            return
        self._owner = None
        if self.credentials:
            self.credentials.unlock()

    @contextmanager
    def hold(self, owner: str):
        self.acquire(owner)
        try:
            yield
        finally:
            self.release(owner)
