"""
FastAPI Dependencies

Provides dependency injection for the in-process Session (singleton).
Tests override get_session to inject a session with a fake service.
"""

from typing import Optional

from ungrid.pipeline.session import Session


# =============================================================================
# Global Singleton - one working session per process
# =============================================================================

_session: Optional[Session] = None


def get_session() -> Session:
    """Returns the singleton session, created on first use."""
    global _session
    if _session is None:
        _session = Session()
    return _session


async def shutdown_session():
    """Cancel and await any background run on application shutdown."""
    if _session is None:
        return
    _session.cancel_all()
    await _session.wait_idle()
