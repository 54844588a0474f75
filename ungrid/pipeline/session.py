"""
Session - one user's working set

Owns the credential store, the shared RunGuard, the generation service and
the three orchestrators. Runs are launched as background asyncio tasks so
the HTTP layer can return immediately and clients poll snapshots.
"""

import asyncio
import functools
from typing import Awaitable, Optional, Set

from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import MissingCredentialError, RunActiveError, UngridBaseException
from ungrid.core.logging import get_logger
from ungrid.engines.extraction.extractor import GeometricExtractor
from ungrid.engines.generation.service import (
    GeminiImageService,
    ImageGenerationService,
    PanelDetectionService,
)
from ungrid.pipeline.cancellation import RunGuard
from ungrid.pipeline.chain import ChainExecutor
from ungrid.pipeline.jobs import JobQueueOrchestrator
from ungrid.pipeline.panels import PanelOrchestrator

logger = get_logger(__name__)


class Session:

    def __init__(
        self,
        credentials: Optional[CredentialStore] = None,
        service: Optional[ImageGenerationService] = None,
        detector: Optional[PanelDetectionService] = None,
        extractor: Optional[GeometricExtractor] = None
    ):
        self.credentials = credentials or CredentialStore.from_settings()
        self.guard = RunGuard(self.credentials)

        if service is None:
            service = GeminiImageService(self.credentials)
        if detector is None and isinstance(service, GeminiImageService):
            detector = service

        self.service = service
        self.panels = PanelOrchestrator(
            service, self.guard, self.credentials,
            detector=detector,
            extractor=extractor or GeometricExtractor()
        )
        self.jobs = JobQueueOrchestrator(service, self.guard, self.credentials)
        self.chain = ChainExecutor(service, self.guard, self.credentials)

        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_run(self) -> Optional[str]:
        return self.guard.owner

    def ensure_can_start(self):
        """Fail fast before scheduling a background run."""
        if self.guard.is_active:
            raise RunActiveError(
                f"A '{self.guard.owner}' run is already active",
                details={"active_run": self.guard.owner}
            )
        if not self.credentials.has_usable():
            raise MissingCredentialError()

    async def launch(self, coro: Awaitable, name: str) -> asyncio.Task:
        """Start ``coro`` in the background and return once it has begun.

        A run refused on its first step (guard taken by a concurrent start,
        missing credential, unknown item) raises here so the caller can
        report it. Later failures are logged, never lost.
        """
        task = asyncio.ensure_future(coro)
        # One loop turn: by now the run has either acquired the guard or failed
        await asyncio.sleep(0)
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()

        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._report, name))
        return task

    def _report(self, name: str, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled() or task.exception() is None:
            return

        error = task.exception()
        if isinstance(error, UngridBaseException):
            logger.warning(
                "background_run_stopped",
                run=name,
                error=error.message,
                error_type=type(error).__name__
            )
        else:
            logger.error(
                "background_run_crashed",
                run=name,
                error=str(error),
                error_type=type(error).__name__,
                exc_info=error
            )

    async def wait_idle(self):
        """Await every launched run (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> bool:
        cancelled = [o.cancel() for o in (self.panels, self.jobs, self.chain)]
        return any(cancelled)

    def reset(self):
        """Discard every panel, job and chain step."""
        self.panels.reset()
        self.jobs.reset()
        self.chain.reset()
        logger.info("session_reset")
