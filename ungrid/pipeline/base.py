"""
Shared Orchestrator Machinery

Every orchestrator (panels, jobs, chain) runs its items strictly one at a
time and follows the same two-checkpoint discipline around the external
call:

1. Before the call: stop if the run token was cancelled.
2. After the call resolves (success or failure): if the token was
   cancelled meanwhile, the result is discarded and the item is reset
   instead of being committed.

State transitions are pushed to subscribers so a presentation layer can
follow progress without polling the item tables.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import ItemNotFoundError, MissingCredentialError
from ungrid.core.logging import get_logger, LogContext
from ungrid.core.metrics import record_run_finished, record_run_started, track_item_latency
from ungrid.engines.generation.schemas import GenerationRequest
from ungrid.engines.generation.service import ImageGenerationService
from ungrid.modules.imagery.models import RunState
from ungrid.pipeline.cancellation import CancellationToken, RunGuard

logger = get_logger(__name__)


class ItemOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StateTransition:
    """One status change; ``item_id`` is None for run-level transitions."""
    orchestrator: str
    item_id: Optional[str]
    status: str
    run_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[StateTransition], None]


class BaseOrchestrator(ABC):
    """Sequential state machine over one table of work items."""

    name = "base"
    item_kind = "Item"

    def __init__(
        self,
        service: ImageGenerationService,
        guard: RunGuard,
        credentials: CredentialStore
    ):
        self.service = service
        self.guard = guard
        self.credentials = credentials

        self.run_state = RunState.IDLE
        self.run_id: Optional[str] = None
        self.last_error: Optional[str] = None
        self._token: Optional[CancellationToken] = None
        self._call: Optional[asyncio.Future] = None
        self._listeners: List[Listener] = []

    # -------------------------------------------------------------------------
    # Item table hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def _items(self) -> List[Any]:
        ...

    @abstractmethod
    def _is_in_flight(self, item) -> bool:
        ...

    @abstractmethod
    def _mark_in_flight(self, item):
        ...

    @abstractmethod
    def _mark_success(self, item, image: bytes):
        ...

    @abstractmethod
    def _mark_failed(self, item, error: str):
        ...

    @abstractmethod
    def _mark_discarded(self, item):
        """Undo an in-flight mark without recording success or failure."""
        ...

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a transition listener; returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _emit(self, item_id: Optional[str], status: str, error: Optional[str] = None):
        transition = StateTransition(
            orchestrator=self.name,
            item_id=item_id,
            status=status,
            run_id=self.run_id,
            error=error
        )
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception as e:
                logger.warning("listener_failed", error=str(e), error_type=type(e).__name__)

    def _emit_item(self, item):
        self._emit(item.id, item.status.value, getattr(item, "error", None))

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.run_state is not RunState.IDLE

    def find(self, item_id: str):
        for item in self._items():
            if item.id == item_id:
                return item
        raise ItemNotFoundError(self.item_kind, item_id)

    @asynccontextmanager
    async def _run(self, kind: str):
        """Hold the session guard for one run and yield its cancellation token."""
        if not self.credentials.has_usable():
            raise MissingCredentialError()
        self.guard.acquire(self.name)

        token = CancellationToken()
        self._token = token
        self.run_id = str(uuid.uuid4())
        self.run_state = RunState.RUNNING
        self.last_error = None
        record_run_started()
        outcome = "completed"

        with LogContext(run_id=self.run_id):
            logger.info("run_started", orchestrator=self.name, kind=kind)
            self._emit(None, self.run_state.value)
            try:
                yield token
                if token.cancelled:
                    outcome = "cancelled"
            except MissingCredentialError as e:
                outcome = "halted"
                self.last_error = e.message
                logger.warning("run_halted_missing_credential", orchestrator=self.name)
                raise
            except Exception as e:
                outcome = "failed"
                self.last_error = str(e)
                logger.error("run_failed", orchestrator=self.name, error=str(e), error_type=type(e).__name__)
                raise
            finally:
                self._token = None
                self.run_state = RunState.IDLE
                self.guard.release(self.name)
                record_run_finished(self.name, outcome)
                logger.info("run_finished", orchestrator=self.name, kind=kind, outcome=outcome)
                self._emit(None, self.run_state.value, self.last_error)

    def cancel(self) -> bool:
        """Signal cooperative cancellation of the active run.

        Items currently in flight are reset right away and the pending
        external call is abandoned, so the guard is released without
        waiting for it. Returns False when idle.
        """
        if self._token is None or self._token.cancelled:
            return False

        self._token.cancel()
        self.run_state = RunState.CANCELLING
        for item in self._items():
            if self._is_in_flight(item):
                self._mark_discarded(item)
                self._emit_item(item)
        if self._call is not None and not self._call.done():
            self._call.cancel()

        logger.info("run_cancel_requested", orchestrator=self.name, run_id=self.run_id)
        self._emit(None, self.run_state.value)
        return True

    # -------------------------------------------------------------------------
    # Per-item execution
    # -------------------------------------------------------------------------

    async def _run_item(self, token: CancellationToken, item, request: GenerationRequest) -> ItemOutcome:
        """Process one item between the two cancellation checkpoints.

        MissingCredentialError propagates (halting the run) after the item is
        reset; every other failure is recorded on the item.
        """
        if token.cancelled:
            return ItemOutcome.CANCELLED

        with LogContext(item_id=item.id), track_item_latency(self.name) as latency:
            self._mark_in_flight(item)
            self._emit_item(item)
            logger.info("item_started", orchestrator=self.name)

            self._call = asyncio.ensure_future(self.service.generate(request))
            try:
                image = await self._call
            except asyncio.CancelledError:
                if not token.cancelled:
                    raise
                return self._discard(item, latency)
            except MissingCredentialError:
                self._mark_discarded(item)
                self._emit_item(item)
                latency["value"] = "halted"
                if token.cancelled:
                    return ItemOutcome.CANCELLED
                raise
            except Exception as e:
                if token.cancelled:
                    return self._discard(item, latency)
                self._mark_failed(item, str(e))
                self._emit_item(item)
                latency["value"] = "error"
                logger.warning("item_failed", orchestrator=self.name, error=str(e), error_type=type(e).__name__)
                return ItemOutcome.FAILED
            finally:
                self._call = None

            if token.cancelled:
                return self._discard(item, latency)

            self._mark_success(item, image)
            self._emit_item(item)
            logger.info("item_completed", orchestrator=self.name, output_size=len(image))
            return ItemOutcome.SUCCESS

    def _discard(self, item, latency: Dict[str, str]) -> ItemOutcome:
        self._mark_discarded(item)
        self._emit_item(item)
        latency["value"] = "discarded"
        logger.info("late_result_discarded", orchestrator=self.name)
        return ItemOutcome.CANCELLED
