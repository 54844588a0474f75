"""
Job Queue Orchestrator

User-composed jobs (target image + reference image + fix instruction) held
in a bounded queue and processed one at a time:

    idle -> processing -> success | error

A run covers the non-success jobs unless forced. When every job already
succeeded, an unforced run is refused until the caller confirms.
"""

from typing import List, Optional

from ungrid.core.config import settings
from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import QueueFullError, RerunConfirmationRequired, RunActiveError
from ungrid.core.logging import get_logger
from ungrid.engines.extraction.imaging import ImageInput, normalize_png
from ungrid.engines.extraction.layouts import Resolution
from ungrid.engines.generation.prompts import build_job_prompt
from ungrid.engines.generation.schemas import GenerationRequest
from ungrid.engines.generation.service import ImageGenerationService
from ungrid.modules.imagery.models import FixKind, Job, JobStatus
from ungrid.pipeline.base import BaseOrchestrator, ItemOutcome
from ungrid.pipeline.cancellation import RunGuard

logger = get_logger(__name__)


class JobQueueOrchestrator(BaseOrchestrator):
    """Bounded FIFO of composed jobs."""

    name = "jobs"
    item_kind = "Job"

    def __init__(
        self,
        service: ImageGenerationService,
        guard: RunGuard,
        credentials: CredentialStore,
        capacity: Optional[int] = None
    ):
        super().__init__(service, guard, credentials)
        self.capacity = capacity or settings.JOB_QUEUE_CAPACITY
        self.jobs: List[Job] = []

    # -------------------------------------------------------------------------
    # Item table hooks
    # -------------------------------------------------------------------------

    def _items(self) -> List[Job]:
        return self.jobs

    def _is_in_flight(self, job: Job) -> bool:
        return job.status is JobStatus.PROCESSING

    def _mark_in_flight(self, job: Job):
        job.status = JobStatus.PROCESSING
        job.error = None

    def _mark_success(self, job: Job, image: bytes):
        job.result = image
        job.status = JobStatus.SUCCESS

    def _mark_failed(self, job: Job, error: str):
        job.status = JobStatus.ERROR
        job.error = error

    def _mark_discarded(self, job: Job):
        job.status = JobStatus.IDLE

    # -------------------------------------------------------------------------
    # Queue editing
    # -------------------------------------------------------------------------

    @property
    def is_full(self) -> bool:
        return len(self.jobs) >= self.capacity

    def add_job(
        self,
        target_image: ImageInput,
        reference_image: ImageInput,
        fix_kind: FixKind,
        context_text: str = ""
    ) -> Job:
        if self.is_full:
            raise QueueFullError(self.capacity)

        job = Job(
            target_image=normalize_png(target_image),
            reference_image=normalize_png(reference_image),
            fix_kind=FixKind(fix_kind),
            context_text=(context_text or "").strip(),
        )
        self.jobs.append(job)
        logger.info("job_added", job_id=job.id, fix_kind=job.fix_kind.value, queue_size=len(self.jobs))
        self._emit_item(job)
        return job

    def remove_job(self, job_id: str) -> Job:
        if self.guard.is_active:
            raise RunActiveError("Jobs cannot be removed while a run is active")
        job = self.find(job_id)
        self.jobs.remove(job)
        logger.info("job_removed", job_id=job_id, queue_size=len(self.jobs))
        return job

    def clear(self):
        if self.guard.is_active:
            raise RunActiveError("The queue cannot be cleared while a run is active")
        self.jobs = []

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def _request(self, job: Job, resolution: Resolution) -> GenerationRequest:
        return GenerationRequest(
            image=job.target_image,
            reference_image=job.reference_image,
            prompt=build_job_prompt(job.fix_kind, job.context_text),
            resolution=resolution,
        )

    def select(self, force: bool = False) -> List[Job]:
        """Jobs a run would process.

        Raises RerunConfirmationRequired when every job already succeeded
        and ``force`` is not set.
        """
        if not self.jobs:
            return []
        if force:
            return list(self.jobs)
        pending = [j for j in self.jobs if j.status is not JobStatus.SUCCESS]
        if not pending:
            raise RerunConfirmationRequired()
        return pending

    async def _process(self, jobs: List[Job], resolution: Resolution, kind: str):
        async with self._run(kind) as token:
            for job in jobs:
                job.reset()
                self._emit_item(job)

            for job in jobs:
                outcome = await self._run_item(token, job, self._request(job, resolution))
                if outcome is ItemOutcome.CANCELLED:
                    break

    async def run(self, force: bool = False, resolution: Optional[Resolution] = None) -> int:
        """Process the queue in insertion order. Returns how many jobs were selected."""
        if self.guard.is_active:
            raise RunActiveError()
        selected = self.select(force)
        if not selected:
            return 0
        await self._process(selected, Resolution(resolution or settings.DEFAULT_RESOLUTION), kind="run")
        return len(selected)

    async def rerun_one(self, job_id: str, resolution: Optional[Resolution] = None) -> Job:
        job = self.find(job_id)
        await self._process([job], Resolution(resolution or settings.DEFAULT_RESOLUTION), kind="rerun_one")
        return job

    def reset(self):
        self.cancel()
        self.jobs = []
