"""
Chain Executor

Runs an ordered list of edit instructions where each step's output is the
next step's input:

    source -> step 1 -> step 2 -> ... -> step n

An optional reference image is blended into every step and stays fixed for
the whole run. The first failing step halts the chain; later steps stay
pending and the service is never called for them.
"""

from typing import List, Optional

from ungrid.core.config import settings
from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import RunActiveError, ValidationError
from ungrid.core.logging import get_logger
from ungrid.engines.extraction.imaging import ImageInput, normalize_png
from ungrid.engines.extraction.layouts import Resolution
from ungrid.engines.generation.prompts import build_chain_prompt
from ungrid.engines.generation.schemas import GenerationRequest
from ungrid.engines.generation.service import ImageGenerationService
from ungrid.modules.imagery.models import ChainStep, StepStatus
from ungrid.pipeline.base import BaseOrchestrator, ItemOutcome
from ungrid.pipeline.cancellation import RunGuard

logger = get_logger(__name__)


class ChainExecutor(BaseOrchestrator):
    """Sequential, halting pipeline of chain steps."""

    name = "chain"
    item_kind = "ChainStep"

    def __init__(
        self,
        service: ImageGenerationService,
        guard: RunGuard,
        credentials: CredentialStore
    ):
        super().__init__(service, guard, credentials)
        self.source_image: Optional[bytes] = None
        self.reference_image: Optional[bytes] = None
        self.steps: List[ChainStep] = []

    # -------------------------------------------------------------------------
    # Item table hooks
    # -------------------------------------------------------------------------

    def _items(self) -> List[ChainStep]:
        return self.steps

    def _is_in_flight(self, step: ChainStep) -> bool:
        return step.status is StepStatus.PROCESSING

    def _mark_in_flight(self, step: ChainStep):
        step.status = StepStatus.PROCESSING
        step.error = None

    def _mark_success(self, step: ChainStep, image: bytes):
        step.result_image = image
        step.status = StepStatus.COMPLETED

    def _mark_failed(self, step: ChainStep, error: str):
        step.status = StepStatus.ERROR
        step.error = error

    def _mark_discarded(self, step: ChainStep):
        step.status = StepStatus.PENDING

    # -------------------------------------------------------------------------
    # Chain editing
    # -------------------------------------------------------------------------

    def _ensure_idle(self, action: str):
        if self.guard.is_active:
            raise RunActiveError(f"Cannot {action} while a run is active")

    def set_source(self, image: ImageInput):
        self._ensure_idle("change the source image")
        self.source_image = normalize_png(image)

    def set_reference(self, image: Optional[ImageInput]):
        self._ensure_idle("change the reference image")
        self.reference_image = normalize_png(image) if image is not None else None

    def add_step(self, instruction: str) -> ChainStep:
        self._ensure_idle("add a step")
        instruction = (instruction or "").strip()
        if not instruction:
            raise ValidationError("Step instruction must not be empty")
        step = ChainStep(instruction=instruction)
        self.steps.append(step)
        self._emit_item(step)
        return step

    def remove_step(self, step_id: str) -> ChainStep:
        self._ensure_idle("remove a step")
        step = self.find(step_id)
        self.steps.remove(step)
        return step

    def clear(self):
        self._ensure_idle("clear the chain")
        self.source_image = None
        self.reference_image = None
        self.steps = []

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, resolution: Optional[Resolution] = None) -> List[ChainStep]:
        """Run every step in order, feeding each result into the next step."""
        self._ensure_idle("execute the chain")
        if self.source_image is None:
            raise ValidationError("A source image is required to execute the chain")

        resolution = Resolution(resolution or settings.DEFAULT_RESOLUTION)
        steps = list(self.steps)
        if not steps:
            return steps

        async with self._run("execute") as token:
            for step in steps:
                step.reset()
                self._emit_item(step)

            # Resolved once; every step sees the same reference
            reference = self.reference_image
            working = self.source_image

            for position, step in enumerate(steps):
                request = GenerationRequest(
                    image=working,
                    reference_image=reference,
                    prompt=build_chain_prompt(step.instruction, reference is not None),
                    resolution=resolution,
                )
                outcome = await self._run_item(token, step, request)
                if outcome is not ItemOutcome.SUCCESS:
                    logger.info(
                        "chain_halted",
                        step_position=position,
                        outcome=outcome.value,
                        remaining=len(steps) - position - 1
                    )
                    break
                working = step.result_image

        return steps

    def reset(self):
        self.cancel()
        self.source_image = None
        self.reference_image = None
        self.steps = []
