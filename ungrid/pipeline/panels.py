"""
Panel Orchestrator

Drives the "split into N panels, enhance each" workflow:

1. split()    - extract panels on a grid preset, or from detected boxes
                with fallback to the configured grid when detection is empty
2. start_all() - process every panel in index order
3. resume()   - process only panels not yet in success
4. retry_one() - process a single panel
5. cancel()   - cooperative cancellation (see pipeline.base)

Per panel: idle -> generating -> success | error. A single panel failure
never aborts the batch; a missing credential halts the whole run.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ungrid.core.config import settings
from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import MissingCredentialError, RunActiveError
from ungrid.core.logging import get_logger
from ungrid.engines.extraction.extractor import GeometricExtractor
from ungrid.engines.extraction.imaging import ImageInput
from ungrid.engines.extraction.layouts import AspectRatio, GridLayout, Resolution
from ungrid.engines.extraction.schemas import LayoutSpec
from ungrid.engines.generation.prompts import build_panel_prompt
from ungrid.engines.generation.schemas import GenerationRequest
from ungrid.engines.generation.service import ImageGenerationService, PanelDetectionService
from ungrid.modules.imagery.models import EnhancementParams, Panel, PanelStatus
from ungrid.pipeline.base import BaseOrchestrator, ItemOutcome
from ungrid.pipeline.cancellation import RunGuard

logger = get_logger(__name__)

DETECTION_EMPTY_WARNING = (
    "Auto-detect couldn't find any distinct panels. Falling back to default {layout} grid."
)


@dataclass
class SplitResult:
    panels: List[Panel]
    layout: GridLayout
    used_detection: bool = False
    fell_back: bool = False
    warnings: List[str] = field(default_factory=list)


class PanelOrchestrator(BaseOrchestrator):
    """Sequential state machine over the extracted panel table."""

    name = "panels"
    item_kind = "Panel"

    def __init__(
        self,
        service: ImageGenerationService,
        guard: RunGuard,
        credentials: CredentialStore,
        detector: Optional[PanelDetectionService] = None,
        extractor: Optional[GeometricExtractor] = None,
        fallback_layout: Optional[GridLayout] = None
    ):
        super().__init__(service, guard, credentials)
        self.detector = detector
        self.extractor = extractor or GeometricExtractor()
        self.fallback_layout = GridLayout(fallback_layout or settings.DETECTION_FALLBACK_LAYOUT)
        if not self.fallback_layout.is_grid:
            raise ValueError("Fallback layout must be a grid preset")
        self.panels: List[Panel] = []

    # -------------------------------------------------------------------------
    # Item table hooks
    # -------------------------------------------------------------------------

    def _items(self) -> List[Panel]:
        return self.panels

    def _is_in_flight(self, panel: Panel) -> bool:
        return panel.status is PanelStatus.GENERATING

    def _mark_in_flight(self, panel: Panel):
        panel.status = PanelStatus.GENERATING
        panel.error = None

    def _mark_success(self, panel: Panel, image: bytes):
        panel.generated_image = image
        panel.status = PanelStatus.SUCCESS

    def _mark_failed(self, panel: Panel, error: str):
        panel.status = PanelStatus.ERROR
        panel.error = error

    def _mark_discarded(self, panel: Panel):
        panel.status = PanelStatus.IDLE

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    async def split(
        self,
        image: ImageInput,
        layout: GridLayout,
        resolution: Resolution,
        aspect_ratio: AspectRatio
    ) -> SplitResult:
        """Replace the panel table with panels cut from ``image``."""
        if self.guard.is_active:
            raise RunActiveError("Cannot split while a run is active")
        layout = GridLayout(layout)

        if layout.is_grid:
            rows, cols = layout.shape
            panels = self.extractor.extract(
                image,
                LayoutSpec(rows=rows, cols=cols, resolution=resolution, aspect_ratio=aspect_ratio)
            )
            result = SplitResult(panels=panels, layout=layout)
        else:
            result = await self._split_detected(image, resolution, aspect_ratio)

        self.panels = result.panels
        for panel in self.panels:
            self._emit_item(panel)
        return result

    async def _split_detected(
        self,
        image: ImageInput,
        resolution: Resolution,
        aspect_ratio: AspectRatio
    ) -> SplitResult:
        if self.detector is None:
            raise ValueError("Irregular layout requires a panel detection service")
        if not self.credentials.has_usable():
            raise MissingCredentialError()

        with self.guard.hold(f"{self.name}:detect"):
            boxes = await self.detector.detect(image)

        panels = self.extractor.extract(
            image,
            LayoutSpec(resolution=resolution, aspect_ratio=aspect_ratio, boxes=boxes)
        )
        if panels:
            return SplitResult(panels=panels, layout=GridLayout.IRREGULAR, used_detection=True)

        rows, cols = self.fallback_layout.shape
        logger.warning(
            "detection_empty_fallback",
            detected_boxes=len(boxes),
            fallback_layout=self.fallback_layout.value
        )
        panels = self.extractor.extract(
            image,
            LayoutSpec(rows=rows, cols=cols, resolution=resolution, aspect_ratio=aspect_ratio)
        )
        return SplitResult(
            panels=panels,
            layout=self.fallback_layout,
            used_detection=True,
            fell_back=True,
            warnings=[DETECTION_EMPTY_WARNING.format(layout=self.fallback_layout.value)]
        )

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def _request(self, panel: Panel, params: EnhancementParams) -> GenerationRequest:
        return GenerationRequest(
            image=panel.original_image,
            prompt=build_panel_prompt(params.mode, params.resolution),
            resolution=params.resolution,
            aspect_ratio=params.aspect_ratio,
        )

    async def _process(self, panels: List[Panel], params: EnhancementParams, kind: str, reset: bool = False):
        async with self._run(kind) as token:
            if reset:
                for panel in panels:
                    panel.reset()
                    self._emit_item(panel)
            for panel in panels:
                outcome = await self._run_item(token, panel, self._request(panel, params))
                if outcome is ItemOutcome.CANCELLED:
                    break

    async def start_all(self, params: EnhancementParams, panels: Optional[List[Panel]] = None):
        """Reset every panel to idle and process all of them in index order.

        The reset happens only once the run owns the guard; a refused start
        leaves earlier results in place.
        """
        if self.guard.is_active:
            raise RunActiveError()
        if panels is not None:
            self.panels = list(panels)

        ordered = sorted(self.panels, key=lambda p: p.index)
        await self._process(ordered, params, kind="start_all", reset=True)

    async def resume(self, params: EnhancementParams) -> int:
        """Process panels not in success, in original order. Returns how many were queued."""
        remaining = [p for p in sorted(self.panels, key=lambda p: p.index) if p.status is not PanelStatus.SUCCESS]
        if not remaining:
            return 0
        await self._process(remaining, params, kind="resume")
        return len(remaining)

    async def retry_one(self, panel_id: str, params: EnhancementParams) -> Panel:
        panel = self.find(panel_id)
        await self._process([panel], params, kind="retry_one")
        return panel

    def reset(self):
        """Drop every panel (session reset); cancels an active run first."""
        self.cancel()
        self.panels = []
