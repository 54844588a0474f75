"""
Panels Endpoints - Split & Enhance

POST   /api/v1/panels/split       - Extract panels from an uploaded composite
POST   /api/v1/panels/start       - Enhance every panel (background run)
POST   /api/v1/panels/resume      - Enhance panels not yet in success
POST   /api/v1/panels/{id}/retry  - Enhance a single panel
POST   /api/v1/panels/cancel      - Cooperative cancellation
GET    /api/v1/panels             - Snapshot of the panel table
GET    /api/v1/panels/{id}/image  - Original or generated panel image
DELETE /api/v1/panels             - Drop every panel
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from pydantic import BaseModel

from ungrid.api.dependencies import get_session
from ungrid.api.v1.schemas import (
    CancelResponse,
    EnhancementRequest,
    RunAcceptedResponse,
    SnapshotResponse,
    read_image_upload,
    snapshot,
)
from ungrid.core.config import settings
from ungrid.core.exceptions import RunActiveError, ValidationError
from ungrid.core.logging import get_logger
from ungrid.engines.extraction.imaging import image_mime_type, load_image
from ungrid.engines.extraction.layouts import (
    AspectRatio,
    GridLayout,
    Resolution,
    detect_aspect_ratio,
    get_target_dimensions,
)
from ungrid.modules.imagery.models import PanelStatus
from ungrid.pipeline.session import Session

logger = get_logger(__name__)
router = APIRouter()

AUTO_ASPECT_RATIO = "auto"


# =============================================================================
# Response Schemas
# =============================================================================

class SplitResponse(BaseModel):
    """Result of extracting panels from a composite image."""
    layout: str
    resolution: str
    aspect_ratio: str
    panel_width: int
    panel_height: int
    used_detection: bool
    fell_back: bool
    warnings: List[str]
    panels: List[dict]


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/split", response_model=SplitResponse)
async def split_image(
    file: UploadFile = File(...),
    layout: GridLayout = Form(GridLayout.G3X3),
    resolution: Resolution = Form(Resolution(settings.DEFAULT_RESOLUTION)),
    aspect_ratio: str = Form(settings.DEFAULT_ASPECT_RATIO),
    session: Session = Depends(get_session)
):
    """
    Extract panels from an uploaded composite.

    Grid presets cut equal cells with a 2% inset; `irregular` asks the
    detection service for panel boxes and falls back to the default grid
    when none are found. `aspect_ratio=auto` picks 1:1 for near-square
    sources, 16:9 otherwise.
    """
    content = await read_image_upload(file)
    image = load_image(content)

    if aspect_ratio == AUTO_ASPECT_RATIO:
        ratio = detect_aspect_ratio(*image.size)
    else:
        try:
            ratio = AspectRatio(aspect_ratio)
        except ValueError:
            raise ValidationError(f"Unsupported aspect ratio: {aspect_ratio}")

    logger.info(
        "split_request_received",
        layout=layout.value,
        resolution=resolution.value,
        aspect_ratio=ratio.value,
        source_width=image.width,
        source_height=image.height
    )

    result = await session.panels.split(image, layout, resolution, ratio)
    width, height = get_target_dimensions(resolution, ratio)

    return SplitResponse(
        layout=result.layout.value,
        resolution=resolution.value,
        aspect_ratio=ratio.value,
        panel_width=width,
        panel_height=height,
        used_detection=result.used_detection,
        fell_back=result.fell_back,
        warnings=result.warnings,
        panels=[p.to_response_dict() for p in result.panels],
    )


@router.post("/start", response_model=RunAcceptedResponse, status_code=202)
async def start_all(
    request: Optional[EnhancementRequest] = None,
    session: Session = Depends(get_session)
):
    """Reset every panel and enhance them all in index order."""
    params = (request or EnhancementRequest()).to_params()
    if not session.panels.panels:
        raise ValidationError("No panels to process; split an image first")
    session.ensure_can_start()

    await session.launch(session.panels.start_all(params), name="panels:start_all")
    return RunAcceptedResponse(
        status="started",
        orchestrator="panels",
        message="Enhancing all panels",
        item_count=len(session.panels.panels)
    )


@router.post("/resume", response_model=RunAcceptedResponse, status_code=202)
async def resume(
    request: Optional[EnhancementRequest] = None,
    session: Session = Depends(get_session)
):
    """Enhance only panels that are not yet in success."""
    params = (request or EnhancementRequest()).to_params()
    remaining = [p for p in session.panels.panels if p.status is not PanelStatus.SUCCESS]
    if not remaining:
        return RunAcceptedResponse(status="noop", orchestrator="panels", message="Nothing to resume")
    session.ensure_can_start()

    await session.launch(session.panels.resume(params), name="panels:resume")
    return RunAcceptedResponse(
        status="started",
        orchestrator="panels",
        message="Resuming unfinished panels",
        item_count=len(remaining)
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel(session: Session = Depends(get_session)):
    cancelled = session.panels.cancel()
    return CancelResponse(cancelled=cancelled, run_state=session.panels.run_state.value)


@router.post("/{panel_id}/retry", response_model=RunAcceptedResponse, status_code=202)
async def retry_one(
    panel_id: str,
    request: Optional[EnhancementRequest] = None,
    session: Session = Depends(get_session)
):
    params = (request or EnhancementRequest()).to_params()
    session.panels.find(panel_id)
    session.ensure_can_start()

    await session.launch(session.panels.retry_one(panel_id, params), name="panels:retry_one")
    return RunAcceptedResponse(
        status="started",
        orchestrator="panels",
        message=f"Retrying panel {panel_id}",
        item_count=1
    )


@router.get("", response_model=SnapshotResponse)
async def list_panels(session: Session = Depends(get_session)):
    orchestrator = session.panels
    return snapshot(orchestrator, [p.to_response_dict() for p in orchestrator.panels])


@router.get("/{panel_id}/image")
async def get_panel_image(
    panel_id: str,
    variant: str = Query("generated", pattern="^(generated|original)$"),
    session: Session = Depends(get_session)
):
    """Return the generated image, or the extracted original with `variant=original`."""
    panel = session.panels.find(panel_id)
    data = panel.original_image if variant == "original" else panel.generated_image
    if data is None:
        raise ValidationError(f"Panel {panel_id} has no generated image yet", item_id=panel_id)
    return Response(content=data, media_type=image_mime_type(data))


@router.delete("", status_code=204)
async def clear_panels(session: Session = Depends(get_session)):
    if session.guard.is_active:
        raise RunActiveError("Panels cannot be cleared while a run is active")
    session.panels.reset()
    return Response(status_code=204)
