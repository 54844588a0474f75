"""
Shared Request/Response Schemas for the v1 API
"""

from typing import Any, Dict, List, Optional

from fastapi import UploadFile
from pydantic import BaseModel, Field

from ungrid.core.config import settings
from ungrid.core.exceptions import ValidationError
from ungrid.engines.extraction.layouts import AspectRatio, ProcessingMode, Resolution
from ungrid.modules.imagery.models import EnhancementParams

MAX_IMAGE_SIZE_MB = settings.MAX_IMAGE_SIZE_BYTES / (1024 * 1024)


class EnhancementRequest(BaseModel):
    """Per-run generation parameters for panels."""
    resolution: Resolution = Field(default_factory=lambda: Resolution(settings.DEFAULT_RESOLUTION))
    aspect_ratio: AspectRatio = Field(default_factory=lambda: AspectRatio(settings.DEFAULT_ASPECT_RATIO))
    mode: ProcessingMode = Field(default_factory=lambda: ProcessingMode(settings.DEFAULT_MODE))

    def to_params(self) -> EnhancementParams:
        return EnhancementParams(resolution=self.resolution, aspect_ratio=self.aspect_ratio, mode=self.mode)


class ResolutionRequest(BaseModel):
    """Per-run parameters for jobs and chains (the output keeps the input's ratio)."""
    resolution: Resolution = Field(default_factory=lambda: Resolution(settings.DEFAULT_RESOLUTION))


class RunAcceptedResponse(BaseModel):
    """Returned when a background run was scheduled (or skipped as a no-op)."""
    status: str
    orchestrator: str
    message: str
    item_count: int = 0


class CancelResponse(BaseModel):
    cancelled: bool
    run_state: str


class SnapshotResponse(BaseModel):
    """Current run state plus the item table of one orchestrator."""
    run_state: str
    run_id: Optional[str] = None
    active_run: Optional[str] = None
    last_error: Optional[str] = None
    items: List[Dict[str, Any]]


async def read_image_upload(file: UploadFile) -> bytes:
    """Read an uploaded image, enforcing the configured size limit."""
    content = await file.read()
    if not content:
        raise ValidationError("Uploaded file is empty")
    if len(content) > settings.MAX_IMAGE_SIZE_BYTES:
        actual_size_mb = len(content) / (1024 * 1024)
        raise ValidationError(
            f"Image size ({actual_size_mb:.2f}MB) exceeds maximum allowed size ({MAX_IMAGE_SIZE_MB:.0f}MB)."
        )
    return content


def snapshot(orchestrator, items: List[Dict[str, Any]]) -> SnapshotResponse:
    return SnapshotResponse(
        run_state=orchestrator.run_state.value,
        run_id=orchestrator.run_id,
        active_run=orchestrator.guard.owner,
        last_error=orchestrator.last_error,
        items=items,
    )
