"""
Work Item Models with Status Tracking

Panels, jobs and chain steps as held in memory by the orchestrators:
- Identity fields (id, index, inputs) are frozen once created
- Only status and result fields mutate
- Nothing is persisted; a session reset discards everything
"""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from ungrid.engines.extraction.layouts import AspectRatio, ProcessingMode, Resolution


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PanelStatus(str, Enum):
    """Panel status states."""
    IDLE = "idle"
    GENERATING = "generating"
    SUCCESS = "success"
    ERROR = "error"


class JobStatus(str, Enum):
    """Composed job status states."""
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


class StepStatus(str, Enum):
    """Chain step status states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class RunState(str, Enum):
    """Orchestrator run state."""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"  # token set, waiting for the in-flight call to resolve


class FixKind(str, Enum):
    """Instruction template for a composed job."""
    RESTORE_DETAIL = "restore-detail"
    RESTORE_LINEWORK = "restore-linework"


class EnhancementParams(BaseModel):
    """Parameters forwarded to the generation service for panels and chains."""
    resolution: Resolution = Resolution.R2K
    aspect_ratio: Optional[AspectRatio] = AspectRatio.LANDSCAPE
    mode: ProcessingMode = ProcessingMode.FIDELITY


class SourceRegion(BaseModel):
    """Absolute pixel rectangle of the source image a panel was cut from."""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float


class Panel(BaseModel):
    """One sub-image extracted from a composite source image."""

    id: str = Field(default_factory=_new_id, frozen=True)
    index: int = Field(frozen=True)
    source_region: SourceRegion = Field(frozen=True)
    original_image: bytes = Field(frozen=True, repr=False)

    generated_image: Optional[bytes] = Field(default=None, repr=False)
    status: PanelStatus = PanelStatus.IDLE
    error: Optional[str] = None

    def reset(self):
        """Back to idle with no result."""
        self.status = PanelStatus.IDLE
        self.generated_image = None
        self.error = None

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "status": self.status.value,
            "source_region": self.source_region.model_dump(),
            "has_generated_image": self.generated_image is not None,
            "error": self.error,
        }


class Job(BaseModel):
    """A user-composed request: target image + reference image + instruction."""

    id: str = Field(default_factory=_new_id, frozen=True)
    target_image: bytes = Field(frozen=True, repr=False)
    reference_image: bytes = Field(frozen=True, repr=False)
    fix_kind: FixKind = Field(frozen=True)
    context_text: str = Field(default="", frozen=True)
    created_at: datetime = Field(default_factory=_utcnow, frozen=True)

    status: JobStatus = JobStatus.IDLE
    result: Optional[bytes] = Field(default=None, repr=False)
    error: Optional[str] = None

    def reset(self):
        self.status = JobStatus.IDLE
        self.result = None
        self.error = None

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fix_kind": self.fix_kind.value,
            "context_text": self.context_text,
            "status": self.status.value,
            "has_result": self.result is not None,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }


class ChainStep(BaseModel):
    """One stage in an ordered sequence of edits."""

    id: str = Field(default_factory=_new_id, frozen=True)
    instruction: str = Field(frozen=True, min_length=1)

    status: StepStatus = StepStatus.PENDING
    result_image: Optional[bytes] = Field(default=None, repr=False)
    error: Optional[str] = None

    def reset(self):
        self.status = StepStatus.PENDING
        self.result_image = None
        self.error = None

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instruction": self.instruction,
            "status": self.status.value,
            "has_result": self.result_image is not None,
            "error": self.error,
        }
