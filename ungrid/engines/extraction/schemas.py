from pydantic import BaseModel, Field
from typing import List, Optional

from ungrid.engines.extraction.layouts import AspectRatio, Resolution


class BoundingBox(BaseModel):
    """Detected panel region in the 0-1000 normalized coordinate space."""
    ymin: int = Field(ge=0, le=1000)
    xmin: int = Field(ge=0, le=1000)
    ymax: int = Field(ge=0, le=1000)
    xmax: int = Field(ge=0, le=1000)


class DetectionResponse(BaseModel):
    """JSON payload returned by the detection model."""
    panels: List[BoundingBox] = Field(default_factory=list)


class LayoutSpec(BaseModel):
    """Parameters for one extraction.

    Grid mode uses ``rows``/``cols``; box mode is selected by passing
    ``boxes`` (an empty list is valid and yields no panels).
    """
    rows: int = Field(default=3, ge=1, le=10)
    cols: int = Field(default=3, ge=1, le=10)
    resolution: Resolution = Resolution.R2K
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    boxes: Optional[List[BoundingBox]] = None

    @property
    def is_box_mode(self) -> bool:
        return self.boxes is not None
