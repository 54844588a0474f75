from pydantic import BaseModel, Field
from typing import Optional

from ungrid.engines.extraction.layouts import AspectRatio, Resolution


class GenerationRequest(BaseModel):
    """One call to the image generation service."""
    image: bytes = Field(..., repr=False)
    prompt: str
    resolution: Resolution = Resolution.R2K
    aspect_ratio: Optional[AspectRatio] = None  # None keeps the input's ratio
    reference_image: Optional[bytes] = Field(default=None, repr=False)
