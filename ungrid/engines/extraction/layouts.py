"""
Output size presets and grid layouts.

The target size of every extracted panel is a static lookup of
resolution tier x aspect ratio.
"""

from enum import Enum
from typing import Dict, Tuple


class Resolution(str, Enum):
    """Resolution tiers accepted by the generation service."""
    R1K = "1K"
    R2K = "2K"
    R4K = "4K"


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    ULTRAWIDE = "21:9"


class ProcessingMode(str, Enum):
    """Instruction template used when enhancing panels."""
    FIDELITY = "fidelity"   # faithful reproduction at higher resolution
    CREATIVE = "creative"   # may enhance lighting/texture, keeps composition


class GridLayout(str, Enum):
    G3X3 = "3x3"
    G2X2 = "2x2"
    G1X3 = "1x3"
    G1X4 = "1x4"
    G2X4 = "2x4"
    G5X5 = "5x5"
    IRREGULAR = "irregular"

    @property
    def is_grid(self) -> bool:
        return self is not GridLayout.IRREGULAR

    @property
    def shape(self) -> Tuple[int, int]:
        """(rows, cols) for grid presets."""
        if not self.is_grid:
            raise ValueError("Irregular layout has no fixed grid shape")
        rows, cols = self.value.split("x")
        return int(rows), int(cols)


TARGET_DIMENSIONS: Dict[Tuple[Resolution, AspectRatio], Tuple[int, int]] = {
    (Resolution.R1K, AspectRatio.LANDSCAPE): (1920, 1080),
    (Resolution.R2K, AspectRatio.LANDSCAPE): (2560, 1440),
    (Resolution.R4K, AspectRatio.LANDSCAPE): (3840, 2160),
    (Resolution.R1K, AspectRatio.PORTRAIT): (1080, 1920),
    (Resolution.R2K, AspectRatio.PORTRAIT): (1440, 2560),
    (Resolution.R4K, AspectRatio.PORTRAIT): (2160, 3840),
    (Resolution.R1K, AspectRatio.ULTRAWIDE): (2560, 1080),
    (Resolution.R2K, AspectRatio.ULTRAWIDE): (3440, 1440),
    (Resolution.R4K, AspectRatio.ULTRAWIDE): (5120, 2160),
    (Resolution.R1K, AspectRatio.SQUARE): (1024, 1024),
    (Resolution.R2K, AspectRatio.SQUARE): (2048, 2048),
    (Resolution.R4K, AspectRatio.SQUARE): (3072, 3072),
}


def get_target_dimensions(resolution: Resolution, aspect_ratio: AspectRatio) -> Tuple[int, int]:
    """Return (width, height) of extracted panels for a tier and ratio."""
    return TARGET_DIMENSIONS[(Resolution(resolution), AspectRatio(aspect_ratio))]


def detect_aspect_ratio(width: int, height: int) -> AspectRatio:
    """Pick 1:1 for near-square sources (within 0.1), otherwise 16:9."""
    ratio = width / height
    if abs(ratio - 1) < 0.1:
        return AspectRatio.SQUARE
    return AspectRatio.LANDSCAPE
