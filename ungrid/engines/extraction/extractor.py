"""
Geometric Panel Extractor

Cuts one composite image into panels, either on a fixed grid or from
bounding boxes in the 0-1000 normalized space, and resamples every
panel to the fixed target size of the chosen resolution tier and
aspect ratio. Pure computation: no I/O, no external calls.
"""

from typing import List, Optional, Sequence

from PIL import Image

from ungrid.core.config import settings
from ungrid.core.logging import get_logger
from ungrid.engines.extraction.imaging import ImageInput, load_image, to_png_bytes
from ungrid.engines.extraction.layouts import get_target_dimensions
from ungrid.engines.extraction.schemas import BoundingBox, LayoutSpec
from ungrid.modules.imagery.models import Panel, SourceRegion

logger = get_logger(__name__)

NORMALIZED_SPACE = 1000


class GeometricExtractor:
    """Turns one source image into an ordered list of idle panels."""

    def __init__(self, margin_ratio: Optional[float] = None):
        self.margin_ratio = settings.GRID_MARGIN_RATIO if margin_ratio is None else margin_ratio

    def extract(self, image: ImageInput, layout: LayoutSpec) -> List[Panel]:
        source = load_image(image)
        width, height = source.size

        if layout.is_box_mode:
            regions = self.box_regions(width, height, layout.boxes)
        else:
            regions = self.grid_regions(width, height, layout.rows, layout.cols)

        target = get_target_dimensions(layout.resolution, layout.aspect_ratio)
        panels = [
            Panel(
                index=index,
                source_region=region,
                original_image=to_png_bytes(self._resample(source, region, target)),
            )
            for index, region in enumerate(regions)
        ]

        logger.info(
            "panels_extracted",
            mode="boxes" if layout.is_box_mode else "grid",
            source_size=(width, height),
            target_size=target,
            panel_count=len(panels)
        )
        return panels

    def grid_regions(self, width: int, height: int, rows: int, cols: int) -> List[SourceRegion]:
        """Row-major cells, each inset by the margin ratio on every side."""
        cell_width = width / cols
        cell_height = height / rows
        margin_x = cell_width * self.margin_ratio
        margin_y = cell_height * self.margin_ratio

        regions = []
        for row in range(rows):
            for col in range(cols):
                regions.append(SourceRegion(
                    x=col * cell_width + margin_x,
                    y=row * cell_height + margin_y,
                    width=cell_width - margin_x * 2,
                    height=cell_height - margin_y * 2,
                ))
        return regions

    def box_regions(
        self,
        width: int,
        height: int,
        boxes: Sequence[BoundingBox]
    ) -> List[SourceRegion]:
        """Absolute rectangles for boxes, degenerate boxes dropped, input order kept."""
        regions = []
        for box in boxes:
            x = box.xmin / NORMALIZED_SPACE * width
            y = box.ymin / NORMALIZED_SPACE * height
            w = (box.xmax - box.xmin) / NORMALIZED_SPACE * width
            h = (box.ymax - box.ymin) / NORMALIZED_SPACE * height

            if w <= 0 or h <= 0:
                logger.debug("degenerate_box_skipped", box=box.model_dump())
                continue

            regions.append(SourceRegion(x=x, y=y, width=w, height=h))
        return regions

    @staticmethod
    def _resample(source: Image.Image, region: SourceRegion, target: tuple) -> Image.Image:
        box = (region.x, region.y, region.x + region.width, region.y + region.height)
        return source.resize(target, Image.Resampling.LANCZOS, box=box)
