from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np

from .. import config
from ..errors import SegmentationError
from .classifier import ClassificationResult, GarmentType
from .codec import RasterBuffer

logger = logging.getLogger(__name__)

DECISION_FULL_IMAGE = "full-image"
DECISION_REGION_CROP = "region-crop"
DECISION_REGION_MASK = "region-mask"


class SegmentationMode(str, Enum):
    FULL_IMAGE = "full-image"
    REGION_CROP = "region-crop"
    REGION_MASK = "region-mask"


@dataclass
class RegionRect:
    x: int
    y: int
    width: int
    height: int


@dataclass
class SegmentationResult:
    """Garment buffer handed downstream plus how it was produced."""

    buffer: RasterBuffer
    decision: str
    success: bool = True
    region_rect: Optional[RegionRect] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision,
            "success": self.success,
            "region_rect": asdict(self.region_rect) if self.region_rect else None,
            "processed_dimensions": {"width": self.buffer.width, "height": self.buffer.height},
        }


def vertical_band(garment_type: GarmentType, height: int) -> Tuple[int, int]:
    """Rows [start, end) that belong to the garment type.

    Tops keep the upper 60%, bottoms the lower 60%; the bands overlap by 20%
    around the waist. Whole-outfit types keep every row.
    """
    if garment_type is GarmentType.TOP:
        return 0, max(1, math.floor(height * config.TOP_BAND_END))
    if garment_type is GarmentType.BOTTOM:
        return min(height - 1, math.floor(height * config.BOTTOM_BAND_START)), height
    return 0, height


class GarmentSegmenter:
    """Chooses between passing the garment through and a region fallback.

    The default policy always passes the full image through. Tops and bottoms
    are treated as single garments whatever the classifier says; its result is
    only recorded for diagnostics. The region modes exist for callers that
    know the garment photo shows more than the requested piece.
    """

    def segment(
        self,
        buffer: RasterBuffer,
        garment_type: Union[GarmentType, str],
        classification: Optional[ClassificationResult] = None,
        mode: Union[SegmentationMode, str] = SegmentationMode.FULL_IMAGE,
    ) -> SegmentationResult:
        try:
            garment_type = GarmentType.parse(garment_type)
            mode = SegmentationMode(mode)
        except ValueError as exc:
            raise SegmentationError(str(exc), stage="segment") from exc

        if classification is not None:
            logger.debug(
                "Garment %s classified %s (confidence %.2f, single=%s)",
                garment_type.value,
                classification.aspect_ratio_class,
                classification.confidence,
                classification.is_single_garment,
            )

        try:
            if mode is SegmentationMode.FULL_IMAGE or garment_type.is_whole_outfit:
                return self.full_image(buffer)
            if mode is SegmentationMode.REGION_CROP:
                return self.region_crop(buffer, garment_type)
            return self.region_mask(buffer, garment_type)
        except SegmentationError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise SegmentationError(f"Garment segmentation failed: {exc}", stage="segment") from exc

    @staticmethod
    def full_image(buffer: RasterBuffer) -> SegmentationResult:
        return SegmentationResult(buffer=buffer, decision=DECISION_FULL_IMAGE)

    @staticmethod
    def region_crop(buffer: RasterBuffer, garment_type: GarmentType) -> SegmentationResult:
        start, end = vertical_band(garment_type, buffer.height)
        rect = RegionRect(x=0, y=start, width=buffer.width, height=end - start)
        cropped = RasterBuffer(buffer.pixels[start:end, :, :])
        return SegmentationResult(buffer=cropped, decision=DECISION_REGION_CROP, region_rect=rect)

    @staticmethod
    def region_mask(buffer: RasterBuffer, garment_type: GarmentType) -> SegmentationResult:
        """Like ``region_crop`` but keeps the canvas size and clears alpha outside."""
        start, end = vertical_band(garment_type, buffer.height)
        alpha = np.zeros_like(buffer.alpha)
        alpha[start:end, :] = buffer.alpha[start:end, :]
        rect = RegionRect(x=0, y=start, width=buffer.width, height=end - start)
        return SegmentationResult(
            buffer=buffer.with_alpha(alpha), decision=DECISION_REGION_MASK, region_rect=rect
        )
