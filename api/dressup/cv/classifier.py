from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import numpy as np

from .. import config
from ..errors import ClassificationError
from .codec import RasterBuffer

logger = logging.getLogger(__name__)

LIKELY_TOP = "likelyTop"
LIKELY_BOTTOM = "likelyBottom"
LIKELY_FULL_BODY = "likelyFullBody"

ASPECT_MATCH_WEIGHT = 0.3
EDGE_MATCH_CAP = 0.7
EDGE_MATCH_SCALE = 2.0


class GarmentType(str, Enum):
    TOP = "top"
    BOTTOM = "bottom"
    FULL_BODY = "fullBody"
    COMPLETE_OUTFIT = "completeOutfit"

    @classmethod
    def parse(cls, value: Union["GarmentType", str]) -> "GarmentType":
        if isinstance(value, cls):
            return value
        key = str(value).replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(f"Unknown garment type: {value!r}")

    @property
    def is_whole_outfit(self) -> bool:
        return self in (GarmentType.FULL_BODY, GarmentType.COMPLETE_OUTFIT)


@dataclass
class EdgeDensity:
    top: float
    bottom: float


@dataclass
class ClassificationResult:
    declared_type: GarmentType
    aspect_ratio: float
    aspect_ratio_class: str
    edge_density: EdgeDensity
    confidence: float
    is_single_garment: bool
    detected_type: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["declared_type"] = self.declared_type.value
        data["aspect_ratio"] = round(self.aspect_ratio, 2)
        data["edge_density"] = {
            "top": round(self.edge_density.top, 3),
            "bottom": round(self.edge_density.bottom, 3),
        }
        return data


def aspect_ratio_class(width: int, height: int) -> str:
    """Tops tend to be photographed wide, bottoms tall."""
    ratio = width / height
    if ratio > config.ASPECT_TOP_MIN:
        return LIKELY_TOP
    if ratio < config.ASPECT_BOTTOM_MAX:
        return LIKELY_BOTTOM
    return LIKELY_FULL_BODY


def edge_density(buffer: RasterBuffer, threshold: Optional[float] = None) -> EdgeDensity:
    """Fraction of edge pixels in the top and bottom halves of the image.

    The gradient at an interior pixel combines the summed absolute RGB
    difference to its right neighbour (x) and its lower neighbour (y). Only
    pixels with both neighbours inside the image are counted, and rows above
    ``height // 2`` belong to the top half.
    """
    threshold = config.EDGE_GRADIENT_THRESHOLD if threshold is None else threshold
    height, width = buffer.height, buffer.width
    if height < 3 or width < 3:
        return EdgeDensity(0.0, 0.0)

    rgb = buffer.rgb.astype(np.int32)
    center = rgb[1:-1, 1:-1]
    grad_x = np.abs(center - rgb[1:-1, 2:]).sum(axis=2)
    grad_y = np.abs(center - rgb[2:, 1:-1]).sum(axis=2)
    edges = (grad_x * grad_x + grad_y * grad_y) > threshold * threshold

    rows = np.arange(1, height - 1)
    in_top = rows < height // 2
    interior_width = width - 2
    top_pixels = int(in_top.sum()) * interior_width
    bottom_pixels = int((~in_top).sum()) * interior_width
    top_edges = int(edges[in_top].sum())
    bottom_edges = int(edges[~in_top].sum())
    return EdgeDensity(
        top=top_edges / top_pixels if top_pixels else 0.0,
        bottom=bottom_edges / bottom_pixels if bottom_pixels else 0.0,
    )


def garment_confidence(declared: GarmentType, ratio_class: str, density: EdgeDensity) -> float:
    """Confidence that the image holds only the declared single garment."""
    if declared.is_whole_outfit:
        return 1.0
    if declared is GarmentType.TOP:
        expected_class, lead = LIKELY_TOP, density.top - density.bottom
    else:
        expected_class, lead = LIKELY_BOTTOM, density.bottom - density.top
    aspect_match = ASPECT_MATCH_WEIGHT if ratio_class == expected_class else 0.0
    edge_match = min(lead * EDGE_MATCH_SCALE, EDGE_MATCH_CAP) if lead > 0 else 0.0
    return min(1.0, aspect_match + edge_match)


class GarmentClassifier:
    """Heuristic single-garment detector (aspect ratio + edge density)."""

    def classify(
        self, buffer: RasterBuffer, declared: Union[GarmentType, str]
    ) -> ClassificationResult:
        declared = GarmentType.parse(declared)
        if declared.is_whole_outfit:
            return self._whole_outfit(buffer, declared)
        try:
            return self._classify(buffer, declared)
        except Exception as exc:  # pylint: disable=broad-except
            error = ClassificationError(f"Garment classification failed: {exc}", stage="classify")
            logger.warning("%s; reporting zero confidence.", error)
            return ClassificationResult(
                declared_type=declared,
                aspect_ratio=0.0,
                aspect_ratio_class=LIKELY_FULL_BODY,
                edge_density=EdgeDensity(0.0, 0.0),
                confidence=0.0,
                is_single_garment=False,
                error=error.message,
            )

    @staticmethod
    def _whole_outfit(buffer: RasterBuffer, declared: GarmentType) -> ClassificationResult:
        """Outfits are accepted as declared; no edge analysis runs."""
        return ClassificationResult(
            declared_type=declared,
            aspect_ratio=buffer.width / buffer.height,
            aspect_ratio_class=aspect_ratio_class(buffer.width, buffer.height),
            edge_density=EdgeDensity(0.0, 0.0),
            confidence=1.0,
            is_single_garment=True,
            detected_type=GarmentType.FULL_BODY.value,
        )

    @staticmethod
    def _classify(buffer: RasterBuffer, declared: GarmentType) -> ClassificationResult:
        ratio = buffer.width / buffer.height
        ratio_class = aspect_ratio_class(buffer.width, buffer.height)
        density = edge_density(buffer)

        confidence = garment_confidence(declared, ratio_class, density)
        detected = declared.value if confidence > config.SINGLE_GARMENT_CONFIDENCE else None
        return ClassificationResult(
            declared_type=declared,
            aspect_ratio=ratio,
            aspect_ratio_class=ratio_class,
            edge_density=density,
            confidence=confidence,
            is_single_garment=(
                confidence > config.SINGLE_GARMENT_CONFIDENCE and detected == declared.value
            ),
            detected_type=detected,
        )
