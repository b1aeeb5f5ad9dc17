from __future__ import annotations

import numpy as np
import pytest

from api.dressup.cv import classifier
from api.dressup.cv.classifier import (
    LIKELY_BOTTOM,
    LIKELY_FULL_BODY,
    LIKELY_TOP,
    EdgeDensity,
    GarmentClassifier,
    GarmentType,
    aspect_ratio_class,
    edge_density,
    garment_confidence,
)
from api.dressup.cv.codec import RasterBuffer


def solid(width: int, height: int, value: int = 128) -> RasterBuffer:
    pixels = np.full((height, width, 4), value, dtype=np.uint8)
    pixels[..., 3] = 255
    return RasterBuffer(pixels)


def striped_top(width: int = 120, height: int = 60) -> RasterBuffer:
    """Vertical black/white stripes in the upper half, flat grey below."""
    pixels = np.full((height, width, 4), 128, dtype=np.uint8)
    pixels[..., 3] = 255
    pixels[: height // 2, ::2, :3] = 0
    pixels[: height // 2, 1::2, :3] = 255
    return RasterBuffer(pixels)


def test_tall_image_is_likely_bottom():
    result = GarmentClassifier().classify(solid(300, 600), "bottom")
    assert result.aspect_ratio == pytest.approx(0.5)
    assert result.aspect_ratio_class == LIKELY_BOTTOM


@pytest.mark.parametrize(
    "size, expected",
    [((600, 300), LIKELY_TOP), ((400, 400), LIKELY_FULL_BODY), ((120, 100), LIKELY_FULL_BODY), ((79, 100), LIKELY_BOTTOM)],
)
def test_aspect_ratio_class(size, expected):
    assert aspect_ratio_class(*size) == expected


def test_edge_density_flat_image_is_zero():
    assert edge_density(solid(50, 50)) == EdgeDensity(0.0, 0.0)


def test_edge_density_tiny_image_is_zero():
    assert edge_density(solid(2, 2)) == EdgeDensity(0.0, 0.0)


def test_edge_density_concentrated_in_top_half():
    density = edge_density(striped_top())
    assert density.top > 0.9
    assert density.bottom == 0.0


def test_confidence_grows_with_edge_lead():
    values = [
        garment_confidence(GarmentType.TOP, LIKELY_FULL_BODY, EdgeDensity(lead, 0.0))
        for lead in (0.0, 0.05, 0.1, 0.2, 0.35, 0.5)
    ]
    assert values == sorted(values)
    assert values[0] == 0.0
    assert values[-1] == pytest.approx(0.7)


def test_confidence_combines_aspect_and_edges():
    assert garment_confidence(GarmentType.TOP, LIKELY_TOP, EdgeDensity(0.1, 0.0)) == pytest.approx(0.5)
    assert garment_confidence(GarmentType.BOTTOM, LIKELY_BOTTOM, EdgeDensity(0.0, 0.0)) == pytest.approx(0.3)


def test_single_top_detected():
    result = GarmentClassifier().classify(striped_top(), GarmentType.TOP)
    assert result.aspect_ratio_class == LIKELY_TOP
    assert result.confidence == pytest.approx(1.0)
    assert result.is_single_garment is True
    assert result.detected_type == "top"


def test_mismatched_declared_type_has_low_confidence():
    result = GarmentClassifier().classify(striped_top(), GarmentType.BOTTOM)
    assert result.confidence == 0.0
    assert result.is_single_garment is False
    assert result.detected_type is None


@pytest.mark.parametrize("declared", ["fullBody", "completeOutfit"])
def test_whole_outfit_short_circuits(declared):
    result = GarmentClassifier().classify(solid(300, 600), declared)
    assert result.confidence == 1.0
    assert result.is_single_garment is True
    assert result.detected_type == "fullBody"


def test_internal_failure_reports_zero_confidence(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("kernel exploded")

    monkeypatch.setattr(classifier, "edge_density", broken)
    result = GarmentClassifier().classify(solid(100, 100), "top")
    assert result.confidence == 0.0
    assert result.is_single_garment is False
    assert "kernel exploded" in result.error


def test_as_dict_is_serialisable():
    data = GarmentClassifier().classify(solid(300, 600), "bottom").as_dict()
    assert data["declared_type"] == "bottom"
    assert data["aspect_ratio"] == 0.5
    assert set(data["edge_density"]) == {"top", "bottom"}


@pytest.mark.parametrize(
    "raw, expected",
    [("top", GarmentType.TOP), ("full_body", GarmentType.FULL_BODY), ("COMPLETE-OUTFIT", GarmentType.COMPLETE_OUTFIT)],
)
def test_garment_type_parse(raw, expected):
    assert GarmentType.parse(raw) is expected


def test_garment_type_parse_rejects_unknown():
    with pytest.raises(ValueError):
        GarmentType.parse("hat")


@pytest.mark.parametrize("declared", [GarmentType.FULL_BODY, GarmentType.COMPLETE_OUTFIT])
def test_whole_outfit_skips_edge_analysis(monkeypatch, declared):
    def broken(*args, **kwargs):
        raise RuntimeError("kernel exploded")

    monkeypatch.setattr(classifier, "edge_density", broken)
    result = GarmentClassifier().classify(solid(300, 600), declared)
    assert result.confidence == 1.0
    assert result.is_single_garment is True
    assert result.error is None
    assert result.aspect_ratio_class == LIKELY_BOTTOM
