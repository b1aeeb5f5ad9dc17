from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from api.dressup import metrics
from api.dressup.cv.codec import RasterBuffer
from api.dressup.cv.removal import (
    BackgroundRemovalCoordinator,
    LocalBackgroundRemover,
    RemoteBackgroundRemover,
    RemovalResult,
)


def make_image(width: int = 64, height: int = 64, color=(128, 128, 128), mode: str = "RGB", fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color=color).save(buffer, format=fmt)
    return buffer.getvalue()


def framed_pixels(size: int = 100, inner: int = 60, border=(250, 250, 250), center=(255, 0, 0)) -> np.ndarray:
    """Opaque square: a solid ``center`` block on a light ``border``."""
    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    pixels[..., :3] = border
    pixels[..., 3] = 255
    start = (size - inner) // 2
    pixels[start:start + inner, start:start + inner, :3] = center
    return pixels


def framed_buffer(**kwargs) -> RasterBuffer:
    return RasterBuffer(framed_pixels(**kwargs))


def framed_png(**kwargs) -> bytes:
    out = io.BytesIO()
    Image.fromarray(framed_pixels(**kwargs)).save(out, format="PNG")
    return out.getvalue()


class FailingRemover:
    """Removal strategy that always fails and counts its calls."""

    def __init__(self, name: str = "broken", error: str = "boom") -> None:
        self.name = name
        self.error = error
        self.calls = 0

    async def attempt(self, buffer: RasterBuffer) -> RemovalResult:
        self.calls += 1
        return RemovalResult(None, False, self.name, 0.0, error=self.error)


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def local_coordinator() -> BackgroundRemovalCoordinator:
    """Remote step present but unconfigured, so the local fallback always runs."""
    return BackgroundRemovalCoordinator(
        [RemoteBackgroundRemover(endpoint="", api_token=""), LocalBackgroundRemover()]
    )
