"""Pure predicates describing how a buffer's background looks.

Generated try-on results frequently come back flattened onto a plain white or
light-grey studio background. The compositor uses these predicates to decide
whether a second background-removal pass is needed.
"""

from __future__ import annotations

import numpy as np

from .codec import RasterBuffer

BACKGROUND_TRANSPARENT = "transparent"
BACKGROUND_PLAIN = "plain"
BACKGROUND_BUSY = "busy"

# Border band width as a fraction of the shorter side (at least one pixel).
BORDER_FRACTION = 0.05
PLAIN_MIN_BRIGHTNESS = 200.0
PLAIN_MAX_CHANNEL_SPREAD = 20.0
PLAIN_MAX_STDDEV = 12.0


def has_transparency(buffer: RasterBuffer) -> bool:
    """True if any pixel has alpha below 255."""
    return bool((buffer.alpha < 255).any())


def border_pixels(buffer: RasterBuffer) -> np.ndarray:
    """RGB values of the outer border band, flattened to (N, 3)."""
    band = max(1, int(min(buffer.width, buffer.height) * BORDER_FRACTION))
    rgb = buffer.rgb.astype(np.float32)
    mask = np.zeros((buffer.height, buffer.width), dtype=bool)
    mask[:band, :] = True
    mask[-band:, :] = True
    mask[:, :band] = True
    mask[:, -band:] = True
    return rgb[mask]


def has_plain_light_border(buffer: RasterBuffer) -> bool:
    """Bright, grey and uniform border: the look of a flattened studio shot."""
    pixels = border_pixels(buffer)
    brightness = pixels.mean(axis=1)
    if brightness.mean() < PLAIN_MIN_BRIGHTNESS:
        return False
    spread = (pixels.max(axis=1) - pixels.min(axis=1)).mean()
    if spread > PLAIN_MAX_CHANNEL_SPREAD:
        return False
    return float(brightness.std()) <= PLAIN_MAX_STDDEV


def classify_background(buffer: RasterBuffer) -> str:
    if has_transparency(buffer):
        return BACKGROUND_TRANSPARENT
    if has_plain_light_border(buffer):
        return BACKGROUND_PLAIN
    return BACKGROUND_BUSY
