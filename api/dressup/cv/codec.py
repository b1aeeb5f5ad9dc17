from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .. import config
from ..errors import DecodeError

logger = logging.getLogger(__name__)

FORMAT_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
}

_ALPHA_MODES = {"RGBA", "LA", "PA", "RGBa", "La"}

ImageSource = Union[bytes, bytearray, str]


@dataclass(frozen=True, eq=False)
class RasterBuffer:
    """Decoded RGBA pixel grid of shape (height, width, 4).

    The pixel array is copied on construction and marked read-only, so a
    buffer handed to the next stage can never be mutated behind its back.
    """

    pixels: np.ndarray

    def __post_init__(self) -> None:
        array = np.array(self.pixels, dtype=np.uint8, copy=True)
        if array.ndim != 3 or array.shape[2] != 4:
            raise ValueError(f"Expected an (H, W, 4) RGBA array, got shape {array.shape}.")
        if array.shape[0] == 0 or array.shape[1] == 0:
            raise ValueError("Raster buffers must have a non-zero size.")
        array.flags.writeable = False
        object.__setattr__(self, "pixels", array)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    def with_alpha(self, alpha: np.ndarray) -> "RasterBuffer":
        pixels = self.pixels.copy()
        pixels[..., 3] = alpha
        return RasterBuffer(pixels)

    def same_pixels(self, other: "RasterBuffer") -> bool:
        return self.pixels.shape == other.pixels.shape and bool(
            np.array_equal(self.pixels, other.pixels)
        )

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterBuffer":
        return cls(np.array(image.convert("RGBA")))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.pixels))


def decode(source: ImageSource, *, max_pixels: Optional[int] = None) -> RasterBuffer:
    """Decode raw bytes or a ``data:`` URI into an RGBA buffer."""
    data = _bytes_from_uri(source) if isinstance(source, str) else bytes(source)
    if not data:
        raise DecodeError("Image payload is empty.", stage="decode")
    limit = max_pixels or config.MAX_IMAGE_PIXELS
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            if width * height > limit:
                raise DecodeError(
                    f"Image is too large ({width}x{height}); limit is {limit} pixels.",
                    stage="decode",
                )
            image.load()
            image = ImageOps.exif_transpose(image)
            buffer = RasterBuffer.from_pil(image)
    except DecodeError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise DecodeError(f"Could not decode image: {exc}", stage="decode") from exc
    return buffer


def encode(buffer: RasterBuffer, fmt: str = "PNG", quality: Optional[int] = None) -> bytes:
    """Encode a buffer; the output is stable for a given (buffer, fmt, quality)."""
    fmt = normalize_format(fmt)
    params = {}
    if fmt == "JPEG":
        image = flatten(buffer).to_pil().convert("RGB")
        params["quality"] = quality or 90
    elif fmt == "WEBP":
        image = buffer.to_pil()
        if quality is None:
            params["lossless"] = True
        else:
            params["quality"] = quality
    else:
        image = buffer.to_pil()
    out = io.BytesIO()
    image.save(out, format=fmt, **params)
    return out.getvalue()


def normalize_format(fmt: str) -> str:
    normalized = fmt.upper().lstrip(".")
    if normalized == "JPG":
        normalized = "JPEG"
    if normalized not in FORMAT_MIME:
        raise ValueError(f"Unsupported output format: {fmt}")
    return normalized


def flatten(buffer: RasterBuffer, color: Optional[str] = None) -> RasterBuffer:
    """Composite the buffer onto a solid colour; the result is fully opaque."""
    fill = Image.new("RGBA", buffer.size, color or config.FLAT_FILL_COLOR)
    return RasterBuffer.from_pil(Image.alpha_composite(fill, buffer.to_pil()))


def has_alpha_channel(data: bytes) -> bool:
    """True when the encoded image can carry per-pixel transparency."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.mode in _ALPHA_MODES or "transparency" in image.info
    except (UnidentifiedImageError, OSError) as exc:
        raise DecodeError(f"Could not inspect image: {exc}", stage="decode") from exc


def ensure_alpha_encoding(data: bytes) -> Tuple[bytes, bool]:
    """Return PNG bytes when ``data`` has no alpha channel, else ``data`` unchanged.

    The second element tells whether a conversion happened.
    """
    if has_alpha_channel(data):
        return data, False
    logger.warning("Encoded image has no alpha channel; re-encoding as PNG.")
    return encode(decode(data), "PNG"), True


def to_data_uri(data: bytes, fmt: str = "PNG") -> str:
    mime = FORMAT_MIME[normalize_format(fmt)]
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def split_data_uri(uri: str) -> Tuple[str, str]:
    """Split ``data:<mime>;base64,<payload>`` into (mime, payload)."""
    header, sep, payload = uri.partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise DecodeError("Expected a base64 data URI.", stage="decode")
    return header[len("data:"):].split(";", 1)[0], payload


def _bytes_from_uri(source: str) -> bytes:
    source = source.strip()
    payload = split_data_uri(source)[1] if source.startswith("data:") else source
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Invalid base64 image payload: {exc}", stage="decode") from exc
