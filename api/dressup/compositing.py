from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from PIL import Image, ImageOps

from . import config
from .cv import codec, transparency
from .cv.codec import ImageSource, RasterBuffer
from .cv.removal import BackgroundRemovalCoordinator
from .errors import CompositingError, PreprocessingError
from .metrics import increment

logger = logging.getLogger(__name__)

FLAT_FILL = "flat-fill"
_ALIASES = {"": FLAT_FILL, "white": FLAT_FILL, "flat": FLAT_FILL}
_TEMPLATE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")


def normalize_backdrop_name(name: Optional[str]) -> str:
    key = (name or "").strip().lower().replace("_", "-")
    return _ALIASES.get(key, key)


def cover_fit(template: RasterBuffer, size: Tuple[int, int]) -> Image.Image:
    """Scale to cover ``size`` keeping the aspect ratio, then crop the overflow evenly."""
    return ImageOps.fit(
        template.to_pil(), size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5)
    )


def draw_centered(background: Image.Image, foreground: RasterBuffer) -> RasterBuffer:
    canvas = background.convert("RGBA")
    x = max(0, (canvas.width - foreground.width) // 2)
    y = max(0, (canvas.height - foreground.height) // 2)
    canvas.alpha_composite(foreground.to_pil(), dest=(x, y))
    return RasterBuffer.from_pil(canvas)


class BackdropLibrary:
    """Named backdrop templates, loaded on first use and shared read-only."""

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        names: Optional[Sequence[str]] = None,
        fill_color: Optional[str] = None,
    ) -> None:
        self.directory = Path(directory) if directory is not None else config.BACKDROPS_DIR
        self.names = [normalize_backdrop_name(n) for n in (names or config.BACKDROP_NAMES)]
        self.fill_color = fill_color or config.FLAT_FILL_COLOR
        self._lock = threading.Lock()
        self._templates: Dict[str, RasterBuffer] = {}

    def template_path(self, name: str) -> Optional[Path]:
        for suffix in _TEMPLATE_SUFFIXES:
            candidate = self.directory / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def preview_path(self, name: str) -> Optional[Path]:
        for suffix in _TEMPLATE_SUFFIXES:
            candidate = self.directory / f"{name}-thumb{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def load(self, name: str) -> Optional[RasterBuffer]:
        """Return the template for ``name``, or None when flat fill should be used.

        Raises:
            DecodeError: the template file exists but cannot be decoded.
        """
        name = normalize_backdrop_name(name)
        if name == FLAT_FILL:
            return None
        if name not in self.names:
            logger.warning("Unknown backdrop %r; using flat fill.", name)
            return None
        with self._lock:
            if name in self._templates:
                return self._templates[name]
            path = self.template_path(name)
            if path is None:
                logger.warning("Backdrop template %r not found in %s; using flat fill.", name, self.directory)
                return None
            logger.info("Loading backdrop template %s", path)
            template = codec.decode(path.read_bytes())
            self._templates[name] = template
            return template

    def catalogue(self) -> List[Dict[str, object]]:
        entries = []
        for name in self.names:
            entries.append(
                {
                    "name": name,
                    "available": name == FLAT_FILL or self.template_path(name) is not None,
                    "preview_url": f"/backdrops/{name}/preview",
                }
            )
        return entries

    def preview(self, name: str) -> Optional[bytes]:
        """PNG/JPEG bytes for a small thumbnail, or None if nothing is available."""
        name = normalize_backdrop_name(name)
        if name == FLAT_FILL:
            swatch = Image.new("RGBA", config.PREVIEW_SIZE, self.fill_color)
            return codec.encode(RasterBuffer.from_pil(swatch), "PNG")
        if name not in self.names:
            return None
        thumb = self.preview_path(name)
        if thumb is not None:
            return thumb.read_bytes()
        template = self.load(name)
        if template is None:
            return None
        return codec.encode(RasterBuffer.from_pil(cover_fit(template, config.PREVIEW_SIZE)), "PNG")


@dataclass
class CompositingResult:
    buffer: Optional[RasterBuffer]
    success: bool
    error: Optional[str] = None
    backdrop_used: Optional[str] = None
    background_kind: Optional[str] = None
    background_removed: bool = False
    warnings: List[str] = field(default_factory=list)

    def encode(self, fmt: str = "PNG") -> bytes:
        if self.buffer is None:
            raise CompositingError("No composited image to encode.", stage="composite")
        return codec.encode(self.buffer, fmt)


class BackgroundCompositor:
    """Draws a finished try-on result over a flat fill or a named template."""

    def __init__(
        self,
        coordinator: Optional[BackgroundRemovalCoordinator] = None,
        library: Optional[BackdropLibrary] = None,
    ) -> None:
        self.coordinator = coordinator or BackgroundRemovalCoordinator()
        self.library = library or BackdropLibrary()

    async def composite(
        self,
        foreground: Union[RasterBuffer, ImageSource],
        backdrop: Optional[str] = FLAT_FILL,
    ) -> CompositingResult:
        warnings: List[str] = []
        try:
            if not isinstance(foreground, RasterBuffer):
                foreground = codec.decode(foreground)

            kind = transparency.classify_background(foreground)
            removed = False
            if kind != transparency.BACKGROUND_TRANSPARENT:
                # Generation services often return a flattened result; isolate
                # the subject again before drawing it over the backdrop.
                logger.info("Foreground is opaque (%s background); removing background again.", kind)
                removal = await self.coordinator.remove(foreground, label="result")
                warnings.extend(removal.warnings)
                if removal.success and removal.buffer is not None:
                    foreground = removal.buffer
                    removed = True
                else:
                    warnings.append(
                        f"Secondary background removal failed ({removal.error}); "
                        "compositing the opaque image."
                    )

            name = normalize_backdrop_name(backdrop)
            template = self.library.load(name)
            if template is None:
                if name != FLAT_FILL:
                    warnings.append(f"Backdrop {name!r} is unavailable; using flat fill.")
                name = FLAT_FILL
                background = Image.new("RGBA", foreground.size, self.library.fill_color)
            else:
                background = cover_fit(template, foreground.size)
            composed = draw_centered(background, foreground)
        except (PreprocessingError, OSError, ValueError) as exc:
            error = CompositingError(f"Background compositing failed: {exc}", stage="composite")
            logger.warning("%s", error)
            increment("compositing_total", "outcome=failed")
            return CompositingResult(buffer=None, success=False, error=error.message, warnings=warnings)

        increment("compositing_total", f"backdrop={name},outcome=ok")
        return CompositingResult(
            buffer=composed,
            success=True,
            backdrop_used=name,
            background_kind=kind,
            background_removed=removed,
            warnings=warnings,
        )


def preview_media_type(data: bytes) -> str:
    """Guess the media type of preview bytes for HTTP responses."""
    with Image.open(io.BytesIO(data)) as image:
        return Image.MIME.get(image.format or "PNG", "image/png")
