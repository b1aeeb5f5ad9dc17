from __future__ import annotations

import base64
from dataclasses import dataclass

from . import config
from .cv import codec
from .cv.preprocess import PreprocessingBundle
from .errors import VerificationError

GENERATION_MIME_TYPE = "image/jpeg"


@dataclass
class GenerationPayload:
    """Request body for the external image-generation service."""

    person_base64: str
    garment_base64: str
    instruction: str
    mime_type: str = GENERATION_MIME_TYPE

    def preview(self, length: int = 100) -> dict:
        return {
            "person": self.person_base64[:length],
            "garment": self.garment_base64[:length],
        }


def build_generation_payload(bundle: PreprocessingBundle, instruction: str) -> GenerationPayload:
    """Turn a verified bundle into the opaque JPEG payload the generator expects.

    Transparent areas are flattened onto the flat-fill colour because the
    generation service only accepts opaque images.

    Raises:
        VerificationError: the bundle did not pass preprocessing.
    """
    if not bundle.success or bundle.person_buffer is None or bundle.garment_buffer is None:
        raise VerificationError(
            "Only successfully preprocessed images may be sent for generation.",
            stage="handoff",
        )
    if not instruction.strip():
        raise ValueError("A generation instruction is required.")
    payload = GenerationPayload(
        person_base64=_jpeg_base64(bundle.person_buffer),
        garment_base64=_jpeg_base64(bundle.garment_buffer),
        instruction=instruction.strip(),
    )
    if bundle.debug_trace is not None:
        bundle.debug_trace.generation_preview = payload.preview()
    return payload


def _jpeg_base64(buffer: codec.RasterBuffer) -> str:
    data = codec.encode(buffer, "JPEG", quality=config.GENERATION_JPEG_QUALITY)
    return base64.b64encode(data).decode("ascii")
