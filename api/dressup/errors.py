"""Error taxonomy for the preprocessing and compositing pipeline.

Only ``VerificationError`` is always fatal at the pipeline level. Remote
removal failures are absorbed by the local fallback, classification failures
degrade to zero confidence, and compositing failures leave the caller with the
uncomposited image.
"""

from __future__ import annotations

from typing import Optional


class PreprocessingError(RuntimeError):
    """Base class; ``code`` is the stable identifier surfaced to API clients."""

    code = "PreprocessingError"
    remediation = "Please try again."

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage


class DecodeError(PreprocessingError, ValueError):
    code = "DecodeError"
    remediation = "Upload a valid PNG, JPEG or WEBP image."


class RemovalServiceError(PreprocessingError):
    code = "RemovalServiceError"


class RemovalFallbackExhausted(PreprocessingError):
    code = "RemovalFallbackExhausted"
    remediation = "Background removal is unavailable right now. Please retry."


class ClassificationError(PreprocessingError):
    code = "ClassificationError"


class SegmentationError(PreprocessingError):
    code = "SegmentationError"
    remediation = "Try a different garment photo or garment type."


class VerificationError(PreprocessingError):
    code = "VerificationError"
    remediation = (
        "Cannot proceed without background removal. Retry, or upload a photo "
        "with a plain light background."
    )


class CompositingError(PreprocessingError):
    code = "CompositingError"
