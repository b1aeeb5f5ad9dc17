"""
Image preprocessing for the try-on flow.

The pipeline decodes the person and garment photos, removes their
backgrounds (remote service first, local brightness heuristic second),
classifies and segments the garment, and refuses to hand back any image whose
requested processing did not succeed.
"""

from .preprocess import (
    PreprocessingBundle,
    PreprocessingOrchestrator,
    PreprocessOptions,
    StepFlags,
)

__all__ = [
    "PreprocessingBundle",
    "PreprocessingOrchestrator",
    "PreprocessOptions",
    "StepFlags",
]
