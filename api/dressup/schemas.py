from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .cv import codec
from .cv.preprocess import PreprocessingBundle


class StepsModel(BaseModel):
    person_background_removed: bool
    garment_background_removed: bool
    garment_segmented: bool


class PreprocessResponse(BaseModel):
    ok: bool = True
    steps: StepsModel
    person_image: str = Field(description="data URI of the processed person image")
    garment_image: str = Field(description="data URI of the processed garment image")
    format: str
    debug: Optional[Dict[str, Any]] = None


class PreprocessFailure(BaseModel):
    ok: bool = False
    code: str
    message: str
    stage: Optional[str] = None
    remediation: Optional[str] = None
    retryable: bool = True
    steps: StepsModel
    debug: Optional[Dict[str, Any]] = None


class BackdropEntry(BaseModel):
    name: str
    available: bool
    preview_url: str


class BackdropCatalogue(BaseModel):
    backdrops: List[BackdropEntry]


def _steps(bundle: PreprocessingBundle) -> StepsModel:
    return StepsModel(
        person_background_removed=bundle.steps.person_background_removed,
        garment_background_removed=bundle.steps.garment_background_removed,
        garment_segmented=bundle.steps.garment_segmented,
    )


def _debug(bundle: PreprocessingBundle) -> Optional[Dict[str, Any]]:
    return bundle.debug_trace.as_dict() if bundle.debug_trace is not None else None


def build_preprocess_response(bundle: PreprocessingBundle) -> PreprocessResponse:
    return PreprocessResponse(
        steps=_steps(bundle),
        person_image=codec.to_data_uri(bundle.person_image, bundle.output_format),
        garment_image=codec.to_data_uri(bundle.garment_image, bundle.output_format),
        format=bundle.output_format,
        debug=_debug(bundle),
    )


def build_preprocess_failure(bundle: PreprocessingBundle) -> PreprocessFailure:
    return PreprocessFailure(
        code=bundle.error_code or "PreprocessingError",
        message=bundle.error or "Preprocessing failed.",
        stage=bundle.stage,
        remediation=bundle.remediation,
        steps=_steps(bundle),
        debug=_debug(bundle),
    )
