from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, field_validator

from ..errors import (
    PreprocessingError,
    RemovalFallbackExhausted,
    SegmentationError,
    VerificationError,
)
from ..metrics import Timer, increment, observe_latency
from . import codec
from .classifier import GarmentClassifier, GarmentType
from .codec import ImageSource, RasterBuffer
from .removal import BackgroundRemovalCoordinator, RemovalResult
from .segmentation import GarmentSegmenter, SegmentationMode

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    DECODED = "decoded"
    PERSON_BG_REMOVED = "person_bg_removed"
    GARMENT_BG_REMOVED = "garment_bg_removed"
    GARMENT_SEGMENTED = "garment_segmented"
    VERIFIED = "verified"
    ENCODED = "encoded"


class PreprocessOptions(BaseModel):
    remove_person_background: bool = True
    remove_garment_background: bool = True
    segment_garment: bool = True
    garment_type: GarmentType = GarmentType.COMPLETE_OUTFIT
    segmentation_mode: SegmentationMode = SegmentationMode.FULL_IMAGE
    include_debug: bool = False
    include_debug_images: bool = False
    output_format: str = "PNG"

    @field_validator("garment_type", mode="before")
    @classmethod
    def normalize_garment_type(cls, value: Any) -> GarmentType:
        if value is None or value == "":
            return GarmentType.COMPLETE_OUTFIT
        return GarmentType.parse(value)

    @field_validator("output_format", mode="before")
    @classmethod
    def normalize_output_format(cls, value: Any) -> str:
        return codec.normalize_format(value or "PNG")


@dataclass
class StepFlags:
    person_background_removed: bool = False
    garment_background_removed: bool = False
    garment_segmented: bool = False


@dataclass
class StageRecord:
    name: str
    ok: bool
    duration_ms: float
    detail: Optional[str] = None


@dataclass
class DebugTrace:
    """Request-scoped diagnostics, threaded through every stage."""

    include_images: bool = False
    stages: List[StageRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    person_background_removal: Optional[Dict[str, Any]] = None
    garment_background_removal: Optional[Dict[str, Any]] = None
    garment_classification: Optional[Dict[str, Any]] = None
    garment_segmentation: Optional[Dict[str, Any]] = None
    images: Dict[str, str] = field(default_factory=dict)
    generation_preview: Optional[Dict[str, str]] = None
    total_processing_ms: float = 0.0

    @property
    def completed_stages(self) -> List[str]:
        return [record.name for record in self.stages if record.ok]

    @contextmanager
    def stage(self, stage: Stage) -> Iterator[None]:
        timer = Timer("preprocess_stage_seconds", f"stage={stage.value}")
        try:
            yield
        except Exception as exc:
            self.stages.append(StageRecord(stage.value, False, timer.stop(), str(exc)))
            raise
        duration_ms = timer.stop()
        self.stages.append(StageRecord(stage.value, True, duration_ms))
        logger.info("Stage %s completed in %.1f ms", stage.value, duration_ms)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def record_removal(self, label: str, result: RemovalResult) -> None:
        self.warnings.extend(result.warnings)
        setattr(self, f"{label}_background_removal", result.diagnostics())

    def snapshot(self, name: str, buffer: RasterBuffer) -> None:
        if self.include_images:
            self.images[name] = codec.to_data_uri(codec.encode(buffer, "PNG"))

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("include_images")
        data["completed_stages"] = self.completed_stages
        return data


@dataclass
class PreprocessingBundle:
    """The only thing the generation service may receive.

    On failure both buffers are ``None``: an unprocessed original is never
    handed back in place of a failed step.
    """

    person_buffer: Optional[RasterBuffer]
    garment_buffer: Optional[RasterBuffer]
    steps: StepFlags
    success: bool
    person_image: Optional[bytes] = None
    garment_image: Optional[bytes] = None
    output_format: str = "PNG"
    error: Optional[str] = None
    error_code: Optional[str] = None
    stage: Optional[str] = None
    remediation: Optional[str] = None
    debug_trace: Optional[DebugTrace] = None


def verify_steps(
    options: PreprocessOptions,
    steps: StepFlags,
    cause: Optional[PreprocessingError] = None,
) -> None:
    """Verification gate: every requested step must have completed.

    Raises:
        VerificationError: a requested step flag is still False.
    """
    reason = f" ({cause.message})" if cause is not None else ""
    if options.remove_person_background and not steps.person_background_removed:
        raise VerificationError(
            f"Person background removal failed{reason}. "
            "Cannot proceed without background removal.",
            stage=Stage.VERIFIED.value,
        )
    if options.remove_garment_background and not steps.garment_background_removed:
        raise VerificationError(
            f"Garment background removal failed{reason}. "
            "Cannot proceed without background removal.",
            stage=Stage.VERIFIED.value,
        )
    if options.segment_garment and not steps.garment_segmented:
        raise VerificationError(
            f"Garment segmentation did not complete{reason}.",
            stage=Stage.VERIFIED.value,
        )


class PreprocessingOrchestrator:
    """Runs removal, classification and segmentation over a person/garment pair."""

    def __init__(
        self,
        coordinator: Optional[BackgroundRemovalCoordinator] = None,
        classifier: Optional[GarmentClassifier] = None,
        segmenter: Optional[GarmentSegmenter] = None,
    ) -> None:
        self.coordinator = coordinator or BackgroundRemovalCoordinator()
        self.classifier = classifier or GarmentClassifier()
        self.segmenter = segmenter or GarmentSegmenter()

    async def run(
        self,
        person_image: ImageSource,
        garment_image: ImageSource,
        options: Union[PreprocessOptions, Dict[str, Any], None] = None,
    ) -> PreprocessingBundle:
        if not isinstance(options, PreprocessOptions):
            options = PreprocessOptions.model_validate(options or {})
        trace = DebugTrace(include_images=options.include_debug_images)
        steps = StepFlags()
        start = time.perf_counter()

        try:
            with trace.stage(Stage.DECODED):
                person = codec.decode(person_image)
                garment = codec.decode(garment_image)
            trace.snapshot("original_person", person)
            trace.snapshot("original_garment", garment)

            removal_failure: Optional[RemovalFallbackExhausted] = None
            try:
                if options.remove_person_background:
                    person = await self._remove_background(
                        person, "person", Stage.PERSON_BG_REMOVED, trace
                    )
                    steps.person_background_removed = True
                if options.remove_garment_background:
                    garment = await self._remove_background(
                        garment, "garment", Stage.GARMENT_BG_REMOVED, trace
                    )
                    steps.garment_background_removed = True
            except RemovalFallbackExhausted as exc:
                # Skip the remaining stages; the gate below turns this into a
                # VerificationError.
                trace.warn(exc.message)
                removal_failure = exc
            else:
                if options.segment_garment:
                    garment = self._segment(garment, options, trace)
                    steps.garment_segmented = True

            with trace.stage(Stage.VERIFIED):
                verify_steps(options, steps, cause=removal_failure)

            with trace.stage(Stage.ENCODED):
                person_bytes = codec.encode(person, options.output_format)
                garment_bytes = codec.encode(garment, options.output_format)
            trace.snapshot("final_person", person)
            trace.snapshot("final_garment", garment)
        except PreprocessingError as exc:
            return self._failure(exc, steps, trace, options, start)

        trace.total_processing_ms = _elapsed_ms(start)
        increment("preprocess_total", "outcome=ok")
        observe_latency("preprocess_seconds", "outcome=ok", trace.total_processing_ms / 1000)
        return PreprocessingBundle(
            person_buffer=person,
            garment_buffer=garment,
            steps=steps,
            success=True,
            person_image=person_bytes,
            garment_image=garment_bytes,
            output_format=options.output_format,
            debug_trace=trace if options.include_debug else None,
        )

    async def _remove_background(
        self, buffer: RasterBuffer, label: str, stage: Stage, trace: DebugTrace
    ) -> RasterBuffer:
        with trace.stage(stage):
            result = await self.coordinator.remove(buffer, label=label)
            trace.record_removal(label, result)
            if not result.success or result.buffer is None:
                raise RemovalFallbackExhausted(
                    result.error or f"{label.capitalize()} background removal failed.",
                    stage=stage.value,
                )
        trace.snapshot(f"{label}_after_background_removal", result.buffer)
        return result.buffer

    def _segment(
        self, garment: RasterBuffer, options: PreprocessOptions, trace: DebugTrace
    ) -> RasterBuffer:
        with trace.stage(Stage.GARMENT_SEGMENTED):
            classification = self.classifier.classify(garment, options.garment_type)
            trace.garment_classification = classification.as_dict()
            if classification.error:
                trace.warn(classification.error)
            result = self.segmenter.segment(
                garment,
                options.garment_type,
                classification=classification,
                mode=options.segmentation_mode,
            )
            if not result.success:
                raise SegmentationError(
                    "Garment segmentation reported failure.", stage=Stage.GARMENT_SEGMENTED.value
                )
            trace.garment_segmentation = result.as_dict()
        trace.snapshot("garment_after_segmentation", result.buffer)
        return result.buffer

    @staticmethod
    def _failure(
        exc: PreprocessingError,
        steps: StepFlags,
        trace: DebugTrace,
        options: PreprocessOptions,
        start: float,
    ) -> PreprocessingBundle:
        trace.total_processing_ms = _elapsed_ms(start)
        logger.warning("Preprocessing failed at %s: %s", exc.stage or "unknown stage", exc.message)
        increment("preprocess_total", f"outcome={exc.code}")
        observe_latency("preprocess_seconds", f"outcome={exc.code}", trace.total_processing_ms / 1000)
        return PreprocessingBundle(
            person_buffer=None,
            garment_buffer=None,
            steps=steps,
            success=False,
            output_format=options.output_format,
            error=exc.message,
            error_code=exc.code,
            stage=exc.stage,
            remediation=exc.remediation,
            debug_trace=trace if options.include_debug else None,
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
