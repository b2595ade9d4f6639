"""
Ordered multi-stage processing of a single image.

Stages run strictly in declaration order and hand results to each other only
through the PipelineContext. What happens when a stage cannot run:

- its guard refuses: it and every later stage are skipped, the best output so
  far is returned with a warning;
- the remote job fails: with ABORT_WITH_PARTIAL later non-cosmetic stages are
  skipped and cosmetic ones still run on the best output; with FAIL_PIPELINE,
  or when nothing has succeeded yet, the pipeline reports an error;
- a cosmetic stage raises PostProcessingFailure: the previous output is kept
  and a warning is attached.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx
from pydantic import BaseModel

from .catalog import BRIA_INCREASE_RESOLUTION, BRIA_REMOVE_BACKGROUND
from .errors import ImageTooLargeError, PostProcessingFailure
from .imaging import (
    MAX_HEIGHT_FOR_UPSCALE,
    MAX_MEGAPIXELS_FOR_UPSCALE,
    MAX_WIDTH_FOR_UPSCALE,
    Dimensions,
    fetch_image_bytes,
    fits_upscale_limits,
    image_dimensions,
    resize_contain,
    to_data_url,
)
from .limiter import ConcurrencyLimiter, gather_limited
from .predictions import JobRequest, PredictionClient


logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    ABORT_WITH_PARTIAL = "abort_with_partial"
    FAIL_PIPELINE = "fail_pipeline"


@dataclass(frozen=True)
class StageOutcome:
    ok: bool
    output: Optional[str] = None
    job_id: Optional[str] = None
    execution_time_ms: int = 0
    error: Optional[str] = None


@dataclass
class PipelineContext:
    image_bytes: bytes
    media_type: str
    dimensions: Dimensions
    best_output: Optional[str] = None
    best_job_id: Optional[str] = None
    outcomes: Dict[str, StageOutcome] = field(default_factory=dict)

    @property
    def data_url(self) -> str:
        return to_data_url(self.image_bytes, self.media_type)


StageAction = Callable[[PipelineContext], Awaitable[StageOutcome]]
# Returns None to proceed, or a human-readable reason to skip.
StageGuard = Callable[[PipelineContext], Optional[str]]
# Either fixed text or built from the context at the moment of failure.
FailureWarning = Union[str, Callable[[PipelineContext], str]]


@dataclass(frozen=True)
class PipelineStage:
    name: str
    action: StageAction
    on_failure: FailurePolicy = FailurePolicy.ABORT_WITH_PARTIAL
    guard: Optional[StageGuard] = None
    cosmetic: bool = False
    failure_warning: FailureWarning = ""

    def warning_for(self, ctx: PipelineContext, error: Any) -> str:
        text = self.failure_warning(ctx) if callable(self.failure_warning) else self.failure_warning
        return text or f"{self.name} failed: {error}"


class StageTiming(BaseModel):
    prediction_id: Optional[str] = None
    execution_time: int


class PipelineResult(BaseModel):
    output: Optional[str] = None
    prediction_id: Optional[str] = None
    execution_time: int = 0
    stages: Dict[str, StageTiming] = {}
    skipped_stages: List[str] = []
    warning: Optional[str] = None
    error: Optional[str] = None
    dimensions: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_response(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"executionTime": self.execution_time}
        if self.error is not None:
            out = {"error": self.error}
            if self.prediction_id:
                out["predictionId"] = self.prediction_id
            return out
        out["output"] = self.output
        out["predictionId"] = self.prediction_id
        if self.stages:
            out["stages"] = {
                name: {k: v for k, v in {"predictionId": t.prediction_id, "executionTime": t.execution_time}.items() if v is not None}
                for name, t in self.stages.items()
            }
        if self.skipped_stages:
            out["skippedStages"] = list(self.skipped_stages)
        if self.warning:
            out["warning"] = self.warning
        if self.dimensions:
            out["dimensions"] = self.dimensions
        return out


class SingleResourcePipeline:
    def __init__(self, stages: Sequence[PipelineStage]) -> None:
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate stage names: {names}")
        self.stages = list(stages)

    async def run(self, ctx: PipelineContext) -> PipelineResult:
        timings: Dict[str, StageTiming] = {}
        skipped: List[str] = []
        warnings: List[str] = []
        total_ms = 0
        remote_failed = False

        for i, stage in enumerate(self.stages):
            if remote_failed and not stage.cosmetic:
                skipped.append(stage.name)
                continue

            if stage.guard is not None:
                reason = stage.guard(ctx)
                if reason:
                    rest = [s.name for s in self.stages[i:]]
                    logger.warning(f"Skipping {', '.join(rest)}: {reason}")
                    skipped.extend(n for n in rest if n not in skipped)
                    warnings.append(reason)
                    break

            if stage.cosmetic:
                if ctx.best_output is None:
                    skipped.append(stage.name)
                    continue
                started = time.monotonic()
                try:
                    outcome = await stage.action(ctx)
                except PostProcessingFailure as e:
                    elapsed = int((time.monotonic() - started) * 1000)
                    total_ms += elapsed
                    logger.error(f"{stage.name} failed: {e}")
                    warnings.append(stage.warning_for(ctx, e))
                    continue
                total_ms += outcome.execution_time_ms
                timings[stage.name] = StageTiming(execution_time=outcome.execution_time_ms)
                ctx.outcomes[stage.name] = outcome
                ctx.best_output = outcome.output
                continue

            outcome = await stage.action(ctx)
            ctx.outcomes[stage.name] = outcome
            total_ms += outcome.execution_time_ms

            if outcome.ok:
                timings[stage.name] = StageTiming(prediction_id=outcome.job_id, execution_time=outcome.execution_time_ms)
                ctx.best_output = outcome.output
                ctx.best_job_id = outcome.job_id
                continue

            logger.error(f"{stage.name} failed ({outcome.job_id}): {outcome.error}")
            if ctx.best_output is None or stage.on_failure is FailurePolicy.FAIL_PIPELINE:
                return PipelineResult(
                    error=outcome.error or f"{stage.name} failed",
                    prediction_id=outcome.job_id,
                    execution_time=total_ms,
                    stages=timings,
                )
            warnings.append(stage.warning_for(ctx, outcome.error))
            remote_failed = True

        return PipelineResult(
            output=ctx.best_output,
            prediction_id=ctx.best_job_id,
            execution_time=total_ms,
            stages=timings,
            skipped_stages=skipped,
            warning="; ".join(warnings) or None,
            dimensions={"original": ctx.dimensions.to_dict()},
        )


def _too_large_reason(ctx: PipelineContext) -> Optional[str]:
    if fits_upscale_limits(ctx.dimensions):
        return None
    d = ctx.dimensions
    return (
        f"Image is too large for automatic upscaling ({d.width}x{d.height}). "
        f"Maximum size: {MAX_WIDTH_FOR_UPSCALE}x{MAX_HEIGHT_FOR_UPSCALE} pixels."
    )


def _resize_warning(ctx: PipelineContext) -> str:
    upscaled = ctx.outcomes.get("upscaling")
    if upscaled is not None and upscaled.ok:
        return "Resizing failed, returning upscaled result"
    return "Resizing failed, returning background-removed result"


class ImagePipelines:
    """
    The concrete image pipelines, built over one PredictionClient.
    """

    def __init__(
        self,
        predictions: PredictionClient,
        *,
        fetch: Callable[[str], Awaitable[Any]] = fetch_image_bytes,
    ) -> None:
        self.predictions = predictions
        self._fetch = fetch

    async def _remove_background(self, ctx: PipelineContext) -> StageOutcome:
        result = await self.predictions.run(JobRequest(model=BRIA_REMOVE_BACKGROUND, input={"image": ctx.data_url}, wait_timeout=60))
        return StageOutcome(
            ok=result.succeeded,
            output=result.output.url if result.succeeded else None,
            job_id=result.job_id,
            execution_time_ms=result.execution_time_ms,
            error=result.error,
        )

    def _upscale_from(self, source: Callable[[PipelineContext], str]) -> StageAction:
        async def action(ctx: PipelineContext) -> StageOutcome:
            result = await self.predictions.run(
                JobRequest(model=BRIA_INCREASE_RESOLUTION, input={"image": source(ctx)}, wait_timeout=60)
            )
            return StageOutcome(
                ok=result.succeeded,
                output=result.output.url if result.succeeded else None,
                job_id=result.job_id,
                execution_time_ms=result.execution_time_ms,
                error=result.error,
            )

        return action

    async def _resize_to_original(self, ctx: PipelineContext) -> StageOutcome:
        started = time.monotonic()
        try:
            img_bytes, _ = await self._fetch(ctx.best_output)
            resized = await asyncio.to_thread(resize_contain, img_bytes, ctx.dimensions)
        except (httpx.HTTPError, ValueError) as e:
            raise PostProcessingFailure(f"Could not fetch image for resizing: {e}") from e
        elapsed = int((time.monotonic() - started) * 1000)
        logger.info(f"Resized to {ctx.dimensions.width}x{ctx.dimensions.height} in {elapsed}ms")
        return StageOutcome(ok=True, output=to_data_url(resized, "image/png"), execution_time_ms=elapsed)

    def background_removal_stages(self) -> List[PipelineStage]:
        return [
            PipelineStage(
                name="backgroundRemoval",
                action=self._remove_background,
                on_failure=FailurePolicy.FAIL_PIPELINE,
            ),
            PipelineStage(
                name="upscaling",
                action=self._upscale_from(lambda ctx: ctx.best_output),
                guard=_too_large_reason,
                failure_warning="Upscaling failed, returning original size",
            ),
            PipelineStage(
                name="resizing",
                action=self._resize_to_original,
                cosmetic=True,
                failure_warning=_resize_warning,
            ),
        ]

    @staticmethod
    def _context(image_bytes: bytes, media_type: str) -> PipelineContext:
        dims = image_dimensions(image_bytes)
        logger.info(f"Original image dimensions: {dims.width}x{dims.height} ({dims.megapixels:.2f} MP)")
        return PipelineContext(image_bytes=image_bytes, media_type=media_type, dimensions=dims)

    async def remove_background(self, image_bytes: bytes, media_type: str = "image/png") -> PipelineResult:
        ctx = self._context(image_bytes, media_type)
        return await SingleResourcePipeline(self.background_removal_stages()).run(ctx)

    async def upscale(self, image_bytes: bytes, media_type: str = "image/png") -> PipelineResult:
        ctx = self._context(image_bytes, media_type)
        if not fits_upscale_limits(ctx.dimensions):
            raise ImageTooLargeError(
                ctx.dimensions.width,
                ctx.dimensions.height,
                max_width=MAX_WIDTH_FOR_UPSCALE,
                max_height=MAX_HEIGHT_FOR_UPSCALE,
                max_megapixels=MAX_MEGAPIXELS_FOR_UPSCALE,
            )
        stages = [
            PipelineStage(
                name="upscaling",
                action=self._upscale_from(lambda c: c.data_url),
                on_failure=FailurePolicy.FAIL_PIPELINE,
            )
        ]
        result = await SingleResourcePipeline(stages).run(ctx)
        return result.model_copy(update={"stages": {}, "dimensions": None})

    async def process_many(
        self,
        images: Sequence[bytes],
        operation: Callable[[bytes], Awaitable[PipelineResult]],
        *,
        concurrency: int = 3,
    ) -> List[PipelineResult]:
        """
        Apply `operation` to every image with at most `concurrency` in flight.
        Results keep the input order.
        """
        limiter = ConcurrencyLimiter(concurrency)
        return await gather_limited(limiter, [lambda img=img: operation(img) for img in images])
