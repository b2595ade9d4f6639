"""
Client for a prediction-style inference host (Replicate HTTP API).

A job goes starting -> processing -> succeeded | failed | canceled. The client
submits it, polls once a second until the status is terminal or the attempt
budget runs out, then decodes the output into ImageOutput. Remote failures,
timeouts and undecodable output come back as a failed JobResult rather than
an exception; only local input validation raises.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import httpx

from .config import Settings
from .errors import RateLimitError, RemoteFailure, UnexpectedOutputFormat, ValidationError
from .retry import PREDICTION_RETRY_POLICY, RetryPolicy, Sleep, parse_retry_after, with_retry


logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Prediction timed out"
UNKNOWN_JOB_ID = "unknown"


@dataclass(frozen=True)
class ByVersion:
    version_id: str


@dataclass(frozen=True)
class ByName:
    # "owner/model"
    name: str


ModelRef = Union[ByVersion, ByName]


def prediction_route(ref: ModelRef) -> Tuple[str, Dict[str, Any]]:
    """
    Returns (path, extra body fields) for creating a prediction against `ref`.
    """
    if isinstance(ref, ByVersion):
        return "/predictions", {"version": ref.version_id}
    if isinstance(ref, ByName):
        owner, _, model = ref.name.partition("/")
        if not owner or not model:
            raise ValidationError(f"model name must look like owner/name, got {ref.name!r}")
        return f"/models/{owner}/{model}/predictions", {}
    raise TypeError(f"unsupported model reference: {ref!r}")


@dataclass(frozen=True)
class ImageOutput:
    url: str


def normalize_output(raw: Any) -> ImageOutput:
    """
    Accepts an object exposing `url` (attribute, zero-arg method or mapping key),
    a bare URL string, or a non-empty list whose first item is a URL string.
    """
    if isinstance(raw, Mapping):
        url = raw.get("url")
        if isinstance(url, str) and url:
            return ImageOutput(url=url)
        raise UnexpectedOutputFormat()
    if isinstance(raw, str):
        if raw:
            return ImageOutput(url=raw)
        raise UnexpectedOutputFormat()
    if isinstance(raw, (list, tuple)):
        if raw and isinstance(raw[0], str) and raw[0]:
            return ImageOutput(url=raw[0])
        raise UnexpectedOutputFormat()
    if raw is not None and hasattr(raw, "url"):
        url = raw.url() if callable(raw.url) else raw.url
        if isinstance(url, str) and url:
            return ImageOutput(url=url)
    raise UnexpectedOutputFormat()


InputValidator = Callable[[Dict[str, Any]], None]
OutputTransform = Callable[[Any], Any]


@dataclass(frozen=True)
class ModelConfig:
    name: str
    ref: ModelRef
    wait_timeout: float = 30
    default_input: Mapping[str, Any] = field(default_factory=dict)
    validate_input: Optional[InputValidator] = None
    transform_output: OutputTransform = normalize_output


@dataclass(frozen=True)
class JobRequest:
    model: ModelConfig
    input: Mapping[str, Any]
    wait_timeout: Optional[float] = None
    default_input: Mapping[str, Any] = field(default_factory=dict)
    webhook: Optional[str] = None
    webhook_events_filter: Optional[List[str]] = None

    def merged_input(self) -> Dict[str, Any]:
        return {**self.model.default_input, **self.default_input, **self.input}

    def effective_wait_timeout(self) -> float:
        return self.wait_timeout if self.wait_timeout is not None else self.model.wait_timeout


class JobStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class JobResult:
    status: JobStatus
    job_id: str
    execution_time_ms: int
    output: Any = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    status: str
    model: ModelConfig
    started_at: float


def _redact_input(data: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str) and value.startswith("data:"):
            out[key] = f"<base64 data, {round(len(value) / 1024)}KB>"
        else:
            out[key] = value
    return out


def _error_text(error: Any, default: str) -> str:
    if error is None or error == "":
        return default
    return str(error)


class PredictionClient:
    POLL_INTERVAL_S = 1.0
    MAX_POLL_ATTEMPTS = 60

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        retry_policy: RetryPolicy = PREDICTION_RETRY_POLICY,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = http
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "PredictionClient":
        token = settings.require_replicate_token()
        http = httpx.AsyncClient(
            base_url=settings.replicate_base_url,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            timeout=settings.request_timeout_s,
        )
        return cls(http)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        r = await self._http.request(method, path, json=body)
        if r.status_code == 429:
            raise RateLimitError(retry_after=parse_retry_after(r.headers.get("retry-after")))
        try:
            data = r.json()
        except ValueError:
            data = None
        if r.status_code >= 400:
            detail = data.get("detail") if isinstance(data, dict) else None
            raise RemoteFailure(f"Replicate API error {r.status_code}: {detail or r.text}")
        if not isinstance(data, dict):
            raise RemoteFailure(f"Replicate returned an unreadable response ({r.status_code})")
        return data

    async def create_prediction(
        self,
        ref: ModelRef,
        input: Mapping[str, Any],
        *,
        webhook: Optional[str] = None,
        webhook_events_filter: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        path, extra = prediction_route(ref)
        body: Dict[str, Any] = {**extra, "input": dict(input)}
        if webhook:
            body["webhook"] = webhook
        if webhook_events_filter:
            body["webhook_events_filter"] = list(webhook_events_filter)
        # Each retry posts again and so creates a fresh prediction.
        return await with_retry(
            lambda: self._request("POST", path, body),
            self._retry_policy,
            label="create prediction",
            sleep=self._sleep,
        )

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        return await with_retry(
            lambda: self._request("GET", f"/predictions/{job_id}"),
            self._retry_policy,
            label=f"get prediction {job_id}",
            sleep=self._sleep,
        )

    async def cancel(self, job_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/predictions/{job_id}/cancel")

    async def submit(self, request: JobRequest) -> JobHandle:
        started_at = self._clock()
        merged = request.merged_input()
        if request.model.validate_input is not None:
            request.model.validate_input(merged)

        logger.info(f"Starting {request.model.name} prediction, input: {_redact_input(merged)}")
        prediction = await self.create_prediction(
            request.model.ref,
            merged,
            webhook=request.webhook,
            webhook_events_filter=request.webhook_events_filter,
        )
        job_id = str(prediction.get("id") or "")
        if not job_id:
            raise RemoteFailure("Replicate did not return a prediction id")
        logger.info(f"Prediction created: {job_id}")
        return JobHandle(
            job_id=job_id,
            status=str(prediction.get("status") or "starting"),
            model=request.model,
            started_at=started_at,
        )

    def _elapsed_ms(self, started_at: float) -> int:
        return int((self._clock() - started_at) * 1000)

    def max_poll_attempts(self, max_wait_seconds: float) -> int:
        attempts = math.ceil(max_wait_seconds / self.POLL_INTERVAL_S)
        return max(0, min(attempts, self.MAX_POLL_ATTEMPTS))

    async def poll(self, handle: JobHandle, max_wait_seconds: float) -> JobResult:
        max_attempts = self.max_poll_attempts(max_wait_seconds)
        name = handle.model.name

        for attempt in range(1, max_attempts + 1):
            prediction = await self.get_status(handle.job_id)
            status = prediction.get("status")

            if status == "succeeded":
                try:
                    output = handle.model.transform_output(prediction.get("output"))
                except UnexpectedOutputFormat as e:
                    logger.error(f"{name} returned output we cannot decode: {prediction.get('output')!r}")
                    return self._failed(handle, str(e))
                elapsed = self._elapsed_ms(handle.started_at)
                logger.info(f"{name} succeeded in {elapsed}ms")
                return JobResult(
                    status=JobStatus.SUCCEEDED,
                    job_id=handle.job_id,
                    execution_time_ms=elapsed,
                    output=output,
                )
            if status == "failed":
                logger.error(f"{name} failed: {prediction.get('error')}")
                return self._failed(handle, _error_text(prediction.get("error"), "Prediction failed"))
            if status == "canceled":
                logger.error(f"{name} was canceled")
                return self._failed(handle, "Prediction canceled")

            if attempt % 5 == 0:
                logger.info(f"Still processing... ({attempt}s) status: {status}")
            if attempt < max_attempts:
                await self._sleep(self.POLL_INTERVAL_S)

        # The remote job is left running; see DESIGN.md.
        logger.error(f"{name} timed out after {max_attempts} polls ({handle.job_id})")
        return self._failed(handle, TIMEOUT_MESSAGE)

    def _failed(self, handle: JobHandle, error: str) -> JobResult:
        return JobResult(
            status=JobStatus.FAILED,
            job_id=handle.job_id,
            execution_time_ms=self._elapsed_ms(handle.started_at),
            error=error,
        )

    async def run(self, request: JobRequest) -> JobResult:
        """
        Submit and wait. ValidationError propagates; every remote-side problem
        is folded into a failed JobResult.
        """
        started_at = self._clock()
        try:
            handle = await self.submit(request)
        except ValidationError:
            raise
        except (RemoteFailure, RateLimitError, httpx.HTTPError) as e:
            logger.error(f"Error in {request.model.name}: {e}")
            return JobResult(
                status=JobStatus.FAILED,
                job_id=getattr(e, "job_id", None) or UNKNOWN_JOB_ID,
                execution_time_ms=self._elapsed_ms(started_at),
                error=str(e) or type(e).__name__,
            )

        try:
            return await self.poll(handle, request.effective_wait_timeout())
        except (RemoteFailure, RateLimitError, httpx.HTTPError) as e:
            logger.error(f"Error while polling {request.model.name} ({handle.job_id}): {e}")
            return self._failed(handle, str(e) or type(e).__name__)
