"""
Pytest fixtures: an in-memory prediction host, a scripted chat client and
small image/PDF factories.
"""

import io
import json
from typing import Any, Dict, List, Optional

import httpx
import pymupdf
import pytest
from PIL import Image

from design_tools.imaging import to_data_url
from design_tools.predictions import PredictionClient


REPLICATE_TEST_URL = "https://replicate.test/v1"


def make_png(width: int = 100, height: int = 80, color=(200, 30, 30, 255)) -> bytes:
    out = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def make_pdf(page_widths: List[int], height: int = 60) -> bytes:
    """
    One page per width so rendered pages can be told apart by size.
    """
    doc = pymupdf.open()
    for i, w in enumerate(page_widths, start=1):
        page = doc.new_page(width=w, height=height)
        page.insert_text((5, 20), f"Page {i}")
    data = doc.tobytes()
    doc.close()
    return data


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeReplicate:
    """
    Mimics the prediction API. Each created prediction replays the poll
    sequence planned for its model (keyed by version id or owner/name); the
    last entry repeats forever.
    """

    def __init__(self) -> None:
        self.created: List[Dict[str, Any]] = []
        self.polled: List[str] = []
        self.canceled: List[str] = []
        self.rate_limits = 0
        self.retry_after: Optional[int] = None
        self.plans: Dict[str, List[Dict[str, Any]]] = {}
        self.default_plan = [{"status": "succeeded", "output": "https://cdn.test/out.png"}]
        self._polls: Dict[str, List[Dict[str, Any]]] = {}

    def plan(self, key: str, *responses: Dict[str, Any]) -> None:
        self.plans[key] = list(responses)

    def create_paths(self) -> List[str]:
        return [c["path"] for c in self.created]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path.endswith("/cancel"):
            job_id = path.split("/")[-2]
            self.canceled.append(job_id)
            return httpx.Response(200, json={"id": job_id, "status": "canceled"})

        if request.method == "POST" and path.endswith("/predictions"):
            body = json.loads(request.content)
            self.created.append({"path": path, "body": body})
            if self.rate_limits:
                self.rate_limits -= 1
                headers = {"retry-after": str(self.retry_after)} if self.retry_after is not None else {}
                return httpx.Response(429, json={"detail": "Request was throttled"}, headers=headers)
            job_id = f"pred-{len(self.created)}"
            key = body.get("version") or path.split("/models/")[-1].rsplit("/predictions", 1)[0]
            self._polls[job_id] = list(self.plans.get(key, self.default_plan))
            return httpx.Response(201, json={"id": job_id, "status": "starting"})

        if request.method == "GET" and "/predictions/" in path:
            job_id = path.rsplit("/", 1)[-1]
            self.polled.append(job_id)
            seq = self._polls.get(job_id)
            if seq is None:
                return httpx.Response(404, json={"detail": "Not found."})
            resp = seq.pop(0) if len(seq) > 1 else seq[0]
            return httpx.Response(200, json={"id": job_id, **resp})

        return httpx.Response(404, json={"detail": "Not found."})

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=REPLICATE_TEST_URL)


class FakeCompletions:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        resp = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(resp, Exception):
            raise resp
        return resp


class FakeChat:
    def __init__(self, completions: FakeCompletions) -> None:
        self.completions = completions


class FakeOpenAI:
    """
    Stands in for AsyncOpenAI: only chat.completions.create is used.
    """

    def __init__(self, *responses: Any) -> None:
        self.chat = FakeChat(FakeCompletions(list(responses)))
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def chat_response(content: str = "Hola", image_url: Optional[str] = None, tokens: int = 42) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if image_url:
        message["images"] = [{"type": "image_url", "image_url": {"url": image_url}}]
    return {"choices": [{"message": message}], "usage": {"total_tokens": tokens}}


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def replicate():
    return FakeReplicate()


@pytest.fixture
def prediction_client(replicate, sleeper):
    return PredictionClient(replicate.http_client(), sleep=sleeper)


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def png_data_url(png_bytes):
    return to_data_url(png_bytes, "image/png")
