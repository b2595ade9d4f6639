import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from .config import FASTAPI_APP_TITLE, Settings
from .errors import RateLimitError, RemoteFailure, ValidationError
from .prompts import image_translation_prompt
from .retry import CHAT_RETRY_POLICY, RetryPolicy, Sleep, parse_retry_after, with_retry


logger = logging.getLogger(__name__)

TRANSLATE_MODEL = "google/gemini-3-pro-image-preview"

MARKDOWN_IMAGE_RE = re.compile(r"!\[.*?\]\((https?://[^)]+)\)")


@dataclass(frozen=True)
class TranslationConfig:
    target_language: str
    language_name: str
    temperature: float = 0.3
    max_tokens: int = 4096

    def validate(self) -> None:
        if not self.target_language or len(self.target_language) < 2:
            raise ValidationError("Invalid target language code")
        if not self.language_name:
            raise ValidationError("Invalid language name")
        if not 0 <= self.temperature <= 2:
            raise ValidationError("Temperature must be between 0 and 2")
        if self.max_tokens < 1:
            raise ValidationError("Max tokens must be positive")


@dataclass(frozen=True)
class TranslationResult:
    translated_text: str
    translated_image_url: Optional[str]
    target_language: str
    tokens_used: Optional[int]
    processing_time_ms: int


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _first_image_url(message: Any) -> Optional[str]:
    # OpenRouter puts generated images on message.images, outside the OpenAI schema.
    images = _field(message, "images") or []
    for image in images:
        url = _field(_field(image, "image_url") or {}, "url")
        if url:
            return url
    content = _field(message, "content") or ""
    m = MARKDOWN_IMAGE_RE.search(content)
    if m:
        logger.info("Found image URL in markdown content")
        return m.group(1)
    return None


class OpenRouterClient:
    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        retry_policy: RetryPolicy = CHAT_RETRY_POLICY,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._retry_policy = retry_policy
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenRouterClient":
        client = AsyncOpenAI(
            api_key=settings.require_openrouter_key(),
            base_url=settings.openrouter_base_url,
            timeout=settings.request_timeout_s,
            # Retries are ours; the SDK would otherwise retry 429s on its own schedule.
            max_retries=0,
            default_headers={"HTTP-Referer": settings.site_url, "X-Title": FASTAPI_APP_TITLE},
        )
        return cls(client)

    async def aclose(self) -> None:
        await self._client.close()

    async def _create(self, **kwargs: Any) -> Any:
        try:
            return await self._client.chat.completions.create(**kwargs)
        except openai.RateLimitError as e:
            raise RateLimitError(retry_after=parse_retry_after(e.response.headers.get("retry-after"))) from e
        except openai.APIError as e:
            raise RemoteFailure(f"OpenRouter API error: {e}") from e

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        top_p: float = 1,
        modalities: Optional[List[str]] = None,
    ) -> Any:
        extra_body: Dict[str, Any] = {}
        if modalities:
            extra_body["modalities"] = modalities
        return await with_retry(
            lambda: self._create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                top_p=top_p,
                extra_body=extra_body or None,
            ),
            self._retry_policy,
            label="OpenRouter chat",
            sleep=self._sleep,
        )

    async def translate_image(
        self, image_data_url: str, config: TranslationConfig, system_prompt: str
    ) -> TranslationResult:
        config.validate()
        started = time.monotonic()
        logger.info(f"Translating image to {config.language_name} ({config.target_language})")

        messages = [
            {"role": "system", "content": system_prompt},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": image_translation_prompt(config.target_language, config.language_name)},
                    {"type": "image_url", "image_url": {"url": image_data_url, "detail": "high"}},
                ],
            },
        ]
        resp = await self.chat(
            TRANSLATE_MODEL,
            messages,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            # Both are needed to get an image back.
            modalities=["image", "text"],
        )
        processing_ms = int((time.monotonic() - started) * 1000)

        choices = _field(resp, "choices") or []
        if not choices:
            raise RemoteFailure("No response from OpenRouter")
        message = _field(choices[0], "message")
        content = (_field(message, "content") or "").strip()
        usage = _field(resp, "usage")
        tokens = _field(usage, "total_tokens") if usage is not None else None

        image_url = _first_image_url(message)
        if image_url is None:
            logger.warning("No translated image in response")
        logger.info(f"Translation completed in {processing_ms}ms, tokens used: {tokens or 'unknown'}")

        return TranslationResult(
            translated_text=content,
            translated_image_url=image_url,
            target_language=config.target_language,
            tokens_used=tokens,
            processing_time_ms=processing_ms,
        )
