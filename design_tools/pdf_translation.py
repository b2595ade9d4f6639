"""
Page-level fan-out/fan-in translation of a PDF.

Every page is rasterized, then every page image is sent for translation, each
phase under its own ConcurrencyLimiter. Conversion finishes completely before
any translation starts. Pages complete in any order; they are put back in page
order before the output PDF is assembled. A page without a translated image
fails the whole document.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx
from pydantic import BaseModel

from . import pdf
from .errors import MissingPageOutputError, PostProcessingFailure, ValidationError
from .imaging import fetch_image_bytes, to_data_url
from .limiter import ConcurrencyLimiter, gather_limited
from .openrouter import OpenRouterClient, TranslationConfig
from .prompts import TRANSLATION_SYSTEM_PROMPT


logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


class PdfTranslationProgress(BaseModel):
    current_page: int
    total_pages: int
    status: str
    error: Optional[str] = None


ProgressCallback = Callable[[PdfTranslationProgress], None]


@dataclass
class PageJob:
    page_number: int
    image_data_url: str
    result: Optional[str] = field(default=None)

    def fill(self, translated_image_url: str) -> None:
        if self.result is not None:
            raise RuntimeError(f"page {self.page_number} already has a result")
        self.result = translated_image_url


class PdfTranslationPipeline:
    def __init__(
        self,
        translator: OpenRouterClient,
        *,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        system_prompt: str = TRANSLATION_SYSTEM_PROMPT,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.translator = translator
        self.concurrency_limit = concurrency_limit
        self.system_prompt = system_prompt

    async def _convert_page(self, pdf_bytes: bytes, page_number: int, total: int) -> PageJob:
        logger.info(f"Converting page {page_number}/{total} to image")
        png = await asyncio.to_thread(pdf.render_page_png, pdf_bytes, page_number)
        return PageJob(page_number=page_number, image_data_url=to_data_url(png, "image/png"))

    async def _translate_page(
        self,
        job: PageJob,
        config: TranslationConfig,
        total: int,
        on_progress: Optional[ProgressCallback],
    ) -> PageJob:
        logger.info(f"Translating page {job.page_number}/{total}")
        result = await self.translator.translate_image(job.image_data_url, config, self.system_prompt)
        if on_progress:
            on_progress(PdfTranslationProgress(current_page=job.page_number, total_pages=total, status="processing"))
        if not result.translated_image_url:
            raise MissingPageOutputError(job.page_number)
        job.fill(result.translated_image_url)
        return job

    async def translate(
        self,
        pdf_bytes: bytes,
        config: TranslationConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        config.validate()
        total = await asyncio.to_thread(pdf.page_count, pdf_bytes)
        if total < 1:
            raise ValidationError("PDF has no pages")
        logger.info(f"PDF has {total} pages")

        if on_progress:
            on_progress(PdfTranslationProgress(current_page=0, total_pages=total, status="processing"))

        convert_limiter = ConcurrencyLimiter(self.concurrency_limit)
        jobs = await gather_limited(
            convert_limiter,
            [lambda n=n: self._convert_page(pdf_bytes, n, total) for n in range(1, total + 1)],
        )

        translate_limiter = ConcurrencyLimiter(self.concurrency_limit)
        translated = await gather_limited(
            translate_limiter,
            [lambda j=j: self._translate_page(j, config, total, on_progress) for j in jobs],
        )

        urls = assemble_in_order(translated)
        logger.info("Merging translated pages into PDF")
        images = [await self._page_image(n, url) for n, url in enumerate(urls, start=1)]
        out = await asyncio.to_thread(pdf.images_to_pdf, images)

        if on_progress:
            on_progress(PdfTranslationProgress(current_page=total, total_pages=total, status="completed"))
        return out

    async def _page_image(self, page_number: int, url: str) -> bytes:
        try:
            img_bytes, _ = await fetch_image_bytes(url)
        except (httpx.HTTPError, ValueError) as e:
            raise PostProcessingFailure(f"Could not load translated image for page {page_number}: {e}") from e
        return img_bytes


def assemble_in_order(jobs: List[PageJob]) -> List[str]:
    """
    Translated image URLs in ascending page order; every page must be filled.
    """
    ordered = sorted(jobs, key=lambda j: j.page_number)
    for j in ordered:
        if not j.result:
            raise MissingPageOutputError(j.page_number)
    return [j.result for j in ordered]
