import asyncio
import io
import itertools
import threading
import time

import pymupdf
import pytest
from PIL import Image

from design_tools import pdf
from design_tools.errors import MissingPageOutputError, ValidationError
from design_tools.imaging import from_data_url, to_data_url
from design_tools.openrouter import TranslationConfig, TranslationResult
from design_tools.pdf_translation import PageJob, PdfTranslationPipeline, assemble_in_order

from .conftest import make_pdf, make_png

CONFIG = TranslationConfig(target_language="es", language_name="Spanish")
# Pages are rendered at 2x, so page n of make_pdf(WIDTHS) comes back 2 * WIDTHS[n - 1] wide.
WIDTHS = [100, 110, 120, 130, 140, 150, 160]


class FakeTranslator:
    """
    Echoes a blank PNG the size of the page it was given. `delays` maps page
    width to how many times the call yields before answering, so completion
    order can be scrambled deterministically.
    """

    def __init__(self, delays=None, missing=()):
        self.delays = delays or {}
        self.missing = set(missing)
        self.in_flight = 0
        self.peak = 0
        self.completed = []

    async def translate_image(self, image_data_url, config, system_prompt):
        data, _ = from_data_url(image_data_url)
        with Image.open(io.BytesIO(data)) as im:
            size = im.size
        page_width = size[0] // 2
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            for _ in range(self.delays.get(page_width, 0)):
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        self.completed.append(page_width)
        url = None if page_width in self.missing else to_data_url(make_png(*size), "image/png")
        return TranslationResult(
            translated_text="",
            translated_image_url=url,
            target_language=config.target_language,
            tokens_used=None,
            processing_time_ms=1,
        )


def _page_widths(pdf_bytes):
    with pymupdf.open(stream=pdf_bytes, filetype="pdf") as doc:
        return [round(page.rect.width) for page in doc]


class TestPdfTranslationPipeline:
    """Fan-out/fan-in over a fake translator."""

    @pytest.mark.parametrize("order", list(itertools.permutations(range(4)))[::5])
    def test_pages_come_back_in_order(self, order):
        widths = WIDTHS[:4]
        # Higher rank finishes later.
        delays = {widths[i]: 3 * rank for rank, i in enumerate(order)}
        translator = FakeTranslator(delays=delays)
        out = asyncio.run(PdfTranslationPipeline(translator, concurrency_limit=4).translate(make_pdf(widths), CONFIG))

        assert _page_widths(out) == [2 * w for w in widths]
        assert translator.completed == [widths[i] for i in order]

    def test_concurrency_cap(self):
        translator = FakeTranslator(delays={w: 5 for w in WIDTHS})
        out = asyncio.run(PdfTranslationPipeline(translator, concurrency_limit=3).translate(make_pdf(WIDTHS), CONFIG))
        assert translator.peak == 3
        assert len(_page_widths(out)) == len(WIDTHS)

    def test_conversion_is_capped_and_finishes_before_translation(self, monkeypatch):
        """Every page is rasterized, at most `concurrency_limit` at a time, before any translation starts."""
        events = []
        lock = threading.Lock()
        converting = {"now": 0, "peak": 0}
        render = pdf.render_page_png

        def counting_render(pdf_bytes, page_number, *args, **kwargs):
            with lock:
                converting["now"] += 1
                converting["peak"] = max(converting["peak"], converting["now"])
            try:
                time.sleep(0.02)
                return render(pdf_bytes, page_number, *args, **kwargs)
            finally:
                with lock:
                    converting["now"] -= 1
                    events.append(("converted", page_number))

        monkeypatch.setattr(pdf, "render_page_png", counting_render)

        class RecordingTranslator(FakeTranslator):
            async def translate_image(self, image_data_url, config, system_prompt):
                events.append(("translate", None))
                return await super().translate_image(image_data_url, config, system_prompt)

        asyncio.run(PdfTranslationPipeline(RecordingTranslator(), concurrency_limit=2).translate(make_pdf(WIDTHS), CONFIG))

        assert 1 <= converting["peak"] <= 2
        kinds = [kind for kind, _ in events]
        last_converted = len(kinds) - 1 - kinds[::-1].index("converted")
        assert last_converted < kinds.index("translate")
        assert sorted(n for kind, n in events if kind == "converted") == list(range(1, len(WIDTHS) + 1))

    def test_missing_page_fails_whole_document(self, monkeypatch):
        """Page 2 of 3 has no image: the error names it and nothing is assembled."""
        assembled = []
        monkeypatch.setattr(pdf, "images_to_pdf", lambda images: assembled.append(images))
        translator = FakeTranslator(missing={110})

        with pytest.raises(MissingPageOutputError) as exc:
            asyncio.run(PdfTranslationPipeline(translator).translate(make_pdf(WIDTHS[:3]), CONFIG))
        assert exc.value.page_number == 2
        assert str(exc.value) == "No translated image for page 2"
        assert assembled == []

    def test_progress_reports(self):
        events = []
        asyncio.run(PdfTranslationPipeline(FakeTranslator()).translate(make_pdf(WIDTHS[:3]), CONFIG, events.append))

        assert events[0].current_page == 0
        assert events[0].total_pages == 3
        assert sorted(e.current_page for e in events[1:-1]) == [1, 2, 3]
        assert all(e.status == "processing" for e in events[:-1])
        assert events[-1].status == "completed"
        assert events[-1].current_page == 3

    def test_invalid_config_fails_before_any_work(self):
        translator = FakeTranslator()
        bad = TranslationConfig(target_language="x", language_name="X")
        with pytest.raises(ValidationError):
            asyncio.run(PdfTranslationPipeline(translator).translate(make_pdf(WIDTHS[:1]), bad))
        assert translator.completed == []

    def test_not_a_pdf(self):
        with pytest.raises(ValidationError):
            asyncio.run(PdfTranslationPipeline(FakeTranslator()).translate(b"%PDF-garbage", CONFIG))

    def test_concurrency_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            PdfTranslationPipeline(FakeTranslator(), concurrency_limit=0)


class TestAssembleInOrder:
    def test_sorts_by_page(self):
        jobs = [PageJob(3, "p3", "c"), PageJob(1, "p1", "a"), PageJob(2, "p2", "b")]
        assert assemble_in_order(jobs) == ["a", "b", "c"]

    def test_unfilled_page(self):
        with pytest.raises(MissingPageOutputError) as exc:
            assemble_in_order([PageJob(1, "p1", "a"), PageJob(2, "p2")])
        assert exc.value.page_number == 2

    def test_fill_once(self):
        job = PageJob(1, "p1")
        job.fill("a")
        with pytest.raises(RuntimeError):
            job.fill("b")
