import asyncio
import base64
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response, StreamingResponse

from .config import (
    ACCEPTED_IMAGE_EXTENSIONS,
    FASTAPI_APP_TITLE,
    MAX_IMAGE_BYTES,
    MAX_PDF_BYTES,
    configure_logging,
    load_settings,
)
from .errors import (
    ConfigurationError,
    DesignToolsError,
    ImageTooLargeError,
    MissingPageOutputError,
    RemoteFailure,
    ValidationError,
)
from .imaging import to_data_url
from .languages import SUPPORTED_LANGUAGES, find_language, language_name
from .openrouter import TranslationConfig
from .pdf_translation import PdfTranslationProgress
from .prompts import system_prompt
from .services import Services


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level)
    app.state.services = Services.build(settings)
    try:
        yield
    finally:
        await app.state.services.aclose()


app = FastAPI(title=FASTAPI_APP_TITLE, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> Services:
    return request.app.state.services


@app.exception_handler(ImageTooLargeError)
async def _too_large(request: Request, exc: ImageTooLargeError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc), "details": exc.details()})


@app.exception_handler(ValidationError)
async def _invalid(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(DesignToolsError)
async def _failed(request: Request, exc: DesignToolsError) -> JSONResponse:
    content: Dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, RemoteFailure) and exc.job_id:
        content["predictionId"] = exc.job_id
    if isinstance(exc, MissingPageOutputError):
        content["page"] = exc.page_number
    if not isinstance(exc, ConfigurationError):
        logger.error(f"{request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content=content)


async def _read_image(image: Optional[UploadFile]) -> bytes:
    if image is None:
        raise ValidationError("No image provided")
    suffix = Path(image.filename or "").suffix.lower()
    content_type = (image.content_type or "").split(";")[0]
    if not content_type.startswith("image/") and suffix not in ACCEPTED_IMAGE_EXTENSIONS:
        raise ValidationError(f"Unsupported image type: {content_type or suffix or 'unknown'}")
    data = await image.read()
    if not data:
        raise ValidationError("No image provided")
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationError(f"Image exceeds {MAX_IMAGE_BYTES // (1024 * 1024)}MB limit")
    logger.info(f"Processing image: {image.filename} ({len(data)} bytes, {content_type})")
    return data


async def _read_pdf(file: Optional[UploadFile]) -> bytes:
    if file is None:
        raise ValidationError("No file provided")
    if not (file.filename or "").lower().endswith(".pdf") and (file.content_type or "") != "application/pdf":
        raise ValidationError("Only PDF uploads are supported")
    data = await file.read()
    if not data:
        raise ValidationError("No file provided")
    if len(data) > MAX_PDF_BYTES:
        raise ValidationError(f"PDF exceeds {MAX_PDF_BYTES // (1024 * 1024)}MB limit")
    return data


def _pipeline_response(result) -> JSONResponse:
    return JSONResponse(status_code=200 if result.ok else 500, content=result.to_response())


@app.get("/healthz")
async def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/languages")
async def languages() -> List[Dict[str, Any]]:
    return [lang.model_dump() for lang in SUPPORTED_LANGUAGES]


@app.post("/api/ai/remove-background")
async def remove_background(
    image: Optional[UploadFile] = File(None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    data = await _read_image(image)
    pipelines = services.image_pipelines()
    result = await pipelines.remove_background(data, image.content_type or "image/png")
    return _pipeline_response(result)


@app.post("/api/ai/upscale")
async def upscale(
    image: Optional[UploadFile] = File(None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    data = await _read_image(image)
    pipelines = services.image_pipelines()
    result = await pipelines.upscale(data, image.content_type or "image/png")
    return _pipeline_response(result)


def _translation_config(code: Optional[str], name: Optional[str] = None) -> TranslationConfig:
    if not code:
        raise ValidationError("No target language provided")
    lang = find_language(code)
    if lang is None:
        raise ValidationError(f"Invalid language code: {code}")
    return TranslationConfig(target_language=lang.code, language_name=name or language_name(lang.code))


@app.post("/api/ai/translate")
async def translate_image(
    image: Optional[UploadFile] = File(None),
    targetLanguage: Optional[str] = Form(None),
    contentType: str = Form(""),
    services: Services = Depends(get_services),
) -> JSONResponse:
    data = await _read_image(image)
    config = _translation_config(targetLanguage)
    translator = services.require_translator()
    logger.info(f"Target language: {config.target_language} ({config.language_name})")

    result = await translator.translate_image(
        to_data_url(data, image.content_type or "image/png"), config, system_prompt(contentType)
    )
    # No image came back: hand the text over as a data URL instead.
    output = result.translated_image_url or to_data_url(result.translated_text.encode("utf-8"), "text/plain")
    return JSONResponse(
        content={
            "output": output,
            "translatedText": result.translated_text,
            "targetLanguage": result.target_language,
            "tokensUsed": result.tokens_used,
            "processingTime": result.processing_time_ms,
        }
    )


@app.post("/api/ai/translate-pdf")
async def translate_pdf(
    file: Optional[UploadFile] = File(None),
    targetLanguage: Optional[str] = Form(None),
    languageName: Optional[str] = Form(None),
    services: Services = Depends(get_services),
) -> Response:
    data = await _read_pdf(file)
    if not targetLanguage or not languageName:
        raise ValidationError("Target language not specified")
    config = _translation_config(targetLanguage, languageName)
    pipeline = services.pdf_pipeline()
    logger.info(f"Translating PDF: {file.filename} to {config.language_name}")

    def on_progress(p: PdfTranslationProgress) -> None:
        logger.info(f"Progress: {p.current_page}/{p.total_pages} pages")

    out = await pipeline.translate(data, config, on_progress)
    return Response(
        content=out,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="translated-{Path(file.filename or "document.pdf").name}"'},
    )


def _sse_event(event: str, data: Any) -> bytes:
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


def _sse_comment(text: str) -> bytes:
    # Keeps the connection alive through proxies.
    return f": {text}\n\n".encode("utf-8")


@app.post("/api/ai/translate-pdf/stream")
async def translate_pdf_stream(
    request: Request,
    file: Optional[UploadFile] = File(None),
    targetLanguage: Optional[str] = Form(None),
    languageName: Optional[str] = Form(None),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """
    Streams:
    - event: progress  data: {current_page, total_pages, status}
    - event: done      data: {filename, pdf_base64}
    - event: error     data: {detail, page?}
    """
    data = await _read_pdf(file)
    if not targetLanguage or not languageName:
        raise ValidationError("Target language not specified")
    config = _translation_config(targetLanguage, languageName)
    pipeline = services.pdf_pipeline()
    filename = f"translated-{Path(file.filename or 'document.pdf').name}"

    async def gen():
        yield b"retry: 3000\n"
        yield _sse_comment("connected")

        events: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(pipeline.translate(data, config, events.put_nowait))
        keepalive_s = 15.0
        try:
            while True:
                if await request.is_disconnected():
                    return
                getter = asyncio.ensure_future(events.get())
                done, _ = await asyncio.wait({getter, task}, timeout=keepalive_s, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield _sse_event("progress", getter.result().model_dump())
                    continue
                getter.cancel()
                if task in done:
                    break
                yield _sse_comment("ping")

            while not events.empty():
                yield _sse_event("progress", events.get_nowait().model_dump())

            try:
                out = await task
            except MissingPageOutputError as e:
                yield _sse_event("error", {"detail": str(e), "page": e.page_number})
                return
            except DesignToolsError as e:
                yield _sse_event("error", {"detail": str(e)})
                return
            yield _sse_event("done", {"filename": filename, "pdf_base64": base64.b64encode(out).decode("ascii")})
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
