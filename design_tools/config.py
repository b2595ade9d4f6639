import logging
import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv

from .errors import ConfigurationError


load_dotenv()

FASTAPI_APP_TITLE = "Design Tools"
REPLICATE_BASE_URL = "https://api.replicate.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
REQUEST_TIMEOUT_S = 240.0
PDF_CONCURRENCY = 3

# Upload limits
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_PDF_BYTES = 50 * 1024 * 1024
ACCEPTED_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    replicate_api_token: str = ""
    openrouter_api_key: str = ""
    replicate_base_url: str = REPLICATE_BASE_URL
    openrouter_base_url: str = OPENROUTER_BASE_URL
    request_timeout_s: float = REQUEST_TIMEOUT_S
    pdf_concurrency: int = PDF_CONCURRENCY
    site_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    def require_replicate_token(self) -> str:
        if not self.replicate_api_token:
            raise ConfigurationError("Replicate API token not configured")
        return self.replicate_api_token

    def require_openrouter_key(self) -> str:
        if not self.openrouter_api_key:
            raise ConfigurationError("OpenRouter API key not configured")
        return self.openrouter_api_key


def load_settings() -> Settings:
    concurrency = _env_int("PDF_CONCURRENCY", PDF_CONCURRENCY)
    if concurrency < 1:
        raise ConfigurationError("PDF_CONCURRENCY must be at least 1")
    return Settings(
        replicate_api_token=os.getenv("REPLICATE_API_TOKEN", ""),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY", ""),
        replicate_base_url=os.getenv("REPLICATE_BASE_URL", REPLICATE_BASE_URL).rstrip("/"),
        openrouter_base_url=os.getenv("OPENROUTER_BASE_URL", OPENROUTER_BASE_URL).rstrip("/"),
        request_timeout_s=_env_float("REQUEST_TIMEOUT_S", REQUEST_TIMEOUT_S),
        pdf_concurrency=concurrency,
        site_url=os.getenv("SITE_URL", "http://localhost:8000"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    root.setLevel(level.upper())
    # httpx logs every request at INFO, which drowns out poll progress.
    logging.getLogger("httpx").setLevel(logging.WARNING)
