import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .errors import ConfigurationError
from .openrouter import OpenRouterClient
from .pdf_translation import PdfTranslationPipeline
from .pipelines import ImagePipelines
from .predictions import PredictionClient


logger = logging.getLogger(__name__)


@dataclass
class Services:
    """
    Remote clients built once at startup and handed to the routes. A client is
    None when its API key is not configured.
    """

    settings: Settings
    predictions: Optional[PredictionClient] = None
    translator: Optional[OpenRouterClient] = None

    @classmethod
    def build(cls, settings: Settings) -> "Services":
        services = cls(settings=settings)
        if settings.replicate_api_token:
            services.predictions = PredictionClient.from_settings(settings)
        else:
            logger.warning("REPLICATE_API_TOKEN not set; image endpoints will fail")
        if settings.openrouter_api_key:
            services.translator = OpenRouterClient.from_settings(settings)
        else:
            logger.warning("OPENROUTER_API_KEY not set; translation endpoints will fail")
        return services

    def image_pipelines(self) -> ImagePipelines:
        if self.predictions is None:
            raise ConfigurationError("Replicate API token not configured")
        return ImagePipelines(self.predictions)

    def require_translator(self) -> OpenRouterClient:
        if self.translator is None:
            raise ConfigurationError("OpenRouter API key not configured")
        return self.translator

    def pdf_pipeline(self) -> PdfTranslationPipeline:
        return PdfTranslationPipeline(self.require_translator(), concurrency_limit=self.settings.pdf_concurrency)

    async def aclose(self) -> None:
        if self.predictions is not None:
            await self.predictions.aclose()
        if self.translator is not None:
            await self.translator.aclose()
