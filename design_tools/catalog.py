from typing import Any, Dict

from .errors import ValidationError
from .predictions import ByName, ByVersion, ModelConfig, normalize_output


def _validate_remove_background(data: Dict[str, Any]) -> None:
    if not data.get("image") and not data.get("image_url"):
        raise ValidationError("Either image or image_url must be provided")
    if data.get("image") and data.get("image_url"):
        raise ValidationError("Provide either image or image_url, not both")


def _validate_upscale(data: Dict[str, Any]) -> None:
    if not data.get("image"):
        raise ValidationError("Image is required")
    increase = data.get("desired_increase")
    if increase is not None and increase not in (2, 4):
        raise ValidationError("desired_increase must be 2 or 4")


BRIA_REMOVE_BACKGROUND = ModelConfig(
    name="Bria Remove Background",
    ref=ByVersion("1a075954106b608c3671c2583e10526216f700d846b127fcf01461e8f642fb48"),
    wait_timeout=30,
    default_input={
        # Keeps semi-transparent edges.
        "preserve_partial_alpha": True,
        "content_moderation": False,
    },
    validate_input=_validate_remove_background,
    transform_output=normalize_output,
)

BRIA_INCREASE_RESOLUTION = ModelConfig(
    name="Bria Increase Resolution",
    ref=ByName("bria/increase-resolution"),
    wait_timeout=60,
    default_input={
        "desired_increase": 2,
        "preserve_alpha": True,
        "sync": True,
        "content_moderation": False,
    },
    validate_input=_validate_upscale,
    transform_output=normalize_output,
)
