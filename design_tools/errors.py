from typing import Optional


class DesignToolsError(Exception):
    pass


class ConfigurationError(DesignToolsError):
    pass


class ValidationError(DesignToolsError):
    """
    Malformed or missing job input. Raised before anything touches the network.
    """


class RateLimitError(DesignToolsError):
    def __init__(self, message: str = "Rate limited", *, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RemoteFailure(DesignToolsError):
    def __init__(self, message: str, *, job_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class UnexpectedOutputFormat(DesignToolsError):
    def __init__(self, message: str = "Unexpected output format from Replicate") -> None:
        super().__init__(message)


class MissingPageOutputError(DesignToolsError):
    def __init__(self, page_number: int) -> None:
        super().__init__(f"No translated image for page {page_number}")
        self.page_number = page_number


class PostProcessingFailure(DesignToolsError):
    pass


class ImageTooLargeError(DesignToolsError):
    def __init__(self, width: int, height: int, *, max_width: int, max_height: int, max_megapixels: float) -> None:
        super().__init__("Image is too large for upscaling")
        self.width = width
        self.height = height
        self.max_width = max_width
        self.max_height = max_height
        self.max_megapixels = max_megapixels

    @property
    def megapixels(self) -> float:
        return round(self.width * self.height / 1_000_000, 2)

    def details(self) -> dict:
        return {
            "message": (
                f"Image is too large for upscaling. Maximum size: {self.max_width}x{self.max_height} "
                f"pixels ({self.max_megapixels:g} megapixels)"
            ),
            "yourImage": {"width": self.width, "height": self.height, "megapixels": self.megapixels},
            "maxAllowed": {"width": self.max_width, "height": self.max_height, "megapixels": self.max_megapixels},
        }
