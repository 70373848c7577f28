"""
Failure taxonomy for the card extraction pipeline.

Every failure carries a user-facing message that is safe to show (no keys,
no internals) and an internal message with the stage and original error
for diagnostics.
"""

from datetime import datetime, timedelta
from typing import Optional


class CardScanError(Exception):
    """Base class for all pipeline failures."""

    default_user_message = "Processing failed"

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        stage: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.stage = stage
        self.original_error = original_error
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.stage:
            msg += f" (stage: {self.stage})"
        if self.original_error:
            msg += f" [{type(self.original_error).__name__}: {self.original_error}]"
        return msg

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "error": self.user_message,
        }


class InputValidationError(CardScanError):
    """Empty, oversize or malformed input, or invalid option values."""

    default_user_message = "Invalid input"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        self.field = field
        super().__init__(message, **kwargs)


class UnsupportedImageFormat(InputValidationError):
    default_user_message = "image data invalid"


class ImageTooLarge(InputValidationError):

    def __init__(self, size: int, max_size: int, **kwargs):
        self.size = size
        self.max_size = max_size
        kwargs.setdefault(
            "user_message",
            f"Image too large ({size / (1024 * 1024):.1f}MB), "
            f"maximum is {max_size / (1024 * 1024):.0f}MB"
        )
        super().__init__(f"Image of {size} bytes exceeds {max_size} bytes", field="image", **kwargs)


class SecurityRejected(CardScanError):
    """Malicious content detected. Never retried, never downgraded."""

    default_user_message = "Input contains potentially unsafe content"


class RecognitionUnavailable(CardScanError):
    """OCR backend timed out or crashed."""

    default_user_message = "Text recognition is temporarily unavailable"

    def __init__(self, message: str, elapsed_ms: int = 0, engine_id: Optional[str] = None, **kwargs):
        self.elapsed_ms = elapsed_ms
        self.engine_id = engine_id
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["elapsed_ms"] = self.elapsed_ms
        return data


class ExtractionUnavailable(CardScanError):
    """AI backend unreachable, timed out or returned an unusable payload."""

    default_user_message = "AI service is temporarily unavailable"


class QuotaExceeded(ExtractionUnavailable):

    default_user_message = "AI service quota has been exceeded"

    def __init__(self, message: str, reset_time: Optional[datetime] = None, **kwargs):
        self.reset_time = reset_time or datetime.utcnow() + timedelta(hours=1)
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reset_time"] = self.reset_time.isoformat()
        return data


class RateLimited(ExtractionUnavailable):

    default_user_message = "Too many requests, please try again later"

    def __init__(self, message: str, retry_after: Optional[timedelta] = None, **kwargs):
        self.retry_after = retry_after if retry_after is not None else timedelta(minutes=1)
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after_seconds"] = int(self.retry_after.total_seconds())
        return data


class PipelineError(CardScanError):
    """Anything uncaught, wrapped with the stage it escaped from."""

    default_user_message = "An unexpected error occurred while processing the card"
