"""Error taxonomy."""

from typing import Optional


class CaptionReviewError(Exception):
    """Base class for all caption-review errors."""


class ValidationError(CaptionReviewError):
    """Input rejected locally, before any network call."""


class AuthenticationError(CaptionReviewError):
    """No usable session, credential or identity."""


class TransportError(CaptionReviewError):
    """A remote call failed: connection error, timeout, non-2xx or malformed body."""

    def __init__(self, operation: str, detail: str = "", status: Optional[int] = None):
        self.operation = operation
        self.detail = detail
        self.status = status
        message = f"{operation} failed"
        if status is not None:
            message += f" (HTTP {status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class NotFoundError(TransportError):
    """The remote resource does not exist (HTTP 404)."""


class StageError(CaptionReviewError):
    """An ingestion stage failed; wraps the upstream error."""

    def __init__(self, stage, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage {stage.value} ({stage.label}) failed: {cause}")
