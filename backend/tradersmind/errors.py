from __future__ import annotations


class PlatformError(Exception):
    """Base class for failures reported by the chat platform."""

    def __init__(self, message: str, *, status_code: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class NotFoundError(PlatformError):
    """The message, channel or thread is already gone."""


class ForbiddenError(PlatformError):
    """The bot lacks permission; retrying will not help."""


class TransientError(PlatformError):
    """Any other platform or network failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, code=code)
        self.retry_after = retry_after


class ArtifactValidationError(ValueError):
    """Tracked artifact data is malformed."""


class QuoteUnavailableError(RuntimeError):
    """No quote provider returned usable data for a ticker."""


class ChartRenderError(RuntimeError):
    """The chart image could not be produced."""
