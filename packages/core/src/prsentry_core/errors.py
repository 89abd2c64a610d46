"""Error taxonomy for the review pipeline.

Fatal errors abort the run before or during a stage; non-fatal errors are
recorded on the ReviewRun and surfaced in the summary while the run continues.
"""

from __future__ import annotations


class ReviewError(Exception):
    """Base class for every error raised by the pipeline."""

    fatal: bool = False
    retryable: bool = False


class ConfigError(ReviewError):
    """Missing credentials or invalid settings. Raised before any I/O."""

    fatal = True


class FetchError(ReviewError):
    """The pull request context (diff, metadata, existing comments) could not be retrieved."""

    fatal = True


class ChunkError(ReviewError):
    """The chunk budget cannot hold even a minimal hunk fragment."""

    fatal = True


class ModelError(ReviewError):
    """A completion call failed. Recorded per chunk once retries are exhausted."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(ModelError):
    fatal = True


class RateLimitError(ModelError):
    retryable = True

    def __init__(self, message: str, status_code: int | None = 429, retry_after: float | None = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ModelTimeoutError(ModelError):
    retryable = True


class ServerError(ModelError):
    retryable = True


class NetworkError(ModelError):
    retryable = True


class ParseError(ReviewError):
    """Model output for a chunk yielded no usable findings."""


class PostError(ReviewError):
    """A single comment could not be published."""
