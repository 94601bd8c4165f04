"""Error taxonomy shared by the client, the workspace and the entry points."""

from __future__ import annotations

from typing import Optional


class SceneError(RuntimeError):
    """Base class for every error the studio reports to a user."""


class ConfigurationError(SceneError):
    """A required setting (the API credential) is missing. Never retried."""


class ValidationError(SceneError):
    """A required selection or prompt is missing. Raised before any network call."""


class UnsupportedModel(SceneError):
    """The selected compositing vendor has no implementation."""


class GenerationFailed(SceneError):
    """The vendor produced no usable payload, or retries ran out."""


class DownloadFailed(SceneError):
    """A binary fetch failed after retries, or a finished job had no result location."""


class RetryExhausted(SceneError):
    """Raised by retry.with_retry once the retry budget is spent."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
