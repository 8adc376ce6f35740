"""Error taxonomy shared by the render pipeline."""
from __future__ import annotations

from typing import Optional


class RenderPipelineError(RuntimeError):
    """Base class for failures raised by render pipeline components."""

    code = "PIPELINE_ERROR"


class ConfigError(RenderPipelineError):
    """Raised when credentials or configuration required by a stage are missing."""

    code = "CONFIG_ERROR"


class NotFound(RenderPipelineError):
    """Raised when a template, asset or run cannot be located."""

    code = "NOT_FOUND"


class PromptBlocked(NotFound):
    """Raised when a prompt exists but the shop's runtime config forbids it."""

    code = "PROMPT_BLOCKED"


class UpstreamError(RenderPipelineError):
    """Raised when an external service answers with a failure.

    ``retryable`` marks network errors, 5xx answers and rate limiting; the
    controller retries those and fails everything else immediately.
    """

    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: str = "",
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.retryable = retryable

    @classmethod
    def from_status(cls, service: str, status_code: int, body: str) -> "UpstreamError":
        retryable = status_code >= 500 or status_code == 429
        return cls(
            f"{service} returned {status_code}: {body[:500]}",
            status_code=status_code,
            body=body,
            retryable=retryable,
        )


class RenderTimeout(RenderPipelineError):
    """Raised when an external call exceeds its deadline."""

    code = "TIMEOUT"


class TelemetryError(RenderPipelineError):
    """Raised by telemetry sinks that cannot accept data."""

    code = "TELEMETRY_ERROR"


class MaskMismatchError(RenderPipelineError):
    """Raised when a cleanup mask does not match the image dimensions."""

    code = "MASK_MISMATCH"
