"""Gateway exception hierarchy.

Every error that can end a turn carries a stable ``code`` so callers can
render actionable guidance instead of a generic failure message.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base exception for the gateway core."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ModelNotAvailableError(GatewayError):
    code = "NO_MODEL_AVAILABLE"

    def __init__(self, model_id: str | None) -> None:
        label = model_id or "<default>"
        super().__init__(f"No model available for {label!r}.")
        self.model_id = model_id


class UnsupportedProviderError(GatewayError):
    code = "UNSUPPORTED_PROVIDER"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider {provider!r} is not supported.")
        self.provider = provider


class ApiKeyMissingError(GatewayError):
    code = "API_KEY_NOT_FOUND"

    def __init__(self, provider: str, env_var: str) -> None:
        super().__init__(f"API key for provider {provider!r} not found (set {env_var}).")
        self.provider = provider
        self.env_var = env_var


_CONTEXT_WINDOW_MARKERS = (
    "context_length_exceeded",
    "context length",
    "maximum context",
    "too many tokens",
    "prompt is too long",
    "input token count",
)


class UpstreamProviderError(GatewayError):
    """Network failure, non-2xx status, or a vendor-reported error."""

    code = "UPSTREAM_PROVIDER_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}", code=code, details=details)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable

    @classmethod
    def from_status(cls, provider: str, status_code: int, body: str = "") -> UpstreamProviderError:
        lowered = body.lower()
        if status_code in (401, 403):
            code = "AUTHENTICATION_FAILED"
            message = "authentication failed"
        elif status_code == 429:
            code = "RATE_LIMIT_EXCEEDED"
            message = "rate limit exceeded"
        elif status_code >= 500:
            code = "SERVICE_ERROR"
            message = "provider service error"
        elif any(marker in lowered for marker in _CONTEXT_WINDOW_MARKERS):
            code = "CONTEXT_WINDOW_EXCEEDED"
            message = "request exceeds the model's context window"
        elif status_code == 400:
            code = "INVALID_REQUEST"
            message = "provider rejected the request"
        else:
            code = cls.code
            message = "provider returned an error"
        return cls(
            provider,
            message,
            status_code=status_code,
            retryable=status_code == 429 or status_code >= 500,
            code=code,
            details=body[:2000] or None,
        )


class StreamParseError(GatewayError):
    """A stream chunk (or a tool call's accumulated arguments) could not be parsed."""

    code = "STREAM_PARSE_ERROR"

    def __init__(self, message: str, *, raw: Any = None, call_id: str | None = None) -> None:
        super().__init__(message)
        self.raw = raw
        self.call_id = call_id


class StreamLimitError(GatewayError):
    code = "STREAM_LIMIT_EXCEEDED"


class ToolExecutionError(GatewayError):
    """A tool raised or could not run. Reported to the model, never ends the turn."""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool_id: str, message: str) -> None:
        super().__init__(message)
        self.tool_id = tool_id


class ToolTimeoutError(ToolExecutionError):
    code = "TOOL_TIMEOUT"

    def __init__(self, tool_id: str, timeout: float) -> None:
        super().__init__(tool_id, f'Tool "{tool_id}" timed out after {timeout:g}s')
        self.timeout = timeout


class ThrottleTimeoutError(GatewayError):
    code = "THROTTLE_TIMEOUT"

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"No concurrency slot for {key!r} within {timeout:g}s")
        self.key = key
        self.timeout = timeout


class ToolLoopExceededError(GatewayError):
    code = "TOOL_LOOP_EXCEEDED"

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Tool calling loop exceeded {max_iterations} iterations")
        self.max_iterations = max_iterations


class TurnTimeoutError(GatewayError):
    code = "REQUEST_TIMEOUT"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Request timed out after {timeout:g} seconds")
        self.timeout = timeout


class CancellationError(GatewayError):
    """Not a failure: marks a turn that was cancelled by its caller."""

    code = "CANCELLED"

    def __init__(self, message: str = "Turn cancelled") -> None:
        super().__init__(message)
