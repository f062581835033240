"""
Error taxonomy for the Gemini generation client.

Every failure the client can raise derives from ``GeminiError`` and renders a
human-readable description through ``str()``. Only ``APIError`` carries a
machine-checkable status code; the retry orchestrator branches on it.

Cancellation is not part of this hierarchy: it travels as
``asyncio.CancelledError`` and is swallowed at the session boundary.
"""

from __future__ import annotations

import json


class GeminiError(Exception):
    """Base class for every error surfaced by the generation client."""


class InvalidRequestError(GeminiError):
    """The request could not be built (bad URL or empty model)."""

    def __init__(self, message: str = "Failed to build Gemini request URL.") -> None:
        super().__init__(message)


class TransportFailureError(GeminiError):
    """The HTTP layer failed or the response could not be interpreted."""

    def __init__(self, message: str = "Gemini returned invalid HTTP response.") -> None:
        super().__init__(message)


class EmptyResponseError(GeminiError):
    """The API answered successfully but produced no usable text."""

    def __init__(self) -> None:
        super().__init__("Gemini returned an empty response.")


class BlockedError(GeminiError):
    """The prompt was rejected by Gemini's safety filters."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Gemini blocked the prompt: {reason}")


class RequestFailedError(GeminiError):
    """Generic failure with a ready-made message."""


class APIError(GeminiError):
    """Upstream rejected the request with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Gemini API error ({status_code}): {self.message}")

    @property
    def message(self) -> str:
        """``error.message`` from the JSON body when present, else the raw body."""
        return parse_api_error_message(self.body) or self.body


def parse_api_error_message(raw_body: str) -> str | None:
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    message = error.get("message")
    return message if isinstance(message, str) else None


# Errors that end a streamed attempt outright; anything else falls back to a
# non-streaming request.
FINAL_STREAM_ERRORS: tuple[type[GeminiError], ...] = (
    APIError,
    BlockedError,
    RequestFailedError,
    InvalidRequestError,
)
