"""
Async HTTP client for the Gemini ``generativelanguage`` REST API.

Covers the three calls a chat client needs: a blocking ``generateContent``,
a streamed ``streamGenerateContent`` (SSE) and model listing/resolution.
Every failure is raised as a ``GeminiError`` subclass.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from .exceptions import (
    APIError,
    BlockedError,
    EmptyResponseError,
    InvalidRequestError,
    RequestFailedError,
    TransportFailureError,
)
from .models import ChatMessage, ChatRole, SafetyPreset
from .streaming import candidate_text, iter_stream_text

logger = logging.getLogger("gemini_chat.client")

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT_SECONDS = 60.0
MODEL_LIST_PAGE_SIZE = "1000"

GENERATE_METHOD = "generateContent"
STREAM_METHOD = "streamGenerateContent"

MODEL_FALLBACK_PRIORITY = (
    "gemini-2.0-flash",
    "gemini-2.0-flash-lite",
    "gemini-1.5-flash",
    "gemini-1.5-pro",
)

_KEY_PARAM_PATTERN = re.compile(r"([?&]key=)[^&]*")


def redact_api_key(url: str) -> str:
    """Mask the ``key`` query parameter so URLs are safe to log."""
    return _KEY_PARAM_PATTERN.sub(r"\1***", url)


def normalized_system_prompt(value: str | None) -> str | None:
    """Trim a system prompt; blank prompts count as absent."""
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def build_generate_body(
    messages: Sequence[ChatMessage],
    system_prompt: str | None = None,
    safety_preset: SafetyPreset = SafetyPreset.DEFAULT,
) -> dict[str, Any]:
    """Build the JSON body shared by the streaming and blocking endpoints."""
    body: dict[str, Any] = {
        "contents": [
            {
                "role": "model" if message.role is ChatRole.ASSISTANT else "user",
                "parts": [{"text": message.text}],
            }
            for message in messages
        ]
    }
    prompt = normalized_system_prompt(system_prompt)
    if prompt is not None:
        body["systemInstruction"] = {"parts": [{"text": prompt}]}
    safety_settings = safety_preset.safety_settings()
    if safety_settings is not None:
        body["safetySettings"] = safety_settings
    return body


class GeminiClient:
    """Thin async wrapper over the Gemini REST endpoints.

    Pass an ``httpx.AsyncClient`` to share a connection pool (or to inject a
    ``MockTransport`` in tests); otherwise the client creates and owns one.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def __aenter__(self) -> GeminiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_reply(
        self,
        messages: Sequence[ChatMessage],
        api_key: str,
        model: str,
        system_prompt: str | None = None,
        safety_preset: SafetyPreset = SafetyPreset.DEFAULT,
    ) -> str:
        """Request a complete reply in one blocking call."""
        url = self._generate_url(model, streaming=False)
        body = build_generate_body(messages, system_prompt, safety_preset)
        logger.debug("[GeminiChat Client] POST %s (%d contents)", url, len(body["contents"]))

        try:
            response = await self._http.post(url, params={"key": api_key}, json=body)
        except httpx.RequestError as exc:
            raise TransportFailureError(f"Gemini request failed: {exc}") from exc

        if not response.is_success:
            raise self._api_error(response.status_code, response.text)

        decoded = self._decode_json(response)
        text = (candidate_text(decoded) or "").strip()
        if text:
            return text

        feedback = decoded.get("promptFeedback") if isinstance(decoded, dict) else None
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            raise BlockedError(str(block_reason))
        raise EmptyResponseError()

    async def stream_generate_reply(
        self,
        messages: Sequence[ChatMessage],
        api_key: str,
        model: str,
        system_prompt: str | None = None,
        safety_preset: SafetyPreset = SafetyPreset.DEFAULT,
    ) -> AsyncIterator[str]:
        """Stream a reply, yielding the cumulative text after each decoded event.

        Raises:
            APIError: non-2xx status; the body is read in full for diagnostics.
            EmptyResponseError: the stream ended without any text.
            TransportFailureError: the connection failed mid-request.
        """
        url = self._generate_url(model, streaming=True)
        body = build_generate_body(messages, system_prompt, safety_preset)
        logger.debug("[GeminiChat Client] POST %s (stream)", url)

        try:
            async with self._http.stream(
                "POST",
                url,
                params={"key": api_key, "alt": "sse"},
                json=body,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    raw = await response.aread()
                    raise self._api_error(
                        response.status_code, raw.decode("utf-8", errors="replace")
                    )
                async for text in iter_stream_text(response.aiter_lines()):
                    yield text
        except httpx.RequestError as exc:
            raise TransportFailureError(f"Gemini stream failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_generate_content_models(
        self, api_key: str, require_streaming: bool = False
    ) -> list[str]:
        """List model ids that support generateContent (and streaming, if required)."""
        url = f"{self.base_url}/models"
        try:
            response = await self._http.get(
                url, params={"key": api_key, "pageSize": MODEL_LIST_PAGE_SIZE}
            )
        except httpx.RequestError as exc:
            raise TransportFailureError(f"Gemini request failed: {exc}") from exc

        if not response.is_success:
            raise self._api_error(response.status_code, response.text)

        decoded = self._decode_json(response)
        entries = decoded.get("models") if isinstance(decoded, dict) else None

        names: set[str] = set()
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            methods = entry.get("supportedGenerationMethods")
            if not isinstance(methods, list) or GENERATE_METHOD not in methods:
                continue
            if require_streaming and STREAM_METHOD not in methods:
                continue
            name = str(entry.get("name", "")).rsplit("/", 1)[-1]
            if name:
                names.add(name)

        return sorted(names)

    async def resolve_model_and_available_models(
        self, api_key: str, preferred_model: str
    ) -> tuple[str, list[str]]:
        """Pick a usable model: the preferred one, a known fallback, or the first listed."""
        available = await self.list_generate_content_models(api_key, require_streaming=True)
        if not available:
            available = await self.list_generate_content_models(api_key, require_streaming=False)
        if not available:
            raise RequestFailedError(
                "No models with generateContent support are available for this API key."
            )

        if preferred_model in available:
            return preferred_model, available
        for candidate in MODEL_FALLBACK_PRIORITY:
            if candidate in available:
                logger.info(
                    "[GeminiChat Client] Model %s unavailable; falling back to %s.",
                    preferred_model,
                    candidate,
                )
                return candidate, available
        return available[0], available

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _generate_url(self, model: str, *, streaming: bool) -> str:
        trimmed = model.strip()
        if not trimmed:
            raise InvalidRequestError("Model cannot be empty.")
        if any(char.isspace() for char in trimmed):
            raise InvalidRequestError()

        method = STREAM_METHOD if streaming else GENERATE_METHOD
        url = f"{self.base_url}/models/{trimmed}:{method}"
        try:
            httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise InvalidRequestError() from exc
        return url

    @staticmethod
    def _api_error(status_code: int, raw_body: str) -> APIError:
        error = APIError(status_code, raw_body or "<empty>")
        logger.warning("[GeminiChat Client] %s", error)
        return error

    @staticmethod
    def _decode_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.warning(
                "[GeminiChat Client] Undecodable body from %s",
                redact_api_key(str(response.request.url)),
            )
            raise TransportFailureError() from exc
