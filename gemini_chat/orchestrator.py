"""
Retry and fallback sequencing for one assistant reply.

A reply is attempted as a stream first. Transport trouble falls back to a
blocking request, a 400 complaining about system instructions retries once
without the system prompt, and a 404 for the model re-resolves a usable model
and tries again. Rendering goes through a ``ReplyTarget``, which owns the
message list; the orchestrator only asks it to add, update and drop messages.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from .client import GeminiClient, normalized_system_prompt
from .exceptions import FINAL_STREAM_ERRORS, APIError, GeminiError
from .models import ChatMessage, SafetyPreset
from .pacing import FULL_REPLY_RATE, StreamingRateEstimator, animate_to_target

logger = logging.getLogger("gemini_chat.orchestrator")

SYSTEM_PROMPT_UNSUPPORTED_MARKERS = (
    "developer instruction is not enabled",
    "system instruction is not enabled",
    "system_instruction",
)


class ReplyTarget(Protocol):
    """Owner of the message list a reply is rendered into."""

    def append_assistant_placeholder(self, model_name: str) -> uuid.UUID: ...

    def update_message(self, message_id: uuid.UUID, text: str) -> None: ...

    def remove_message(self, message_id: uuid.UUID) -> None: ...

    def message_text(self, message_id: uuid.UUID) -> str: ...


def should_retry_without_system_prompt(error: BaseException, had_system_prompt: bool) -> bool:
    if not had_system_prompt:
        return False
    if not isinstance(error, APIError) or error.status_code != 400:
        return False
    body = error.body.lower()
    return any(marker in body for marker in SYSTEM_PROMPT_UNSUPPORTED_MARKERS)


@dataclass
class ReplyOutcome:
    """What it took to get a reply out, for the user-facing notice."""

    requested_model: str
    model: str
    dropped_system_prompt: bool = False
    model_recovered: bool = False
    available_models: list[str] = field(default_factory=list)

    def notice(self) -> str | None:
        if self.model_recovered:
            notice = (
                f"Model {self.requested_model} is unavailable for your key. "
                f"Switched to {self.model}."
            )
            if self.dropped_system_prompt:
                notice += " System prompt is unsupported and was skipped."
            return notice
        if self.dropped_system_prompt:
            return (
                f"System prompt is not supported for {self.model}. "
                "Message was sent without it."
            )
        return None


class ReplyOrchestrator:
    """Runs the stream → fallback → prompt-drop → model-recovery sequence.

    ``cancel_event`` is the cooperative stop signal: it is checked between
    streamed chunks and between animated characters. Setting it makes the
    sequence unwind with ``asyncio.CancelledError``, keeping any text already
    rendered.
    """

    def __init__(
        self,
        client: GeminiClient,
        target: ReplyTarget,
        *,
        cancel_event: asyncio.Event | None = None,
        on_model_resolved: Callable[[str, list[str]], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._target = target
        self._cancel_event = cancel_event or asyncio.Event()
        self._on_model_resolved = on_model_resolved
        self._clock = clock
        self._sleep = sleep

    async def deliver(
        self,
        source_messages: Sequence[ChatMessage],
        api_key: str,
        model: str,
        system_prompt: str | None,
        safety_preset: SafetyPreset,
    ) -> ReplyOutcome:
        outcome = ReplyOutcome(requested_model=model, model=model)
        try:
            outcome.dropped_system_prompt = await self.send_with_prompt_fallback(
                source_messages, api_key, model, system_prompt, safety_preset
            )
            return outcome
        except APIError as exc:
            if exc.status_code != 404:
                raise

        self._raise_if_cancelled()
        resolved, available = await self._client.resolve_model_and_available_models(
            api_key, model
        )
        logger.info("[GeminiChat Reply] Model %s not found; retrying with %s.", model, resolved)
        outcome.model = resolved
        outcome.model_recovered = True
        outcome.available_models = available
        if self._on_model_resolved is not None:
            self._on_model_resolved(resolved, available)

        outcome.dropped_system_prompt = await self.send_with_prompt_fallback(
            source_messages, api_key, resolved, system_prompt, safety_preset
        )
        return outcome

    async def send_with_prompt_fallback(
        self,
        source_messages: Sequence[ChatMessage],
        api_key: str,
        model: str,
        system_prompt: str | None,
        safety_preset: SafetyPreset,
    ) -> bool:
        """Stream one reply; returns True if the system prompt had to be dropped."""
        prompt = normalized_system_prompt(system_prompt)
        try:
            assistant_id = self._target.append_assistant_placeholder(model)
            await self.stream_assistant_reply(
                source_messages, api_key, model, prompt, safety_preset, assistant_id
            )
            return False
        except APIError as exc:
            if not should_retry_without_system_prompt(exc, prompt is not None):
                raise

        logger.info("[GeminiChat Reply] %s rejected the system prompt; retrying without it.", model)
        self._raise_if_cancelled()
        assistant_id = self._target.append_assistant_placeholder(model)
        await self.stream_assistant_reply(
            source_messages, api_key, model, None, safety_preset, assistant_id
        )
        return True

    async def stream_assistant_reply(
        self,
        source_messages: Sequence[ChatMessage],
        api_key: str,
        model: str,
        system_prompt: str | None,
        safety_preset: SafetyPreset,
        assistant_id: uuid.UUID,
    ) -> None:
        """Render a streamed reply into ``assistant_id``, falling back to a full reply.

        The placeholder is removed whenever the attempt ends without any text.
        Once partial text is on screen a later failure keeps it and is only logged.
        """
        received_text = False
        estimator = StreamingRateEstimator(clock=self._clock)
        stream = self._client.stream_generate_reply(
            source_messages, api_key, model, system_prompt, safety_preset
        )

        try:
            async for partial_text in stream:
                self._raise_if_cancelled()
                received_text = True
                rate = estimator.observe(partial_text)
                await self._animate(assistant_id, partial_text, rate)
                self._raise_if_cancelled()
        except asyncio.CancelledError:
            if not received_text:
                self._target.remove_message(assistant_id)
            raise
        except FINAL_STREAM_ERRORS as exc:
            if not received_text:
                self._target.remove_message(assistant_id)
                raise
            logger.warning("[GeminiChat Reply] Stream ended early, keeping partial text: %s", exc)
            return
        except GeminiError as exc:
            logger.warning("[GeminiChat Reply] Stream failed (%s); requesting full reply.", exc)
            await self._deliver_full_reply(
                source_messages, api_key, model, system_prompt, safety_preset,
                assistant_id, received_text,
            )
            return
        finally:
            await stream.aclose()

        if not received_text:
            await self._deliver_full_reply(
                source_messages, api_key, model, system_prompt, safety_preset,
                assistant_id, received_text,
            )

    async def _deliver_full_reply(
        self,
        source_messages: Sequence[ChatMessage],
        api_key: str,
        model: str,
        system_prompt: str | None,
        safety_preset: SafetyPreset,
        assistant_id: uuid.UUID,
        received_text: bool,
    ) -> None:
        try:
            full_reply = await self._client.generate_reply(
                source_messages, api_key, model, system_prompt, safety_preset
            )
        except (GeminiError, asyncio.CancelledError) as exc:
            if not received_text:
                self._target.remove_message(assistant_id)
                raise
            if isinstance(exc, asyncio.CancelledError):
                raise
            logger.warning("[GeminiChat Reply] Fallback failed, keeping partial text: %s", exc)
            return

        await self._animate(assistant_id, full_reply, FULL_REPLY_RATE)
        self._raise_if_cancelled()

    async def _animate(self, message_id: uuid.UUID, target_text: str, rate: float) -> None:
        await animate_to_target(
            self._target.message_text(message_id),
            target_text,
            rate,
            lambda text: self._target.update_message(message_id, text),
            cancel_event=self._cancel_event,
            sleep=self._sleep,
        )

    def _raise_if_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise asyncio.CancelledError()
