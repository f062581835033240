"""
Incremental Server-Sent-Events parsing for ``streamGenerateContent`` responses.

The parser is line driven: feed it the lines of an HTTP body and it hands back
the cumulative reply text every time an event decodes to new text. Gemini can
send either cumulative or delta chunks, and some proxies drop the blank line
between events, so decoding is attempted eagerly after every ``data:`` line
and the merge rule in ``merge_streaming_text`` absorbs any repeats.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

from .exceptions import EmptyResponseError

logger = logging.getLogger("gemini_chat.streaming")

DONE_SENTINEL = "[DONE]"


def merge_streaming_text(current: str, incoming: str) -> str:
    """Combine the text shown so far with a newly decoded fragment.

    Cumulative fragments replace the current text, stale or duplicate
    fragments are ignored, anything else is treated as a delta and appended.
    """
    if incoming == current:
        return current
    if incoming.startswith(current):
        return incoming
    if current.startswith(incoming):
        return current
    return current + incoming


def candidate_text(response: Any) -> str | None:
    """Join the text parts of the first candidate with newlines."""
    if not isinstance(response, dict):
        return None
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, dict):
        return None
    content = first.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return None
    texts = [part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
    if not texts:
        return None
    return "\n".join(texts)


@dataclass(frozen=True)
class ParsedStreamEvent:
    """One decoded event; ``text`` is None when the event carried no text."""

    text: str | None


def parse_stream_payload(payload: str) -> ParsedStreamEvent | None:
    """Decode one JSON payload (an object or an array of objects)."""
    try:
        decoded = json.loads(payload)
    except ValueError:
        return None

    if isinstance(decoded, dict):
        return ParsedStreamEvent(text=candidate_text(decoded) or None)

    if isinstance(decoded, list):
        merged = ""
        for item in decoded:
            text = candidate_text(item)
            if text:
                merged = merge_streaming_text(merged, text)
        if merged:
            return ParsedStreamEvent(text=merged)

    return None


def parse_sse_event(event_lines: list[str]) -> ParsedStreamEvent | None:
    """Decode a buffered event, recovering line by line when the joined payload is malformed."""
    if not event_lines:
        return None
    payload = "\n".join(event_lines)
    if payload == DONE_SENTINEL:
        return None

    parsed = parse_stream_payload(payload)
    if parsed is not None:
        return parsed

    merged = ""
    parsed_any = False
    for line in event_lines:
        line_event = parse_stream_payload(line)
        if line_event is None:
            continue
        parsed_any = True
        if line_event.text:
            merged = merge_streaming_text(merged, line_event.text)

    if not parsed_any:
        return None
    return ParsedStreamEvent(text=merged or None)


class SSEStreamParser:
    """Stateful SSE line parser producing cumulative reply text.

    ``feed_line`` returns the new cumulative text whenever a line completes an
    event that changes it, otherwise None. ``done`` flips once ``[DONE]`` is
    seen; callers stop feeding and call ``finish``.
    """

    def __init__(self) -> None:
        self.current_text = ""
        self.has_text = False
        self.done = False
        self._event_lines: list[str] = []

    def feed_line(self, raw_line: str) -> str | None:
        if self.done:
            return None
        line = raw_line.strip()

        if not line:
            update = self._flush()
            self._event_lines.clear()
            return update

        if line.startswith(":"):
            return None

        if not line.startswith("data:"):
            # event:, id: and retry: fields carry nothing we render.
            return None

        payload = line[len("data:") :]
        if payload.startswith(" "):
            payload = payload[1:]

        if payload == DONE_SENTINEL:
            self.done = True
            return None

        self._event_lines.append(payload)

        parsed = parse_sse_event(self._event_lines)
        if parsed is None:
            return None
        self._event_lines.clear()
        return self._apply(parsed)

    def finish(self) -> str | None:
        """Flush whatever is left in the event buffer at end of stream."""
        update = self._flush()
        self._event_lines.clear()
        return update

    def _flush(self) -> str | None:
        parsed = parse_sse_event(self._event_lines)
        if parsed is None:
            return None
        return self._apply(parsed)

    def _apply(self, parsed: ParsedStreamEvent) -> str | None:
        if parsed.text is None:
            return None
        self.has_text = True
        merged = merge_streaming_text(self.current_text, parsed.text)
        if merged == self.current_text:
            return None
        self.current_text = merged
        return merged


async def iter_stream_text(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Turn an async iterable of SSE lines into successive cumulative texts.

    Raises:
        EmptyResponseError: the stream ended without any decoded text.
    """
    parser = SSEStreamParser()
    async for line in lines:
        update = parser.feed_line(line)
        if update is not None:
            yield update
        if parser.done:
            break

    update = parser.finish()
    if update is not None:
        yield update

    if not parser.has_text:
        raise EmptyResponseError()
    logger.debug("[GeminiChat Stream] Stream finished with %d chars.", len(parser.current_text))
