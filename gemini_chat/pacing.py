"""
Display pacing for streamed replies.

Network chunks arrive in bursts. ``StreamingRateEstimator`` turns chunk timing
into a smoothed chars/second signal and ``animate_to_target`` reveals text at
that rate in small groups, so the reply types out steadily instead of jumping.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

INITIAL_STREAM_RATE = 52.0
FULL_REPLY_RATE = 120.0

MIN_CHUNK_INTERVAL_SECONDS = 0.03
MIN_MEASURED_RATE = 8.0
MAX_MEASURED_RATE = 260.0
RATE_SMOOTHING_KEEP = 0.72

MIN_PACING_RATE = 10.0
MAX_PACING_RATE = 260.0
MAX_CHUNK_DELAY_SECONDS = 0.032

# (rate upper bound, characters per UI update)
CHUNK_SIZE_STEPS = ((28.0, 1), (64.0, 2), (120.0, 3), (190.0, 5))
MAX_CHUNK_SIZE = 7


def measured_streaming_rate(
    previous_text: str,
    next_text: str,
    previous_chunk_at: float | None,
    now: float,
    previous_rate: float,
) -> float:
    """Blend the instantaneous arrival rate of one chunk into the smoothed rate."""
    appended = max(1, len(next_text) - len(previous_text))
    if previous_chunk_at is None:
        return previous_rate

    elapsed = max(MIN_CHUNK_INTERVAL_SECONDS, now - previous_chunk_at)
    instant_rate = min(max(appended / elapsed, MIN_MEASURED_RATE), MAX_MEASURED_RATE)
    return previous_rate * RATE_SMOOTHING_KEEP + instant_rate * (1 - RATE_SMOOTHING_KEEP)


class StreamingRateEstimator:
    """Tracks the smoothed chars/second of one streamed reply."""

    def __init__(
        self,
        initial_rate: float = INITIAL_STREAM_RATE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = initial_rate
        self._clock = clock
        self._last_text = ""
        self._last_chunk_at: float | None = None

    def observe(self, text: str, now: float | None = None) -> float:
        """Record a new cumulative text and return the updated rate."""
        if now is None:
            now = self._clock()
        self.rate = measured_streaming_rate(
            self._last_text, text, self._last_chunk_at, now, self.rate
        )
        self._last_text = text
        self._last_chunk_at = now
        return self.rate


@dataclass(frozen=True)
class AnimationPacing:
    chunk_size: int
    delay: float


def animation_pacing(rate: float) -> AnimationPacing:
    """Pick characters-per-update and the pause between updates for ``rate``."""
    clamped = min(max(rate, MIN_PACING_RATE), MAX_PACING_RATE)

    chunk_size = MAX_CHUNK_SIZE
    for upper_bound, size in CHUNK_SIZE_STEPS:
        if clamped < upper_bound:
            chunk_size = size
            break

    delay = min(max(chunk_size / clamped, 0.0), MAX_CHUNK_DELAY_SECONDS)
    return AnimationPacing(chunk_size=chunk_size, delay=delay)


def common_prefix_length(left: str, right: str) -> int:
    length = 0
    for a, b in zip(left, right):
        if a != b:
            break
        length += 1
    return length


async def animate_to_target(
    current_text: str,
    target_text: str,
    rate: float,
    render: Callable[[str], None],
    *,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Reveal ``target_text`` progressively, starting from ``current_text``.

    Anything in ``current_text`` that disagrees with the target is snapped back
    to the shared prefix at once; only the remaining suffix is animated.
    ``render`` receives every intermediate text. When ``cancel_event`` is set the
    animation stops before the next character and the text rendered so far is
    kept. Task cancellation propagates from ``sleep`` as usual.

    Returns:
        The last text passed to ``render`` (or ``current_text`` if unchanged).
    """
    if not target_text:
        render("")
        return ""
    if current_text == target_text:
        return current_text

    prefix_length = common_prefix_length(current_text, target_text)
    rendered = target_text[:prefix_length]
    if rendered != current_text:
        render(rendered)

    pacing = animation_pacing(rate)
    chunk = ""
    for character in target_text[prefix_length:]:
        if cancel_event is not None and cancel_event.is_set():
            return rendered
        chunk += character

        if len(chunk) >= pacing.chunk_size or character == "\n":
            rendered += chunk
            render(rendered)
            chunk = ""
            if pacing.delay > 0:
                await sleep(pacing.delay)

    if chunk:
        rendered += chunk
        render(rendered)
    return rendered
