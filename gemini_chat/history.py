"""
Chat history persistence and transcript export.

Threads live in one JSON document (``chat-history.json``). Writes go to a
temporary sibling file first and are moved into place with ``os.replace``, so
a crash mid-write never leaves a truncated history behind.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path

from .models import ChatRole, ChatThread, utc_now

logger = logging.getLogger("gemini_chat.history")


class HistoryStoreError(Exception):
    """Chat history could not be read or written."""


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    """Write ``text`` to ``path`` via a temp file + rename in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class ChatHistoryStore:
    """Loads and saves the full list of chat threads."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load_threads(self) -> list[ChatThread]:
        """Return every stored thread; a missing or blank file means no history yet."""
        if not self.path.exists():
            return []
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise HistoryStoreError(str(exc)) from exc
        if not raw.strip():
            return []

        try:
            payload = json.loads(raw)
            if not isinstance(payload, list):
                raise HistoryStoreError(f"{self.path.name} does not contain a list of chats")
            threads = [ChatThread.from_dict(item) for item in payload]
        except (ValueError, KeyError, TypeError) as exc:
            raise HistoryStoreError(f"{self.path.name} is corrupted: {exc}") from exc

        logger.debug("[GeminiChat History] Loaded %d chats from %s", len(threads), self.path)
        return threads

    def save_threads(self, threads: Sequence[ChatThread]) -> None:
        payload = json.dumps(
            [thread.to_dict() for thread in threads],
            indent=2,
            sort_keys=True,
            ensure_ascii=False,
        )
        try:
            atomic_write_text(self.path, payload + "\n")
        except OSError as exc:
            raise HistoryStoreError(str(exc)) from exc
        logger.debug("[GeminiChat History] Saved %d chats to %s", len(threads), self.path)


# ── Export ────────────────────────────────────────────────────────────────────


def export_jsonl(thread: ChatThread, target: Path) -> None:
    """Export a chat as JSONL: one metadata record, then one record per message."""
    target.parent.mkdir(parents=True, exist_ok=True)

    with target.open("w", encoding="utf-8") as handle:
        metadata = {
            "type": "chat_metadata",
            "chat_id": str(thread.id),
            "title": thread.title,
            "created_at": thread.created_at.isoformat(),
            "exported_at": utc_now().isoformat(),
        }
        handle.write(json.dumps(metadata, ensure_ascii=False) + "\n")
        for message in thread.messages:
            record = {
                "type": "message",
                "role": message.role.value,
                "created_at": message.created_at.isoformat(),
                "content": message.text,
            }
            if message.model_name is not None:
                record["model"] = message.model_name
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")


def export_markdown(thread: ChatThread, target: Path) -> None:
    """Export a chat as a Markdown transcript."""
    target.parent.mkdir(parents=True, exist_ok=True)

    lines = [f"# {thread.title}", "", f"Exported: {utc_now().isoformat()}", ""]
    for message in thread.messages:
        heading = "User" if message.role is ChatRole.USER else "Assistant"
        lines.append(f"## {heading} ({message.created_at.isoformat()})")
        lines.append("")
        lines.append(message.text)
        lines.append("")

    target.write_text("\n".join(lines), encoding="utf-8")
