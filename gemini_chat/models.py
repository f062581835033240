"""Chat data model: messages, threads, summaries, safety presets, connection status."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

NEW_CHAT_TITLE = "New Chat"
EMPTY_PREVIEW = "No messages yet"
TITLE_MAX_CHARS = 64
PREVIEW_MAX_CHARS = 90

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def utc_now() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(UTC)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is present."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalized_whitespace(text: str) -> str:
    """Collapse every whitespace run into a single space."""
    return " ".join(text.split())


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatMessage:
    """One chat turn. ``text`` grows in place while a reply streams in."""

    role: ChatRole
    text: str = ""
    model_name: str | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "createdAt": self.created_at.isoformat(),
            "id": str(self.id),
            "role": self.role.value,
            "text": self.text,
        }
        if self.model_name is not None:
            data["modelName"] = self.model_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        if not isinstance(data, dict):
            raise TypeError(f"message must be an object, not {type(data).__name__}")
        model_name = data.get("modelName")
        return cls(
            id=uuid.UUID(str(data["id"])),
            role=ChatRole(str(data["role"])),
            text=str(data.get("text", "")),
            model_name=None if model_name is None else str(model_name),
            created_at=parse_timestamp(str(data["createdAt"])),
        )


@dataclass
class ChatThread:
    """One persisted conversation."""

    title: str = NEW_CHAT_TITLE
    messages: list[ChatMessage] = field(default_factory=list)
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def empty(cls) -> ChatThread:
        now = utc_now()
        return cls(title=NEW_CHAT_TITLE, messages=[], created_at=now, updated_at=now)

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def summary(self) -> ChatThreadSummary:
        return ChatThreadSummary(
            id=self.id,
            title=self.title,
            preview=preview_text(self.messages),
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "createdAt": self.created_at.isoformat(),
            "id": str(self.id),
            "messages": [message.to_dict() for message in self.messages],
            "title": self.title,
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatThread:
        if not isinstance(data, dict):
            raise TypeError(f"chat must be an object, not {type(data).__name__}")
        messages = data.get("messages", [])
        if not isinstance(messages, list):
            raise TypeError("chat messages must be a list")
        return cls(
            id=uuid.UUID(str(data["id"])),
            title=str(data.get("title", NEW_CHAT_TITLE)),
            messages=[ChatMessage.from_dict(item) for item in messages],
            created_at=parse_timestamp(str(data["createdAt"])),
            updated_at=parse_timestamp(str(data["updatedAt"])),
        )


@dataclass(frozen=True)
class ChatThreadSummary:
    """Read-only projection of a thread for listings."""

    id: uuid.UUID
    title: str
    preview: str
    updated_at: datetime

    def matches(self, query: str) -> bool:
        needle = query.strip().casefold()
        if not needle:
            return True
        return needle in self.title.casefold() or needle in self.preview.casefold()


def history_title(messages: list[ChatMessage]) -> str:
    """Derive a thread title from its first user message."""
    first_user = next((m for m in messages if m.role is ChatRole.USER), None)
    if first_user is None:
        return NEW_CHAT_TITLE
    text = first_user.text.strip()
    if not text:
        return NEW_CHAT_TITLE

    first_line = text.splitlines()[0]
    result = normalized_whitespace(first_line)[:TITLE_MAX_CHARS].strip()
    return result or NEW_CHAT_TITLE


def preview_text(messages: list[ChatMessage]) -> str:
    """Last non-empty message, flattened to one line and truncated."""
    for message in reversed(messages):
        if message.text.strip():
            single_line = normalized_whitespace(message.text)
            return single_line[:PREVIEW_MAX_CHARS] if single_line else EMPTY_PREVIEW
    return EMPTY_PREVIEW


class SafetyPreset(str, Enum):
    DEFAULT = "default"
    STRICT = "strict"
    BALANCED = "balanced"
    RELAXED = "relaxed"
    OFF = "off"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def description(self) -> str:
        return _SAFETY_DESCRIPTIONS[self]

    @property
    def threshold(self) -> str | None:
        """Block threshold applied to every harm category, or None for API defaults."""
        return _SAFETY_THRESHOLDS[self]

    def safety_settings(self) -> list[dict[str, str]] | None:
        if self.threshold is None:
            return None
        return [{"category": category, "threshold": self.threshold} for category in HARM_CATEGORIES]

    @classmethod
    def from_value(cls, value: str | None) -> SafetyPreset:
        """Lenient lookup; unknown or missing values map to ``DEFAULT``."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.DEFAULT


_SAFETY_DESCRIPTIONS = {
    SafetyPreset.DEFAULT: "Use Gemini default safety behavior",
    SafetyPreset.STRICT: "Block low-risk and above",
    SafetyPreset.BALANCED: "Block medium-risk and above",
    SafetyPreset.RELAXED: "Block only high-risk content",
    SafetyPreset.OFF: "Disable configurable safety filters",
}

_SAFETY_THRESHOLDS = {
    SafetyPreset.DEFAULT: None,
    SafetyPreset.STRICT: "BLOCK_LOW_AND_ABOVE",
    SafetyPreset.BALANCED: "BLOCK_MEDIUM_AND_ABOVE",
    SafetyPreset.RELAXED: "BLOCK_ONLY_HIGH",
    SafetyPreset.OFF: "OFF",
}


class ConnectionState(str, Enum):
    NOT_CONFIGURED = "not_configured"
    NOT_CHECKED = "not_checked"
    CHECKING = "checking"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionStatus:
    """Derived API connection state; ``models_count``/``message`` only for connected/failed."""

    state: ConnectionState
    models_count: int = 0
    message: str = ""

    @classmethod
    def not_configured(cls) -> ConnectionStatus:
        return cls(ConnectionState.NOT_CONFIGURED)

    @classmethod
    def not_checked(cls) -> ConnectionStatus:
        return cls(ConnectionState.NOT_CHECKED)

    @classmethod
    def checking(cls) -> ConnectionStatus:
        return cls(ConnectionState.CHECKING)

    @classmethod
    def connected(cls, models_count: int) -> ConnectionStatus:
        return cls(ConnectionState.CONNECTED, models_count=models_count)

    @classmethod
    def failed(cls, message: str) -> ConnectionStatus:
        return cls(ConnectionState.FAILED, message=message)

    @property
    def label(self) -> str:
        if self.state is ConnectionState.NOT_CONFIGURED:
            return "Not configured"
        if self.state is ConnectionState.NOT_CHECKED:
            return "Not checked"
        if self.state is ConnectionState.CHECKING:
            return "Checking…"
        if self.state is ConnectionState.CONNECTED:
            return f"Connected ({self.models_count} models)"
        return "Connection failed"
