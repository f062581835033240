"""
Gemini Chat: a streaming chat client for the Gemini REST API.

Replies stream over Server-Sent Events and are typed out at a pace that
follows the network, with automatic fallback to a blocking request, retries
for models that reject system prompts, and recovery when a model is missing.
Conversations persist locally as JSON.
"""

from .client import GeminiClient
from .exceptions import (
    APIError,
    BlockedError,
    EmptyResponseError,
    GeminiError,
    InvalidRequestError,
    RequestFailedError,
    TransportFailureError,
)
from .history import ChatHistoryStore
from .models import ChatMessage, ChatRole, ChatThread, ConnectionStatus, SafetyPreset
from .session import ChatSession
from .settings import LocalStore
from .streaming import SSEStreamParser, merge_streaming_text

__all__ = [
    "APIError",
    "BlockedError",
    "ChatHistoryStore",
    "ChatMessage",
    "ChatRole",
    "ChatSession",
    "ChatThread",
    "ConnectionStatus",
    "EmptyResponseError",
    "GeminiClient",
    "GeminiError",
    "InvalidRequestError",
    "LocalStore",
    "RequestFailedError",
    "SSEStreamParser",
    "SafetyPreset",
    "TransportFailureError",
    "merge_streaming_text",
]
