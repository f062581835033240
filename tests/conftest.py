"""Shared fixtures and fakes for the gemini_chat test suite."""

import asyncio
import json

import httpx
import pytest

from gemini_chat.client import GeminiClient
from gemini_chat.history import ChatHistoryStore
from gemini_chat.session import ChatSession
from gemini_chat.settings import API_KEY_ACCOUNT, LocalStore

STREAM_METHODS = ["generateContent", "streamGenerateContent"]


def gemini_payload(*texts):
    return {"candidates": [{"content": {"parts": [{"text": text} for text in texts]}}]}


def sse_body(*texts, done=True):
    """An SSE body with one blank-line-terminated event per text."""
    events = [f"data: {json.dumps(gemini_payload(text))}\n\n" for text in texts]
    if done:
        events.append("data: [DONE]\n\n")
    return "".join(events)


def sse_response(*texts, done=True):
    return httpx.Response(
        200,
        text=sse_body(*texts, done=done),
        headers={"content-type": "text/event-stream"},
    )


def json_response(payload, status_code=200):
    return httpx.Response(status_code, json=payload)


def api_error_response(status_code, message):
    return httpx.Response(
        status_code,
        json={"error": {"code": status_code, "message": message, "status": "ERROR"}},
    )


def models_response(*names, methods=STREAM_METHODS):
    return json_response(
        {
            "models": [
                {"name": f"models/{name}", "supportedGenerationMethods": list(methods)}
                for name in names
            ]
        }
    )


class BrokenStream(httpx.AsyncByteStream):
    """Yields the given chunks, then fails like a dropped connection."""

    def __init__(self, *chunks):
        self._chunks = [chunk.encode("utf-8") for chunk in chunks]

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")


class FakeGemini:
    """MockTransport handler that serves queued responses per endpoint.

    Queue entries are ``httpx.Response`` objects or exceptions to raise.
    Every request is recorded for later assertions.
    """

    def __init__(self):
        self.requests = []
        self.stream = []
        self.generate = []
        self.models = []

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path.endswith(":streamGenerateContent"):
            queue = self.stream
        elif path.endswith(":generateContent"):
            queue = self.generate
        elif path.endswith("/models"):
            queue = self.models
        else:
            return httpx.Response(404, text="unknown endpoint")

        if not queue:
            raise AssertionError(f"unexpected request to {path}")
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def requests_to(self, suffix):
        return [request for request in self.requests if request.url.path.endswith(suffix)]

    def bodies_to(self, suffix):
        return [json.loads(request.content) for request in self.requests_to(suffix)]


class RecordingHistoryStore(ChatHistoryStore):
    """ChatHistoryStore that keeps a serialized snapshot of every save."""

    def __init__(self, path):
        super().__init__(path)
        self.saves = []

    def save_threads(self, threads):
        self.saves.append([thread.to_dict() for thread in threads])
        super().save_threads(threads)


async def instant_sleep(_delay):
    await asyncio.sleep(0)


@pytest.fixture
def fake_gemini():
    return FakeGemini()


@pytest.fixture
async def http_client(fake_gemini):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_gemini))
    yield client
    await client.aclose()


@pytest.fixture
def gemini_client(http_client):
    return GeminiClient(http_client)


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def local_store(data_dir):
    return LocalStore(data_dir / "settings.json")


@pytest.fixture
def history_store(data_dir):
    return RecordingHistoryStore(data_dir / "chat-history.json")


@pytest.fixture
def make_session(gemini_client, local_store, history_store):
    """Build a ChatSession over the fake API; the key is stored first unless blank."""

    def factory(api_key="test-key", **kwargs):
        if api_key:
            local_store.save_string(api_key, API_KEY_ACCOUNT)
        kwargs.setdefault("sleep", instant_sleep)
        return ChatSession(gemini_client, local_store, history_store, **kwargs)

    return factory
