import pytest
from fastapi.testclient import TestClient
import json
import httpx

from jiutian_proxy import config
from jiutian_proxy.config import Settings
from jiutian_proxy.models import Dialect, TranslationSession

TEST_API_KEY = "test-key-id.test-signing-secret-0123456789abcdef"
TEST_MODEL = "jiutian-lan"

# Upstream payloads for the "2*3=?" scenario
MOCK_COMPLETION_DELTAS = [
    {
        "id": "cmpl-123",
        "object": "text_completion",
        "created": 1694268190,
        "model": TEST_MODEL,
        "choices": [{"index": 0, "delta": {"text": char}, "finish_reason": None}],
    }
    for char in ["2", "*", "3", "=", "6"]
]

MOCK_COMPLETION_FINISH = {
    "id": "cmpl-123",
    "object": "text_completion",
    "created": 1694268190,
    "model": TEST_MODEL,
    "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 9, "completion_tokens": 5, "total_tokens": 14},
}

MOCK_CHAT_DELTAS = [
    {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "created": 1694268190,
        "model": TEST_MODEL,
        "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
    }
    for text in ["你好", "，", "world"]
]

MOCK_CHAT_FINISH = {
    "id": "chatcmpl-123",
    "object": "chat.completion.chunk",
    "created": 1694268190,
    "model": TEST_MODEL,
    "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 4, "completion_tokens": 3, "total_tokens": 7},
}

MOCK_COMPLETION_RESPONSE = {
    "id": "cmpl-456",
    "object": "text_completion",
    "created": 1677652288,
    "model": TEST_MODEL,
    "choices": [{"index": 0, "text": "6", "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 9, "completion_tokens": 1, "total_tokens": 10},
}

MOCK_CHAT_RESPONSE = {
    "id": "chatcmpl-456",
    "object": "chat.completion",
    "created": 1677652288,
    "model": TEST_MODEL,
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "Hello there, how may I assist you today?"},
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 9, "completion_tokens": 12, "total_tokens": 21},
}


def sse(payload) -> bytes:
    """Frame a JSON payload the way the upstream does."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def completion_stream_frames():
    return [sse(d) for d in MOCK_COMPLETION_DELTAS] + [sse(MOCK_COMPLETION_FINISH), b"data: [DONE]\n\n"]


def chat_stream_frames():
    return [sse(d) for d in MOCK_CHAT_DELTAS] + [sse(MOCK_CHAT_FINISH), b"data: [DONE]\n\n"]


def parse_frames(body: bytes):
    """Split event-stream bytes into frames; returns decoded JSON or the raw marker string."""
    frames = []
    for part in body.decode().split("\n\n"):
        if not part.strip():
            continue
        data = part[len("data: "):]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


class MockResponse:
    """Base mock response class with proper async methods"""

    def __init__(self, status_code, content=None, headers=None):
        self.status_code = status_code
        self._content = content if content is not None else b""
        self.headers = headers or {"content-type": "application/json"}

    async def aread(self):
        if isinstance(self._content, (dict, list)):
            return json.dumps(self._content).encode()
        return (
            self._content
            if isinstance(self._content, bytes)
            else str(self._content).encode()
        )


class FakeUpstream:
    """In-memory upstream stream: yields the given chunks and records closing."""

    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.reads = 0
        self.closed = False

    async def aiter_bytes(self):
        for chunk in self._chunks:
            if self.closed:
                return
            self.reads += 1
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self):
        self.closed = True


def opener_for(upstream):
    async def opener():
        return upstream

    return opener


def make_session(dialect=Dialect.RAW, prompt_length=5):
    return TranslationSession(model=TEST_MODEL, dialect=dialect, prompt_length=prompt_length)


@pytest.fixture
def test_settings(monkeypatch):
    """Replace the runtime settings with a known configuration"""
    settings = Settings(
        api_key=TEST_API_KEY,
        base_url="http://upstream.example.com/api/v2",
        model=TEST_MODEL,
        timeout=30,
        expose_errors=False,
    )
    monkeypatch.setattr(config, "settings", settings)
    return settings


@pytest.fixture
def test_client(test_settings):
    """Create a test client backed by the test settings"""
    from jiutian_proxy.api import app

    return TestClient(app)


@pytest.fixture
def upstream_calls():
    """Requests seen by the mocked upstream"""
    return []


@pytest.fixture
def mock_stream(monkeypatch, upstream_calls):
    """
    Patch httpx.AsyncClient.send so streaming upstream calls return the given
    frames. Call the fixture with a list of byte chunks (and optionally a status).
    """

    def install(chunks, status_code=200):
        async def body():
            for chunk in chunks:
                yield chunk

        async def mock_send(self, request, **kwargs):
            upstream_calls.append(request)
            if status_code != 200:
                return httpx.Response(status_code, json={"error": {"message": "upstream failure"}}, request=request)
            return httpx.Response(
                200,
                content=body(),
                headers={"content-type": "text/event-stream"},
                request=request,
            )

        monkeypatch.setattr(httpx.AsyncClient, "send", mock_send)

    return install


@pytest.fixture
def mock_post(monkeypatch, upstream_calls):
    """Patch httpx.AsyncClient.post for the non-streaming path."""

    def install(content, status_code=200):
        async def post(self, url, **kwargs):
            upstream_calls.append({"url": str(url), **kwargs})
            return MockResponse(status_code, content)

        monkeypatch.setattr(httpx.AsyncClient, "post", post)

    return install
