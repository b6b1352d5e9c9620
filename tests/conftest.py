"""
Shared fixtures: a fake Khoj behind httpx.MockTransport and a recording sleep.
"""

import json

import httpx
import pytest

from khojbox.backends.khoj import KhojClient
from khojbox.backends.retry import RetryPolicy
from khojbox.conversation import ConversationManager
from khojbox.state import StateStore
from khojbox.translator import Translator


class FakeKhoj:
    """
    Scripted Khoj server. Each entry in `chat_script` is either an
    httpx.Response, an exception to raise, or a dict sent back as JSON 200.
    The last entry repeats once the script runs out.
    """

    def __init__(self, chat_script=None, session_response=None):
        self.chat_script = list(chat_script or [{"response": "hello", "conversation_id": "abc"}])
        self.session_response = session_response or httpx.Response(200, json={"conversation_id": "conv-new-1234"})
        self.chat_calls: list[dict] = []
        self.session_calls: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.headers.append(request.headers)
        body = json.loads(request.content) if request.content else {}
        if request.url.path == "/api/chat/sessions":
            self.session_calls.append(body)
            if isinstance(self.session_response, Exception):
                raise self.session_response
            return self.session_response

        if request.url.path == "/api/chat":
            index = min(len(self.chat_calls), len(self.chat_script) - 1)
            self.chat_calls.append(body)
            step = self.chat_script[index]
            if isinstance(step, Exception):
                raise step
            if isinstance(step, httpx.Response):
                return step
            return httpx.Response(200, json=step)

        return httpx.Response(404, text="not found")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers every delay instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_khoj():
    return FakeKhoj()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def make_client(sleeper):
    """Build a KhojClient wired to a FakeKhoj with no real waiting."""
    def _make(fake: FakeKhoj, api_key: str = "test-key", max_attempts: int = 3) -> KhojClient:
        return KhojClient(
            api_base="http://khoj.test",
            api_key=api_key,
            timeout=5,
            retry=RetryPolicy(max_attempts=max_attempts, backoff_seconds=2, sleep=sleeper),
            transport=fake.transport,
        )
    return _make


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "conversation_state.json"


@pytest.fixture
def manager(state_path):
    return ConversationManager(StateStore(state_path))


@pytest.fixture
def make_translator(make_client, manager, sleeper):
    def _make(fake: FakeKhoj, **kwargs) -> Translator:
        kwargs.setdefault("chunk_delay", 0)
        kwargs.setdefault("sleep", sleeper)
        return Translator(make_client(fake), manager, **kwargs)
    return _make
