"""
Tests for the Khoj client: session creation and the chat retry loop.
Run with: pytest tests/test_khoj_client.py
"""

import asyncio

import httpx
import pytest

from khojbox.backends.errors import (
    InvalidResponseError,
    SessionCreationError,
    UpstreamClientError,
    UpstreamExhaustedError,
    UpstreamServerError,
    UpstreamTimeoutError,
)
from khojbox.backends.retry import RetryPolicy
from khojbox.models import UpstreamChatRequest, UpstreamFile

from conftest import FakeKhoj


def _request(**kwargs) -> UpstreamChatRequest:
    kwargs.setdefault("q", "user: hi\n")
    kwargs.setdefault("conversation_id", "abc")
    kwargs.setdefault("client_id", "khoj-provider-continue")
    return UpstreamChatRequest(**kwargs)


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

def test_backoff_is_linear():
    policy = RetryPolicy()
    assert [policy.backoff(n) for n in range(3)] == [0, 2, 4]


def test_only_5xx_is_retryable():
    policy = RetryPolicy()
    assert policy.is_retryable(500)
    assert policy.is_retryable(503)
    assert not policy.is_retryable(400)
    assert not policy.is_retryable(404)
    assert not policy.is_retryable(429)


@pytest.mark.asyncio
async def test_first_attempt_does_not_sleep(sleeper):
    policy = RetryPolicy(sleep=sleeper)
    assert await policy.wait(0) == 0
    assert sleeper.delays == []
    assert await policy.wait(2) == 4
    assert sleeper.delays == [4]


# ---------------------------------------------------------------------------
# chat()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_chat_success_first_try(make_client, sleeper):
    fake = FakeKhoj([{"response": "hello", "conversation_id": "abc", "by_khoj": True}])
    client = make_client(fake)

    result = await client.chat(_request())

    assert result.response == "hello"
    assert result.conversation_id == "abc"
    assert len(fake.chat_calls) == 1
    assert sleeper.delays == []
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_sends_expected_body_and_headers(make_client):
    fake = FakeKhoj()
    client = make_client(fake, api_key="secret")
    files = [UpstreamFile(name="main.html", content="<html>", size=6)]

    await client.chat(_request(files=files))

    body = fake.chat_calls[0]
    assert body["q"] == "user: hi\n"
    assert body["conversation_id"] == "abc"
    assert body["stream"] is False
    assert body["client_id"] == "khoj-provider-continue"
    assert body["files"] == [{"name": "main.html", "content": "<html>", "file_type": "html", "size": 6}]
    assert fake.headers[0]["authorization"] == "Bearer secret"
    assert fake.headers[0]["user-agent"] == "KhojProvider/1.0"
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_omits_auth_and_empty_fields_without_key(make_client):
    fake = FakeKhoj()
    client = make_client(fake, api_key="")

    await client.chat(_request(conversation_id=""))

    assert "authorization" not in fake.headers[0]
    assert "conversation_id" not in fake.chat_calls[0]
    assert "files" not in fake.chat_calls[0]
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_retries_5xx_then_succeeds(make_client, sleeper):
    fake = FakeKhoj([
        httpx.Response(500, text="boom"),
        httpx.Response(502, text="bad gateway"),
        {"response": "third time", "conversation_id": "abc"},
    ])
    client = make_client(fake)

    result = await client.chat(_request())

    assert result.response == "third time"
    assert len(fake.chat_calls) == 3
    # 0s before attempt 1 (no sleep), 2s before attempt 2, 4s before attempt 3
    assert sleeper.delays == [2, 4]
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_4xx_fails_after_one_attempt(make_client, sleeper):
    fake = FakeKhoj([httpx.Response(400, text="bad request")])
    client = make_client(fake)

    with pytest.raises(UpstreamClientError) as exc_info:
        await client.chat(_request())

    assert exc_info.value.status_code == 400
    assert exc_info.value.body == "bad request"
    assert len(fake.chat_calls) == 1
    assert sleeper.delays == []
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_exhausts_on_persistent_5xx(make_client, sleeper):
    fake = FakeKhoj([httpx.Response(503, text="down")])
    client = make_client(fake)

    with pytest.raises(UpstreamExhaustedError) as exc_info:
        await client.chat(_request())

    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, UpstreamServerError)
    assert exc_info.value.last_error.status_code == 503
    assert len(fake.chat_calls) == 3
    assert sleeper.delays == [2, 4]
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_retries_transport_errors(make_client):
    fake = FakeKhoj([
        httpx.ConnectError("connection refused"),
        {"response": "recovered", "conversation_id": "abc"},
    ])
    client = make_client(fake)

    result = await client.chat(_request())

    assert result.response == "recovered"
    assert len(fake.chat_calls) == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_retries_unparseable_200(make_client):
    fake = FakeKhoj([
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        {"response": "finally", "conversation_id": "abc"},
    ])
    client = make_client(fake)

    result = await client.chat(_request())

    assert result.response == "finally"
    assert len(fake.chat_calls) == 3
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_unparseable_200_counts_against_budget(make_client):
    fake = FakeKhoj([httpx.Response(200, text="garbage")])
    client = make_client(fake)

    with pytest.raises(UpstreamExhaustedError) as exc_info:
        await client.chat(_request())

    assert isinstance(exc_info.value.last_error, InvalidResponseError)
    assert len(fake.chat_calls) == 3
    await client.aclose()


@pytest.mark.asyncio
async def test_chat_deadline_raises_timeout_error(sleeper):
    from khojbox.backends.khoj import KhojClient

    async def slow_handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"response": "late"})

    client = KhojClient(
        api_base="http://khoj.test",
        retry=RetryPolicy(sleep=sleeper),
        transport=httpx.MockTransport(slow_handler),
    )

    with pytest.raises(UpstreamTimeoutError) as exc_info:
        await client.chat(_request(), deadline=0.05)

    assert exc_info.value.deadline == 0.05
    await client.aclose()


# ---------------------------------------------------------------------------
# create_session()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_session_returns_conversation_id(make_client):
    fake = FakeKhoj()
    client = make_client(fake)

    conversation_id = await client.create_session("my-agent")

    assert conversation_id == "conv-new-1234"
    assert fake.session_calls == [{"agent_slug": "my-agent"}]
    assert fake.headers[0]["authorization"] == "Bearer test-key"
    await client.aclose()


@pytest.mark.asyncio
async def test_create_session_non_200_is_not_retried(make_client):
    fake = FakeKhoj(session_response=httpx.Response(503, text="unavailable"))
    client = make_client(fake)

    with pytest.raises(SessionCreationError) as exc_info:
        await client.create_session("my-agent")

    assert exc_info.value.status_code == 503
    assert exc_info.value.body == "unavailable"
    assert len(fake.session_calls) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_create_session_transport_error(make_client):
    fake = FakeKhoj(session_response=httpx.ConnectError("refused"))
    client = make_client(fake)

    with pytest.raises(SessionCreationError) as exc_info:
        await client.create_session("my-agent")

    assert exc_info.value.status_code is None
    await client.aclose()


@pytest.mark.asyncio
async def test_create_session_bad_body(make_client):
    fake = FakeKhoj(session_response=httpx.Response(200, json={"unexpected": True}))
    client = make_client(fake)

    with pytest.raises(SessionCreationError):
        await client.create_session("my-agent")
    await client.aclose()
