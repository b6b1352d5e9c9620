"""
Khoj backend client.

Two calls:
- POST /api/chat/sessions  create a conversation for an agent (single attempt)
- POST /api/chat           ask a question inside a conversation (retried)

One httpx.AsyncClient is shared for the life of the client so repeated
calls reuse connections (100 idle, 90s keepalive).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

import httpx

from khojbox.backends.errors import (
    InvalidResponseError,
    SessionCreationError,
    UpstreamClientError,
    UpstreamExhaustedError,
    UpstreamServerError,
    UpstreamTimeoutError,
)
from khojbox.backends.retry import RetryPolicy
from khojbox.models import UpstreamChatRequest, UpstreamChatResponse

logger = logging.getLogger(__name__)

USER_AGENT = "KhojProvider/1.0"


class KhojClient:
    """
    Authenticated client for the Khoj REST API.

    Transport errors, 5xx and unparseable answers are retried according
    to the RetryPolicy; 4xx fails fast. Session creation is never retried.
    """

    def __init__(
        self,
        api_base: str,
        api_key: str = "",
        timeout: float = 120,
        session_timeout: float = 30,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session_timeout = session_timeout
        self.retry = retry or RetryPolicy()
        self._client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=100,
                max_keepalive_connections=100,
                keepalive_expiry=90,
            ),
            transport=transport,
        )

    @classmethod
    def from_config(cls, cfg: dict, transport: httpx.AsyncBaseTransport | None = None) -> KhojClient:
        khoj = cfg["khoj"]
        return cls(
            api_base=khoj["api_base"],
            api_key=khoj.get("api_key", ""),
            timeout=khoj.get("timeout", 120),
            session_timeout=khoj.get("session_timeout", 30),
            retry=RetryPolicy(
                max_attempts=int(khoj.get("max_attempts", 3)),
                backoff_seconds=float(khoj.get("backoff_seconds", 2)),
            ),
            transport=transport,
        )

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> KhojClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, agent_slug: str) -> str:
        """Create a new conversation for agent_slug and return its id."""
        url = f"{self.api_base}/api/chat/sessions"
        try:
            resp = await self._client.post(
                url,
                json={"agent_slug": agent_slug},
                headers=self._headers(),
                timeout=self.session_timeout,
            )
        except httpx.HTTPError as e:
            raise SessionCreationError(f"failed to create session: {e}") from e

        if resp.status_code != 200:
            raise SessionCreationError(
                f"session creation failed with status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
            conversation_id = data["conversation_id"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise SessionCreationError(
                f"failed to decode session response: {e}",
                status_code=resp.status_code,
                body=resp.text,
            ) from e

        logger.info("Khoj session created for agent '%s': %s", agent_slug, conversation_id)
        return str(conversation_id)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(self, request: UpstreamChatRequest, deadline: float | None = None) -> UpstreamChatResponse:
        """
        Send one question to Khoj.

        deadline bounds the whole call, retries and backoff included.
        Passing it turns an overrun into UpstreamTimeoutError instead of
        whatever the in-flight attempt happened to be doing.
        """
        if deadline is None:
            return await self._chat_with_retries(request)
        try:
            return await asyncio.wait_for(self._chat_with_retries(request), timeout=deadline)
        except asyncio.TimeoutError as e:
            logger.warning("Khoj chat exceeded deadline of %.1fs", deadline)
            raise UpstreamTimeoutError(deadline) from e

    async def _chat_with_retries(self, request: UpstreamChatRequest) -> UpstreamChatResponse:
        url = f"{self.api_base}/api/chat"
        body = request.to_dict()
        attempts = self.retry.max_attempts
        last_error: Exception | None = None

        for attempt in range(attempts):
            if attempt > 0:
                logger.warning(
                    "Retrying Khoj API call in %.1fs (attempt %d/%d): %s",
                    self.retry.backoff(attempt),
                    attempt + 1,
                    attempts,
                    last_error,
                )
            await self.retry.wait(attempt)

            t0 = time.monotonic()
            try:
                resp = await self._client.post(url, json=body, headers=self._headers())
            except httpx.HTTPError as e:
                last_error = e
                logger.warning("Khoj API call failed (attempt %d): %s", attempt + 1, e)
                continue

            latency = (time.monotonic() - t0) * 1000
            logger.debug(
                "Khoj API response status %d, %d bytes in %.0fms",
                resp.status_code,
                len(resp.content),
                latency,
            )

            if resp.status_code != 200:
                if self.retry.is_retryable(resp.status_code):
                    last_error = UpstreamServerError(resp.status_code, resp.text)
                    continue
                logger.error("Khoj API rejected request with %d: %s", resp.status_code, resp.text[:200])
                raise UpstreamClientError(resp.status_code, resp.text)

            try:
                parsed = UpstreamChatResponse.from_dict(resp.json())
            except ValueError as e:
                # json.JSONDecodeError is a ValueError too
                last_error = InvalidResponseError(f"failed to decode response: {e}")
                logger.warning("Unusable Khoj response body: %s", resp.text[:200])
                continue

            return parsed

        logger.error("Khoj API call exhausted %d attempts (last: %s)", attempts, last_error)
        raise UpstreamExhaustedError(attempts, last_error)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} api_base={self.api_base!r} timeout={self.timeout}>"
