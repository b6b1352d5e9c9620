"""
Translator: the core of khojbox.
Turns OpenAI chat requests into Khoj /api/chat calls and Khoj answers
back into OpenAI chat.completion objects.

Khoj answers in one piece. Streaming clients still get an SSE stream:
the full answer is fetched first, then sliced into fixed-size chunks
and paced out as chat.completion.chunk frames.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable

from khojbox.backends.khoj import KhojClient
from khojbox.conversation import ConversationManager
from khojbox.models import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    UpstreamChatRequest,
    UpstreamFile,
    Usage,
)

logger = logging.getLogger(__name__)

CLIENT_ID = "khoj-provider-continue"
ATTACHMENT_THRESHOLD = 10000
ATTACHMENT_MARKERS = ("<!DOCTYPE html>", "<html")
CHUNK_SIZE = 50
CHUNK_DELAY_S = 0.005


class TranslationError(Exception):
    """Khoj could not answer a translated request. The cause is on __cause__ too."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


def is_attachment(
    content: str,
    threshold: int = ATTACHMENT_THRESHOLD,
    markers: tuple[str, ...] | list[str] = ATTACHMENT_MARKERS,
) -> bool:
    """Large message bodies that look like HTML documents go to Khoj as files."""
    return len(content) > threshold and any(marker in content for marker in markers)


def attachment_name(content: str) -> str:
    return "index.html" if "index.html" in content else "main.html"


def _sse(payload) -> str:
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload)}\n\n"


def error_frame(message: str) -> str:
    """The single frame a failed stream consists of. No [DONE] follows it."""
    return _sse({"error": {"message": message, "type": "api_error"}})


class Translator:
    """OpenAI ⇄ Khoj mapping plus fetch-then-chunk streaming."""

    def __init__(
        self,
        client: KhojClient,
        conversations: ConversationManager,
        client_id: str = CLIENT_ID,
        attachment_threshold: int = ATTACHMENT_THRESHOLD,
        attachment_markers: tuple[str, ...] | list[str] = ATTACHMENT_MARKERS,
        chunk_size: int = CHUNK_SIZE,
        chunk_delay: float = CHUNK_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.conversations = conversations
        self.client_id = client_id
        self.attachment_threshold = attachment_threshold
        self.attachment_markers = tuple(attachment_markers)
        self.chunk_size = max(1, chunk_size)
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: dict, client: KhojClient, conversations: ConversationManager) -> Translator:
        t_cfg = cfg.get("translator", {})
        return cls(
            client,
            conversations,
            client_id=cfg.get("khoj", {}).get("client_id", CLIENT_ID),
            attachment_threshold=int(t_cfg.get("attachment_threshold", ATTACHMENT_THRESHOLD)),
            attachment_markers=t_cfg.get("attachment_markers") or ATTACHMENT_MARKERS,
            chunk_size=int(t_cfg.get("chunk_size", CHUNK_SIZE)),
            chunk_delay=float(t_cfg.get("chunk_delay_ms", CHUNK_DELAY_S * 1000)) / 1000,
        )

    # ------------------------------------------------------------------
    # Request side
    # ------------------------------------------------------------------

    def build_prompt(self, messages: list[ChatMessage]) -> tuple[str, list[UpstreamFile]]:
        """
        Flatten the message list into one "<role>: <content>" line per message.
        HTML documents are lifted out into files and referenced by name.
        """
        lines = []
        files: list[UpstreamFile] = []

        for i, msg in enumerate(messages):
            content = msg.content
            if is_attachment(content, self.attachment_threshold, self.attachment_markers):
                f = UpstreamFile(
                    name=attachment_name(content),
                    content=content,
                    file_type="html",
                    size=len(content.encode("utf-8")),
                )
                files.append(f)
                logger.debug("Message %d sent as file %s (%d bytes)", i + 1, f.name, f.size)
                content = f"[File: {f.name} ({f.size} bytes) - sent in files array]"
            lines.append(f"{msg.role}: {content}\n")

        return "".join(lines), files

    def build_upstream_request(self, request: ChatCompletionRequest) -> UpstreamChatRequest:
        prompt, files = self.build_prompt(request.messages)
        return UpstreamChatRequest(
            q=prompt,
            conversation_id=self.conversations.conversation_id,
            client_id=self.client_id,
            files=files,
            stream=False,
        )

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete(self, request: ChatCompletionRequest, deadline: float | None = None) -> ChatCompletionResponse:
        """Answer a chat request through Khoj. Retries already happened in the client."""
        logger.info("Processing chat completion for model: %s", request.model)
        upstream = self.build_upstream_request(request)
        logger.debug(
            "Khoj request: %d chars, %d files, conversation %s",
            len(upstream.q),
            len(upstream.files),
            upstream.conversation_id or "(default)",
        )

        try:
            answer = await self.client.chat(upstream, deadline=deadline)
        except Exception as e:
            logger.error("Khoj API call failed: %s", e)
            raise TranslationError(f"khoj API call failed: {e}", cause=e) from e

        logger.debug("Khoj response: %d chars", len(answer.response))
        return ChatCompletionResponse(
            model=request.model,
            content=answer.response,
            usage=Usage.estimate(upstream.q, answer.response),
        )

    @staticmethod
    def text_request(body: dict) -> ChatCompletionRequest:
        """Legacy /v1/completions: the prompt becomes a single user message."""
        if not isinstance(body, dict):
            raise ValueError("request body must be a JSON object")
        prompt = body.get("prompt", "")
        if isinstance(prompt, list):
            prompt = "\n".join(str(p) for p in prompt)
        return ChatCompletionRequest(
            model=str(body.get("model") or ""),
            messages=[ChatMessage(role="user", content=str(prompt or ""))],
            temperature=body.get("temperature"),
            max_tokens=body.get("max_tokens"),
            stream=body.get("stream") is True,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        request: ChatCompletionRequest,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        legacy: bool = False,
    ) -> AsyncIterator[str]:
        """
        SSE frames for a streaming client. Nothing is emitted until Khoj has
        answered in full; a failed fetch yields one error frame and stops.
        """
        try:
            response = await self.complete(request)
        except TranslationError as e:
            yield error_frame(str(e))
            return

        async for frame in self.emulate_stream(response, is_disconnected, legacy=legacy):
            yield frame

    async def emulate_stream(
        self,
        response: ChatCompletionResponse,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        legacy: bool = False,
    ) -> AsyncIterator[str]:
        """Slice a finished answer into paced chunk frames, then stop + [DONE]."""
        content = response.content
        object_kind = "text_completion" if legacy else "chat.completion.chunk"
        frame_id = f"cmpl-{response.created}" if legacy else response.id

        def frame(text: str | None, finish_reason: str | None) -> str:
            if legacy:
                choice = {"text": text or "", "index": 0, "logprobs": None, "finish_reason": finish_reason}
            else:
                delta = {"content": text} if text is not None else {}
                choice = {"index": 0, "delta": delta, "finish_reason": finish_reason}
            return _sse({
                "id": frame_id,
                "object": object_kind,
                "created": response.created,
                "model": response.model,
                "choices": [choice],
            })

        for i in range(0, len(content), self.chunk_size):
            if is_disconnected is not None and await is_disconnected():
                logger.info("Client disconnected during streaming")
                return
            yield frame(content[i:i + self.chunk_size], None)
            await self._sleep(self.chunk_delay)

        yield frame(None, "stop")
        yield _sse("[DONE]")
