"""
Data models for both sides of the wire.
OpenAI-shaped request/response types on the client side,
Khoj-shaped request/response types on the upstream side.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


def _flatten_content(content) -> str:
    """OpenAI allows content as a list of parts; keep only the text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(str(part.get("text", "")))
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    return str(content)


# ---------------------------------------------------------------------------
# OpenAI side
# ---------------------------------------------------------------------------

@dataclass
class ChatMessage:
    """A single message in an OpenAI chat request."""
    role: str = ""           # "system", "user", "assistant", "tool"
    content: str = ""
    tool_calls: list[dict] = field(default_factory=list)
    tool_call_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> ChatMessage:
        return cls(
            role=str(data.get("role", "")),
            content=_flatten_content(data.get("content")),
            tool_calls=list(data.get("tool_calls") or []),
            tool_call_id=str(data.get("tool_call_id") or ""),
        )

    def to_dict(self) -> dict:
        out = {"role": self.role, "content": self.content}
        if self.tool_calls:
            out["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        return out


@dataclass
class ChatCompletionRequest:
    """Inbound /v1/chat/completions body. The model is echoed, never routed on."""
    model: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False
    tools: list[dict] = field(default_factory=list)
    tool_choice: str | dict | None = None
    stop: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, body: dict) -> ChatCompletionRequest:
        if not isinstance(body, dict):
            raise ValueError("request body must be a JSON object")
        messages = body.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("messages must be a list")
        stop = body.get("stop") or []
        if isinstance(stop, str):
            stop = [stop]
        return cls(
            model=str(body.get("model") or ""),
            messages=[ChatMessage.from_dict(m) for m in messages if isinstance(m, dict)],
            temperature=body.get("temperature"),
            max_tokens=body.get("max_tokens"),
            stream=body.get("stream") is True,
            tools=list(body.get("tools") or []),
            tool_choice=body.get("tool_choice"),
            stop=list(stop),
        )


@dataclass
class Usage:
    """Token counts. Estimates only: characters / 4."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def estimate(cls, prompt: str, completion: str) -> Usage:
        return cls(
            prompt_tokens=len(prompt) // 4,
            completion_tokens=len(completion) // 4,
            total_tokens=(len(prompt) + len(completion)) // 4,
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ChatCompletionResponse:
    """Outbound chat.completion object with a single assistant choice."""
    model: str = ""
    content: str = ""
    usage: Usage = field(default_factory=Usage)
    created: int = field(default_factory=lambda: int(time.time()))
    id: str = ""
    finish_reason: str = "stop"

    def __post_init__(self):
        if not self.id:
            self.id = f"chatcmpl-{self.created}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": self.content},
                    "finish_reason": self.finish_reason,
                }
            ],
            "usage": self.usage.to_dict(),
        }

    def to_text_completion(self) -> dict:
        """Legacy /v1/completions shape."""
        return {
            "id": f"cmpl-{self.created}",
            "object": "text_completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "text": self.content,
                    "index": 0,
                    "logprobs": None,
                    "finish_reason": self.finish_reason,
                }
            ],
            "usage": self.usage.to_dict(),
        }


# ---------------------------------------------------------------------------
# Khoj side
# ---------------------------------------------------------------------------

@dataclass
class UpstreamFile:
    """A message body shipped to Khoj in the files array instead of the prompt."""
    name: str
    content: str
    file_type: str = "html"
    size: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "content": self.content,
            "file_type": self.file_type,
            "size": self.size,
        }


@dataclass
class UpstreamChatRequest:
    """Body for POST /api/chat. Streaming is always off upstream."""
    q: str
    conversation_id: str = ""
    client_id: str = ""
    files: list[UpstreamFile] = field(default_factory=list)
    stream: bool = False

    def to_dict(self) -> dict:
        body: dict = {"q": self.q}
        if self.conversation_id:
            body["conversation_id"] = self.conversation_id
        body["stream"] = self.stream
        if self.client_id:
            body["client_id"] = self.client_id
        if self.files:
            body["files"] = [f.to_dict() for f in self.files]
        return body


@dataclass
class UpstreamChatResponse:
    """Parsed Khoj answer. Everything but response/conversation_id is carried, not used."""
    response: str = ""
    conversation_id: str = ""
    context: list[dict] = field(default_factory=list)
    online_context: dict = field(default_factory=dict)
    created_by: str = ""
    by_khoj: bool = False
    intent: dict = field(default_factory=dict)
    detail: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data) -> UpstreamChatResponse:
        if not isinstance(data, dict):
            raise ValueError(f"expected JSON object, got {type(data).__name__}")
        response = data.get("response", "")
        if response is None:
            response = ""
        if not isinstance(response, str):
            raise ValueError("'response' is not a string")
        return cls(
            response=response,
            conversation_id=str(data.get("conversation_id") or ""),
            context=data.get("context") or [],
            online_context=data.get("online_context") or {},
            created_by=str(data.get("created_by") or ""),
            by_khoj=bool(data.get("by_khoj", False)),
            intent=data.get("intent") or {},
            detail=data.get("detail") or {},
        )


@dataclass
class ConversationState:
    """What survives a restart: the last conversation and the agent it runs on."""
    last_conversation_id: str = ""
    agent_slug: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> ConversationState:
        return cls(
            last_conversation_id=str(data.get("last_conversation_id") or ""),
            agent_slug=str(data.get("agent_slug") or ""),
            created_at=str(data.get("created_at") or ""),
        )

    def to_dict(self) -> dict:
        return {
            "last_conversation_id": self.last_conversation_id,
            "agent_slug": self.agent_slug,
            "created_at": self.created_at,
        }


__all__ = [
    "ChatMessage",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "Usage",
    "UpstreamFile",
    "UpstreamChatRequest",
    "UpstreamChatResponse",
    "ConversationState",
]
