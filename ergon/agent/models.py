"""Shared data models for the agent core.

Kept free of runner/compaction imports so every module can depend on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal, Union

Role = Literal["user", "assistant", "tool", "system"]


class ErrorKind(StrEnum):
    """Stable error classifications reported on tool results and terminal events."""

    VALIDATION_ERROR = "validation_error"
    POLICY_DENIED = "policy_denied"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    EXECUTION_ERROR = "execution_error"
    CANCELLED = "cancelled"
    TRANSPORT_ERROR = "transport_error"
    FATAL_ERROR = "fatal_error"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


ContentBlock = Union[TextBlock, ToolUseBlock]


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    if data.get("type") == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    return TextBlock(text=data.get("text", ""))


@dataclass
class Message:
    """A single message in a session.

    ``content`` is plain text or a list of content blocks. Tool messages
    carry ``tool_call_id`` naming the tool_use block they answer.
    """

    role: Role
    content: str | list[ContentBlock]
    tool_call_id: str | None = None
    is_error: bool = False
    timestamp: datetime = field(default_factory=_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated text of the message, ignoring tool_use blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def is_summary(self) -> bool:
        return bool(self.metadata.get("summary"))

    def to_dict(self) -> dict[str, Any]:
        content: Any = self.content
        if not isinstance(content, str):
            content = [b.to_dict() for b in content]
        return {
            "role": self.role,
            "content": content,
            "tool_call_id": self.tool_call_id,
            "is_error": self.is_error,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        content = data.get("content", "")
        if not isinstance(content, str):
            content = [block_from_dict(b) for b in content]
        ts = data.get("timestamp")
        return cls(
            role=data["role"],
            content=content,
            tool_call_id=data.get("tool_call_id"),
            is_error=bool(data.get("is_error", False)),
            timestamp=datetime.fromisoformat(ts) if ts else _now(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class Session:
    """One logical conversation.

    ``version`` is owned by the session store and used for compare-and-swap
    saves; the loop never changes it.
    """

    id: str
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    last_active: datetime = field(default_factory=_now)
    usage: TokenUsage = field(default_factory=TokenUsage)
    metadata: dict[str, Any] = field(default_factory=dict)
    compaction_count: int = 0
    version: int = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.last_active = message.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
            "usage": {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
            },
            "metadata": self.metadata,
            "compaction_count": self.compaction_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], version: int = 0) -> Session:
        usage = data.get("usage") or {}
        return cls(
            id=data["id"],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_active=datetime.fromisoformat(data["last_active"]),
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            metadata=dict(data.get("metadata") or {}),
            compaction_count=data.get("compaction_count", 0),
            version=version,
        )


@dataclass
class ToolInvocationResult:
    """Outcome of one tool invocation, successful or not."""

    tool_name: str
    call_id: str
    output: str
    error: ErrorKind | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    truncated: bool = False
    artifacts: dict[str, Any] = field(default_factory=dict)
    sandbox: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_content(self) -> str:
        """Text fed back to the provider for this result."""
        if self.error is None:
            return self.output
        return f"[{self.error.value}] {self.output}"
