"""
chatusage - Core Message Models

Chat message representation shared by the estimator, the context
transforms and the usage accumulator.

Message parts are a tagged variant:
- TextPart: plain text
- ToolInvocationPart: a tool call, optionally carrying its result
- UnknownPart: anything else, kept verbatim so malformed input never raises
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union


class Role(str, Enum):
    """Message role."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolInvocationState(str, Enum):
    """Lifecycle state of a tool invocation part."""
    PARTIAL_CALL = "partial-call"
    CALL = "call"
    RESULT = "result"


def to_json(value: Any) -> str:
    """Compact JSON encoding used for every size measurement."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def byte_length(text: str) -> int:
    """UTF-8 byte length of a string."""
    return len(text.encode("utf-8"))


def serialized_size(value: Any) -> int:
    """Byte length of the compact JSON encoding of a value."""
    return byte_length(to_json(value))


# ============================================================
# Message Parts
# ============================================================

@dataclass
class TextPart:
    """Plain text part."""
    text: str = ""

    type = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ToolInvocationPart:
    """Tool call issued by the assistant, with its result once executed."""
    tool_name: str = ""
    args: Any = None
    result: Any = None
    state: ToolInvocationState = ToolInvocationState.CALL
    tool_call_id: Optional[str] = None

    type = "tool-invocation"

    @property
    def has_result(self) -> bool:
        return self.result is not None

    def call_payload(self) -> Dict[str, Any]:
        """Name and arguments as sent to the model (never the result)."""
        return {"toolName": self.tool_name, "args": self.args}

    def to_dict(self) -> Dict[str, Any]:
        invocation: Dict[str, Any] = {
            "toolName": self.tool_name,
            "args": self.args,
            "state": self.state.value,
        }
        if self.tool_call_id:
            invocation["toolCallId"] = self.tool_call_id
        if self.result is not None:
            invocation["result"] = self.result
        return {"type": self.type, "toolInvocation": invocation}


@dataclass
class UnknownPart:
    """Unrecognized part, passed through untouched."""
    raw: Any = None

    @property
    def type(self) -> str:
        if isinstance(self.raw, dict):
            return str(self.raw.get("type", "unknown"))
        return "unknown"

    def to_dict(self) -> Any:
        return self.raw


MessagePart = Union[TextPart, ToolInvocationPart, UnknownPart]


def part_from_dict(data: Any) -> MessagePart:
    """
    Parse a wire-format part.

    Accepts both the nested form ({"type": "tool-invocation",
    "toolInvocation": {...}}) and a flat form with the invocation fields
    at the top level. Anything that does not match is wrapped in
    UnknownPart.
    """
    if not isinstance(data, dict):
        return UnknownPart(raw=data)

    part_type = data.get("type")

    if part_type == "text" and isinstance(data.get("text"), str):
        return TextPart(text=data["text"])

    if part_type == "tool-invocation":
        invocation = data.get("toolInvocation", data)
        if not isinstance(invocation, dict):
            return UnknownPart(raw=data)
        try:
            state = ToolInvocationState(invocation.get("state", "call"))
        except ValueError:
            state = ToolInvocationState.CALL
        return ToolInvocationPart(
            tool_name=invocation.get("toolName") or "",
            args=invocation.get("args"),
            result=invocation.get("result"),
            state=state,
            tool_call_id=invocation.get("toolCallId"),
        )

    return UnknownPart(raw=data)


# ============================================================
# Messages
# ============================================================

@dataclass
class ChatMessage:
    """A single chat message."""
    role: Role
    content: str = ""
    parts: List[MessagePart] = field(default_factory=list)
    id: Optional[str] = None

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM

    def text(self) -> str:
        """Message text, preferring text parts over the content string."""
        texts = [p.text for p in self.parts if isinstance(p, TextPart)]
        if texts:
            return " ".join(texts)
        return self.content

    def tool_invocations(self) -> List[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.id:
            result["id"] = self.id
        if self.parts:
            result["parts"] = [p.to_dict() for p in self.parts]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        """
        Build a message from its wire format.

        Raises:
            ValueError: If the role is missing or unknown
        """
        role = Role(data.get("role"))
        content = data.get("content", "")
        parts = [part_from_dict(p) for p in data.get("parts") or []]

        # Content given as a list of parts
        if isinstance(content, list):
            parts = [part_from_dict(p) for p in content] + parts
            content = ""
        elif not isinstance(content, str):
            content = "" if content is None else str(content)

        return cls(role=role, content=content, parts=parts, id=data.get("id"))


def messages_from_dicts(items: Iterable[Any]) -> List[ChatMessage]:
    """Parse wire messages, skipping entries that are not messages."""
    messages = []
    for item in items:
        if isinstance(item, ChatMessage):
            messages.append(item)
            continue
        if not isinstance(item, dict):
            continue
        try:
            messages.append(ChatMessage.from_dict(item))
        except ValueError:
            continue
    return messages


def messages_size(messages: Iterable[ChatMessage]) -> int:
    """Byte size of a serialized message list."""
    return serialized_size([m.to_dict() for m in messages])


@dataclass
class Usage:
    """Token usage reported by a model provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: Optional[int] = None

    def __post_init__(self):
        if self.total_tokens is None:
            self.total_tokens = self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
