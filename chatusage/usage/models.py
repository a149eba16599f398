"""
chatusage - Usage Log Models

Data structures for one chat turn's usage log and its steps.

A UsageLog is created at turn start, grows only by appending steps, and is
persisted once at turn end. Totals are folded in as steps are appended.
"""

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        result = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        result = datetime.fromisoformat(text)
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


class StepName(str, Enum):
    """Step tags written by the accumulator."""
    REQUEST_INIT = "request_init"
    USER_MESSAGES_CAPTURED = "user_messages_captured"
    TOOLS_LOADED = "tools_loaded"
    TOOL_CALL = "tool_call"
    SYSTEM_PROMPT_ANALYSIS = "system_prompt_analysis"
    CLEANED_MESSAGES_ANALYSIS = "cleaned_messages_analysis"
    CONVERSATION_LIMITATION = "conversation_limitation"
    CONVERSATION_SUMMARIZATION = "conversation_summarization"
    LLM_CALL = "llm_call"
    FINAL_LLM_CALL = "final_llm_call"
    FINAL_RESPONSE_CAPTURED = "final_response_captured"
    TOKEN_BREAKDOWN_ANALYSIS = "token_breakdown_analysis"


# ============================================================
# Step payloads
# ============================================================

@dataclass
class ToolCallResult:
    """Size and duration of one executed tool call."""
    tool_name: str
    result_size: int = 0
    execution_time: int = 0  # ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "result_size": self.result_size,
            "execution_time": self.execution_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCallResult":
        return cls(
            tool_name=data.get("tool_name", "unknown"),
            result_size=int(data.get("result_size", 0)),
            execution_time=int(data.get("execution_time", 0)),
        )


@dataclass
class PromptSizeBreakdown:
    """Byte size of each system prompt component."""
    user_system_prompt: int = 0
    mcp_customizations: int = 0
    thinking_prompt: int = 0
    agent_instructions: int = 0
    total: Optional[int] = None  # size of the assembled prompt

    def __post_init__(self):
        if self.total is None:
            self.total = (
                self.user_system_prompt
                + self.mcp_customizations
                + self.thinking_prompt
                + self.agent_instructions
            )

    def to_dict(self) -> Dict[str, int]:
        return {
            "user_system_prompt": self.user_system_prompt,
            "mcp_customizations": self.mcp_customizations,
            "thinking_prompt": self.thinking_prompt,
            "agent_instructions": self.agent_instructions,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromptSizeBreakdown":
        return cls(
            user_system_prompt=int(data.get("user_system_prompt", 0)),
            mcp_customizations=int(data.get("mcp_customizations", 0)),
            thinking_prompt=int(data.get("thinking_prompt", 0)),
            agent_instructions=int(data.get("agent_instructions", 0)),
            total=data.get("total"),
        )


@dataclass
class ActualContent:
    """Raw text captured for debugging (only when content capture is on)."""
    system_prompt: Optional[str] = None
    user_messages: Optional[List[Dict[str, Any]]] = None
    assistant_response: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("system_prompt", self.system_prompt),
                ("user_messages", self.user_messages),
                ("assistant_response", self.assistant_response),
                ("tool_calls", self.tool_calls),
            )
            if value is not None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActualContent":
        return cls(
            system_prompt=data.get("system_prompt"),
            user_messages=data.get("user_messages"),
            assistant_response=data.get("assistant_response"),
            tool_calls=data.get("tool_calls"),
        )


# ============================================================
# Usage Step
# ============================================================

@dataclass
class UsageStep:
    """One named, timestamped instrumentation event within a turn."""
    step_name: str
    timestamp: datetime = field(default_factory=utcnow)

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    system_prompt_size: Optional[int] = None
    messages_count: Optional[int] = None
    tools_count: Optional[int] = None
    mcp_tools_count: Optional[int] = None
    workflow_tools_count: Optional[int] = None
    app_default_tools_count: Optional[int] = None

    tool_call_results: List[ToolCallResult] = field(default_factory=list)
    prompt_size_breakdown: Optional[PromptSizeBreakdown] = None
    actual_content: Optional[ActualContent] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)

    COUNT_FIELDS = (
        "prompt_tokens",
        "completion_tokens",
        "total_tokens",
        "system_prompt_size",
        "messages_count",
        "tools_count",
        "mcp_tools_count",
        "workflow_tools_count",
        "app_default_tools_count",
    )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "step_name": self.step_name,
            "timestamp": self.timestamp.isoformat(),
        }
        for name in self.COUNT_FIELDS:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.tool_call_results:
            result["tool_call_results"] = [r.to_dict() for r in self.tool_call_results]
        if self.prompt_size_breakdown is not None:
            result["prompt_size_breakdown"] = self.prompt_size_breakdown.to_dict()
        if self.actual_content is not None:
            result["actual_content"] = self.actual_content.to_dict()
        if self.additional_data:
            result["additional_data"] = self.additional_data
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageStep":
        step = cls(
            step_name=data["step_name"],
            timestamp=parse_timestamp(data.get("timestamp") or utcnow()),
            tool_call_results=[
                ToolCallResult.from_dict(r) for r in data.get("tool_call_results") or []
            ],
            additional_data=dict(data.get("additional_data") or {}),
        )
        for name in cls.COUNT_FIELDS:
            if data.get(name) is not None:
                setattr(step, name, int(data[name]))
        if data.get("prompt_size_breakdown"):
            step.prompt_size_breakdown = PromptSizeBreakdown.from_dict(data["prompt_size_breakdown"])
        if data.get("actual_content"):
            step.actual_content = ActualContent.from_dict(data["actual_content"])
        return step


# ============================================================
# Full conversation context
# ============================================================

@dataclass
class TokensBreakdown:
    """Decomposition of a turn's tokens; the parts need not sum to total."""
    system_prompt_actual: int = 0
    messages_content_actual: int = 0
    tools_and_overhead_actual: int = 0
    response_actual: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "system_prompt_actual": self.system_prompt_actual,
            "messages_content_actual": self.messages_content_actual,
            "tools_and_overhead_actual": self.tools_and_overhead_actual,
            "response_actual": self.response_actual,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokensBreakdown":
        return cls(**{k: int(data.get(k, 0)) for k in cls().to_dict()})


@dataclass
class OverheadAnalysis:
    """Explains the tools-and-overhead residual. Best-effort diagnostic."""
    total_prompt_tokens: int = 0
    system_prompt_tokens: int = 0
    messages_content_tokens: int = 0
    calculated_overhead: int = 0
    message_structure_size: int = 0
    estimated_message_structure_tokens: int = 0
    possible_unaccounted_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_prompt_tokens": self.total_prompt_tokens,
            "system_prompt_tokens": self.system_prompt_tokens,
            "messages_content_tokens": self.messages_content_tokens,
            "calculated_overhead": self.calculated_overhead,
            "message_structure_size": self.message_structure_size,
            "estimated_message_structure_tokens": self.estimated_message_structure_tokens,
            "possible_unaccounted_tokens": self.possible_unaccounted_tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OverheadAnalysis":
        return cls(**{k: int(data.get(k, 0)) for k in cls().to_dict()})


@dataclass
class ConversationSnapshotMessage:
    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class FullConversationContext:
    """Snapshot of everything sent to and received from the model."""
    system_prompt: str = ""
    messages: List[ConversationSnapshotMessage] = field(default_factory=list)
    final_response: str = ""
    tokens_breakdown: TokensBreakdown = field(default_factory=TokensBreakdown)
    overhead_analysis: OverheadAnalysis = field(default_factory=OverheadAnalysis)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "system_prompt": self.system_prompt,
            "messages": [m.to_dict() for m in self.messages],
            "final_response": self.final_response,
            "tokens_breakdown": self.tokens_breakdown.to_dict(),
            "overhead_analysis": self.overhead_analysis.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FullConversationContext":
        return cls(
            system_prompt=data.get("system_prompt", ""),
            messages=[
                ConversationSnapshotMessage(
                    role=m.get("role", ""),
                    content=m.get("content", ""),
                    timestamp=parse_timestamp(m.get("timestamp") or utcnow()),
                )
                for m in data.get("messages") or []
            ],
            final_response=data.get("final_response", ""),
            tokens_breakdown=TokensBreakdown.from_dict(data.get("tokens_breakdown") or {}),
            overhead_analysis=OverheadAnalysis.from_dict(data.get("overhead_analysis") or {}),
        )


# ============================================================
# Usage Log
# ============================================================

@dataclass
class UsageLog:
    """
    Usage log for one chat turn.

    Owned by a single turn until persisted; immutable afterwards.
    """
    session_id: str
    message_id: str
    user_id: Optional[str] = None
    model: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    steps: List[UsageStep] = field(default_factory=list)

    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    total_execution_time: int = 0  # ms
    request_size: int = 0
    response_size: int = 0

    full_conversation_context: Optional[FullConversationContext] = None

    def add_step(self, step: UsageStep) -> None:
        """Append a step and fold its token counts into the totals."""
        self.steps.append(step)
        if step.prompt_tokens:
            self.total_prompt_tokens += step.prompt_tokens
        if step.completion_tokens:
            self.total_completion_tokens += step.completion_tokens
        if step.total_tokens:
            self.total_tokens += step.total_tokens

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def tool_usage(self) -> Dict[str, int]:
        """Count of executed tool calls by tool name."""
        counts: Counter = Counter()
        for step in self.steps:
            for result in step.tool_call_results:
                counts[result.tool_name] += 1
        return dict(counts)

    def to_dict(self, include_steps: bool = True) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "user_id": self.user_id,
            "model": self.model,
            "timestamp": self.timestamp.isoformat(),
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_tokens,
            "total_execution_time": self.total_execution_time,
            "request_size": self.request_size,
            "response_size": self.response_size,
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
        if self.full_conversation_context is not None:
            result["full_conversation_context"] = self.full_conversation_context.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageLog":
        """Rebuild a persisted log. Totals are taken as stored."""
        log = cls(
            session_id=data["session_id"],
            message_id=data["message_id"],
            user_id=data.get("user_id"),
            model=data.get("model", ""),
            timestamp=parse_timestamp(data["timestamp"]),
            id=data.get("id") or str(uuid.uuid4()),
            steps=[UsageStep.from_dict(s) for s in data.get("steps") or []],
            total_prompt_tokens=int(data.get("total_prompt_tokens", 0)),
            total_completion_tokens=int(data.get("total_completion_tokens", 0)),
            total_tokens=int(data.get("total_tokens", 0)),
            total_execution_time=int(data.get("total_execution_time", 0)),
            request_size=int(data.get("request_size", 0)),
            response_size=int(data.get("response_size", 0)),
        )
        if data.get("full_conversation_context"):
            log.full_conversation_context = FullConversationContext.from_dict(
                data["full_conversation_context"]
            )
        return log
