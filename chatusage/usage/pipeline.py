"""
chatusage - Chat Turn Pipeline

Drives one instrumented chat turn:

    init -> user messages -> tools -> system prompt
         -> clean -> limit (if over budget) -> summarize (if policy allows)
         -> model call -> tool calls, final usage, response, full context
         -> finalize (always)

The usage log is flushed exactly once, also when the model call raises or
the turn is cancelled. The caller's exception is re-raised unchanged.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..adapters import create_completion_client
from ..config import SummarizationMode, UsageSettings
from ..context.cleaner import ContentCleaner
from ..context.estimator import TokenEstimator, get_estimator
from ..context.limiter import ConversationLimiter
from ..context.summarizer import ConversationSummarizer, SummarizerConfig, policy_for_mode
from ..core.models import ChatMessage, Usage, byte_length, messages_size
from ..observability.logging import LogContext, TimedOperation, get_logger
from ..observability.metrics import UsageMetrics, get_metrics
from ..observability.tracing import start_span
from .accumulator import UsageAccumulator
from .models import StepName


logger = get_logger(__name__)


@dataclass
class SystemPromptParts:
    """Components the assembled system prompt was built from."""
    user_system_prompt: str = ""
    mcp_customizations: str = ""
    thinking_prompt: Optional[str] = None
    agent_instructions: Optional[str] = None


@dataclass
class ChatTurn:
    """Inputs of one chat turn as received from the chat route."""
    session_id: str
    message_id: str
    messages: List[ChatMessage]
    model: str = ""
    user_id: Optional[str] = None
    system_prompt: str = ""
    request_size: Optional[int] = None
    mcp_tools: Dict[str, Any] = field(default_factory=dict)
    workflow_tools: Dict[str, Any] = field(default_factory=dict)
    app_default_tools: Dict[str, Any] = field(default_factory=dict)
    prompt_parts: Optional[SystemPromptParts] = None


@dataclass
class PreparedTurn:
    """What the model call receives after context reduction."""
    turn: ChatTurn
    messages: List[ChatMessage]

    @property
    def system_prompt(self) -> str:
        return self.turn.system_prompt


@dataclass
class ToolCallRecord:
    """A tool executed during the turn."""
    tool_name: str
    args: Any = None
    result: Any = None
    execution_time: int = 0  # ms

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.tool_name, "args": self.args}


@dataclass
class ModelResult:
    """Outcome of the model call."""
    content: str = ""
    usage: Usage = field(default_factory=lambda: Usage(0, 0))
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    intermediate_usage: List[Usage] = field(default_factory=list)
    response_size: Optional[int] = None

    @property
    def size(self) -> int:
        if self.response_size is not None:
            return self.response_size
        return byte_length(self.content or "")


ModelCall = Callable[[PreparedTurn], Awaitable[ModelResult]]


class ChatTurnPipeline:
    """
    Instrumented context reduction and accounting around a model call.

    Usage:
        pipeline = ChatTurnPipeline(store, limiter=ConversationLimiter(max_tokens=8000))
        result = await pipeline.run(turn, call_model)
    """

    def __init__(
        self,
        store,
        cleaner: Optional[ContentCleaner] = None,
        limiter: Optional[ConversationLimiter] = None,
        summarizer: Optional[ConversationSummarizer] = None,
        capture_content: bool = True,
        estimator: Optional[TokenEstimator] = None,
        metrics: Optional[UsageMetrics] = None,
    ):
        self.store = store
        self.estimator = estimator or get_estimator()
        self.cleaner = cleaner or ContentCleaner(self.estimator)
        self.limiter = limiter or ConversationLimiter(estimator=self.estimator)
        self.summarizer = summarizer
        self.capture_content = capture_content
        self.metrics = metrics or get_metrics()

    @classmethod
    def from_settings(
        cls,
        store,
        settings: Optional[UsageSettings] = None,
        metrics: Optional[UsageMetrics] = None,
    ) -> "ChatTurnPipeline":
        """
        Build a pipeline from configuration.

        Raises:
            ValueError: If summarization is enabled for a provider with no API key,
                or its threshold is not below the limiter budget
        """
        settings = settings or UsageSettings.from_env()
        settings.validate()
        estimator = get_estimator()

        summarizer = None
        if settings.summarization != SummarizationMode.DISABLED:
            summarizer = ConversationSummarizer(
                client=create_completion_client(settings.summary_model, settings.provider_keys),
                policy=policy_for_mode(settings.summarization),
                config=SummarizerConfig(
                    max_tokens=settings.summary_threshold_tokens,
                    keep_recent_messages=settings.keep_recent_messages,
                    summary_model=settings.summary_model,
                ),
                estimator=estimator,
            )

        return cls(
            store,
            limiter=ConversationLimiter(max_tokens=settings.max_tokens, estimator=estimator),
            summarizer=summarizer,
            capture_content=settings.capture_content,
            estimator=estimator,
            metrics=metrics,
        )

    def new_accumulator(self) -> UsageAccumulator:
        return UsageAccumulator(
            self.store,
            capture_content=self.capture_content,
            estimator=self.estimator,
            metrics=self.metrics,
        )

    async def run(self, turn: ChatTurn, model_call: ModelCall) -> ModelResult:
        """
        Run one turn and persist its usage log.

        Raises:
            Whatever model_call raises, unchanged
        """
        accumulator = self.new_accumulator()
        LogContext.set_current(LogContext(
            request_id=turn.message_id,
            session_id=turn.session_id,
            message_id=turn.message_id,
            user_id=turn.user_id or "",
            model=turn.model,
        ))

        started = time.perf_counter()
        outcome = "error"
        result: Optional[ModelResult] = None

        try:
            with start_span("chat_turn", {
                "chat.session_id": turn.session_id,
                "chat.message_id": turn.message_id,
                "chat.model": turn.model,
            }):
                self._record_request(accumulator, turn)
                prepared = await self.prepare(turn, accumulator)

                with start_span("model_call", {"chat.messages_count": len(prepared.messages)}):
                    result = await model_call(prepared)

                self._record_result(accumulator, prepared, result)
                outcome = "success"
                return result
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        finally:
            try:
                await accumulator.finalize_and_save(response_size=result.size if result else 0)
            except Exception as e:
                logger.error("Usage finalize failed", error=str(e), error_class=type(e).__name__)
            try:
                self.metrics.record_turn(turn.model, outcome, time.perf_counter() - started)
            except Exception as e:
                logger.warning("Turn metrics failed", error=str(e), error_class=type(e).__name__)
            LogContext.clear()

    def _record_request(self, accumulator: UsageAccumulator, turn: ChatTurn) -> None:
        request_size = turn.request_size
        if request_size is None:
            request_size = messages_size(turn.messages)

        accumulator.initialize(
            session_id=turn.session_id,
            message_id=turn.message_id,
            user_id=turn.user_id,
            model=turn.model,
            request_size=request_size,
        )
        accumulator.log_request_init(messages_count=len(turn.messages), model=turn.model)
        accumulator.log_user_messages(turn.messages)
        accumulator.log_tools_loaded(turn.mcp_tools, turn.workflow_tools, turn.app_default_tools)

        parts = turn.prompt_parts or SystemPromptParts(user_system_prompt=turn.system_prompt)
        accumulator.log_system_prompt_breakdown(
            user_system_prompt=parts.user_system_prompt,
            mcp_customizations=parts.mcp_customizations,
            thinking_prompt=parts.thinking_prompt,
            agent_instructions=parts.agent_instructions,
            full_prompt=turn.system_prompt,
        )

    async def prepare(self, turn: ChatTurn, accumulator: UsageAccumulator) -> PreparedTurn:
        """Clean, then limit, then summarize the turn's messages."""
        with start_span("context.clean"):
            cleaning = self.cleaner.clean(turn.messages)
        accumulator.log_cleaning(cleaning)
        self._count_saved("cleaning", cleaning.estimated_tokens_saved)
        messages = cleaning.messages

        if self.limiter.should_limit(messages):
            try:
                with start_span("context.limit"), TimedOperation("conversation_limitation", logger) as timer:
                    limitation = self.limiter.limit_conversation(messages)
            except Exception as e:
                logger.warning(
                    "Conversation limiting failed, sending cleaned messages",
                    error=str(e),
                    error_class=type(e).__name__,
                )
            else:
                accumulator.log_limitation(
                    limitation,
                    max_tokens=self.limiter.max_tokens,
                    limitation_time_ms=int(timer.duration_ms or 0),
                )
                self._count_saved("limitation", limitation.tokens_saved)
                messages = limitation.messages

        if self.summarizer is not None and self.summarizer.should_summarize(messages):
            with start_span("context.summarize"):
                summarization = await self.summarizer.summarize_conversation(messages)
            accumulator.log_summarization(summarization)
            if summarization.summary.applied:
                self._count_saved("summarization", summarization.summary.tokens_saved)
                messages = summarization.messages

        return PreparedTurn(turn=turn, messages=messages)

    def _count_saved(self, transform: str, tokens: int) -> None:
        try:
            self.metrics.record_tokens_saved(transform, tokens)
        except Exception as e:
            logger.warning("Context metrics failed", transform=transform, error=str(e))

    def _record_result(
        self,
        accumulator: UsageAccumulator,
        prepared: PreparedTurn,
        result: ModelResult,
    ) -> None:
        for call in result.tool_calls:
            accumulator.log_tool_call_result(
                call.tool_name,
                call.result,
                execution_time=call.execution_time,
                args=call.args,
            )

        for usage in result.intermediate_usage:
            accumulator.log_llm_usage(usage.prompt_tokens, usage.completion_tokens, usage.total_tokens)

        accumulator.log_llm_usage(
            result.usage.prompt_tokens,
            result.usage.completion_tokens,
            result.usage.total_tokens,
            step_name=StepName.FINAL_LLM_CALL.value,
        )
        accumulator.log_final_response(result.content, [c.to_dict() for c in result.tool_calls])
        accumulator.log_full_conversation_context(
            prepared.system_prompt,
            prepared.messages,
            result.content,
            result.usage,
        )
