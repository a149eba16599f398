"""
chatusage - Usage Accumulator

Request-scoped collector of step-level telemetry for one chat turn.

States:
- UNINITIALIZED: created, no log yet
- ACTIVE: initialize() called, steps are appended
- SEALED: finalize_and_save() called, log handed to the store

Recording never raises. Calls outside the ACTIVE state log a warning and
do nothing, and any failure inside a recorder is logged and dropped, so
instrumentation cannot change the outcome of a chat turn.
"""

import time
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..context.cleaner import CleaningResult
from ..context.estimator import TokenEstimator, get_estimator
from ..context.limiter import LimitationResult
from ..context.summarizer import SummarizationResult
from ..core.models import ChatMessage, Usage, byte_length, serialized_size, to_json
from ..observability.logging import get_logger
from ..observability.metrics import UsageMetrics, get_metrics
from .models import (
    ActualContent,
    ConversationSnapshotMessage,
    FullConversationContext,
    OverheadAnalysis,
    PromptSizeBreakdown,
    StepName,
    TokensBreakdown,
    ToolCallResult,
    UsageLog,
    UsageStep,
)


logger = get_logger(__name__)

# Turns above this many tokens are flagged in the logs
HIGH_USAGE_THRESHOLD = 10000


class AccumulatorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    SEALED = "sealed"


def _never_raises(func: Callable) -> Callable:
    """Log and drop any exception raised by a recorder."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            logger.warning(
                "Usage recording failed",
                recorder=func.__name__,
                error=str(e),
                error_class=type(e).__name__,
            )
            return None
    return wrapper


def _safe_ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator, 4)


class UsageAccumulator:
    """
    Buffers one turn's usage steps in memory and flushes them once.

    Usage:
        accumulator = UsageAccumulator(store)
        accumulator.initialize(session_id, message_id, user_id, model, request_size)
        accumulator.log_tools_loaded(mcp_tools, workflow_tools, app_default_tools)
        accumulator.log_llm_usage(prompt_tokens=500, completion_tokens=120)
        await accumulator.finalize_and_save(response_size=2048)
    """

    def __init__(
        self,
        store,
        capture_content: bool = True,
        estimator: Optional[TokenEstimator] = None,
        metrics: Optional[UsageMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.capture_content = capture_content
        self.estimator = estimator or get_estimator()
        self.metrics = metrics
        self._clock = clock
        self._log: Optional[UsageLog] = None
        self._started_at: Optional[float] = None
        self.state = AccumulatorState.UNINITIALIZED

    @property
    def log(self) -> Optional[UsageLog]:
        """The in-flight log (None unless ACTIVE)."""
        return self._log

    @property
    def is_active(self) -> bool:
        return self.state == AccumulatorState.ACTIVE

    def initialize(
        self,
        session_id: str,
        message_id: str,
        user_id: Optional[str] = None,
        model: str = "",
        request_size: int = 0,
    ) -> None:
        """Start the turn's log. Only valid once, from UNINITIALIZED."""
        if self.state != AccumulatorState.UNINITIALIZED:
            logger.warning(
                "Usage accumulator already initialized",
                state=self.state.value,
                session_id=session_id,
            )
            return

        self._log = UsageLog(
            session_id=session_id,
            message_id=message_id,
            user_id=user_id,
            model=model,
            request_size=request_size or 0,
        )
        self._started_at = self._clock()
        self.state = AccumulatorState.ACTIVE

    @_never_raises
    def add_step(self, step: UsageStep) -> None:
        """Append a step and fold its token counts into the totals."""
        if not self.is_active or self._log is None:
            logger.warning(
                "No active usage log, step dropped",
                step_name=step.step_name,
                state=self.state.value,
            )
            return
        self._log.add_step(step)

    # ============================================================
    # Recorders
    # ============================================================

    @_never_raises
    def log_request_init(self, messages_count: int = 0, **additional_data: Any) -> None:
        data = {"request_size": self._log.request_size if self._log else 0}
        data.update(additional_data)
        self.add_step(UsageStep(
            step_name=StepName.REQUEST_INIT.value,
            messages_count=messages_count,
            additional_data=data,
        ))

    @_never_raises
    def log_user_messages(self, messages: Sequence[ChatMessage]) -> None:
        serialized = [m.to_dict() for m in messages]
        self.add_step(UsageStep(
            step_name=StepName.USER_MESSAGES_CAPTURED.value,
            messages_count=len(messages),
            actual_content=(
                ActualContent(user_messages=serialized) if self.capture_content else None
            ),
            additional_data={
                "total_message_size": sum(serialized_size(m) for m in serialized),
            },
        ))

    @_never_raises
    def log_tools_loaded(
        self,
        mcp_tools: Optional[Mapping[str, Any]] = None,
        workflow_tools: Optional[Mapping[str, Any]] = None,
        app_default_tools: Optional[Mapping[str, Any]] = None,
    ) -> None:
        mcp_tools = mcp_tools or {}
        workflow_tools = workflow_tools or {}
        app_default_tools = app_default_tools or {}

        self.add_step(UsageStep(
            step_name=StepName.TOOLS_LOADED.value,
            mcp_tools_count=len(mcp_tools),
            workflow_tools_count=len(workflow_tools),
            app_default_tools_count=len(app_default_tools),
            tools_count=len(mcp_tools) + len(workflow_tools) + len(app_default_tools),
            additional_data={
                "mcp_tool_names": list(mcp_tools),
                "workflow_tool_names": list(workflow_tools),
                "app_default_tool_names": list(app_default_tools),
                "tool_definitions_size": serialized_size({
                    "mcp": dict(mcp_tools),
                    "workflow": dict(workflow_tools),
                    "app_default": dict(app_default_tools),
                }),
            },
        ))

    @_never_raises
    def log_tool_call_result(
        self,
        tool_name: str,
        result: Any,
        execution_time: int = 0,
        args: Any = None,
    ) -> None:
        result_size = serialized_size(result)
        self.add_step(UsageStep(
            step_name=StepName.TOOL_CALL.value,
            tool_call_results=[
                ToolCallResult(
                    tool_name=tool_name,
                    result_size=result_size,
                    execution_time=int(execution_time),
                )
            ],
            actual_content=(
                ActualContent(tool_calls=[{"name": tool_name, "args": args, "result": result}])
                if self.capture_content else None
            ),
            additional_data={
                "estimated_tokens_from_result": self.estimator.estimate_size(result_size),
                "result_type": type(result).__name__,
            },
        ))

    @_never_raises
    def log_system_prompt_breakdown(
        self,
        user_system_prompt: str = "",
        mcp_customizations: str = "",
        thinking_prompt: Optional[str] = None,
        agent_instructions: Optional[str] = None,
        full_prompt: Optional[str] = None,
    ) -> None:
        if full_prompt is None:
            full_prompt = "\n\n".join(
                p for p in (user_system_prompt, mcp_customizations, thinking_prompt, agent_instructions)
                if p
            )

        breakdown = PromptSizeBreakdown(
            user_system_prompt=byte_length(user_system_prompt or ""),
            mcp_customizations=byte_length(mcp_customizations or ""),
            thinking_prompt=byte_length(thinking_prompt or ""),
            agent_instructions=byte_length(agent_instructions or ""),
            total=byte_length(full_prompt),
        )

        self.add_step(UsageStep(
            step_name=StepName.SYSTEM_PROMPT_ANALYSIS.value,
            system_prompt_size=breakdown.total,
            prompt_size_breakdown=breakdown,
            actual_content=(
                ActualContent(system_prompt=full_prompt) if self.capture_content else None
            ),
            additional_data={
                "estimated_tokens": self.estimator.estimate_size(breakdown.total),
            },
        ))

    @_never_raises
    def log_cleaning(self, result: CleaningResult) -> None:
        self.add_step(UsageStep(
            step_name=StepName.CLEANED_MESSAGES_ANALYSIS.value,
            messages_count=result.cleaned_count,
            additional_data=result.to_dict(),
        ))

    @_never_raises
    def log_limitation(
        self,
        result: LimitationResult,
        max_tokens: Optional[int] = None,
        limitation_time_ms: int = 0,
    ) -> None:
        data = result.to_dict()
        data["limitation_time"] = int(limitation_time_ms)
        if max_tokens is not None:
            data["max_tokens_allowed"] = max_tokens

        self.add_step(UsageStep(
            step_name=StepName.CONVERSATION_LIMITATION.value,
            messages_count=result.limited_count,
            additional_data=data,
        ))

    @_never_raises
    def log_summarization(self, result: SummarizationResult) -> None:
        data = result.summary.to_dict()
        data["messages_compressed"] = result.summary.original_message_count
        data["summarization_time"] = result.summarization_time_ms
        if not self.capture_content:
            data.pop("summary", None)

        self.add_step(UsageStep(
            step_name=StepName.CONVERSATION_SUMMARIZATION.value,
            messages_count=len(result.messages),
            additional_data=data,
        ))

    @_never_raises
    def log_llm_usage(
        self,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        total_tokens: Optional[int] = None,
        step_name: str = StepName.LLM_CALL.value,
    ) -> None:
        """Record provider-reported usage; total defaults to prompt + completion."""
        if total_tokens is None:
            total_tokens = prompt_tokens + completion_tokens

        self.add_step(UsageStep(
            step_name=step_name,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        ))

    @_never_raises
    def log_final_response(
        self,
        content: str,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        tool_calls = tool_calls or []
        self.add_step(UsageStep(
            step_name=StepName.FINAL_RESPONSE_CAPTURED.value,
            actual_content=(
                ActualContent(assistant_response=content, tool_calls=tool_calls)
                if self.capture_content else None
            ),
            additional_data={
                "response_size": byte_length(content or ""),
                "tool_calls_count": len(tool_calls),
            },
        ))

    @_never_raises
    def log_full_conversation_context(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        final_response: str,
        usage: Usage,
    ) -> None:
        """
        Snapshot the turn and decompose its prompt tokens.

        The tools-and-overhead figure is the residual of provider prompt
        tokens after the estimated system prompt and message text; it is
        clamped at zero and is a diagnostic, not an accounting identity.
        """
        if not self.is_active or self._log is None:
            logger.warning("No active usage log, conversation context dropped")
            return

        snapshot = [
            ConversationSnapshotMessage(role=m.role.value, content=m.text())
            for m in messages
        ]

        system_prompt_bytes = byte_length(system_prompt or "")
        messages_bytes = sum(byte_length(m.content) for m in snapshot)
        response_bytes = byte_length(final_response or "")

        system_tokens = self.estimator.estimate_size(system_prompt_bytes)
        message_tokens = self.estimator.estimate_size(messages_bytes)
        prompt_tokens = usage.prompt_tokens
        overhead_tokens = max(0, prompt_tokens - system_tokens - message_tokens)

        structure_size = byte_length(to_json([m.to_dict() for m in snapshot]))
        structure_tokens = self.estimator.estimate_size(structure_size)

        self.add_step(UsageStep(
            step_name=StepName.TOKEN_BREAKDOWN_ANALYSIS.value,
            additional_data={
                "content_sizes": {
                    "system_prompt_bytes": system_prompt_bytes,
                    "messages_content_bytes": messages_bytes,
                    "response_bytes": response_bytes,
                    "total_content_bytes": system_prompt_bytes + messages_bytes + response_bytes,
                },
                "token_estimates": {
                    "system_prompt_estimated": system_tokens,
                    "messages_content_estimated": message_tokens,
                    "response_estimated": usage.completion_tokens,
                    "tools_and_overhead_estimated": overhead_tokens,
                },
                "actual_tokens": usage.to_dict(),
                "token_efficiency": {
                    "bytes_to_tokens_ratio": _safe_ratio(
                        usage.total_tokens,
                        system_prompt_bytes + messages_bytes + response_bytes,
                    ),
                    "system_prompt_efficiency": _safe_ratio(system_tokens, prompt_tokens),
                    "messages_efficiency": _safe_ratio(message_tokens, prompt_tokens),
                    "tools_overhead_ratio": _safe_ratio(overhead_tokens, prompt_tokens),
                },
            },
        ))

        if not self.capture_content:
            system_prompt = ""
            snapshot = []
            final_response = ""

        self._log.full_conversation_context = FullConversationContext(
            system_prompt=system_prompt,
            messages=snapshot,
            final_response=final_response,
            tokens_breakdown=TokensBreakdown(
                system_prompt_actual=system_tokens,
                messages_content_actual=message_tokens,
                tools_and_overhead_actual=overhead_tokens,
                response_actual=usage.completion_tokens,
                total=usage.total_tokens,
            ),
            overhead_analysis=OverheadAnalysis(
                total_prompt_tokens=prompt_tokens,
                system_prompt_tokens=system_tokens,
                messages_content_tokens=message_tokens,
                calculated_overhead=overhead_tokens,
                message_structure_size=structure_size,
                estimated_message_structure_tokens=structure_tokens,
                possible_unaccounted_tokens=max(0, overhead_tokens - structure_tokens),
            ),
        )

    # ============================================================
    # Flush
    # ============================================================

    async def finalize_and_save(self, response_size: int = 0) -> Optional[UsageLog]:
        """
        Seal the log and persist it once.

        Never raises on store or metrics failure: the error is logged and
        None is returned when nothing was written. Cancellation is not
        swallowed.

        Returns:
            The persisted log, or None if nothing was written
        """
        if not self.is_active or self._log is None:
            logger.warning(
                "No active usage log to finalize",
                state=self.state.value,
            )
            return None

        log = self._log
        self.state = AccumulatorState.SEALED
        self._log = None

        try:
            log.response_size = response_size or 0
            log.total_execution_time = int((self._clock() - self._started_at) * 1000)
        except Exception as e:
            logger.warning("Failed to stamp usage log totals", error=str(e))

        try:
            await self.store.persist(log)
        except Exception as e:
            logger.error(
                "Failed to persist usage log",
                session_id=log.session_id,
                message_id=log.message_id,
                error=str(e),
                error_class=type(e).__name__,
            )
            self._record_persist_failure()
            return None

        self._report(log)
        return log

    def _metrics(self) -> UsageMetrics:
        if self.metrics is None:
            self.metrics = get_metrics()
        return self.metrics

    @_never_raises
    def _record_persist_failure(self) -> None:
        self._metrics().record_persist_failure(getattr(self.store, "name", "unknown"))

    @_never_raises
    def _report(self, log: UsageLog) -> None:
        self._metrics().record_tokens(
            log.model, log.total_prompt_tokens, log.total_completion_tokens
        )

        logger.info(
            "Chat usage log saved",
            log_id=log.id,
            session_id=log.session_id,
            message_id=log.message_id,
            total_tokens=log.total_tokens,
            step_count=log.step_count,
            execution_time_ms=log.total_execution_time,
        )

        if log.total_tokens > HIGH_USAGE_THRESHOLD:
            logger.warning(
                "High token usage detected",
                session_id=log.session_id,
                total_tokens=log.total_tokens,
                threshold=HIGH_USAGE_THRESHOLD,
            )
