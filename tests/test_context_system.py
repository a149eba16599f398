"""
chatusage - Context Reduction Tests

Covers:
- Token estimation
- Tool result cleaning
- Sliding-window limiting
- Conversation summarization policies and fallbacks
"""

import pytest

from chatusage.adapters import StubCompletionClient
from chatusage.context import (
    ContentCleaner,
    ConversationLimiter,
    ConversationSummarizer,
    DisabledPolicy,
    SummarizerConfig,
    TokenEstimator,
    TokenThresholdPolicy,
    clean_messages,
    estimate_tokens,
    get_estimator,
    policy_for_mode,
    set_estimator,
)
from chatusage.config import SummarizationMode
from chatusage.core.errors import UpstreamError
from chatusage.core.models import (
    ChatMessage,
    Role,
    TextPart,
    ToolInvocationPart,
    ToolInvocationState,
    UnknownPart,
)

from conftest import text_message, tool_message


def alternating(count: int, size: int):
    roles = [Role.USER, Role.ASSISTANT]
    return [text_message(roles[i % 2], size, char=chr(ord("a") + i % 26)) for i in range(count)]


# ============================================================
# Estimator
# ============================================================

class TestTokenEstimator:

    def test_empty_list_is_zero(self, estimator):
        assert estimator.estimate_tokens([]) == 0

    def test_rounds_up(self, estimator):
        message = ChatMessage(role=Role.USER, content="hello")
        assert estimator.estimate_tokens([message]) == 2

    def test_counts_utf8_bytes(self, estimator):
        message = ChatMessage(role=Role.USER, content="é" * 4)
        assert estimator.estimate_tokens([message]) == 2

    def test_sums_bytes_before_rounding(self, estimator):
        messages = [ChatMessage(role=Role.USER, content="abc"), ChatMessage(role=Role.USER, content="d")]
        assert estimator.estimate_tokens(messages) == 1

    def test_tool_result_not_counted(self, estimator):
        call = ToolInvocationPart(tool_name="search", args={"q": 1})
        with_result = ToolInvocationPart(tool_name="search", args={"q": 1}, result="x" * 5000)
        bare = ChatMessage(role=Role.ASSISTANT, parts=[call])
        full = ChatMessage(role=Role.ASSISTANT, parts=[with_result])
        assert estimator.estimate_tokens([bare]) == estimator.estimate_tokens([full])

    def test_tool_call_payload_is_compact_json(self, estimator):
        part = ToolInvocationPart(tool_name="a", args={})
        message = ChatMessage(role=Role.ASSISTANT, parts=[part])
        # {"toolName":"a","args":{}} is 26 bytes
        assert estimator.message_bytes(message) == 26

    def test_unknown_parts_counted_as_json(self, estimator):
        message = ChatMessage(role=Role.USER, parts=[UnknownPart(raw={"type": "image"})])
        assert estimator.message_bytes(message) == len('{"type":"image"}')

    def test_custom_ratio(self):
        estimator = TokenEstimator(bytes_per_token=2)
        assert estimator.estimate_text("abcd") == 2

    def test_estimate_size_non_positive(self, estimator):
        assert estimator.estimate_size(0) == 0
        assert estimator.estimate_size(-5) == 0


# ============================================================
# Cleaner
# ============================================================

class TestContentCleaner:

    def test_removes_completed_tool_results(self, estimator):
        message = tool_message(["x" * 1198, "x" * 3398])
        result = ContentCleaner(estimator).clean([message])

        assert result.removed_tool_results == 2
        assert result.removed_tool_results_size == 4600
        assert result.estimated_tokens_saved == 1150
        assert [p.type for p in result.messages[0].parts] == ["text"]

    def test_labels_removed_items(self, estimator):
        result = ContentCleaner(estimator).clean([text_message(Role.USER, 3), tool_message(["x" * 8])])
        assert result.to_dict()["tool_results_found"] == ["msg1:search_0(10chars)"]

    def test_preserves_count_and_order(self, conversation):
        result = ContentCleaner().clean(conversation)
        assert result.cleaned_count == len(conversation) == result.original_count
        assert [m.role for m in result.messages] == [m.role for m in conversation]

    def test_keeps_calls_without_results(self):
        pending = ToolInvocationPart(tool_name="lookup", args={}, state=ToolInvocationState.PARTIAL_CALL)
        message = ChatMessage(role=Role.ASSISTANT, parts=[pending])
        result = ContentCleaner().clean([message])
        assert result.removed_tool_results == 0
        assert result.messages[0] is message

    def test_does_not_mutate_input(self, conversation):
        before = [m.to_dict() for m in conversation]
        ContentCleaner().clean(conversation)
        assert [m.to_dict() for m in conversation] == before

    def test_idempotent(self, conversation):
        cleaner = ContentCleaner()
        once = cleaner.clean(conversation)
        twice = cleaner.clean(once.messages)
        assert twice.removed_tool_results == 0
        assert [m.to_dict() for m in twice.messages] == [m.to_dict() for m in once.messages]

    def test_size_saved(self, conversation):
        result = ContentCleaner().clean(conversation)
        assert result.size_saved == result.original_size - result.cleaned_size
        assert result.size_saved > 0


# ============================================================
# Limiter
# ============================================================

class TestConversationLimiter:

    def test_keeps_most_recent_within_budget(self):
        messages = alternating(15, 2400)
        limiter = ConversationLimiter(max_tokens=8000)

        result = limiter.limit_conversation(messages)

        assert result.original_tokens == 9000
        assert result.limited_count == 13
        assert result.messages == messages[2:]
        assert result.final_tokens == 7800
        assert result.messages_removed == 2
        assert result.tokens_saved == 1200
        assert result.within_budget

    def test_noop_when_within_budget(self, conversation):
        limiter = ConversationLimiter(max_tokens=8000)
        result = limiter.limit_conversation(conversation)
        assert result.messages == conversation
        assert not result.was_limited
        assert result.tokens_saved == 0

    def test_should_limit_matches_estimate(self, estimator):
        limiter = ConversationLimiter(max_tokens=100, estimator=estimator)
        exact = [text_message(Role.USER, 400)]
        over = [text_message(Role.USER, 401)]
        assert not limiter.should_limit(exact)
        assert limiter.should_limit(over)

    def test_preserves_system_messages(self):
        system = ChatMessage(role=Role.SYSTEM, content="s" * 400)
        messages = [system] + alternating(10, 400)
        result = ConversationLimiter(max_tokens=500).limit_conversation(messages)

        assert result.messages[0] is system
        assert result.messages[1:] == messages[-4:]
        assert result.final_tokens <= 500

    def test_drops_system_messages_that_exceed_budget(self):
        system = ChatMessage(role=Role.SYSTEM, content="s" * 4000)
        messages = [system] + alternating(4, 40)
        result = ConversationLimiter(max_tokens=100).limit_conversation(messages)

        assert all(not m.is_system for m in result.messages)
        assert result.messages == messages[1:]

    def test_floor_keeps_newest_message(self):
        messages = alternating(3, 4000)
        result = ConversationLimiter(max_tokens=100).limit_conversation(messages)

        assert result.messages == [messages[-1]]
        assert not result.within_budget

    def test_floor_prefers_system_message(self):
        system = ChatMessage(role=Role.SYSTEM, content="s" * 4000)
        messages = [system, text_message(Role.USER, 4000)]
        result = ConversationLimiter(max_tokens=100).limit_conversation(messages)
        assert result.messages == [system]

    def test_stops_at_first_overflow(self):
        messages = [
            text_message(Role.USER, 40),
            text_message(Role.ASSISTANT, 4000),
            text_message(Role.USER, 40),
        ]
        result = ConversationLimiter(max_tokens=100).limit_conversation(messages)
        assert result.messages == [messages[2]]

    def test_update_config(self):
        limiter = ConversationLimiter(max_tokens=100)
        limiter.update_config(max_tokens=200)
        assert limiter.get_config()["max_tokens"] == 200

        with pytest.raises(ValueError):
            limiter.update_config(max_tokens=0)
        with pytest.raises(ValueError):
            limiter.update_config(window="big")

    def test_default_budget_from_env(self, monkeypatch):
        monkeypatch.setenv("CONVERSATION_MAX_TOKENS", "1234")
        assert ConversationLimiter().max_tokens == 1234


# ============================================================
# Summarizer
# ============================================================

def summarizer_for(client, max_tokens=1000, keep_recent=4, policy=None):
    return ConversationSummarizer(
        client=client,
        policy=policy or TokenThresholdPolicy(),
        config=SummarizerConfig(
            max_tokens=max_tokens,
            keep_recent_messages=keep_recent,
            summary_model="stub/summary",
        ),
    )


class TestConversationSummarizer:

    @pytest.mark.asyncio
    async def test_disabled_policy_passes_through(self):
        messages = alternating(10, 2400)
        client = StubCompletionClient()
        summarizer = ConversationSummarizer(client=client)

        result = await summarizer.summarize_conversation(messages)

        assert isinstance(summarizer.policy, DisabledPolicy)
        assert result.messages == messages
        assert not result.summary.applied
        assert client.prompts == []

    @pytest.mark.asyncio
    async def test_summarizes_older_messages(self):
        messages = alternating(10, 2400)
        client = StubCompletionClient(response="User is planning a trip.")
        summarizer = summarizer_for(client)

        result = await summarizer.summarize_conversation(messages)

        assert len(result.messages) == 5
        summary = result.messages[0]
        assert summary.role == Role.SYSTEM
        assert summary.content == "[Conversation Summary: User is planning a trip.]"
        assert summary.id.startswith("summary-")
        assert result.messages[1:] == messages[-4:]
        assert result.summary.original_message_count == 6
        assert result.summary.tokens_saved == 3600 - 6

    @pytest.mark.asyncio
    async def test_prompt_contains_labeled_transcript(self):
        messages = [ChatMessage(role=Role.USER, parts=[TextPart(text="hi there")])] + alternating(6, 2400)
        client = StubCompletionClient()
        await summarizer_for(client).summarize_conversation(messages)

        assert len(client.prompts) == 1
        assert "User: hi there" in client.prompts[0]
        assert "200 words" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_below_threshold_passes_through(self):
        messages = alternating(10, 40)
        client = StubCompletionClient()
        result = await summarizer_for(client).summarize_conversation(messages)
        assert result.messages == messages
        assert client.prompts == []

    @pytest.mark.asyncio
    async def test_short_conversation_passes_through(self):
        messages = alternating(3, 4000)
        result = await summarizer_for(StubCompletionClient(), keep_recent=6).summarize_conversation(messages)
        assert result.messages == messages

    @pytest.mark.asyncio
    async def test_client_failure_passes_through(self):
        messages = alternating(10, 2400)
        client = StubCompletionClient(error=UpstreamError("anthropic", 503, "down"))
        result = await summarizer_for(client).summarize_conversation(messages)

        assert result.messages == messages
        assert result.summary.tokens_saved == 0
        assert not result.summary.applied

    @pytest.mark.asyncio
    async def test_empty_output_passes_through(self):
        messages = alternating(10, 2400)
        result = await summarizer_for(StubCompletionClient(response="  ")).summarize_conversation(messages)
        assert result.messages == messages

    @pytest.mark.asyncio
    async def test_missing_client_passes_through(self):
        messages = alternating(10, 2400)
        result = await summarizer_for(None).summarize_conversation(messages)
        assert result.messages == messages

    @pytest.mark.asyncio
    async def test_keep_recent_zero_summarizes_everything(self):
        messages = alternating(4, 2400)
        result = await summarizer_for(StubCompletionClient(), keep_recent=0).summarize_conversation(messages)
        assert len(result.messages) == 1
        assert result.summary.original_message_count == 4

    def test_policy_for_mode(self):
        assert isinstance(policy_for_mode(SummarizationMode.DISABLED), DisabledPolicy)
        assert isinstance(policy_for_mode(SummarizationMode.TOKEN_THRESHOLD), TokenThresholdPolicy)

    def test_config_roundtrip(self):
        summarizer = summarizer_for(StubCompletionClient())
        summarizer.update_config(keep_recent_messages=2)
        config = summarizer.get_config()
        assert config["keep_recent_messages"] == 2
        assert config["policy"] == "token_threshold"

        with pytest.raises(ValueError):
            summarizer.update_config(unknown=1)


class TestModuleHelpers:

    def test_estimate_tokens_uses_default_estimator(self):
        original = get_estimator()
        try:
            set_estimator(TokenEstimator(bytes_per_token=1))
            assert estimate_tokens([ChatMessage(role=Role.USER, content="abcd")]) == 4
        finally:
            set_estimator(original)

    def test_clean_messages(self):
        result = clean_messages([tool_message(["x" * 8])])
        assert result.removed_tool_results == 1
