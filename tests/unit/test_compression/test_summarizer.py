"""Unit tests for contextbudget.compression.summarizer module."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from contextbudget.compression.summarizer import (
    COMPACTION_PROMPT,
    MAX_PROMPT_CHARS_PER_MESSAGE,
    SHORTEN_PREFIX,
    ModelSummarizer,
    Summarizer,
    TemplateSummarizer,
    format_messages_for_prompt,
    format_summary_context,
)
from contextbudget.errors import SummarizationError
from contextbudget.types import (
    ExtractedFacts,
    Message,
    Role,
    Summary,
    TextBlock,
    ToolCallBlock,
    ToolUsageSummary,
)

# -- Helpers ----------------------------------------------------------------


def text(message_id: int, role: Role, body: str) -> Message:
    return Message(id=message_id, role=role, content=[TextBlock(text=body)], token_count=10)


def make_summary(**overrides) -> Summary:
    defaults = {
        "id": "sum-test",
        "covering_range": (2, 6),
        "message_count": 5,
        "narrative": "Fixed the login flow.",
        "extracted_facts": ExtractedFacts(
            files_modified=["src/login.py"],
            files_read=["README.md"],
            key_decisions=["We decided to keep sessions server-side."],
            tools_used=[ToolUsageSummary(tool="Edit", count=2)],
        ),
        "token_count": 40,
    }
    defaults.update(overrides)
    return Summary(**defaults)


# -- Constants ----------------------------------------------------------------


class TestConstants:
    """Tests for module constants."""

    def test_prompt_has_messages_placeholder(self):
        assert "{messages_to_fold}" in COMPACTION_PROMPT


# -- format_summary_context ---------------------------------------------------


class TestFormatSummaryContext:
    """Tests for format_summary_context function."""

    def test_includes_all_sections(self):
        rendered = format_summary_context(make_summary())

        assert rendered.startswith("[Earlier conversation - 5 messages summarized]")
        assert "Fixed the login flow." in rendered
        assert "Files modified: src/login.py" in rendered
        assert "Files read: README.md" in rendered
        assert "- We decided to keep sessions server-side." in rendered
        assert "- Edit: 2 times" in rendered

    def test_degraded_summary_notes_missing_narrative(self):
        rendered = format_summary_context(make_summary(narrative="", degraded=True))
        assert "(No narrative available" in rendered
        assert "Files modified: src/login.py" in rendered

    def test_empty_facts_are_omitted(self):
        rendered = format_summary_context(make_summary(extracted_facts=ExtractedFacts()))
        assert "Files modified" not in rendered
        assert "Tools used" not in rendered


class TestFormatMessagesForPrompt:
    """Tests for format_messages_for_prompt function."""

    def test_numbered_with_roles(self):
        rendered = format_messages_for_prompt(
            [text(1, Role.USER, "fix it"), text(2, Role.ASSISTANT, "done")]
        )
        assert rendered == "[1] USER: fix it\n\n[2] ASSISTANT: done"

    def test_tool_calls_are_included(self):
        message = Message(
            id=1,
            role=Role.ASSISTANT,
            content=[ToolCallBlock(id="c1", name="Bash", input={"command": "ls"})],
            token_count=5,
        )
        assert '<Bash {"command": "ls"}>' in format_messages_for_prompt([message])

    def test_long_messages_are_truncated(self):
        rendered = format_messages_for_prompt([text(1, Role.USER, "x" * 2000)])
        assert rendered == "[1] USER: " + "x" * MAX_PROMPT_CHARS_PER_MESSAGE


# -- TemplateSummarizer -------------------------------------------------------


class TestTemplateSummarizer:
    """Tests for TemplateSummarizer class."""

    def test_is_a_summarizer(self):
        assert isinstance(TemplateSummarizer(), Summarizer)

    @pytest.mark.asyncio
    async def test_first_sentences_and_tool_calls(self):
        messages = [
            text(1, Role.USER, "Please fix the login bug. It fails on submit."),
            Message(
                id=2,
                role=Role.ASSISTANT,
                content=[ToolCallBlock(id="c1", name="Bash", input={"command": "pytest"})],
                token_count=5,
            ),
            text(3, Role.ASSISTANT, "ok"),
        ]

        narrative = await TemplateSummarizer().summarize(messages)

        assert narrative.splitlines() == [
            "- [user] Please fix the login bug",
            "- [tool] Called Bash",
        ]

    @pytest.mark.asyncio
    async def test_long_sentence_is_cut(self):
        narrative = await TemplateSummarizer(max_sentence_chars=20).summarize(
            [text(1, Role.USER, "a" * 100)]
        )
        assert narrative == "- [user] " + "a" * 20 + "..."

    @pytest.mark.asyncio
    async def test_line_limit(self):
        messages = [text(i, Role.USER, f"Request number {i} for the agent") for i in range(1, 11)]

        lines = (await TemplateSummarizer(max_lines=4).summarize(messages)).splitlines()

        assert len(lines) == 4
        assert lines[0] == "- [user] Request number 1 for the agent"
        assert "omitted" in lines[2]
        assert lines[3] == "- [user] Request number 10 for the agent"

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self):
        narrative = await TemplateSummarizer().summarize([text(1, Role.USER, "ok")])
        assert narrative == "No significant content to summarize."


# -- ModelSummarizer ----------------------------------------------------------


class TestModelSummarizer:
    """Tests for ModelSummarizer class."""

    @pytest.mark.asyncio
    async def test_calls_provider_with_prompt(self, mock_provider):
        summarizer = ModelSummarizer(mock_provider, model="test-model", max_tokens=800)

        narrative = await summarizer.summarize([text(1, Role.USER, "refactor the parser")])

        assert narrative == "Summary of earlier work."
        kwargs = mock_provider.generate.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["max_tokens"] == 800
        prompt = kwargs["messages"][0]["content"]
        assert "[1] USER: refactor the parser" in prompt
        assert "{messages_to_fold}" not in prompt

    @pytest.mark.asyncio
    async def test_resummarizes_once_when_too_long(self):
        provider = MagicMock()
        provider.generate = AsyncMock(
            side_effect=[MagicMock(content="x" * 100), MagicMock(content="short")]
        )
        summarizer = ModelSummarizer(provider, model="m", max_summary_tokens=10)

        narrative = await summarizer.summarize([text(1, Role.USER, "hello there")])

        assert narrative == "short"
        assert provider.generate.call_count == 2
        second_prompt = provider.generate.call_args_list[1].kwargs["messages"][0]["content"]
        assert SHORTEN_PREFIX in second_prompt

    @pytest.mark.asyncio
    async def test_dict_response(self):
        provider = MagicMock()
        provider.generate = AsyncMock(return_value={"content": "  dict summary  "})

        narrative = await ModelSummarizer(provider, model="m").summarize([text(1, Role.USER, "x")])

        assert narrative == "dict summary"

    @pytest.mark.asyncio
    async def test_provider_error_is_wrapped(self):
        provider = MagicMock()
        provider.generate = AsyncMock(side_effect=RuntimeError("rate limited"))

        with pytest.raises(SummarizationError) as exc_info:
            await ModelSummarizer(provider, model="m").summarize([text(1, Role.USER, "x")])

        assert "RuntimeError" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_empty_response_raises(self):
        provider = MagicMock()
        provider.generate = AsyncMock(return_value=MagicMock(content="   "))

        with pytest.raises(SummarizationError):
            await ModelSummarizer(provider, model="m").summarize([text(1, Role.USER, "x")])
