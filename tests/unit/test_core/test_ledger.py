"""Unit tests for contextbudget.ledger module."""

import logging

from contextbudget.ledger import (
    TokenLedger,
    estimate_content_tokens,
    estimate_tokens,
    log_footprint,
)
from contextbudget.types import Message, Role, TextBlock, TokenUsage, ToolCallBlock, ToolResultBlock


class TestEstimateTokens:
    """Tests for estimate_tokens function."""

    def test_empty_string(self):
        assert estimate_tokens("") == 0

    def test_exact_multiple(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("x" * 400) == 100

    def test_rounds_up(self):
        assert estimate_tokens("abcde") == 2

    def test_custom_ratio(self):
        assert estimate_tokens("abcd", chars_per_token=2) == 2


class TestEstimateContentTokens:
    """Tests for estimate_content_tokens function."""

    def test_none(self):
        assert estimate_content_tokens(None) == 0

    def test_string(self):
        assert estimate_content_tokens("x" * 40) == 10

    def test_block_list(self):
        blocks = [TextBlock(text="x" * 8), ToolResultBlock(tool_call_id="c1", content="y" * 4)]
        assert estimate_content_tokens(blocks) == 3

    def test_tool_call_counts_name_and_input(self):
        block = ToolCallBlock(id="c1", name="Bash", input={"command": "ls"})
        assert estimate_content_tokens([block]) > 0

    def test_message_uses_recorded_count(self):
        message = Message(id=1, role=Role.USER, content=[TextBlock(text="hi")], token_count=500)
        assert estimate_content_tokens(message) == 500

    def test_dict_content_falls_back_to_json(self):
        assert estimate_content_tokens([{"type": "text", "text": "hello"}]) > 0


class TestLogFootprint:
    """Tests for log_footprint function."""

    def test_sums_token_counts(self):
        log = [
            Message(id=1, role=Role.USER, content=[], token_count=10),
            Message(id=2, role=Role.ASSISTANT, content=[], token_count=15),
        ]
        assert log_footprint(log) == 25

    def test_empty_log(self):
        assert log_footprint([]) == 0


class TestTokenLedger:
    """Tests for TokenLedger class."""

    def test_starts_at_zero(self):
        ledger = TokenLedger()
        assert ledger.total == 0
        assert ledger.context_tokens == 0

    def test_record_usage_is_additive(self):
        ledger = TokenLedger()
        ledger.record_usage(100, 50)
        ledger.record_usage(10, 5)

        assert ledger.usage.input == 110
        assert ledger.usage.output == 55
        assert ledger.total == 165

    def test_reasoning_and_cache_read_count_towards_total(self):
        ledger = TokenLedger()
        ledger.record_usage(100, 50, reasoning_tokens=20, cache_read_tokens=30, cache_write_tokens=40)

        assert ledger.total == 200
        assert ledger.usage.cache_write == 40

    def test_negative_reports_are_ignored(self):
        ledger = TokenLedger()
        ledger.record_usage(-5, 10)
        assert ledger.total == 10

    def test_constructor_copies_usage(self):
        usage = TokenUsage(input=100, output=50)
        ledger = TokenLedger(usage)
        ledger.record_usage(1, 1)

        assert usage.input == 100
        assert ledger.total == 152

    def test_snapshot_is_a_copy(self):
        ledger = TokenLedger(TokenUsage(input=10))
        snapshot = ledger.snapshot()
        snapshot.input = 999

        assert ledger.usage.input == 10

    def test_usage_percent(self):
        ledger = TokenLedger()
        ledger.record_usage(60_000, 4_000)
        assert ledger.current_usage_percent(128_000) == 0.5

    def test_usage_percent_is_clamped(self):
        ledger = TokenLedger()
        ledger.record_usage(200_000, 0)
        assert ledger.current_usage_percent(128_000) == 1.0

    def test_usage_percent_with_non_positive_window(self):
        assert TokenLedger().current_usage_percent(0) == 0.0

        ledger = TokenLedger()
        ledger.record_usage(1, 0)
        assert ledger.current_usage_percent(0) == 1.0
        assert ledger.current_usage_percent(-10) == 1.0

    def test_reclaimed_tokens_reduce_context_not_total(self):
        ledger = TokenLedger()
        ledger.record_usage(100_000, 15_000)
        ledger.record_reclaimed(25_000)

        assert ledger.total == 115_000
        assert ledger.context_tokens == 90_000
        assert ledger.current_usage_percent(100_000) == 0.9

    def test_reclaimed_is_capped_at_total(self):
        ledger = TokenLedger()
        ledger.record_usage(100, 0)
        ledger.record_reclaimed(500)

        assert ledger.reclaimed_tokens == 100
        assert ledger.context_tokens == 0

    def test_record_estimated_logs_at_debug(self, caplog):
        caplog.set_level(logging.DEBUG, logger="contextbudget.ledger")
        ledger = TokenLedger()

        ledger.record_estimated("x" * 40, "y" * 20)

        assert ledger.usage.input == 10
        assert ledger.usage.output == 5
        assert "estimated 10 input / 5 output tokens" in caplog.text
        assert all(record.levelno == logging.DEBUG for record in caplog.records)

    def test_estimate_uses_configured_ratio(self):
        ledger = TokenLedger(chars_per_token=2)
        assert ledger.estimate("abcd") == 2
