"""Unit tests for contextbudget.compression.scoring module."""

import pytest

from contextbudget.compression.scoring import ImportanceScorer, group_units
from contextbudget.types import (
    Message,
    Role,
    Summary,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)

# -- Helpers ----------------------------------------------------------------


def call(message_id: int, call_id: str, name: str, **tool_input) -> Message:
    return Message(
        id=message_id,
        role=Role.ASSISTANT,
        content=[ToolCallBlock(id=call_id, name=name, input=tool_input)],
        token_count=10,
    )


def result(message_id: int, call_id: str, tokens: int = 100) -> Message:
    return Message(
        id=message_id,
        role=Role.TOOL_RESULT,
        content=[ToolResultBlock(tool_call_id=call_id, content="output")],
        token_count=tokens,
    )


def text(message_id: int, role: Role, body: str) -> Message:
    return Message(id=message_id, role=role, content=[TextBlock(text=body)], token_count=10)


# -- group_units --------------------------------------------------------------


class TestGroupUnits:
    """Tests for group_units function."""

    def test_call_and_result_form_one_unit(self):
        log = [text(1, Role.USER, "hi"), call(2, "c1", "Bash", command="ls"), result(3, "c1")]

        units = group_units(log)

        assert [unit.indices for unit in units] == [[0], [1, 2]]
        assert units[1].is_open is False

    def test_interleaved_result_joins_its_call(self):
        log = [call(1, "c1", "Bash", command="ls"), text(2, Role.USER, "wait"), result(3, "c1")]

        units = group_units(log)

        assert [unit.indices for unit in units] == [[0, 2], [1]]
        assert units[0].first == 0
        assert units[0].last == 2

    def test_unanswered_call_is_open(self):
        log = [text(1, Role.USER, "go"), call(2, "c1", "Bash", command="make")]
        assert group_units(log)[1].is_open is True

    def test_parallel_calls_need_all_results(self):
        message = Message(
            id=1,
            role=Role.ASSISTANT,
            content=[
                ToolCallBlock(id="c1", name="Read", input={"path": "a.py"}),
                ToolCallBlock(id="c2", name="Read", input={"path": "b.py"}),
            ],
            token_count=10,
        )

        units = group_units([message, result(2, "c1")])
        assert len(units) == 1
        assert units[0].is_open is True

        units = group_units([message, result(2, "c1"), result(3, "c2")])
        assert units[0].indices == [0, 1, 2]
        assert units[0].is_open is False

    def test_orphan_result_is_its_own_unit(self):
        units = group_units([result(1, "missing")])
        assert units[0].indices == [0]
        assert units[0].is_open is False

    def test_summaries_are_skipped(self):
        summary = Summary(id="sum-1", covering_range=(1, 4), message_count=4, token_count=5)
        units = group_units([summary, text(5, Role.USER, "next")])
        assert [unit.indices for unit in units] == [[1]]


# -- ImportanceScorer ---------------------------------------------------------


class TestImportanceScorer:
    """Tests for ImportanceScorer class."""

    def test_recency(self):
        log = [text(i, Role.ASSISTANT, "step") for i in range(1, 6)]
        scorer = ImportanceScorer(log)

        assert scorer.recency(0) == 0.0
        assert scorer.recency(4) == 1.0
        assert scorer.recency(2) == 0.5

    def test_recency_survives_removal_of_other_messages(self):
        log = [text(i, Role.ASSISTANT, "step") for i in range(1, 6)]
        thinned = [log[0], log[2], log[4]]

        before = ImportanceScorer(log)
        after = ImportanceScorer(thinned)

        assert after.recency(1) == before.recency(2) == 0.5
        assert after.message_score(1) == before.message_score(2)

    def test_summary_range_counts_toward_newest_id(self):
        summary = Summary(id="sum-1", covering_range=(6, 9), message_count=4, token_count=5)
        scorer = ImportanceScorer([text(1, Role.USER, "start"), text(5, Role.USER, "middle"), summary])
        assert scorer.recency(1) == 0.5

    def test_summary_index_is_rejected(self):
        summary = Summary(id="sum-1", covering_range=(1, 4), message_count=4, token_count=5)
        scorer = ImportanceScorer([summary, text(5, Role.USER, "next")])

        with pytest.raises(TypeError):
            scorer.message_score(0)

    def test_single_message_is_most_recent(self):
        assert ImportanceScorer([text(1, Role.USER, "hi")]).recency(0) == 1.0

    def test_user_outscores_tool_output(self):
        log = [result(1, "c0"), text(2, Role.USER, "plain request")]
        scorer = ImportanceScorer(log)
        assert scorer.message_score(1) > scorer.message_score(0)

    def test_fact_pattern_bonus(self):
        log = [text(1, Role.ASSISTANT, "nothing here"), text(2, Role.ASSISTANT, "touching src/app.py")]
        scorer = ImportanceScorer(log)
        # recency 0 vs 1 contributes 0.3; the path adds another 0.2
        assert scorer.message_score(1) - scorer.message_score(0) == pytest.approx(0.5)

    def test_referenced_tool_exchange_scores_higher(self):
        referenced = [
            call(1, "c1", "Read", file_path="src/a.py"),
            result(2, "c1"),
            text(3, Role.USER, "look at src/a.py again"),
        ]
        unreferenced = referenced[:2] + [text(3, Role.USER, "thanks")]

        referenced_score = ImportanceScorer(referenced).unit_score(group_units(referenced)[0])
        unreferenced_score = ImportanceScorer(unreferenced).unit_score(group_units(unreferenced)[0])

        assert referenced_score == pytest.approx(0.7)
        assert unreferenced_score == pytest.approx(0.4)

    def test_superseded_duplicate_call_is_penalized(self):
        duplicated = [
            call(1, "c1", "Bash", command="ls"),
            result(2, "c1"),
            call(3, "c2", "Bash", command="ls"),
            result(4, "c2"),
        ]
        distinct = duplicated[:2] + [call(3, "c2", "Bash", command="pwd"), result(4, "c2")]

        duplicated_score = ImportanceScorer(duplicated).unit_score(group_units(duplicated)[0])
        distinct_score = ImportanceScorer(distinct).unit_score(group_units(distinct)[0])

        assert duplicated_score == 0.0
        assert distinct_score == pytest.approx(0.2)

    def test_scores_are_clamped(self):
        log = [
            text(1, Role.SYSTEM, "You edit src/main.py. We decided to use tabs."),
            text(2, Role.USER, "ok"),
        ]
        scorer = ImportanceScorer(log)
        for unit in scorer.units:
            assert 0.0 <= scorer.unit_score(unit) <= 1.0

    def test_unit_tokens(self):
        log = [call(1, "c1", "Bash", command="ls"), result(2, "c1", tokens=250)]
        scorer = ImportanceScorer(log)
        assert scorer.unit_tokens(scorer.units[0]) == 260
