"""Importance scoring and tool-call pairing for pruning.

A *unit* is the smallest group of messages that can leave the active log
together: a single message, or an assistant message carrying tool calls plus
the tool-result messages answering those calls. Removing only part of a
unit would separate a tool call from its result in the log sent to the model.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..types import Message, Role, Summary, ToolCallBlock
from .facts import FILE_PATH_PATTERN, PATH_KEYS, extract_decisions

ROLE_WEIGHTS = {
    Role.SYSTEM: 1.0,
    Role.USER: 0.9,
    Role.ASSISTANT: 0.5,
    Role.TOOL_RESULT: 0.2,
}

RECENCY_WEIGHT = 0.3
ROLE_WEIGHT = 0.4
FACT_PATTERN_BONUS = 0.2
REFERENCED_BONUS = 0.3
SUPERSEDED_PENALTY = 0.3


@dataclass
class Unit:
    """Indices (into the active log) of messages that must move together."""

    indices: list[int] = field(default_factory=list)
    call_ids: set[str] = field(default_factory=set)
    answered_ids: set[str] = field(default_factory=set)

    @property
    def is_open(self) -> bool:
        """A tool call in this unit is still waiting for its result."""
        return bool(self.call_ids - self.answered_ids)

    @property
    def first(self) -> int:
        return self.indices[0]

    @property
    def last(self) -> int:
        return self.indices[-1]


def group_units(log: Sequence[Message | Summary]) -> list[Unit]:
    """Group the messages of ``log`` into pruning units, in log order."""
    units: list[Unit] = []
    unit_by_call: dict[str, Unit] = {}

    for index, entry in enumerate(log):
        if not isinstance(entry, Message):
            continue

        owner: Unit | None = None
        for result in entry.tool_results():
            owner = unit_by_call.get(result.tool_call_id)
            if owner is not None:
                break

        if owner is None:
            owner = Unit()
            units.append(owner)
        owner.indices.append(index)

        for call in entry.tool_calls():
            owner.call_ids.add(call.id)
            unit_by_call[call.id] = owner
        for result in entry.tool_results():
            owner.answered_ids.add(result.tool_call_id)

    return units


def _call_signature(call: ToolCallBlock) -> str:
    return call.name + ":" + json.dumps(call.input, sort_keys=True, default=str)


def _call_paths(call: ToolCallBlock) -> set[str]:
    paths = set()
    for key in PATH_KEYS:
        value = call.input.get(key)
        if isinstance(value, str) and value:
            paths.add(value)
    return paths


def _references(message: Message) -> set[str]:
    """Paths and call ids a message points at."""
    refs = set(FILE_PATH_PATTERN.findall(message.text_content()))
    for call in message.tool_calls():
        refs |= _call_paths(call)
    for result in message.tool_results():
        refs.add(result.tool_call_id)
    return refs


def has_fact_pattern(message: Message) -> bool:
    text = message.text_content()
    if FILE_PATH_PATTERN.search(text) or extract_decisions(text):
        return True
    return any(_call_paths(call) for call in message.tool_calls())


class ImportanceScorer:
    """Scores messages of one active log.

    Signals: recency, role, fact patterns, whether a tool exchange is still
    referenced later, and whether an identical later tool call supersedes it.
    """

    def __init__(self, log: Sequence[Message | Summary]):
        self.log = log
        self.units = group_units(log)
        self._newest_id = max(
            [entry.id if isinstance(entry, Message) else entry.covering_range[1] for entry in log],
            default=0,
        )

        # suffix sets: references / call signatures appearing strictly after index i
        size = len(log)
        self._later_refs: list[set[str]] = [set() for _ in range(size + 1)]
        self._later_signatures: list[set[str]] = [set() for _ in range(size + 1)]
        for i in range(size - 1, -1, -1):
            refs = set(self._later_refs[i + 1])
            signatures = set(self._later_signatures[i + 1])
            entry = log[i]
            if isinstance(entry, Message):
                refs |= _references(entry)
                signatures |= {_call_signature(call) for call in entry.tool_calls()}
            self._later_refs[i] = refs
            self._later_signatures[i] = signatures

    def recency(self, index: int) -> float:
        """Position of the message id between the first id and the newest.

        Ids are assigned from 1 and never reused, so a message keeps its
        recency when other messages leave the log.
        """
        message = self._message(index)
        if self._newest_id <= 1:
            return 1.0
        return min(1.0, max(0.0, (message.id - 1) / (self._newest_id - 1)))

    def _message(self, index: int) -> Message:
        entry = self.log[index]
        if not isinstance(entry, Message):
            raise TypeError(f"log entry {index} is a summary, not a message")
        return entry

    def message_score(self, index: int) -> float:
        message = self._message(index)
        score = RECENCY_WEIGHT * self.recency(index) + ROLE_WEIGHT * ROLE_WEIGHTS[message.role]
        if has_fact_pattern(message):
            score += FACT_PATTERN_BONUS
        return score

    def unit_score(self, unit: Unit) -> float:
        """A unit is as important as its most important member, adjusted for
        references and supersession of its tool calls."""
        score = max(self.message_score(index) for index in unit.indices)

        calls = [call for index in unit.indices for call in self.log[index].tool_calls()]
        if calls:
            later_refs = self._later_refs[unit.last + 1]
            keys = set(unit.call_ids)
            for call in calls:
                keys |= _call_paths(call)
            if keys & later_refs:
                score += REFERENCED_BONUS
            later_signatures = self._later_signatures[unit.last + 1]
            if all(_call_signature(call) in later_signatures for call in calls):
                score -= SUPERSEDED_PENALTY

        return min(1.0, max(0.0, score))

    def unit_tokens(self, unit: Unit) -> int:
        return sum(self.log[index].token_count for index in unit.indices)
