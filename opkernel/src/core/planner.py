from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Protocol, Sequence

from .types import OperationCall


class PlannerError(RuntimeError):
    pass


@dataclass(frozen=True)
class Proposal:
    """Next operations suggested by a planner, plus its raw output."""

    operations: Sequence[OperationCall] = field(default_factory=tuple)
    raw_text: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.operations


class Planner(Protocol):
    async def propose(
        self,
        goal: str,
        history: str,
        catalog: Sequence[Mapping[str, Any]],
    ) -> Proposal:
        """Return the next operation(s) for ``goal`` given the history so far."""


PLANNER_INSTRUCTION = (
    "Based on the CURRENT GOAL and the actions performed so far, what is the next action to perform? "
    'If the goal is complete, you must call "{terminal}".'
)


@dataclass
class LLMPlanner:
    """Planner backed by a language model callable.

    ``llm`` receives the request payload and returns JSON text of the form
    ``{"operations": [{"name": ..., "arguments": {...}}], "text": "..."}``.
    It may be a plain function or a coroutine function.  Output that cannot
    be parsed is returned as an empty proposal carrying the raw text, which
    the orchestrator treats as a planning failure.
    """

    llm: Callable[[Dict[str, Any]], Any]
    terminal_operation: str = "Task Complete"

    def build_payload(
        self,
        goal: str,
        history: str,
        catalog: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        prompt = (
            f'CURRENT GOAL: "{goal}"\n\n{history}\n\n'
            + PLANNER_INSTRUCTION.format(terminal=self.terminal_operation)
        )
        return {
            "goal": goal,
            "prompt": prompt,
            "tools": [json.loads(json.dumps(entry, default=str)) for entry in catalog],
        }

    async def propose(
        self,
        goal: str,
        history: str,
        catalog: Sequence[Mapping[str, Any]],
    ) -> Proposal:
        raw = self.llm(self.build_payload(goal, history, catalog))
        if inspect.isawaitable(raw):
            raw = await raw
        if raw is None:
            return Proposal(raw_text="")
        if not isinstance(raw, str):
            raise PlannerError(f"Planner LLM returned {type(raw).__name__}, expected text")
        return parse_proposal(raw)


def parse_proposal(raw: str) -> Proposal:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return Proposal(raw_text=raw)
    if not isinstance(data, Mapping):
        return Proposal(raw_text=raw)
    text = data.get("text")
    raw_text = text if isinstance(text, str) else raw
    items = data.get("operations")
    if items is None:
        items = data.get("toolCalls") or []
    operations: List[OperationCall] = []
    if isinstance(items, list):
        for item in items:
            try:
                operations.append(OperationCall.from_raw(item))
            except (TypeError, ValueError):
                continue
    return Proposal(operations=tuple(operations), raw_text=raw_text)


class SequencePlanner:
    """Planner that replays a fixed list of proposals.

    Once the list is exhausted every further call returns an empty proposal.
    The payloads it was asked about are kept in :attr:`requests`.
    """

    def __init__(self, responses: Iterable[Proposal | Sequence[OperationCall | Mapping[str, Any]]]) -> None:
        self._responses: List[Proposal] = []
        for response in responses:
            if isinstance(response, Proposal):
                self._responses.append(response)
            else:
                calls = tuple(OperationCall.from_raw(item) for item in response)
                self._responses.append(Proposal(operations=calls))
        self.requests: List[Dict[str, Any]] = []

    async def propose(
        self,
        goal: str,
        history: str,
        catalog: Sequence[Mapping[str, Any]],
    ) -> Proposal:
        self.requests.append({"goal": goal, "history": history, "catalog": list(catalog)})
        index = len(self.requests) - 1
        if index < len(self._responses):
            return self._responses[index]
        return Proposal(raw_text="Planner script exhausted.")


__all__ = ["LLMPlanner", "Planner", "PlannerError", "Proposal", "SequencePlanner", "parse_proposal"]
