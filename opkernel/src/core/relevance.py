"""Narrow the operation catalog shown to the planner.

With ``relevance_mode="all"`` the planner sees every registered operation.
In ``"selected"`` mode a catalog selector scores each definition against the
goal and only the best ``relevance_top_k`` entries at or above
``relevance_threshold`` are offered.  The terminal operation is always kept
so the planner can still finish the task.
"""

from __future__ import annotations

import inspect
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Sequence, Union

from .operations import OperationDefinition

_TOKEN_PATTERN = re.compile(r"[A-Za-z0-9]+")


@dataclass(frozen=True)
class ScoredOperation:
    definition: OperationDefinition
    score: float

    @property
    def name(self) -> str:
        return self.definition.name

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.definition.name, "score": round(self.score, 4)}


SelectorResult = Sequence[Union[ScoredOperation, OperationDefinition]]
CatalogSelector = Callable[
    [str, Sequence[OperationDefinition]],
    Union[SelectorResult, Awaitable[SelectorResult]],
]


def _tokenise(text: str) -> List[str]:
    return [token.lower() for token in _TOKEN_PATTERN.findall(text or "")]


def _definition_text(definition: OperationDefinition) -> str:
    parts = [definition.name, definition.description, definition.purpose or ""]
    parts.extend(f"{param.name} {param.description}" for param in definition.inputs)
    return " ".join(parts)


def lexical_selector(goal: str, definitions: Sequence[OperationDefinition]) -> List[ScoredOperation]:
    """Score definitions by the share of goal tokens found in their name and description."""

    goal_tokens = set(_tokenise(goal))
    scored: List[ScoredOperation] = []
    for definition in definitions:
        if not goal_tokens:
            scored.append(ScoredOperation(definition, 0.0))
            continue
        counts: Counter[str] = Counter(_tokenise(_definition_text(definition)))
        hits = sum(1 for token in goal_tokens if counts[token])
        scored.append(ScoredOperation(definition, hits / len(goal_tokens)))
    return scored


def _coerce(items: Iterable[Union[ScoredOperation, OperationDefinition]]) -> List[ScoredOperation]:
    coerced: List[ScoredOperation] = []
    for item in items:
        if isinstance(item, ScoredOperation):
            coerced.append(item)
        elif isinstance(item, OperationDefinition):
            coerced.append(ScoredOperation(item, 1.0))
        else:
            raise TypeError(f"catalog selector returned {type(item).__name__}, expected a scored operation")
    return coerced


async def select_operations(
    selector: CatalogSelector,
    goal: str,
    definitions: Sequence[OperationDefinition],
    *,
    top_k: int,
    threshold: float,
    always_include: Iterable[str] = (),
) -> List[ScoredOperation]:
    """Run ``selector`` and keep the ``top_k`` best matches scoring at least ``threshold``."""

    result = selector(goal, definitions)
    if inspect.isawaitable(result):
        result = await result
    ranked = sorted(_coerce(result), key=lambda item: item.score, reverse=True)
    selected = [item for item in ranked if item.score >= threshold][:top_k]
    chosen = {item.name for item in selected}
    for name in always_include:
        if name in chosen:
            continue
        match = next((d for d in definitions if d.name == name), None)
        if match is not None:
            selected.append(ScoredOperation(match, 0.0))
            chosen.add(name)
    return selected


__all__ = ["CatalogSelector", "ScoredOperation", "lexical_selector", "select_operations"]
