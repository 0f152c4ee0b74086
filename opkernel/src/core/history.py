from __future__ import annotations

import json
from typing import Any, Iterable, Iterator, List, Sequence, Tuple

from .types import OutcomeRecord

CODE_PLACEHOLDER = "[...code...]"
_CODE_KEYS = {"implementation_code", "implementationCode", "code", "source", "body"}
_SNIPPET_KEYS = {"summary", "snippet"}


class History:
    """Ordered outcome log for the task in flight.

    Records are only ever appended, except that a scripted step which is
    executed again replaces the record it stored earlier.
    """

    def __init__(self, records: Iterable[OutcomeRecord] = ()) -> None:
        self._records: List[OutcomeRecord] = list(records)

    def append(self, record: OutcomeRecord) -> None:
        self._records.append(record)

    def extend(self, records: Iterable[OutcomeRecord]) -> None:
        self._records.extend(records)

    def record_at(self, index: int, record: OutcomeRecord) -> None:
        if index < 0:
            raise IndexError("history index must not be negative")
        if index < len(self._records):
            self._records[index] = record
        else:
            self._records.append(record)

    def clear(self) -> None:
        self._records.clear()

    def snapshot(self) -> Tuple[OutcomeRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[OutcomeRecord]:
        return iter(list(self._records))

    def __getitem__(self, index: int) -> OutcomeRecord:
        return self._records[index]


def _elide(value: Any, snippet_limit: int) -> Any:
    if isinstance(value, dict):
        elided = {}
        for key, item in value.items():
            if key in _CODE_KEYS and isinstance(item, str):
                elided[key] = CODE_PLACEHOLDER
            elif key in _SNIPPET_KEYS and isinstance(item, str) and len(item) > snippet_limit:
                elided[key] = item[:snippet_limit] + "..."
            else:
                elided[key] = _elide(item, snippet_limit)
        return elided
    if isinstance(value, (list, tuple)):
        return [_elide(item, snippet_limit) for item in value]
    return value


def result_to_text(result: Any, *, result_limit: int = 2500, snippet_limit: int = 150) -> str:
    """Render an operation result compactly enough for a planner prompt."""

    if result is None:
        return "No result."
    try:
        sanitised = _elide(json.loads(json.dumps(result, default=str)), snippet_limit)
        text = json.dumps(sanitised)
    except (TypeError, ValueError):
        return "[Error: Could not serialize the operation's result for display in history.]"
    if len(text) <= result_limit:
        return text
    if isinstance(sanitised, dict) and isinstance(sanitised.get("searchResults"), list):
        return json.dumps(
            {
                "success": sanitised.get("success"),
                "message": (
                    f"Found {len(sanitised['searchResults'])} articles. The full list is available to be "
                    "passed to the next operation, but was omitted from history for brevity."
                ),
            }
        )
    return "Operation executed successfully, but its output is too large to display in this context."


def serialize_history(
    records: Sequence[OutcomeRecord],
    *,
    result_limit: int = 2500,
    snippet_limit: int = 150,
) -> str:
    """History text passed to the planner."""

    if not records:
        return "No actions have been performed yet."
    lines = ["Actions performed so far:"]
    for record in records:
        if record.error is not None:
            outcome = f"FAILED ({record.error.message})"
        else:
            rendered = result_to_text(record.result, result_limit=result_limit, snippet_limit=snippet_limit)
            outcome = f"SUCCEEDED. Output: {rendered}"
        lines.append(f"Action: {record.call.name} - Result: {outcome}")
    return "\n".join(lines)


def summarise_history(records: Sequence[OutcomeRecord]) -> str:
    """One line per call, used as diagnostic context."""

    lines = []
    for record in records:
        try:
            args = json.dumps(_elide(dict(record.call.arguments), 150), default=str)
        except (TypeError, ValueError):
            args = "{}"
        outcome = f"ERROR: {record.error.message}" if record.error is not None else "OK"
        lines.append(f"Operation: {record.call.name}, Args: {args}, Result: {outcome}")
    return "\n".join(lines)


__all__ = ["CODE_PLACEHOLDER", "History", "result_to_text", "serialize_history", "summarise_history"]
