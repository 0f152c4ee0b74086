from __future__ import annotations

import json

from opkernel.src.core.history import CODE_PLACEHOLDER, History, result_to_text, serialize_history, summarise_history
from opkernel.src.core.types import ClassifiedError, OperationCall, OutcomeRecord


def _ok(name: str, result, **arguments) -> OutcomeRecord:
    return OutcomeRecord(call=OperationCall(name=name, arguments=arguments), result=result)


def _failed(name: str, message: str) -> OutcomeRecord:
    return OutcomeRecord(call=OperationCall(name=name), error=ClassifiedError.runtime(message))


def test_empty_history_has_placeholder_text() -> None:
    assert serialize_history([]) == "No actions have been performed yet."


def test_serialized_history_lists_each_action_in_order() -> None:
    text = serialize_history([_ok("fetch", {"rows": 2}), _failed("store", "disk full")])

    lines = text.splitlines()
    assert lines[0] == "Actions performed so far:"
    assert lines[1] == 'Action: fetch - Result: SUCCEEDED. Output: {"rows": 2}'
    assert lines[2] == "Action: store - Result: FAILED (disk full)"


def test_code_bodies_are_elided_and_snippets_truncated() -> None:
    result = {"implementation_code": "print('x')", "summary": "s" * 400}

    rendered = json.loads(result_to_text(result))

    assert rendered["implementation_code"] == CODE_PLACEHOLDER
    assert rendered["summary"] == "s" * 150 + "..."


def test_oversized_results_are_summarised() -> None:
    search = {"success": True, "searchResults": [{"title": "x" * 100} for _ in range(60)]}
    blob = {"data": "x" * 5000}

    assert "Found 60 articles" in result_to_text(search)
    assert result_to_text(blob) == (
        "Operation executed successfully, but its output is too large to display in this context."
    )


def test_record_at_overwrites_existing_index_and_appends_otherwise() -> None:
    history = History([_ok("a", 1), _ok("b", 2)])

    history.record_at(1, _ok("b", 3))
    history.record_at(5, _ok("c", 4))

    assert [record.result for record in history] == [1, 3, 4]
    snapshot = history.snapshot()
    history.clear()
    assert len(snapshot) == 3 and len(history) == 0


def test_diagnostic_summary_has_one_line_per_call() -> None:
    text = summarise_history([_ok("fetch", None, url="http://x"), _failed("store", "boom")])

    assert text.splitlines() == [
        'Operation: fetch, Args: {"url": "http://x"}, Result: OK',
        "Operation: store, Args: {}, Result: ERROR: boom",
    ]
