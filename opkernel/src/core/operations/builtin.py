"""Operations every registry is expected to offer.

``Task Complete`` is the terminal signal the orchestrator watches for and
``Diagnose Tool Execution Error`` is the default target of the diagnostic
handoff.  The diagnosis shipped here is rule based; deployments that want an
LLM-backed analysis register their own definition under the same name.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping

from . import ExecutionLocation, OperationDefinition, ParamSpec

TASK_COMPLETE = "Task Complete"
DIAGNOSE_FAILURE = "Diagnose Tool Execution Error"


async def _task_complete(args: Mapping[str, Any], runtime: Any) -> Dict[str, Any]:
    reason = args.get("reason") or "no reason given"
    return {"success": True, "message": f"Task completed. Reason: {reason}"}


_DIAGNOSIS_RULES = (
    (
        "compilation",
        ("[compilation error]", "could not be parsed", "invalid syntax"),
        "The operation body is malformed. Fix the source before retrying; re-running will fail the same way.",
    ),
    (
        "not_found",
        ("not found",),
        "The requested operation is not registered. Check the name or register the operation.",
    ),
    (
        "remote",
        ("could not parse response", "server responded", "remote execution", "transport"),
        "The remote execution service misbehaved. Check that it is reachable and healthy.",
    ),
    (
        "timeout",
        ("timed out",),
        "The operation did not finish in time. Consider a longer timeout or a smaller input.",
    ),
    (
        "planner",
        ("did not return", "no operations"),
        "The planner produced no next action. Rephrase the goal or check the planner output.",
    ),
)


async def _diagnose(args: Mapping[str, Any], runtime: Any) -> Dict[str, Any]:
    message = str(args.get("errorMessage") or "")
    lowered = message.lower()
    categories: List[str] = []
    suggestions: List[str] = []
    for category, needles, suggestion in _DIAGNOSIS_RULES:
        if any(needle in lowered for needle in needles):
            categories.append(category)
            suggestions.append(suggestion)
    if not categories:
        categories.append("runtime")
        suggestions.append("The operation raised while running. Inspect its arguments and recent history.")
    history = str(args.get("serializedHistory") or "")
    failed_calls = sum(1 for line in history.splitlines() if "ERROR:" in line)
    return {
        "analysis": {
            "failedOperation": args.get("failedOperation"),
            "categories": categories,
            "suggestions": suggestions,
            "failedCallsInHistory": failed_calls,
            "hasSource": bool(args.get("failedOperationSourceBody")),
        }
    }


def builtin_definitions() -> List[OperationDefinition]:
    return [
        OperationDefinition(
            name=TASK_COMPLETE,
            location=ExecutionLocation.LOCAL,
            inputs=(
                ParamSpec(
                    name="reason",
                    description="A brief summary of why the task is considered complete.",
                ),
            ),
            body=_task_complete,
            description="Signals that the current multi-step task has been fully completed.",
            purpose="Gives multi-step tasks a definitive end point.",
        ),
        OperationDefinition(
            name=DIAGNOSE_FAILURE,
            location=ExecutionLocation.LOCAL,
            inputs=(
                ParamSpec(name="goal", description="Goal of the failed task."),
                ParamSpec(name="serializedHistory", description="Simplified execution history."),
                ParamSpec(name="failedOperation", description="The call or cycle that failed."),
                ParamSpec(name="errorMessage", description="Message of the failure."),
                ParamSpec(
                    name="failedOperationSourceBody",
                    description="Source of the failing operation, when known.",
                    required=False,
                ),
                ParamSpec(
                    name="availableOperations",
                    type="array",
                    description="Name and description of every registered operation.",
                    required=False,
                ),
            ),
            body=_diagnose,
            description="Performs a root cause analysis of a failed operation call.",
        ),
    ]


__all__ = ["DIAGNOSE_FAILURE", "TASK_COMPLETE", "builtin_definitions"]
