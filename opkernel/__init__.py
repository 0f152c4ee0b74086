"""Convenience exports for the operation kernel.

To keep import-time side effects minimal we lazily proxy attributes from
``opkernel.src.kernel``; importing :mod:`opkernel` alone does not pull in
``httpx`` or ``pydantic``.
"""

from __future__ import annotations

from typing import Any

__all__ = (
    "BudgetExceeded",
    "BudgetGuardian",
    "DebuggerError",
    "Dispatcher",
    "ExecutionLocation",
    "ExecutionState",
    "HttpTransport",
    "InMemoryRegistry",
    "KernelSettings",
    "LLMPlanner",
    "OperationCall",
    "OperationDefinition",
    "Orchestrator",
    "OutcomeRecord",
    "ParamSpec",
    "Planner",
    "PlannerError",
    "RunRecord",
    "ScoredOperation",
    "SequencePlanner",
    "StepDebugger",
    "TaskDescriptor",
    "Telemetry",
    "build_kernel",
    "lexical_selector",
)


def __getattr__(name: str) -> Any:
    if name in __all__:
        from opkernel.src import kernel as _api

        return getattr(_api, name)
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
