"""High level entrypoints that compose the kernel subsystems."""
from __future__ import annotations

from typing import Iterable

from opkernel.src.core.debugger import DebuggerError, StepDebugger
from opkernel.src.core.dispatcher import Dispatcher
from opkernel.src.core.guardian import BudgetExceeded, BudgetGuardian
from opkernel.src.core.operations import ExecutionLocation, OperationDefinition, ParamSpec
from opkernel.src.core.orchestrator import Orchestrator
from opkernel.src.core.planner import LLMPlanner, Planner, PlannerError, SequencePlanner
from opkernel.src.core.record import RunRecord
from opkernel.src.core.registry import InMemoryRegistry
from opkernel.src.core.relevance import CatalogSelector, ScoredOperation, lexical_selector
from opkernel.src.core.settings import KernelSettings
from opkernel.src.core.telemetry import Telemetry, TelemetrySink
from opkernel.src.core.transport import HttpTransport, RemoteTransport
from opkernel.src.core.types import ExecutionState, OperationCall, OutcomeRecord, TaskDescriptor

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


def build_kernel(
    registry: InMemoryRegistry | None = None,
    *,
    settings: KernelSettings | None = None,
    planner: Planner | None = None,
    transport: RemoteTransport | None = None,
    sinks: Iterable[TelemetrySink] = (),
    catalog_selector: CatalogSelector | None = None,
) -> Orchestrator:
    """Wire registry, guardian, dispatcher and orchestrator from ``settings``.

    A transport is created from ``settings.remote_url`` unless one is given.
    The guardian is reachable as ``orchestrator.guardian``.
    """

    settings = settings or KernelSettings()
    telemetry = Telemetry(sinks=tuple(sinks))
    guardian = BudgetGuardian(
        velocity_limit=settings.velocity_limit,
        window_seconds=settings.velocity_window,
        telemetry=telemetry,
    )
    if transport is None and settings.remote_url:
        transport = HttpTransport(settings.remote_url)
    dispatcher = Dispatcher(
        registry if registry is not None else InMemoryRegistry(),
        transport=transport,
        guardian=guardian,
        telemetry=telemetry,
        timeout_s=settings.operation_timeout_s,
    )
    return Orchestrator(
        dispatcher,
        planner=planner,
        guardian=guardian,
        settings=settings,
        telemetry=telemetry,
        catalog_selector=catalog_selector,
    )
