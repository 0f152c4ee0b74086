from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from opkernel.src.core.dispatcher import Dispatcher
from opkernel.src.core.guardian import BudgetGuardian
from opkernel.src.core.operations import ExecutionLocation, OperationDefinition
from opkernel.src.core.operations.builtin import DIAGNOSE_FAILURE
from opkernel.src.core.orchestrator import Orchestrator
from opkernel.src.core.planner import PlannerError, Proposal, SequencePlanner
from opkernel.src.core.registry import InMemoryRegistry
from opkernel.src.core.relevance import ScoredOperation
from opkernel.src.core.settings import KernelSettings
from opkernel.src.core.telemetry import InMemorySink, Telemetry
from opkernel.src.core.types import ExecutionState, OperationCall, OutcomeRecord, TaskDescriptor


class DiagnosticRecorder:
    """Stands in for the diagnostic operation and records every handoff."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, args, runtime):
        self.calls.append(dict(args))
        return {"analysis": "noted"}

    def definition(self) -> OperationDefinition:
        return OperationDefinition(name=DIAGNOSE_FAILURE, body=self)


def _local(name: str, body: Any, **kwargs: Any) -> OperationDefinition:
    return OperationDefinition(name=name, location=ExecutionLocation.LOCAL, body=body, **kwargs)


def _returns(name: str, value: Any = None) -> OperationDefinition:
    return _local(name, lambda args, runtime: value if value is not None else name)


def _raises(name: str, message: str = "boom") -> OperationDefinition:
    def body(args, runtime):
        raise RuntimeError(message)

    return _local(name, body)


def _kernel(
    definitions: List[OperationDefinition],
    *,
    planner: Any = None,
    guardian: BudgetGuardian | None = None,
    settings: KernelSettings | None = None,
    sink: InMemorySink | None = None,
) -> Orchestrator:
    telemetry = Telemetry(sinks=[sink] if sink is not None else [])
    dispatcher = Dispatcher(InMemoryRegistry(definitions), guardian=guardian, telemetry=telemetry)
    return Orchestrator(dispatcher, planner=planner, settings=settings or KernelSettings(), telemetry=telemetry)


def _script(*names: str) -> TaskDescriptor:
    return TaskDescriptor.scripted("demo", [{"name": name} for name in names])


def test_scripted_task_runs_to_completion_without_terminal_call() -> None:
    orchestrator = _kernel([_returns("opA"), _returns("opB")])

    last_run = asyncio.run(orchestrator.run(_script("opA", "opB")))

    assert orchestrator.state is ExecutionState.FINISHED
    assert [record.result for record in last_run] == ["opA", "opB"]
    assert [status.status for status in orchestrator.step_statuses] == ["completed", "completed"]
    assert orchestrator.current_step_index == 2
    assert not orchestrator.is_running


def test_scripted_terminal_call_finishes_before_remaining_steps() -> None:
    after: list[str] = []
    orchestrator = _kernel([_returns("opA"), _local("opC", lambda args, runtime: after.append("ran"))])

    asyncio.run(orchestrator.run(_script("opA", "Task Complete", "opC")))

    assert orchestrator.state is ExecutionState.FINISHED
    assert after == []
    assert orchestrator.step_statuses[2].is_pending
    assert orchestrator.halt_reason == "Script completed successfully."


def test_scripted_failure_halts_with_error_and_one_diagnosis() -> None:
    recorder = DiagnosticRecorder()
    orchestrator = _kernel([_returns("opA"), _raises("opB"), _returns("opC"), recorder.definition()])

    last_run = asyncio.run(orchestrator.run(_script("opA", "opB", "opC")))

    statuses = orchestrator.step_statuses
    assert [status.status for status in statuses] == ["completed", "error", "pending"]
    assert "Original error: boom" in statuses[1].error
    assert orchestrator.state is ExecutionState.ERROR
    assert len(orchestrator.history) == 2
    assert len(last_run) == 2
    assert orchestrator.current_step_index == 1
    assert len(recorder.calls) == 1
    assert recorder.calls[0]["failedOperation"].startswith('Operation call "opB"')
    assert "opA" in recorder.calls[0]["serializedHistory"]
    assert not orchestrator.is_running


def test_compilation_failure_passes_source_to_diagnosis() -> None:
    recorder = DiagnosticRecorder()
    source = "return (("
    orchestrator = _kernel([_local("broken", source), recorder.definition()])

    asyncio.run(orchestrator.run(_script("broken")))

    assert orchestrator.state is ExecutionState.ERROR
    assert orchestrator.history[0].error.kind.value == "compilation"
    assert recorder.calls[0]["failedOperationSourceBody"] == source


def test_failing_diagnosis_is_logged_and_task_still_halts() -> None:
    sink = InMemorySink()
    orchestrator = _kernel([_raises("opA"), _raises(DIAGNOSE_FAILURE, "analyst offline")], sink=sink)

    asyncio.run(orchestrator.run(_script("opA")))

    assert orchestrator.state is ExecutionState.ERROR
    assert orchestrator.halt_reason == "Error during script execution."
    failed = sink.named("diagnostics.failed")
    assert failed and "analyst offline" in failed[0]["message"]
    assert len(orchestrator.history) == 1


def test_task_context_is_merged_into_scripted_arguments() -> None:
    seen: list[dict] = []
    orchestrator = _kernel([_local("record", lambda args, runtime: seen.append(args))])
    task = TaskDescriptor.scripted(
        "demo",
        [{"name": "record", "arguments": {"x": 1}}],
        context={"projectName": "atlas", "x": 2},
    )

    asyncio.run(orchestrator.run(task))

    assert seen == [{"x": 1, "projectName": "atlas"}]


def test_planner_driven_task_finishes_on_terminal_call() -> None:
    planner = SequencePlanner(
        [
            [{"name": "opA"}],
            [{"name": "opB"}],
            [{"name": "Task Complete", "arguments": {"reason": "done"}}],
        ]
    )
    orchestrator = _kernel([_returns("opA"), _returns("opB")], planner=planner)

    last_run = asyncio.run(orchestrator.run(TaskDescriptor.open_ended("do things")))

    assert orchestrator.state is ExecutionState.FINISHED
    assert len(last_run) == 3
    assert last_run == orchestrator.last_run
    assert not orchestrator.is_running
    assert "Action: opB - Result: SUCCEEDED" in planner.requests[2]["history"]
    assert any(entry["name"] == "opA" for entry in planner.requests[0]["catalog"])


def test_partial_batch_failure_records_both_and_diagnoses_once() -> None:
    recorder = DiagnosticRecorder()
    planner = SequencePlanner([[{"name": "opA"}, {"name": "opB"}]])
    orchestrator = _kernel([_returns("opA"), _raises("opB"), recorder.definition()], planner=planner)

    last_run = asyncio.run(orchestrator.run(TaskDescriptor.open_ended("batch")))

    assert len(last_run) == 2
    assert {record.name for record in last_run} == {"opA", "opB"}
    assert orchestrator.state is ExecutionState.ERROR
    assert len(recorder.calls) == 1
    assert orchestrator.halt_reason == "Unrecoverable error during operation execution."


def test_batch_outcomes_are_appended_in_completion_order() -> None:
    async def slow(args, runtime):
        await asyncio.sleep(0.05)
        return "slow"

    async def fast(args, runtime):
        return "fast"

    planner = SequencePlanner(
        [
            [{"name": "slow"}, {"name": "fast"}],
            [{"name": "Task Complete"}],
        ]
    )
    orchestrator = _kernel([_local("slow", slow), _local("fast", fast)], planner=planner)

    last_run = asyncio.run(orchestrator.run(TaskDescriptor.open_ended("race")))

    assert [record.result for record in last_run[:2]] == ["fast", "slow"]


def test_empty_proposal_halts_with_error_and_diagnosis() -> None:
    recorder = DiagnosticRecorder()
    planner = SequencePlanner([Proposal(raw_text="I believe we are finished.")])
    orchestrator = _kernel([recorder.definition()], planner=planner)

    asyncio.run(orchestrator.run(TaskDescriptor.open_ended("stuck")))

    assert orchestrator.state is ExecutionState.ERROR
    assert orchestrator.history == ()
    assert "I believe we are finished." in recorder.calls[0]["errorMessage"]
    assert orchestrator.halt_reason == "Agent did not provide a next action."


def test_max_iterations_halts_open_ended_task() -> None:
    planner = SequencePlanner([[{"name": "opA"}] for _ in range(10)])
    orchestrator = _kernel([_returns("opA")], planner=planner, settings=KernelSettings(max_iterations=2))

    last_run = asyncio.run(orchestrator.run(TaskDescriptor.open_ended("loop")))

    assert len(last_run) == 2
    assert orchestrator.iterations == 2
    assert orchestrator.halt_reason == "Max iterations reached"
    assert orchestrator.state is ExecutionState.IDLE
    assert len(planner.requests) == 2


def test_planner_exception_is_a_cycle_failure() -> None:
    class FailingPlanner:
        async def propose(self, goal, history, catalog):
            raise PlannerError("model offline")

    recorder = DiagnosticRecorder()
    sink = InMemorySink()
    orchestrator = _kernel([recorder.definition()], planner=FailingPlanner(), sink=sink)

    asyncio.run(orchestrator.run(TaskDescriptor.open_ended("goal")))

    assert orchestrator.state is ExecutionState.ERROR
    assert orchestrator.halt_reason == "Critical agent error"
    assert recorder.calls[0]["failedOperation"] == "Main orchestration cycle execution"
    assert sink.named("orchestrator.cycle_failed")


def test_budget_trip_halts_planner_task_without_diagnosis() -> None:
    recorder = DiagnosticRecorder()
    guardian = BudgetGuardian(velocity_limit=3, window_seconds=60)
    planner = SequencePlanner([[{"name": "fetch"}] for _ in range(5)])
    orchestrator = _kernel(
        [_local("fetch", lambda args, runtime: {"rows": 1}, metered=True), recorder.definition()],
        planner=planner,
        guardian=guardian,
    )

    last_run = asyncio.run(orchestrator.run(TaskDescriptor.open_ended("crawl")))

    assert guardian.tripped
    assert orchestrator.state is ExecutionState.ERROR
    assert orchestrator.halt_reason == "Budget guardian triggered by high call velocity."
    assert len(last_run) == 2
    assert last_run[-1].error.reason == "budget"
    assert recorder.calls == []


def test_tripped_guardian_blocks_scripted_step() -> None:
    guardian = BudgetGuardian(velocity_limit=1, window_seconds=60)
    orchestrator = _kernel([_local("fetch", lambda args, runtime: "page", metered=True)], guardian=guardian)

    asyncio.run(orchestrator.run(_script("fetch", "fetch", "fetch")))

    assert orchestrator.state is ExecutionState.ERROR
    assert [status.status for status in orchestrator.step_statuses] == ["completed", "error", "pending"]
    assert orchestrator.history[1].error.reason == "budget"


def test_stop_is_idempotent_and_in_flight_outcome_is_kept() -> None:
    after: list[str] = []

    async def scenario() -> Orchestrator:
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking(args, runtime):
            started.set()
            await release.wait()
            return "late"

        orchestrator = _kernel([_local("block", blocking), _local("after", lambda args, runtime: after.append("x"))])
        await orchestrator.start(_script("block", "after"))
        await started.wait()
        orchestrator.stop("operator request")
        orchestrator.stop("second request")
        assert orchestrator.state is ExecutionState.IDLE
        assert not orchestrator.is_running
        release.set()
        await orchestrator.wait()
        return orchestrator

    orchestrator = asyncio.run(scenario())

    assert after == []
    assert orchestrator.halt_reason == "operator request"
    assert [record.result for record in orchestrator.last_run] == ["late"]
    assert orchestrator.state is ExecutionState.IDLE
    assert orchestrator.sub_progress is None


def test_resume_keeps_history_and_injects_record() -> None:
    async def scenario() -> tuple[Orchestrator, SequencePlanner]:
        orchestrator = _kernel([], planner=SequencePlanner([]))
        task = TaskDescriptor.open_ended("resumable")
        await orchestrator.run(task)
        assert orchestrator.state is ExecutionState.ERROR

        follow_up = SequencePlanner([[{"name": "Task Complete"}]])
        orchestrator.planner = follow_up
        injected = OutcomeRecord(call=OperationCall(name="external review"), result="approved")
        await orchestrator.start(task, resume=True, inject=injected)
        await orchestrator.wait()
        return orchestrator, follow_up

    orchestrator, planner = asyncio.run(scenario())

    assert orchestrator.state is ExecutionState.FINISHED
    assert [record.name for record in orchestrator.last_run] == ["external review", "Task Complete"]
    assert "Action: external review" in planner.requests[0]["history"]


def test_open_ended_task_requires_planner() -> None:
    orchestrator = _kernel([])

    with pytest.raises(ValueError):
        asyncio.run(orchestrator.start(TaskDescriptor.open_ended("no planner")))


def test_sub_progress_is_cleared_when_step_completes() -> None:
    seen: list[Any] = []
    orchestrator = _kernel([])

    def reporting(args, runtime):
        runtime.report_progress("chunk", 1, 2)
        seen.append(orchestrator.sub_progress)
        return None

    orchestrator.dispatcher.registry.register(_local("report", reporting))

    asyncio.run(orchestrator.run(_script("report")))

    assert seen[0].to_dict() == {"text": "chunk", "current": 1, "total": 2}
    assert orchestrator.sub_progress is None


def test_state_changes_are_emitted() -> None:
    sink = InMemorySink()
    orchestrator = _kernel([_returns("opA")], sink=sink)

    asyncio.run(orchestrator.run(_script("opA")))

    states = [event["state"] for event in sink.named("orchestrator.state_changed")]
    assert states == ["running", "finished"]
    assert sink.named("orchestrator.halted")[0]["reason"] == "Script completed successfully."


def test_resume_after_stop_keeps_injected_record_between_steps() -> None:
    async def scenario() -> Orchestrator:
        started = asyncio.Event()
        release = asyncio.Event()

        async def review(args, runtime):
            started.set()
            await release.wait()
            return "b"

        orchestrator = _kernel([_returns("a"), _local("b", review), _returns("c")])
        task = _script("a", "b", "c")
        await orchestrator.start(task)
        await started.wait()
        orchestrator.stop()
        release.set()
        await orchestrator.wait()

        injected = OutcomeRecord(call=OperationCall(name="external review"), result="approved")
        await orchestrator.start(task, resume=True, inject=injected)
        await orchestrator.wait()
        return orchestrator

    orchestrator = asyncio.run(scenario())

    assert orchestrator.state is ExecutionState.FINISHED
    assert [record.name for record in orchestrator.history] == ["a", "b", "external review", "c"]
    assert orchestrator.history[2].result == "approved"


def test_selected_relevance_mode_narrows_planner_catalog() -> None:
    goals: list[str] = []

    def selector(goal, definitions):
        goals.append(goal)
        return [ScoredOperation(d, 0.9 if d.name == "search" else 0.05) for d in definitions]

    planner = SequencePlanner([[{"name": "search"}], [{"name": "Task Complete"}]])
    settings = KernelSettings(relevance_mode="selected", relevance_top_k=5, relevance_threshold=0.1)
    orchestrator = _kernel([_returns("search"), _returns("delete")], planner=planner, settings=settings)
    orchestrator.catalog_selector = selector

    asyncio.run(orchestrator.run(TaskDescriptor.open_ended("find papers")))

    assert orchestrator.state is ExecutionState.FINISHED
    offered = [entry["name"] for entry in planner.requests[0]["catalog"]]
    assert offered == ["search", "Task Complete"]
    assert goals == ["find papers", "find papers"]
    active = orchestrator.status()["active_operations"]
    assert [item["name"] for item in active] == ["search", "Task Complete"]


def test_all_relevance_mode_offers_every_operation() -> None:
    planner = SequencePlanner([[{"name": "Task Complete"}]])
    orchestrator = _kernel([_returns("search"), _returns("delete")], planner=planner)

    asyncio.run(orchestrator.run(TaskDescriptor.open_ended("anything")))

    offered = {entry["name"] for entry in planner.requests[0]["catalog"]}
    assert {"search", "delete", "Task Complete", DIAGNOSE_FAILURE} <= offered
    assert orchestrator.status()["active_operations"] is None


def test_close_detaches_from_shared_guardian() -> None:
    guardian = BudgetGuardian(velocity_limit=1)
    first = _kernel([], guardian=guardian)
    _kernel([], guardian=guardian)
    assert len(guardian._listeners) == 2

    first.close()

    assert len(guardian._listeners) == 1
    assert first.dispatcher.progress_listener is None
