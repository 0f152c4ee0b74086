from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationError

from ..core.debugger import DebuggerError, StepDebugger
from ..core.guardian import BudgetGuardian
from ..core.orchestrator import Orchestrator
from ..core.telemetry import EventLogSink
from ..core.types import TaskDescriptor


class GuardianConfigPayload(BaseModel):
    velocity_limit: Optional[int] = Field(default=None, description="Metered calls allowed per window")
    velocity_window: Optional[float] = Field(default=None, description="Window length in seconds")


class MaxIterationsPayload(BaseModel):
    max_iterations: int


class StopPayload(BaseModel):
    reason: Optional[str] = None


class StartPayload(BaseModel):
    goal: str = Field(..., min_length=1)
    script: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Operation calls to run in order; omit for a planner-driven task"
    )
    context: Dict[str, Any] = Field(default_factory=dict)
    paused: bool = Field(default=False, description="Pause before the first step runs")


def create_app(
    orchestrator: Orchestrator,
    guardian: Optional[BudgetGuardian] = None,
    *,
    event_log: Optional[EventLogSink] = None,
    task: Optional[TaskDescriptor] = None,
    start_paused: bool = False,
) -> FastAPI:
    """Build the administrative app.

    Every endpoint is a coroutine so that control actions run on the event
    loop that drives the orchestrator.  When ``task`` is given it is started
    on that loop at startup, paused before its first step if ``start_paused``.
    """

    budget_guardian = guardian or orchestrator.guardian
    debugger = StepDebugger(orchestrator)

    async def _launch(descriptor: TaskDescriptor, paused: bool) -> None:
        await orchestrator.start(descriptor)
        if paused:
            # the driver has not ticked yet, so pausing here precedes step one
            debugger.pause()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if task is not None:
            await _launch(task, start_paused)
        yield
        orchestrator.stop("Administration server shut down.")
        await orchestrator.wait()

    app = FastAPI(title="opkernel administration", version="0.1.0", lifespan=lifespan)

    def _require_guardian() -> BudgetGuardian:
        if budget_guardian is None:
            raise HTTPException(status_code=404, detail="No budget guardian configured")
        return budget_guardian

    def _debugger_conflict(exc: DebuggerError) -> HTTPException:
        return HTTPException(status_code=409, detail=str(exc))

    @app.get("/status")
    async def status() -> Any:
        return orchestrator.status()

    @app.get("/history/last-run")
    async def last_run() -> Any:
        records = orchestrator.last_run
        if records is None:
            return {"available": False, "outcomes": []}
        return {"available": True, "outcomes": [record.to_dict() for record in records]}

    @app.get("/events")
    async def events(limit: Optional[int] = None) -> Any:
        if event_log is None:
            return []
        lines = event_log.lines
        return lines[-limit:] if limit else lines

    @app.post("/guardian/reset")
    async def reset_guardian() -> Any:
        active = _require_guardian()
        active.reset()
        return active.snapshot()

    @app.put("/guardian/config")
    async def configure_guardian(payload: GuardianConfigPayload) -> Any:
        active = _require_guardian()
        try:
            active.configure(velocity_limit=payload.velocity_limit, window_seconds=payload.velocity_window)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return active.snapshot()

    @app.put("/settings/max-iterations")
    async def set_max_iterations(payload: MaxIterationsPayload) -> Any:
        try:
            orchestrator.settings.max_iterations = payload.max_iterations
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=exc.errors()[0]["msg"]) from exc
        return {"max_iterations": orchestrator.settings.max_iterations}

    @app.post("/task/start")
    async def start_task(payload: StartPayload) -> Any:
        try:
            descriptor = TaskDescriptor(goal=payload.goal, script=payload.script, context=payload.context)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if payload.paused and not descriptor.is_scripted:
            raise HTTPException(status_code=422, detail="Only scripted tasks can start paused")
        try:
            await _launch(descriptor, payload.paused)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return orchestrator.status()

    @app.post("/task/stop")
    async def stop_task(payload: Optional[StopPayload] = None) -> Any:
        orchestrator.stop(payload.reason if payload else None)
        return orchestrator.status()

    @app.post("/debugger/pause")
    async def pause() -> Any:
        try:
            debugger.pause()
        except DebuggerError as exc:
            raise _debugger_conflict(exc) from exc
        return orchestrator.status()

    @app.post("/debugger/resume")
    async def resume() -> Any:
        try:
            debugger.resume()
        except DebuggerError as exc:
            raise _debugger_conflict(exc) from exc
        return orchestrator.status()

    @app.post("/debugger/step-forward")
    async def step_forward() -> Any:
        try:
            ran = await debugger.step_forward()
        except DebuggerError as exc:
            raise _debugger_conflict(exc) from exc
        return {"executed": ran, **orchestrator.status()}

    @app.post("/debugger/step-backward")
    async def step_backward() -> Any:
        try:
            debugger.step_backward()
        except DebuggerError as exc:
            raise _debugger_conflict(exc) from exc
        return orchestrator.status()

    @app.post("/debugger/run-from/{index}")
    async def run_from(index: int) -> Any:
        try:
            debugger.run_from_step(index)
        except DebuggerError as exc:
            raise _debugger_conflict(exc) from exc
        return orchestrator.status()

    return app


__all__ = ["create_app"]
