from __future__ import annotations

import asyncio
import time
from typing import List, Tuple

import pytest
from fastapi.testclient import TestClient

from opkernel.src.admin.server import create_app
from opkernel.src.core.debugger import StepDebugger
from opkernel.src.core.dispatcher import Dispatcher
from opkernel.src.core.guardian import BudgetExceeded, BudgetGuardian
from opkernel.src.core.operations import OperationDefinition
from opkernel.src.core.orchestrator import Orchestrator
from opkernel.src.core.registry import InMemoryRegistry
from opkernel.src.core.telemetry import EventLogSink, Telemetry
from opkernel.src.core.types import ExecutionState, TaskDescriptor


def _kernel() -> Tuple[Orchestrator, BudgetGuardian, EventLogSink]:
    event_log = EventLogSink(limit=50)
    telemetry = Telemetry(sinks=[event_log])
    guardian = BudgetGuardian(velocity_limit=5, window_seconds=10, telemetry=telemetry)
    registry = InMemoryRegistry(
        [
            OperationDefinition(name="a", body=lambda args, runtime: "A"),
            OperationDefinition(name="b", body=lambda args, runtime: "B"),
        ]
    )
    dispatcher = Dispatcher(registry, guardian=guardian, telemetry=telemetry)
    return Orchestrator(dispatcher, telemetry=telemetry), guardian, event_log


def _paused(orchestrator: Orchestrator) -> None:
    async def prepare() -> None:
        await orchestrator.start(TaskDescriptor.scripted("admin", [{"name": "a"}, {"name": "b"}]))
        StepDebugger(orchestrator).pause()

    asyncio.run(prepare())


def test_status_reports_idle_kernel_and_guardian() -> None:
    orchestrator, guardian, _ = _kernel()
    client = TestClient(create_app(orchestrator, guardian))

    response = client.get("/status")

    assert response.status_code == 200
    payload = response.json()
    assert payload["state"] == "idle"
    assert payload["is_running"] is False
    assert payload["guardian"]["velocity_limit"] == 5
    assert client.get("/history/last-run").json() == {"available": False, "outcomes": []}


def test_guardian_config_and_reset() -> None:
    orchestrator, guardian, _ = _kernel()
    client = TestClient(create_app(orchestrator, guardian))

    configured = client.put("/guardian/config", json={"velocity_limit": 1, "velocity_window": 30})
    assert configured.status_code == 200
    assert configured.json()["velocity_limit"] == 1
    assert configured.json()["window_seconds"] == 30.0

    guardian.check_and_record()
    try:
        guardian.check_and_record()
    except BudgetExceeded:
        pass
    assert guardian.tripped

    reset = client.post("/guardian/reset")
    assert reset.status_code == 200
    assert reset.json()["tripped"] is False

    invalid = client.put("/guardian/config", json={"velocity_limit": 0})
    assert invalid.status_code == 422


def test_max_iterations_setting_is_validated() -> None:
    orchestrator, guardian, _ = _kernel()
    client = TestClient(create_app(orchestrator, guardian))

    assert client.put("/settings/max-iterations", json={"max_iterations": 7}).json() == {"max_iterations": 7}
    assert orchestrator.settings.max_iterations == 7
    assert client.put("/settings/max-iterations", json={"max_iterations": 0}).status_code == 422
    assert orchestrator.settings.max_iterations == 7


def test_debugger_conflicts_map_to_409() -> None:
    orchestrator, guardian, _ = _kernel()
    client = TestClient(create_app(orchestrator, guardian))

    response = client.post("/debugger/pause")

    assert response.status_code == 409
    assert "no scripted task" in response.json()["detail"]


def test_step_controls_and_stop_over_http() -> None:
    orchestrator, guardian, event_log = _kernel()
    _paused(orchestrator)
    client = TestClient(create_app(orchestrator, guardian, event_log=event_log))

    stepped = client.post("/debugger/step-forward")
    assert stepped.status_code == 200
    assert stepped.json()["executed"] is True
    assert stepped.json()["current_step_index"] == 1
    assert stepped.json()["state"] == "paused"

    back = client.post("/debugger/step-backward")
    assert back.json()["current_step_index"] == 0
    assert back.json()["step_statuses"][0] == {"status": "pending"}

    assert client.post("/debugger/run-from/5").status_code == 409

    stopped = client.post("/task/stop", json={"reason": "maintenance"})
    assert stopped.json()["state"] == "idle"
    assert stopped.json()["halt_reason"] == "maintenance"

    last_run = client.get("/history/last-run").json()
    assert last_run["available"] is True
    assert last_run["outcomes"][0]["result"] == "A"

    lines = client.get("/events", params={"limit": 3}).json()
    assert len(lines) == 3
    assert lines[-1].endswith("Task halted: maintenance")


def _wait_for_state(client: TestClient, state: str, attempts: int = 200) -> str:
    current = client.get("/status").json()["state"]
    for _ in range(attempts):
        if current == state:
            break
        time.sleep(0.01)
        current = client.get("/status").json()["state"]
    return current


def test_control_endpoints_run_on_the_event_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    orchestrator, guardian, _ = _kernel()
    _paused(orchestrator)
    on_loop: List[bool] = []
    original = Orchestrator._transition

    def tracking(self: Orchestrator, state: ExecutionState) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            on_loop.append(False)
        else:
            on_loop.append(True)
        original(self, state)

    monkeypatch.setattr(Orchestrator, "_transition", tracking)
    client = TestClient(create_app(orchestrator, guardian))

    assert client.post("/debugger/step-forward").status_code == 200
    assert client.post("/debugger/step-backward").status_code == 200
    assert client.post("/task/stop").status_code == 200

    assert on_loop and all(on_loop)


def test_task_given_at_startup_begins_paused_and_can_be_resumed() -> None:
    orchestrator, guardian, _ = _kernel()
    task = TaskDescriptor.scripted("boot", [{"name": "a"}, {"name": "b"}])
    app = create_app(orchestrator, guardian, task=task, start_paused=True)

    with TestClient(app) as client:
        status = client.get("/status").json()
        assert status["state"] == "paused"
        assert status["step_statuses"] == [{"status": "pending"}, {"status": "pending"}]
        assert client.post("/debugger/step-forward").json()["current_step_index"] == 1
        assert client.post("/debugger/resume").status_code == 200
        assert _wait_for_state(client, "finished") == "finished"
        last_run = client.get("/history/last-run").json()

    assert [outcome["result"] for outcome in last_run["outcomes"]] == ["A", "B"]


def test_task_start_endpoint_launches_scripts() -> None:
    orchestrator, guardian, _ = _kernel()

    with TestClient(create_app(orchestrator, guardian)) as client:
        started = client.post("/task/start", json={"goal": "over http", "script": [{"name": "a"}], "paused": True})
        assert started.status_code == 200
        assert started.json()["state"] == "paused"
        assert client.post("/debugger/run-from/0").status_code == 200
        assert _wait_for_state(client, "finished") == "finished"

        no_planner = client.post("/task/start", json={"goal": "open ended"})
        assert no_planner.status_code == 422

    assert orchestrator.last_run[0].result == "A"
