from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional

from .guardian import BudgetExceeded, BudgetGuardian
from .operations import ExecutionLocation, OperationDefinition
from .operations.python_body import OperationCompilationError, compile_body
from .registry import OperationRegistry
from .telemetry import Telemetry
from .transport import RemoteExecutionError, RemoteTransport, ResponseParseError
from .types import ClassifiedError, OperationCall, OutcomeRecord, SubStepProgress

ProgressListener = Callable[[Optional[SubStepProgress]], None]


@dataclass
class OperationRuntime:
    """Capabilities handed to local operation bodies as ``runtime``."""

    registry: OperationRegistry
    operation: str
    caller: str
    guardian: BudgetGuardian | None = None
    telemetry: Telemetry | None = None
    progress_listener: ProgressListener | None = None

    def log(self, message: str) -> None:
        if self.telemetry is not None:
            self.telemetry.emit("operation.log", message=f"[{self.caller}] {message}")

    def report_progress(self, text: str, current: int, total: int) -> None:
        if self.progress_listener is not None:
            self.progress_listener(SubStepProgress(text=text, current=int(current), total=int(total)))

    def meter(self) -> None:
        """Charge one external call against the budget guardian."""

        if self.guardian is not None:
            self.guardian.check_and_record()


class Dispatcher:
    """Execute one operation call and normalise the outcome.

    Every failure is captured in the returned :class:`OutcomeRecord`; the only
    exception allowed through is :class:`BudgetExceeded`.
    """

    def __init__(
        self,
        registry: OperationRegistry,
        *,
        transport: RemoteTransport | None = None,
        guardian: BudgetGuardian | None = None,
        telemetry: Telemetry | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.guardian = guardian
        self.telemetry = telemetry
        self.timeout_s = timeout_s
        self.progress_listener: ProgressListener | None = None

    def _emit(self, event: str, **payload: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event, **payload)

    async def dispatch(self, call: OperationCall, *, caller: str = "agent") -> OutcomeRecord:
        definition = self.registry.lookup(call.name)
        if definition is None:
            message = f'Operation "{call.name}" not found.'
            self._emit("dispatcher.not_found", message=f"[{caller}] [ERROR] {message}", operation=call.name)
            return OutcomeRecord(call=call, error=ClassifiedError.runtime(message, reason="not_found"))

        if definition.consumes_budget and self.guardian is not None:
            self.guardian.check_and_record(call=call)

        self._emit(
            "dispatcher.started",
            message=f"[{caller}] Executing operation: {call.name}",
            operation=call.name,
            location=definition.location.value,
        )
        started = perf_counter()
        if definition.location is ExecutionLocation.REMOTE:
            record = await self._dispatch_remote(call, definition, caller)
        else:
            record = await self._dispatch_local(call, definition, caller)
        duration_ms = round((perf_counter() - started) * 1000, 3)
        if record.ok:
            self._emit(
                "dispatcher.completed",
                message=f"[{caller}] Operation '{call.name}' executed successfully.",
                operation=call.name,
                duration_ms=duration_ms,
            )
        else:
            assert record.error is not None
            self._emit(
                "dispatcher.failed",
                message=f"[{caller}] [ERROR] {record.error.message}",
                operation=call.name,
                kind=record.error.kind.value,
                reason=record.error.reason,
                duration_ms=duration_ms,
            )
        return record

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        if self.timeout_s is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.timeout_s)

    def _timeout_error(self, name: str) -> ClassifiedError:
        return ClassifiedError.runtime(
            f"Operation '{name}' timed out after {self.timeout_s:g} seconds.",
            reason="timeout",
        )

    async def _dispatch_remote(
        self,
        call: OperationCall,
        definition: OperationDefinition,
        caller: str,
    ) -> OutcomeRecord:
        if self.transport is None:
            message = f"Remote operation '{call.name}' cannot be executed: no remote execution service is configured."
            return OutcomeRecord(call=call, definition=definition, error=ClassifiedError.runtime(message, reason="transport"))
        try:
            result = await self._bounded(self.transport.execute(call))
        except BudgetExceeded:
            raise
        except ResponseParseError as exc:
            error = ClassifiedError.runtime(str(exc), reason="unparsable_response")
            return OutcomeRecord(call=call, definition=definition, error=error)
        except RemoteExecutionError as exc:
            error = ClassifiedError.runtime(
                f"Error executing remote operation '{call.name}': {exc}",
                reason="transport",
            )
            return OutcomeRecord(call=call, definition=definition, error=error)
        except asyncio.TimeoutError as exc:
            if self.timeout_s is None:
                error = ClassifiedError.runtime(
                    f"Error executing remote operation '{call.name}': {exc or 'timed out'}",
                    reason="transport",
                )
            else:
                error = self._timeout_error(call.name)
            return OutcomeRecord(call=call, definition=definition, error=error)
        return OutcomeRecord(call=call, definition=definition, result=result)

    async def _dispatch_local(
        self,
        call: OperationCall,
        definition: OperationDefinition,
        caller: str,
    ) -> OutcomeRecord:
        body = definition.body
        if isinstance(body, str):
            try:
                body = compile_body(definition.name, body)
            except OperationCompilationError as exc:
                self._emit(
                    "dispatcher.compilation_source",
                    message=f"Offending source for operation '{definition.name}' logged.",
                    operation=definition.name,
                    source=exc.source,
                )
                message = (
                    f"[COMPILATION ERROR] in operation '{definition.name}'. The operation's body could not be "
                    f"parsed. Original error: {exc}."
                )
                error = ClassifiedError.compilation(message, source=exc.source)
                return OutcomeRecord(call=call, definition=definition, error=error)

        runtime = OperationRuntime(
            registry=self.registry,
            operation=definition.name,
            caller=caller,
            guardian=self.guardian,
            telemetry=self.telemetry.bind(operation=definition.name) if self.telemetry is not None else None,
            progress_listener=self.progress_listener,
        )
        try:
            result = body(dict(call.arguments), runtime)  # type: ignore[misc]
            if inspect.isawaitable(result):
                result = await self._bounded(result)
        except BudgetExceeded:
            raise
        except asyncio.TimeoutError as exc:
            if self.timeout_s is None:
                return self._raised(call, definition, exc)
            return OutcomeRecord(call=call, definition=definition, error=self._timeout_error(call.name))
        except Exception as exc:
            return self._raised(call, definition, exc)
        return OutcomeRecord(call=call, definition=definition, result=result)

    @staticmethod
    def _raised(call: OperationCall, definition: OperationDefinition, exc: BaseException) -> OutcomeRecord:
        message = (
            f"[RUNTIME ERROR] in operation '{definition.name}'. The operation's body executed but raised "
            f"an exception. Original error: {exc}"
        )
        return OutcomeRecord(call=call, definition=definition, error=ClassifiedError.runtime(message))


__all__ = ["Dispatcher", "OperationRuntime", "ProgressListener"]
