"""Sliding-window velocity limiter with a sticky circuit breaker.

Every planner invocation and every metered operation dispatch calls
:meth:`BudgetGuardian.check_and_record`.  When more than ``velocity_limit``
calls land inside ``window_seconds`` the guardian trips: it notifies its
listeners (the orchestrator halts the task) and raises
:class:`BudgetExceeded`.  Once tripped it keeps raising until an operator calls
:meth:`BudgetGuardian.reset`; the passage of time never clears it.
"""

from __future__ import annotations

import time
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .telemetry import Telemetry

if TYPE_CHECKING:
    from .types import OperationCall


class BudgetExceeded(RuntimeError):
    """Raised for every metered call while the guardian is tripped."""

    def __init__(self, message: str, *, call: "OperationCall | None" = None) -> None:
        super().__init__(message)
        self.call = call


TripListener = Callable[[str], None]


class BudgetGuardian:
    def __init__(
        self,
        velocity_limit: int = 15,
        window_seconds: float = 10.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._validate(velocity_limit, window_seconds)
        self._velocity_limit = int(velocity_limit)
        self._window_seconds = float(window_seconds)
        self._clock = clock
        self._timestamps: List[float] = []
        self._tripped = False
        self._lock = Lock()
        self._listeners: List[TripListener] = []
        self.telemetry = telemetry

    @staticmethod
    def _validate(velocity_limit: Any, window_seconds: Any) -> None:
        if int(velocity_limit) < 1:
            raise ValueError("velocity_limit must be at least 1")
        if float(window_seconds) <= 0:
            raise ValueError("window_seconds must be positive")

    def _emit(self, event: str, **payload: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event, **payload)

    @property
    def tripped(self) -> bool:
        return self._tripped

    @property
    def velocity_limit(self) -> int:
        return self._velocity_limit

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def add_trip_listener(self, listener: TripListener) -> None:
        self._listeners.append(listener)

    def remove_trip_listener(self, listener: TripListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def check_and_record(self, *, call: "OperationCall | None" = None) -> None:
        """Meter one external call, raising :class:`BudgetExceeded` when over budget."""

        with self._lock:
            if self._tripped:
                raise BudgetExceeded(
                    "Budget guardian is active. All metered calls are blocked until it is reset.",
                    call=call,
                )
            now = self._clock()
            window_start = now - self._window_seconds
            self._timestamps = [ts for ts in self._timestamps if ts >= window_start]
            self._timestamps.append(now)
            count = len(self._timestamps)
            if count <= self._velocity_limit:
                return
            self._tripped = True
            listeners = list(self._listeners)

        message = (
            f"High call velocity detected: {count} calls in the last {self._window_seconds:g} seconds "
            f"(limit {self._velocity_limit}). Halting to prevent runaway spending."
        )
        self._emit(
            "guardian.tripped",
            message=message,
            calls=count,
            velocity_limit=self._velocity_limit,
            window_seconds=self._window_seconds,
        )
        for listener in listeners:
            try:
                listener(message)
            except Exception as exc:  # pragma: no cover
                self._emit("guardian.listener_failed", message=f"Trip listener failed: {exc}")
        raise BudgetExceeded(f"Budget guardian triggered: {message}", call=call)

    def reset(self) -> None:
        """Clear the breaker and forget recorded calls."""

        with self._lock:
            self._tripped = False
            self._timestamps = []
        self._emit("guardian.reset", message="Budget guardian reset by operator.")

    def configure(
        self,
        *,
        velocity_limit: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ) -> None:
        limit = self._velocity_limit if velocity_limit is None else velocity_limit
        window = self._window_seconds if window_seconds is None else window_seconds
        self._validate(limit, window)
        with self._lock:
            self._velocity_limit = int(limit)
            self._window_seconds = float(window)
        self._emit(
            "guardian.configured",
            message=f"Budget guardian limit set to {int(limit)} calls per {float(window):g} seconds.",
            velocity_limit=int(limit),
            window_seconds=float(window),
        )

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            window_start = now - self._window_seconds
            recent = sum(1 for ts in self._timestamps if ts >= window_start)
            return {
                "tripped": self._tripped,
                "velocity_limit": self._velocity_limit,
                "window_seconds": self._window_seconds,
                "recent_calls": recent,
            }


__all__ = ["BudgetExceeded", "BudgetGuardian", "TripListener"]
