"""Kernel configuration.

Settings are a Pydantic model so that configuration files are validated the
same way run records are.  Defaults reproduce the behaviour operators are
used to: fifteen metered calls per ten seconds, fifty planner iterations.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .operations.builtin import DIAGNOSE_FAILURE, TASK_COMPLETE


class KernelSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    velocity_limit: int = Field(default=15, ge=1, description="Metered calls allowed per window")
    velocity_window: float = Field(default=10.0, gt=0, description="Guardian window length in seconds")
    max_iterations: int = Field(default=50, ge=1, description="Planner cycles before a task is halted")
    terminal_operation: str = Field(default=TASK_COMPLETE)
    diagnostic_operation: str = Field(default=DIAGNOSE_FAILURE)
    remote_url: str | None = Field(default="http://localhost:3001")
    operation_timeout_s: float | None = Field(default=None, gt=0)
    history_result_limit: int = Field(default=2500, ge=100)
    history_snippet_limit: int = Field(default=150, ge=10)
    event_log_limit: int = Field(default=500, ge=1)
    relevance_mode: Literal["all", "selected"] = Field(
        default="all", description="Offer the planner every operation or only the selected ones"
    )
    relevance_top_k: int = Field(default=25, ge=1)
    relevance_threshold: float = Field(default=0.1, ge=0.0, le=1.0)

    @field_validator("terminal_operation", "diagnostic_operation")
    @classmethod
    def _validate_operation_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("operation names must not be empty")
        return value

    def with_overrides(self, **overrides: Any) -> "KernelSettings":
        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return self
        return type(self).model_validate({**self.model_dump(), **updates})


def load_settings(path: Path | None = None, overrides: Mapping[str, Any] | None = None) -> KernelSettings:
    """Load settings from a JSON file, applying non-``None`` ``overrides``."""

    payload: dict[str, Any] = {}
    if path is not None:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Settings file {path} must contain a JSON object")
    settings = KernelSettings.model_validate(payload)
    return settings.with_overrides(**dict(overrides or {}))


__all__ = ["KernelSettings", "load_settings"]
