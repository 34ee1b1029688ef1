"""Runtime state for task lifecycle phases."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

LifecyclePhase = Literal["setup", "run", "teardown"]
PhaseStatus = Literal["idle", "running", "succeeded", "failed"]

PHASES: tuple[LifecyclePhase, ...] = ("setup", "run", "teardown")


@dataclass(slots=True)
class LifecyclePhaseState:
    status: PhaseStatus = "idle"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    pid: int | None = None

    def to_dict(self, *, include_pid: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "exit_code": self.exit_code,
            "error": self.error,
        }
        if include_pid:
            payload["pid"] = self.pid
        return payload


@dataclass(slots=True)
class TaskLifecycleRecord:
    task_id: str
    setup: LifecyclePhaseState = field(default_factory=LifecyclePhaseState)
    run: LifecyclePhaseState = field(default_factory=LifecyclePhaseState)
    teardown: LifecyclePhaseState = field(default_factory=LifecyclePhaseState)

    def phase(self, phase: LifecyclePhase) -> LifecyclePhaseState:
        return getattr(self, phase)

    def snapshot(self) -> TaskLifecycleRecord:
        return TaskLifecycleRecord(
            task_id=self.task_id,
            setup=replace(self.setup),
            run=replace(self.run),
            teardown=replace(self.teardown),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "setup": self.setup.to_dict(),
            "run": self.run.to_dict(include_pid=True),
            "teardown": self.teardown.to_dict(),
        }


@dataclass(slots=True)
class LifecycleResult:
    """Outcome of a lifecycle operation; failures are values, never exceptions."""

    ok: bool
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.ok}
        if self.skipped:
            payload["skipped"] = True
        if self.error is not None:
            payload["error"] = self.error
        return payload


__all__ = [
    "LifecyclePhase",
    "LifecyclePhaseState",
    "LifecycleResult",
    "PHASES",
    "PhaseStatus",
    "TaskLifecycleRecord",
]
