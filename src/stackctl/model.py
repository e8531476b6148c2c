# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskAction(str, Enum):
    SETUP = "setup"      # idempotent setup (copy env, install deps, migrate)
    START = "start"      # long-running unit start, followed by readiness
    STOP = "stop"        # teardown of a unit
    COMMAND = "command"  # pass-through to an external tool


class TaskStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


# succeeded < skipped < failed
STATUS_RANK = {
    TaskStatus.SUCCEEDED: 0,
    TaskStatus.SKIPPED: 1,
    TaskStatus.FAILED: 2,
}


class UnitKind(str, Enum):
    CONTAINER = "container"
    PROCESS = "process"


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED_WITH_ERROR = "stopped-with-error"


class ProbeStrategy(str, Enum):
    TCP = "tcp"
    HTTP = "http"
    COMMAND = "command"


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a setup or command task."""
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str = "sh"                       # sh | copy | mkdir | remove
    data: Optional[Dict[str, Any]] = None  # kind-specific arguments


@dataclass(frozen=True)
class HealthCheck:
    """
    How readiness of a unit is decided.

    interval: seconds between the starts of two attempts
    timeout:  seconds a single attempt may take
    max_attempts: attempts before the wait gives up
    """
    strategy: ProbeStrategy | str
    host: str = "127.0.0.1"
    port: int | None = None
    url: str | None = None
    command: str | None = None
    interval: float = 1.0
    timeout: float = 2.0
    max_attempts: int = 30

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError(f"HealthCheck timeout must be > 0, got {self.timeout}")
        if self.max_attempts < 1:
            raise ValueError(f"HealthCheck max_attempts must be >= 1, got {self.max_attempts}")
        if self.interval < 0:
            raise ValueError(f"HealthCheck interval must be >= 0, got {self.interval}")


@dataclass
class ServiceUnit:
    """
    A long-lived container (or compose project) or local process.

    `state` is only mutated by the Supervisor, under the unit's lock.
    """
    name: str
    kind: UnitKind
    start: str
    stop: str | None = None
    status: str | None = None   # containers: non-empty output means running
    logs: str | None = None     # containers: command printing the unit's logs
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    health: HealthCheck | None = None
    state: ServiceState = ServiceState.STOPPED


@dataclass(frozen=True)
class FileExists:
    """Satisfied when `path` (relative to the stack root) exists."""
    path: str


@dataclass(frozen=True)
class UnitHealthy:
    """Satisfied when the named unit is already healthy."""
    unit: str


@dataclass
class Task:
    """
    A named unit of orchestration work.

    Canonical dependency field: `needs` (names of tasks that must finish first).
    """
    name: str
    action: TaskAction
    steps: list[Step] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    unit: str | None = None
    skip_if: list[FileExists | UnitHealthy] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING  # last run's status, written by the executor


@dataclass(frozen=True)
class RunRecord:
    """What happened to one task during a run. Never changes after creation."""
    task: str
    started_at: datetime
    finished_at: datetime
    status: TaskStatus
    output: str = ""
    reason: str = ""

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class RunReport:
    """Outcome of one executor run."""
    statuses: Dict[str, TaskStatus]
    records: List[RunRecord] = field(default_factory=list)
    reasons: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def failed(self) -> list[str]:
        return [n for n, s in self.statuses.items() if s == TaskStatus.FAILED]

    @property
    def skipped(self) -> list[str]:
        return [n for n, s in self.statuses.items() if s == TaskStatus.SKIPPED]

    @property
    def status(self) -> TaskStatus:
        if not self.statuses:
            return TaskStatus.SUCCEEDED
        return max(self.statuses.values(), key=lambda s: STATUS_RANK.get(s, 0))

    @property
    def ok(self) -> bool:
        return self.status != TaskStatus.FAILED and not self.cancelled

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        return 1 if self.status == TaskStatus.FAILED else 0

    def record(self, task: str) -> Optional[RunRecord]:
        for r in self.records:
            if r.task == task:
                return r
        return None


@dataclass
class Stack:
    """
    Everything a stack definition provides: tasks, units and the
    subcommand -> target task names map.
    """
    name: str
    tasks: list[Task]
    units: list[ServiceUnit] = field(default_factory=list)
    targets: Dict[str, list[str]] = field(default_factory=dict)

    def unit(self, name: str) -> ServiceUnit:
        for u in self.units:
            if u.name == name:
                return u
        known = sorted(u.name for u in self.units)
        raise KeyError(f"Unknown unit '{name}'. Known units: {known}")

    def task(self, name: str) -> Task:
        for t in self.tasks:
            if t.name == name:
                return t
        raise KeyError(f"Unknown task '{name}'")
