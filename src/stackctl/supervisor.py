# supervisor.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Union

from .model import HealthCheck, ServiceState, ServiceUnit, UnitKind
from .probe import malformed, probe_once
from .shell import CommandResult, CommandRunner, run_command
from .units import ContainerBackend, ProcessBackend


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Started:
    unit: str
    detail: str = ""


@dataclass(frozen=True)
class AlreadyRunning:
    unit: str


@dataclass(frozen=True)
class StartError:
    unit: str
    reason: str
    output: str = ""
    hint: str | None = None


@dataclass(frozen=True)
class Stopped:
    unit: str


@dataclass(frozen=True)
class NotRunning:
    unit: str


@dataclass(frozen=True)
class StopError:
    unit: str
    reason: str
    output: str = ""


StartResult = Union[Started, AlreadyRunning, StartError]
StopResult = Union[Stopped, NotRunning, StopError]

_LIVE = (ServiceState.STARTING, ServiceState.HEALTHY, ServiceState.UNHEALTHY)


def _failure_reason(res: CommandResult) -> str:
    reason = f"exit={res.exit_code}: {res.cmd}"
    if res.hint:
        reason += f" (hint: {res.hint})"
    return reason


class LogStream:
    """
    Lazy sequence of log lines for one unit.

    With follow=False every iteration re-reads the logs from the start.
    With follow=True the stream is unbounded and can be iterated only once.
    """

    def __init__(self, factory: Callable[[bool], Iterator[str]], follow: bool):
        self._factory = factory
        self.follow = follow
        self._consumed = False

    def __iter__(self) -> Iterator[str]:
        if self.follow:
            if self._consumed:
                raise RuntimeError("A followed log stream cannot be restarted")
            self._consumed = True
        return self._factory(self.follow)


class Supervisor:
    """
    Starts, stops and inspects service units.

    Every unit has its own re-entrant lock; transitions of one unit are
    serialized while unrelated units start and stop concurrently.
    """

    def __init__(
        self,
        units: Iterable[ServiceUnit] = (),
        *,
        root: str | Path = ".",
        log_dir: str | Path | None = None,
        runner: CommandRunner = run_command,
    ):
        self.root = Path(root)
        self.runner = runner
        self.units: Dict[str, ServiceUnit] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self.containers = ContainerBackend(self.root, runner=runner)
        self.processes = ProcessBackend(
            self.root,
            log_dir if log_dir is not None else self.root / ".stackctl" / "logs",
            runner=runner,
        )
        for u in units:
            self.register(u)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, unit: ServiceUnit) -> None:
        with self._registry_lock:
            self.units[unit.name] = unit
            self._locks.setdefault(unit.name, threading.RLock())

    def _lock(self, unit: ServiceUnit) -> threading.RLock:
        with self._registry_lock:
            if unit.name not in self._locks:
                self.units[unit.name] = unit
                self._locks[unit.name] = threading.RLock()
            return self._locks[unit.name]

    def _backend(self, unit: ServiceUnit):
        if UnitKind(unit.kind) == UnitKind.PROCESS:
            return self.processes
        return self.containers

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def _probe(self, unit: ServiceUnit, check: Optional[HealthCheck]) -> bool:
        if check is None or malformed(check):
            return False
        ready, _ = probe_once(check, cwd=str((self.root / (unit.cwd or ".")).resolve()), runner=self.runner)
        return ready

    def _observe(self, unit: ServiceUnit) -> ServiceState:
        running = self._backend(unit).is_running(unit)

        if not running:
            if unit.state in _LIVE or unit.state == ServiceState.STOPPED_WITH_ERROR:
                unit.state = ServiceState.STOPPED_WITH_ERROR
            else:
                unit.state = ServiceState.STOPPED
            return unit.state

        if unit.health is None or malformed(unit.health):
            if unit.state != ServiceState.STARTING:
                unit.state = ServiceState.HEALTHY
            return unit.state

        if self._probe(unit, unit.health):
            unit.state = ServiceState.HEALTHY
        elif unit.state != ServiceState.STARTING:
            unit.state = ServiceState.UNHEALTHY
        return unit.state

    def status(self, unit: ServiceUnit) -> ServiceState:
        with self._lock(unit):
            return self._observe(unit)

    def mark(self, unit: ServiceUnit, state: ServiceState) -> None:
        """Record a readiness verdict reached outside the supervisor."""
        with self._lock(unit):
            unit.state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, unit: ServiceUnit) -> StartResult:
        with self._lock(unit):
            state = self._observe(unit)
            if state == ServiceState.HEALTHY:
                return AlreadyRunning(unit.name)

            backend = self._backend(unit)
            if UnitKind(unit.kind) == UnitKind.PROCESS and backend.is_running(unit):
                # never spawn a second copy; wait for the one we have
                unit.state = ServiceState.STARTING
                return Started(unit.name, "already running, waiting for readiness")

            res = backend.start(unit)
            if not res.ok:
                unit.state = ServiceState.STOPPED_WITH_ERROR
                return StartError(unit.name, _failure_reason(res), res.output, res.hint)

            unit.state = ServiceState.STARTING
            return Started(unit.name, res.output.strip())

    def stop(self, unit: ServiceUnit) -> StopResult:
        with self._lock(unit):
            backend = self._backend(unit)
            if not backend.is_running(unit):
                unit.state = ServiceState.STOPPED
                return NotRunning(unit.name)

            res = backend.stop(unit)
            if not res.ok:
                unit.state = ServiceState.STOPPED_WITH_ERROR
                return StopError(unit.name, _failure_reason(res), res.output)

            unit.state = ServiceState.STOPPED
            return Stopped(unit.name)

    def stop_starting(self) -> List[StopResult]:
        """Best-effort stop of every unit left in `starting` (used on cancellation)."""
        with self._registry_lock:
            candidates = [u for u in self.units.values() if u.state == ServiceState.STARTING]
        results: List[StopResult] = []
        for unit in candidates:
            try:
                results.append(self.stop(unit))
            except OSError as e:
                results.append(StopError(unit.name, str(e)))
        return results

    def stop_processes(self) -> List[StopResult]:
        """Stop every local process this supervisor started."""
        with self._registry_lock:
            candidates = [u for u in self.units.values() if UnitKind(u.kind) == UnitKind.PROCESS]
        return [self.stop(u) for u in candidates if self.processes.handle(u) is not None]

    def running_processes(self) -> List[ServiceUnit]:
        """Local processes this supervisor started that are still alive."""
        with self._registry_lock:
            candidates = [u for u in self.units.values() if UnitKind(u.kind) == UnitKind.PROCESS]
        return [u for u in candidates if self.processes.handle(u) is not None and self.processes.is_running(u)]

    def logs(self, unit: ServiceUnit, follow: bool = False) -> LogStream:
        backend = self._backend(unit)
        return LogStream(lambda f: backend.log_lines(unit, f), follow)
