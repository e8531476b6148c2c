# runner.py
from __future__ import annotations

import os
import runpy
import shutil
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .dag import build_dag, resolve
from .model import (
    RunRecord,
    RunReport,
    ServiceState,
    ServiceUnit,
    Stack,
    Step,
    Task,
    TaskAction,
    TaskStatus,
)
from .probe import Healthy, ProbeError, Timeout, wait_healthy
from .shell import CommandRunner, run_command
from .state import IdempotencyTracker, copy_if_absent
from .supervisor import AlreadyRunning, NotRunning, StartError, Started, StopError, Stopped, Supervisor
from .ui.console import get_console

if TYPE_CHECKING:
    from .config import StackConfig


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Stack loading (local file)
# ----------------------------------------------------------------------

class StackLoadError(Exception):
    """A stack file could not be loaded or did not define a Stack."""


def load_stack(path: str | Path, config: "StackConfig") -> Stack:
    """
    Load a stack from a python file path.

    The file must define either:
      - stack(config) -> Stack
      - STACK = Stack(...)
    """
    stack_path = Path(path).expanduser().resolve()
    if not stack_path.exists():
        raise StackLoadError(f"Stack file not found: {stack_path}")
    if stack_path.suffix != ".py":
        raise StackLoadError(f"Stack must be a .py file, got: {stack_path.name}")

    module_name = f"stackctl_stack_{stack_path.stem}"
    globals_dict = runpy.run_path(str(stack_path), run_name=module_name)

    result = None
    if "stack" in globals_dict and callable(globals_dict["stack"]):
        result = globals_dict["stack"](config)
    elif "STACK" in globals_dict:
        result = globals_dict["STACK"]

    if not isinstance(result, Stack):
        raise StackLoadError(
            "Stack file must return/define a Stack. "
            "Define stack(config) -> Stack or STACK = Stack(...)."
        )
    return result


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    task: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""
    hint: str | None = None

    def __str__(self) -> str:
        msg = f"[{self.task}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
        if self.hint:
            msg += f" (hint: {self.hint})"
        return msg


@dataclass(frozen=True)
class TaskOutcome:
    status: TaskStatus
    reason: str = ""
    output: str = ""


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

def _run_step(task: Task, step: Step, root: Path, runner: CommandRunner) -> str:
    data = step.data or {}

    if step.kind == "sh":
        cwd = (root / (step.cwd or ".")).resolve()
        res = runner(step.run, cwd=cwd, env=task.env)
        if not res.ok:
            raise StepFailure(
                task=task.name,
                step=step.name,
                cmd=step.run,
                exit_code=res.exit_code,
                output=res.output,
                hint=res.hint,
            )
        return res.output

    if step.kind == "copy":
        src, dst = root / data["src"], root / data["dst"]
        try:
            copied = copy_if_absent(src, dst)
        except FileNotFoundError as e:
            raise StepFailure(task=task.name, step=step.name, cmd=f"copy {data['src']} {data['dst']}",
                              exit_code=1, output=str(e))
        if copied:
            return f"created {data['dst']} from {data['src']}"
        return f"{data['dst']} already exists"

    if step.kind == "mkdir":
        (root / data["path"]).mkdir(parents=True, exist_ok=True)
        return f"ensured {data['path']}/"

    if step.kind == "remove":
        target = root / data["path"]
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
            return f"removed {data['path']}/"
        if target.exists() or target.is_symlink():
            target.unlink()
            return f"removed {data['path']}"
        return f"{data['path']} not present"

    raise ValueError(f"[{task.name}] step '{step.name}' has unknown kind {step.kind!r}")


# ----------------------------------------------------------------------
# Run log (the only shared mutable state besides the status map)
# ----------------------------------------------------------------------

class RunLog:
    """Status map and records of one run; mirrors each status onto its Task."""

    def __init__(self, tasks: Dict[str, Task]):
        self._lock = threading.Lock()
        self._tasks = tasks
        self.statuses: Dict[str, TaskStatus] = {}
        for name in tasks:
            self._set(name, TaskStatus.PENDING)
        self.reasons: Dict[str, str] = {}
        self.records: List[RunRecord] = []
        self._started: Dict[str, datetime] = {}

    def _set(self, name: str, status: TaskStatus) -> None:
        self.statuses[name] = status
        self._tasks[name].status = status

    def transition(self, name: str, status: TaskStatus) -> None:
        with self._lock:
            self._set(name, status)
            if status == TaskStatus.RUNNING:
                self._started[name] = _now()

    def status(self, name: str) -> TaskStatus:
        with self._lock:
            return self.statuses[name]

    def finish(self, name: str, outcome: TaskOutcome) -> RunRecord:
        with self._lock:
            finished = _now()
            record = RunRecord(
                task=name,
                started_at=self._started.get(name, finished),
                finished_at=finished,
                status=outcome.status,
                output=outcome.output,
                reason=outcome.reason,
            )
            self._set(name, outcome.status)
            if outcome.reason:
                self.reasons[name] = outcome.reason
            self.records.append(record)
            return record

    def unfinished(self) -> List[str]:
        with self._lock:
            return [n for n, s in self.statuses.items()
                    if s in (TaskStatus.PENDING, TaskStatus.BLOCKED)]


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Executor:
    """
    Runs resolved tasks respecting dependencies.

    - A task is submitted once every dependency is succeeded or skipped.
    - Independent tasks run concurrently, up to max_workers.
    - A failure skips all transitive dependents; other tasks keep going
      unless fail_fast is set.
    """

    def __init__(
        self,
        *,
        root: str | Path = ".",
        supervisor: Optional[Supervisor] = None,
        units: Iterable[ServiceUnit] = (),
        tracker: Optional[IdempotencyTracker] = None,
        runner: CommandRunner = run_command,
        max_workers: int | None = None,
        fail_fast: bool = False,
        cancel: Optional[threading.Event] = None,
    ):
        self.root = Path(root)
        self.units: Dict[str, ServiceUnit] = {u.name: u for u in units}
        self.runner = runner
        self.supervisor = supervisor or Supervisor(self.units.values(), root=self.root, runner=runner)
        for unit in self.units.values():
            self.supervisor.register(unit)
        self.tracker = tracker or IdempotencyTracker(self.root, self.supervisor, self.units.values())
        self.max_workers = max_workers or default_workers()
        self.fail_fast = fail_fast
        self.cancel = cancel or threading.Event()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _unit(self, task: Task) -> ServiceUnit:
        if not task.unit:
            raise ValueError(f"Task '{task.name}' ({task.action.value}) has no unit")
        if task.unit in self.units:
            return self.units[task.unit]
        if task.unit in self.supervisor.units:
            return self.supervisor.units[task.unit]
        raise ValueError(f"Task '{task.name}' refers to unknown unit '{task.unit}'")

    def _run_steps(self, task: Task) -> TaskOutcome:
        skip = self.tracker.check(task)
        if skip is not None:
            return TaskOutcome(TaskStatus.SKIPPED, skip.reason)

        console = get_console()
        outputs: List[str] = []
        for step in task.steps:
            if self.cancel.is_set():
                return TaskOutcome(TaskStatus.FAILED, "cancelled", "\n".join(outputs))
            console.print_step(task.name, step.name)
            try:
                out = _run_step(task, step, self.root, self.runner)
            except StepFailure as e:
                outputs.append(e.output)
                return TaskOutcome(TaskStatus.FAILED, str(e), "\n".join(outputs))
            if out:
                outputs.append(out)
                console.print_debug(f"[{task.name}] {out.strip()[-500:]}")
        return TaskOutcome(TaskStatus.SUCCEEDED, "", "\n".join(outputs))

    def _start(self, task: Task) -> TaskOutcome:
        skip = self.tracker.check(task)
        if skip is not None:
            return TaskOutcome(TaskStatus.SKIPPED, skip.reason)

        unit = self._unit(task)
        result = self.supervisor.start(unit)

        if isinstance(result, AlreadyRunning):
            return TaskOutcome(TaskStatus.SKIPPED, f"{unit.name} already running")
        if isinstance(result, StartError):
            return TaskOutcome(TaskStatus.FAILED, result.reason, result.output)

        assert isinstance(result, Started)
        if unit.health is None:
            self.supervisor.mark(unit, ServiceState.HEALTHY)
            return TaskOutcome(TaskStatus.SUCCEEDED, "started (no health check)", result.detail)

        cwd = str((self.root / (unit.cwd or ".")).resolve())
        outcome = wait_healthy(unit, cancel=self.cancel, runner=self.runner, cwd=cwd)
        if isinstance(outcome, Healthy):
            self.supervisor.mark(unit, ServiceState.HEALTHY)
            return TaskOutcome(
                TaskStatus.SUCCEEDED,
                f"healthy after {outcome.attempts} attempt(s)",
                result.detail,
            )
        if isinstance(outcome, Timeout):
            if not outcome.cancelled:
                self.supervisor.mark(unit, ServiceState.UNHEALTHY)
            # cancelled units stay `starting` so stop_starting() picks them up
            return TaskOutcome(TaskStatus.FAILED, outcome.reason, result.detail)
        assert isinstance(outcome, ProbeError)
        self.supervisor.mark(unit, ServiceState.UNHEALTHY)
        return TaskOutcome(TaskStatus.FAILED, f"probe error: {outcome.reason}", result.detail)

    def _stop(self, task: Task) -> TaskOutcome:
        unit = self._unit(task)
        result = self.supervisor.stop(unit)
        if isinstance(result, Stopped):
            return TaskOutcome(TaskStatus.SUCCEEDED, "")
        if isinstance(result, NotRunning):
            return TaskOutcome(TaskStatus.SKIPPED, f"{unit.name} not running")
        assert isinstance(result, StopError)
        return TaskOutcome(TaskStatus.FAILED, result.reason, result.output)

    def execute(self, task: Task) -> TaskOutcome:
        """Run one task's action. Never raises; failures become outcomes."""
        get_console().print_task_start(task.name, task.action.value)
        try:
            action = TaskAction(task.action)
            if action in (TaskAction.SETUP, TaskAction.COMMAND):
                outcome = self._run_steps(task)
            elif action == TaskAction.START:
                outcome = self._start(task)
            else:
                outcome = self._stop(task)
        except Exception as e:
            outcome = TaskOutcome(TaskStatus.FAILED, f"{type(e).__name__}: {e}")
        get_console().print_task_finished(task.name, outcome.status, outcome.reason)
        return outcome

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def run(self, tasks: Iterable[Task]) -> RunReport:
        tasks = list(tasks)
        by_name = {t.name: t for t in tasks}
        adj, indeg = build_dag(tasks)

        log = RunLog(by_name)
        for name, deg in indeg.items():
            if deg > 0:
                log.transition(name, TaskStatus.BLOCKED)

        # keep the resolved order for tasks that become ready together
        ready: List[str] = [t.name for t in tasks if indeg[t.name] == 0]
        in_flight: Dict[Future, str] = {}
        state = {"failed": False}

        def skip_dependents(origin: str) -> None:
            pending = list(adj[origin])
            while pending:
                nxt = pending.pop()
                if log.status(nxt) not in (TaskStatus.PENDING, TaskStatus.BLOCKED):
                    continue
                reason = "cancelled" if self.cancel.is_set() else f"dependency '{origin}' failed"
                log.finish(nxt, TaskOutcome(TaskStatus.SKIPPED, reason))
                get_console().print_task_finished(nxt, TaskStatus.SKIPPED, reason)
                pending.extend(adj[nxt])

        def drive(pool: ThreadPoolExecutor) -> None:
            while ready or in_flight:
                # schedule all currently ready
                while ready and not self.cancel.is_set() and not (self.fail_fast and state["failed"]):
                    name = ready.pop(0)
                    if log.status(name) not in (TaskStatus.PENDING, TaskStatus.BLOCKED):
                        continue
                    log.transition(name, TaskStatus.RUNNING)
                    fut = pool.submit(self.execute, by_name[name])
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready tasks
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        outcome = TaskOutcome(TaskStatus.FAILED, f"{type(e).__name__}: {e}")
                    log.finish(name, outcome)

                    # unlock dependents only if succeeded or skipped
                    if outcome.status in (TaskStatus.SUCCEEDED, TaskStatus.SKIPPED):
                        for nxt in sorted(adj[name]):
                            indeg[nxt] -= 1
                            if indeg[nxt] == 0:
                                ready.append(nxt)
                    else:
                        state["failed"] = True
                        skip_dependents(name)

        interrupted = False
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                drive(pool)
            except KeyboardInterrupt:
                interrupted = True
                self.cancel.set()
                # stop scheduling, let in-flight tasks observe the cancel flag
                drive(pool)

        cancelled = interrupted or self.cancel.is_set()
        for name in log.unfinished():
            if cancelled:
                reason = "cancelled"
            elif self.fail_fast and state["failed"]:
                reason = "not started (fail-fast)"
            else:
                reason = "not started"
            log.finish(name, TaskOutcome(TaskStatus.SKIPPED, reason))

        if cancelled:
            for res in self.supervisor.stop_starting():
                get_console().print_debug(f"cancel cleanup: {res}")

        return RunReport(
            statuses=dict(log.statuses),
            records=list(log.records),
            reasons=dict(log.reasons),
            cancelled=cancelled,
        )


def run_tasks(tasks: Iterable[Task], **kwargs) -> RunReport:
    """Run already-resolved tasks. See Executor for keyword arguments."""
    return Executor(**kwargs).run(tasks)


def run_stack(
    stack: Stack,
    targets: Iterable[str],
    *,
    root: str | Path = ".",
    supervisor: Optional[Supervisor] = None,
    runner: CommandRunner = run_command,
    max_workers: int | None = None,
    fail_fast: bool = False,
    cancel: Optional[threading.Event] = None,
) -> RunReport:
    """
    Resolve `targets` against the stack's task graph and run them.

    Graph errors (UnknownTaskError, CycleError) are raised before anything runs.
    """
    ordered = resolve(stack.tasks, targets)
    return run_tasks(
        ordered,
        root=root,
        supervisor=supervisor,
        units=stack.units,
        runner=runner,
        max_workers=max_workers,
        fail_fast=fail_fast,
        cancel=cancel,
    )
