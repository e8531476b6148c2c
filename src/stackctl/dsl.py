# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .model import (
    FileExists,
    HealthCheck,
    ProbeStrategy,
    ServiceUnit,
    Stack,
    Step,
    Task,
    TaskAction,
    UnitHealthy,
    UnitKind,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def copy_if_absent(src: str, dst: str, *, name: str | None = None) -> Step:
    """Copy a template to `dst` unless `dst` exists (the `cp -n` idiom)."""
    return Step(name=name or f"copy {dst}", kind="copy", data={"src": src, "dst": dst})


def mkdir(path: str, *, name: str | None = None) -> Step:
    return Step(name=name or f"mkdir {path}", kind="mkdir", data={"path": path})


def remove(path: str, *, name: str | None = None) -> Step:
    """Delete a file or directory tree; missing paths are fine."""
    return Step(name=name or f"remove {path}", kind="remove", data={"path": path})


# ---------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------

def file_exists(path: str) -> FileExists:
    return FileExists(path)


def unit_healthy(unit: str) -> UnitHealthy:
    return UnitHealthy(unit)


# ---------------------------------------------------------------------
# Task helpers
# ---------------------------------------------------------------------

def _with_cwd(steps: Iterable[Step], cwd: str | None) -> List[Step]:
    steps = list(steps)
    if cwd is None:
        return steps
    return [s if s.cwd is not None or s.kind != "sh" else replace(s, cwd=cwd) for s in steps]


def setup(
    name: str,
    *steps: Step,
    needs: Optional[List[str]] = None,
    skip_if: Optional[List[FileExists | UnitHealthy]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to sh steps missing cwd
    description: str = "",
) -> Task:
    """An idempotent setup task."""
    if not steps:
        raise ValueError(f"setup({name!r}) must have at least one step")
    return Task(
        name=name,
        action=TaskAction.SETUP,
        steps=_with_cwd(steps, cwd),
        needs=list(needs or []),
        skip_if=list(skip_if or []),
        env=dict(env or {}),
        description=description,
    )


def command(
    name: str,
    *steps: Step,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    description: str = "",
) -> Task:
    """A pass-through to external tools; passes when every step exits 0."""
    if not steps:
        raise ValueError(f"command({name!r}) must have at least one step")
    return Task(
        name=name,
        action=TaskAction.COMMAND,
        steps=_with_cwd(steps, cwd),
        needs=list(needs or []),
        env=dict(env or {}),
        description=description,
    )


def start(unit: str, *, name: str | None = None, needs: Optional[List[str]] = None, description: str = "") -> Task:
    """Start a unit and wait until it is ready. Task name defaults to the unit name."""
    return Task(
        name=name or unit,
        action=TaskAction.START,
        unit=unit,
        needs=list(needs or []),
        description=description or f"start {unit}",
    )


def stop(unit: str, *, name: str | None = None, needs: Optional[List[str]] = None, description: str = "") -> Task:
    """Stop a unit. Task name defaults to stop-<unit>."""
    return Task(
        name=name or f"stop-{unit}",
        action=TaskAction.STOP,
        unit=unit,
        needs=list(needs or []),
        description=description or f"stop {unit}",
    )


# ---------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------

def tcp(port: int, host: str = "127.0.0.1", **kw) -> HealthCheck:
    return HealthCheck(strategy=ProbeStrategy.TCP, host=host, port=port, **kw)


def http(url: str, **kw) -> HealthCheck:
    return HealthCheck(strategy=ProbeStrategy.HTTP, url=url, **kw)


def exec_check(cmd: str, **kw) -> HealthCheck:
    return HealthCheck(strategy=ProbeStrategy.COMMAND, command=cmd, **kw)


# ---------------------------------------------------------------------
# Unit helpers
# ---------------------------------------------------------------------

def container(
    name: str,
    *,
    start: str,
    stop: str | None = None,
    status: str | None = None,
    logs: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    health: HealthCheck | None = None,
) -> ServiceUnit:
    """A compose project or named container."""
    return ServiceUnit(
        name=name,
        kind=UnitKind.CONTAINER,
        start=start,
        stop=stop,
        status=status,
        logs=logs,
        cwd=cwd,
        env=dict(env or {}),
        health=health,
    )


def process(
    name: str,
    cmd: str,
    *,
    stop: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    health: HealthCheck | None = None,
) -> ServiceUnit:
    """A local long-running process."""
    return ServiceUnit(
        name=name,
        kind=UnitKind.PROCESS,
        start=cmd,
        stop=stop,
        cwd=cwd,
        env=dict(env or {}),
        health=health,
    )


# ---------------------------------------------------------------------
# Stack helper (single-file story)
# ---------------------------------------------------------------------

def define_stack(
    name: str,
    *,
    tasks: Iterable[Task],
    units: Iterable[ServiceUnit] = (),
    targets: Optional[Dict[str, List[str]]] = None,
) -> Stack:
    """
    Stack definition helper. Use this name so a stack file can define its
    own `def stack(config)` entry point:

        from stackctl.dsl import define_stack, setup, start, sh, process, tcp

        def stack(config):
            return define_stack("mine", tasks=[...], units=[...])
    """
    return Stack(name=name, tasks=list(tasks), units=list(units), targets=dict(targets or {}))
