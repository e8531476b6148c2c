"""Shared fixtures: fake external tools so no real containers are touched."""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Union

import pytest

from stackctl.shell import CommandResult
from stackctl.ui.console import Console, set_console


class FakeRunner:
    """
    Stands in for shell.run_command.

    `responses` maps a substring of the command to a CommandResult (or a
    callable returning one); the first matching key wins, anything else
    succeeds with empty output.
    """

    def __init__(self, responses: Dict[str, Union[CommandResult, Callable[[str], CommandResult]]] | None = None):
        self.responses = dict(responses or {})
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, cmd, *, cwd=None, env=None, timeout=None) -> CommandResult:
        cmd = cmd if isinstance(cmd, str) else " ".join(cmd)
        with self._lock:
            self.calls.append(cmd)
        for key, resp in self.responses.items():
            if key in cmd:
                return resp(cmd) if callable(resp) else resp
        return CommandResult(cmd=cmd, exit_code=0, output="")

    def called(self, substring: str) -> List[str]:
        with self._lock:
            return [c for c in self.calls if substring in c]


class FakeRuntime(FakeRunner):
    """
    A tiny container runtime driven by commands of the form
    `start <name>`, `stop <name>`, `ps <name>` and `ready <name>`.

    Units listed in `never_ready` run but never pass `ready`; units in
    `broken` fail to start.
    """

    def __init__(self, never_ready=(), broken=()):
        super().__init__()
        self.running: set[str] = set()
        self.never_ready = set(never_ready)
        self.broken = set(broken)
        self.events: List[str] = []

    def __call__(self, cmd, *, cwd=None, env=None, timeout=None) -> CommandResult:
        cmd = cmd if isinstance(cmd, str) else " ".join(cmd)
        verb, _, name = cmd.partition(" ")
        with self._lock:
            self.calls.append(cmd)
            if verb == "start":
                if name in self.broken:
                    return CommandResult(cmd=cmd, exit_code=125, output=f"cannot start {name}")
                self.running.add(name)
                self.events.append(cmd)
                return CommandResult(cmd=cmd, exit_code=0, output=f"started {name}")
            if verb == "stop":
                self.running.discard(name)
                self.events.append(cmd)
                return CommandResult(cmd=cmd, exit_code=0)
            if verb == "ps":
                return CommandResult(cmd=cmd, exit_code=0, output=f"{name}-id\n" if name in self.running else "")
            if verb == "ready":
                ok = name in self.running and name not in self.never_ready
                if ok:
                    self.events.append(cmd)
                return CommandResult(cmd=cmd, exit_code=0 if ok else 1)
        return CommandResult(cmd=cmd, exit_code=0)


@pytest.fixture(autouse=True)
def quiet_console():
    """Fresh console per test so debug flags never leak."""
    set_console(Console(debug=False))
    yield


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def make_container():
    """Factory for container units driven by FakeRuntime commands."""
    from stackctl.dsl import container, exec_check

    def _make(name: str, *, interval: float = 0.01, max_attempts: int = 5, health: bool = True):
        return container(
            name,
            start=f"start {name}",
            stop=f"stop {name}",
            status=f"ps {name}",
            health=exec_check(f"ready {name}", interval=interval, timeout=1, max_attempts=max_attempts)
            if health
            else None,
        )

    return _make
