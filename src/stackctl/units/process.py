# units/process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, Optional

from ..model import ServiceUnit
from ..shell import CommandResult, CommandRunner, merged_env, run_command

# Seconds between SIGTERM and SIGKILL when stopping a process group.
STOP_GRACE_SECONDS = 10.0

# Poll interval while waiting for a process group to exit.
STOP_POLL_SECONDS = 0.1

# Poll interval for followed log files.
FOLLOW_POLL_SECONDS = 0.2


# ---------------------------------------------------------------------
# Local process backend
# ---------------------------------------------------------------------
# Local units (API server, worker, web dev server) are started in their own
# session so the whole process tree can be signalled at once. Output goes to
# <log_dir>/<unit>.log so `logs` works while the unit runs in the background.
# The process group id is written to <log_dir>/<unit>.pid so a later
# invocation (`stackctl down` after `up --no-attach`) can find and stop it.


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


class ProcessBackend:
    def __init__(
        self,
        root: str | Path,
        log_dir: str | Path,
        runner: CommandRunner = run_command,
        grace: float = STOP_GRACE_SECONDS,
    ):
        self.root = Path(root)
        self.log_dir = Path(log_dir)
        self.runner = runner
        self.grace = grace
        self._procs: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def _cwd(self, unit: ServiceUnit) -> Path:
        return (self.root / (unit.cwd or ".")).resolve()

    def log_path(self, unit: ServiceUnit) -> Path:
        return self.log_dir / f"{unit.name}.log"

    def pid_path(self, unit: ServiceUnit) -> Path:
        return self.log_dir / f"{unit.name}.pid"

    def handle(self, unit: ServiceUnit) -> subprocess.Popen | None:
        """The Popen of a process this backend started, if any."""
        with self._lock:
            return self._procs.get(unit.name)

    def recorded_group(self, unit: ServiceUnit) -> Optional[int]:
        """Process group id written by whichever invocation started the unit."""
        try:
            return int(self.pid_path(unit).read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _forget(self, unit: ServiceUnit) -> None:
        with self._lock:
            self._procs.pop(unit.name, None)
        self.pid_path(unit).unlink(missing_ok=True)

    def is_running(self, unit: ServiceUnit) -> bool:
        proc = self.handle(unit)
        if proc is not None:
            return proc.poll() is None
        pgid = self.recorded_group(unit)
        if pgid is None:
            return False
        if _group_alive(pgid):
            return True
        # stale pid file from a run that has since exited
        self.pid_path(unit).unlink(missing_ok=True)
        return False

    def exit_code(self, unit: ServiceUnit) -> int | None:
        proc = self.handle(unit)
        return None if proc is None else proc.poll()

    def start(self, unit: ServiceUnit) -> CommandResult:
        cwd = self._cwd(unit)
        if not cwd.exists():
            return CommandResult(cmd=unit.start, exit_code=2, output=f"working directory not found: {cwd}")

        self.log_dir.mkdir(parents=True, exist_ok=True)
        # each spawn starts a fresh log
        log = self.log_path(unit).open("wb")
        try:
            proc = subprocess.Popen(
                unit.start,
                shell=True,
                cwd=str(cwd),
                env=merged_env(unit.env),
                stdout=log,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            return CommandResult(cmd=unit.start, exit_code=127, output=str(e))
        finally:
            # the child holds its own descriptor
            log.close()

        with self._lock:
            self._procs[unit.name] = proc
        # start_new_session: the child leads its own group
        self.pid_path(unit).write_text(f"{proc.pid}\n")
        return CommandResult(cmd=unit.start, exit_code=0, output=f"pid {proc.pid}")

    def _signal_group(self, pgid: int, sig: int) -> None:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            pass

    def _wait_group(self, pgid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not _group_alive(pgid):
                return True
            time.sleep(STOP_POLL_SECONDS)
        return not _group_alive(pgid)

    def stop(self, unit: ServiceUnit) -> CommandResult:
        proc = self.handle(unit)
        pgid = proc.pid if proc is not None else self.recorded_group(unit)
        output = ""

        if unit.stop:
            res = self.runner(unit.stop, cwd=self._cwd(unit), env=unit.env)
            output = res.output
            if not res.ok:
                return res

        if proc is not None:
            if proc.poll() is None:
                self._signal_group(pgid, signal.SIGTERM)
                try:
                    proc.wait(timeout=self.grace)
                except subprocess.TimeoutExpired:
                    self._signal_group(pgid, signal.SIGKILL)
                    proc.wait()
        elif pgid is not None and _group_alive(pgid):
            self._signal_group(pgid, signal.SIGTERM)
            if not self._wait_group(pgid, self.grace):
                self._signal_group(pgid, signal.SIGKILL)
                self._wait_group(pgid, self.grace)

        self._forget(unit)
        return CommandResult(cmd=unit.stop or f"kill -TERM -{pgid if pgid else '?'}", exit_code=0, output=output)

    def log_lines(self, unit: ServiceUnit, follow: bool) -> Iterator[str]:
        """Read the unit's log file; with follow, keep waiting for new lines."""
        path = self.log_path(unit)
        if not path.exists():
            if not follow:
                return
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch()

        with path.open("r", encoding="utf-8", errors="replace") as f:
            while True:
                line = f.readline()
                if line:
                    yield line.rstrip("\n")
                    continue
                if not follow:
                    return
                time.sleep(FOLLOW_POLL_SECONDS)
