"""Readiness probing: poll a unit's health check until it passes or the wait runs out."""

from __future__ import annotations

import socket
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from .model import HealthCheck, ProbeStrategy, ServiceUnit
from .shell import CommandRunner, run_command

__all__ = ["Healthy", "Timeout", "ProbeError", "ProbeOutcome", "wait_healthy", "probe_once"]


@dataclass(frozen=True)
class Healthy:
    attempts: int
    elapsed: float


@dataclass(frozen=True)
class Timeout:
    attempts: int
    elapsed: float
    last_error: str = ""
    cancelled: bool = False

    @property
    def reason(self) -> str:
        if self.cancelled:
            return f"cancelled after {self.attempts} attempt(s)"
        msg = f"not ready after {self.attempts} attempt(s) in {self.elapsed:.1f}s"
        if self.last_error:
            msg += f" (last error: {self.last_error})"
        return msg


@dataclass(frozen=True)
class ProbeError:
    reason: str


ProbeOutcome = Union[Healthy, Timeout, ProbeError]

# A single attempt: (ready, detail)
Probe = Callable[[], Tuple[bool, str]]


def check_tcp(host: str, port: int, timeout: float) -> Tuple[bool, str]:
    """Check TCP port connectivity."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True, ""
    except socket.timeout:
        return False, "Connection timeout"
    except ConnectionRefusedError:
        return False, "Connection refused"
    except OSError as e:
        return False, str(e)


def check_http(url: str, timeout: float) -> Tuple[bool, str]:
    """Check HTTP endpoint health: any status below 400 is ready."""
    req = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            status = response.status
    except urllib.error.HTTPError as e:
        return False, f"HTTP {e.code}"
    except urllib.error.URLError as e:
        return False, str(e.reason)
    except (socket.timeout, TimeoutError):
        return False, "Timeout"
    except OSError as e:
        return False, str(e)
    if status < 400:
        return True, ""
    return False, f"HTTP {status}"


def check_command(
    command: str,
    timeout: float,
    *,
    cwd: str | None = None,
    runner: CommandRunner = run_command,
) -> Tuple[bool, str]:
    """Check a command's exit status: 0 is ready."""
    result = runner(command, cwd=cwd, timeout=timeout)
    if result.ok:
        return True, ""
    tail = result.output.strip().splitlines()[-1:] if result.output else []
    detail = f"exit={result.exit_code}"
    if tail:
        detail += f": {tail[0]}"
    return False, detail


def malformed(check: HealthCheck) -> Optional[str]:
    """Return why `check` cannot be probed, or None if it is well-formed."""
    try:
        strategy = ProbeStrategy(check.strategy)
    except ValueError:
        return f"unknown probe strategy {check.strategy!r}"

    if strategy == ProbeStrategy.TCP:
        if not check.host or check.port is None:
            return "tcp health check needs host and port"
        try:
            port = int(check.port)
        except (TypeError, ValueError):
            return f"tcp health check port must be an integer, got {check.port!r}"
        if not 0 < port < 65536:
            return f"tcp health check port out of range: {check.port}"
    elif strategy == ProbeStrategy.HTTP:
        if not check.url or not check.url.startswith(("http://", "https://")):
            return f"http health check needs an http(s) url, got {check.url!r}"
    elif strategy == ProbeStrategy.COMMAND:
        if not check.command or not check.command.strip():
            return "command health check needs a command"
    return None


def probe_once(
    check: HealthCheck,
    *,
    cwd: str | None = None,
    runner: CommandRunner = run_command,
) -> Tuple[bool, str]:
    """Run one attempt of a well-formed health check."""
    strategy = ProbeStrategy(check.strategy)
    if strategy == ProbeStrategy.TCP:
        return check_tcp(check.host, int(check.port), check.timeout)
    if strategy == ProbeStrategy.HTTP:
        return check_http(check.url, check.timeout)
    return check_command(check.command, check.timeout, cwd=cwd, runner=runner)


def wait_healthy(
    unit: ServiceUnit,
    check: HealthCheck | None = None,
    *,
    probe: Optional[Probe] = None,
    runner: CommandRunner = run_command,
    cwd: str | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> ProbeOutcome:
    """
    Poll `unit` until its health check passes.

    Attempt k (1-based) starts no earlier than (k - 1) * interval after the
    first one; the whole wait is bounded by max_attempts * interval. Returns
    Healthy on the first successful attempt, Timeout when the bound is reached
    (or `cancel` is set), ProbeError when the check cannot be run at all.
    """
    check = check or unit.health
    if check is None:
        return ProbeError(f"unit '{unit.name}' has no health check")

    problem = malformed(check)
    if problem:
        return ProbeError(f"{unit.name}: {problem}")

    if probe is None:
        def probe() -> Tuple[bool, str]:
            return probe_once(check, cwd=cwd or unit.cwd, runner=runner)

    if sleep is None:
        if cancel is not None:
            sleep = cancel.wait
        else:
            sleep = time.sleep

    start = clock()
    deadline = start + check.max_attempts * check.interval
    last_error = ""
    attempts = 0

    for attempt in range(1, check.max_attempts + 1):
        if cancel is not None and cancel.is_set():
            return Timeout(attempts, clock() - start, last_error, cancelled=True)
        # slow attempts must not push the wait past its bound
        if attempt > 1 and check.interval > 0 and clock() >= deadline:
            break

        attempts = attempt
        try:
            ready, detail = probe()
        except Exception as e:  # counts as a failed attempt
            ready, detail = False, f"{type(e).__name__}: {e}"

        if ready:
            return Healthy(attempts, clock() - start)
        last_error = detail

        wait = min(start + attempt * check.interval, deadline) - clock()
        if wait > 0:
            sleep(wait)

    cancelled = cancel is not None and cancel.is_set()
    return Timeout(attempts, clock() - start, last_error, cancelled=cancelled)
