# shell.py
# Small, focused wrapper around external tools.
# Every compose, container-runtime, package-manager and code-quality call goes
# through run_command() so the rest of the codebase never calls
# subprocess.run directly and never has to sniff raw exit codes.

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Union

TOOL_HINTS = {
    "podman": "Install Podman or fix PATH.",
    "podman-compose": "Install podman-compose (e.g., pip install podman-compose).",
    "docker": "Install Docker and ensure the daemon is running.",
    "docker-compose": "Install Docker Compose or use `docker compose`.",
    "pnpm": "Install pnpm (e.g., corepack enable pnpm).",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "uv": "Install uv (https://docs.astral.sh/uv/).",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# Output kept on a CommandResult; the tail is what matters on failure.
MAX_OUTPUT_CHARS = 8000

Command = Union[str, Sequence[str]]


@dataclass(frozen=True)
class CommandResult:
    """Exit status and combined stdout/stderr of one external command."""
    cmd: str
    exit_code: int
    output: str = ""
    hint: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# Signature of anything that can stand in for run_command (tests inject fakes).
CommandRunner = Callable[..., CommandResult]


def _display(cmd: Command) -> str:
    if isinstance(cmd, str):
        return cmd
    return " ".join(shlex.quote(c) for c in cmd)


def _tool_of(cmd: Command) -> str:
    if isinstance(cmd, str):
        parts = shlex.split(cmd) if cmd.strip() else [""]
    else:
        parts = list(cmd) or [""]
    return Path(parts[0]).name


def merged_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(extra or {})
    return env


def run_command(
    cmd: Command,
    *,
    cwd: str | Path | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> CommandResult:
    """
    Run an external command and capture its exit code and output.

    Strings run through the shell (so `a && b` works); sequences run
    directly. Never raises for a failing or missing
    tool: a missing executable is exit code 127 with a hint, a timeout is 124.
    """
    display = _display(cmd)
    shell = isinstance(cmd, str)

    if cwd is not None and not Path(cwd).exists():
        return CommandResult(cmd=display, exit_code=2, output=f"working directory not found: {cwd}")

    try:
        proc = subprocess.run(
            cmd if shell else list(cmd),
            shell=shell,
            cwd=str(cwd) if cwd is not None else None,
            env=merged_env(env),
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except FileNotFoundError:
        tool = _tool_of(cmd)
        return CommandResult(
            cmd=display,
            exit_code=127,
            output=f"{tool}: command not found",
            hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
        )
    except subprocess.TimeoutExpired as e:
        out = e.output or ""
        if isinstance(out, bytes):
            out = out.decode("utf-8", errors="replace")
        return CommandResult(cmd=display, exit_code=124, output=f"{out}\ntimed out after {timeout}s".strip())

    output = (proc.stdout or "")[-MAX_OUTPUT_CHARS:]
    hint = None
    # shells report a missing tool as 127 instead of raising
    if proc.returncode == 127:
        tool = _tool_of(cmd)
        hint = TOOL_HINTS.get(tool)
    return CommandResult(cmd=display, exit_code=proc.returncode, output=output, hint=hint)
