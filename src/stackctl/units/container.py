# units/container.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Iterator

from ..model import ServiceState, ServiceUnit
from ..shell import CommandResult, CommandRunner, merged_env, run_command


# ---------------------------------------------------------------------
# Container backend
# ---------------------------------------------------------------------
# A container unit is anything the compose tool or the container runtime
# manages: a whole compose project (`podman-compose ... up -d`) or a single
# named container (`podman start dify_nginx_1`). The unit carries the exact
# commands; this backend only issues them and interprets the results.


class ContainerBackend:
    def __init__(self, root: str | Path, runner: CommandRunner = run_command):
        self.root = Path(root)
        self.runner = runner

    def _cwd(self, unit: ServiceUnit) -> Path:
        return (self.root / (unit.cwd or ".")).resolve()

    def is_running(self, unit: ServiceUnit) -> bool:
        if not unit.status:
            # No way to ask the runtime; trust what we observed this session.
            return unit.state in (ServiceState.STARTING, ServiceState.HEALTHY, ServiceState.UNHEALTHY)
        res = self.runner(unit.status, cwd=self._cwd(unit), env=unit.env)
        return res.ok and res.output.strip() != ""

    def start(self, unit: ServiceUnit) -> CommandResult:
        return self.runner(unit.start, cwd=self._cwd(unit), env=unit.env)

    def stop(self, unit: ServiceUnit) -> CommandResult:
        if not unit.stop:
            return CommandResult(cmd="", exit_code=2, output=f"unit '{unit.name}' has no stop command")
        return self.runner(unit.stop, cwd=self._cwd(unit), env=unit.env)

    def log_lines(self, unit: ServiceUnit, follow: bool) -> Iterator[str]:
        """Stream the output of the unit's logs command, line by line."""
        if not unit.logs:
            return
        cmd = f"{unit.logs} -f" if follow else unit.logs
        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(self._cwd(unit)),
            env=merged_env(unit.env),
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                yield line.rstrip("\n")
        finally:
            if proc.poll() is None:
                proc.terminate()
            proc.wait()
