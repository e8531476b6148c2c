"""Console output formatting utilities for stackctl."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, List, Optional, Tuple

from ..model import RunReport, TaskStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # tasks report from worker threads
        self._lock = threading.Lock()

    def _out(self, text: str = "", err: bool = False) -> None:
        with self._lock:
            print(text, file=sys.stderr if err else sys.stdout, flush=True)

    def print_run_started(self, stack: str, command: str, task_count: int) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Stack: {stack}")
        self._out(f"Command: {command}")
        self._out(f"Tasks: {task_count}")
        self._out()

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print resolved stages."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"=== Stage {idx}: {', '.join(level)} ===")

    def print_task_start(self, name: str, action: str) -> None:
        self._out(f"TASK STARTED: {name} ({action})")

    def print_step(self, task: str, step: str) -> None:
        self._out(f"[{task}] > {step}")

    def print_task_finished(self, name: str, status: TaskStatus, reason: str = "") -> None:
        line = f"TASK {status.value.upper()}: {name}"
        if reason:
            line += f" ({reason})"
        self._out(line, err=status == TaskStatus.FAILED)

    def print_results(self, report: RunReport) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for name, status in report.statuses.items():
            reason = report.reasons.get(name, "")
            line = f"  {name}: {status.value.upper()}"
            if reason:
                line += f" ({reason})"
            self._out(line)

        for name in report.failed:
            record = report.record(name)
            if record is None or not record.output.strip():
                continue
            lines = record.output.rstrip().splitlines()
            if not self.debug:
                lines = lines[-20:]
            self._out(f"\n--- output: {name} ---")
            for line in lines:
                self._out(f"  {line}")

        if report.cancelled:
            self._out("\nRun cancelled")
        self._out(f"\nOverall: {report.status.value.upper()}")

    def print_status(self, rows: Iterable[Tuple[str, str, str]]) -> None:
        """Print unit name, kind and state as a table."""
        rows = list(rows)
        width = max([len(r[0]) for r in rows] + [4])
        self._out(f"{'UNIT'.ljust(width)}  {'KIND'.ljust(9)}  STATE")
        for name, kind, state in rows:
            self._out(f"{name.ljust(width)}  {kind.ljust(9)}  {state}")

    def print_log_line(self, unit: str, line: str, prefix: bool = False) -> None:
        self._out(f"{unit} | {line}" if prefix else line)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        self._out(f"\nERROR: {title}", err=True)
        self._out(message, err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
