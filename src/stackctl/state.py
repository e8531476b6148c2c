# state.py
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, Optional

from .model import FileExists, ServiceState, ServiceUnit, Task, UnitHealthy

if TYPE_CHECKING:
    from .supervisor import Supervisor

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A setup task is "already done" when every marker in task.skip_if holds:
#   FileExists(path)   -> the file/dir is present under the stack root
#   UnitHealthy(unit)  -> the supervisor reports the unit healthy
# The executor asks check(task) before running anything and records the
# task as skipped(<reason>) instead of re-running it.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Skip:
    reason: str


def copy_if_absent(src: str | Path, dst: str | Path) -> bool:
    """
    Copy `src` to `dst` unless `dst` already exists. Never overwrites.

    Returns True if a copy was made, False if `dst` was already there.
    Raises FileNotFoundError if the template is missing.
    """
    src_p, dst_p = Path(src), Path(dst)
    if dst_p.exists():
        return False
    if not src_p.exists():
        raise FileNotFoundError(f"Template not found: {src_p}")

    dst_p.parent.mkdir(parents=True, exist_ok=True)
    try:
        # "x" fails if someone created dst between the check and now
        with src_p.open("rb") as inp, dst_p.open("xb") as out:
            shutil.copyfileobj(inp, out)
    except FileExistsError:
        return False
    shutil.copymode(src_p, dst_p)
    return True


class IdempotencyTracker:
    """Decides whether a task's precondition is already satisfied."""

    def __init__(
        self,
        root: str | Path,
        supervisor: Optional["Supervisor"] = None,
        units: Iterable[ServiceUnit] = (),
    ):
        self.root = Path(root)
        self.supervisor = supervisor
        self.units: Dict[str, ServiceUnit] = {u.name: u for u in units}

    def _satisfied(self, marker) -> Optional[str]:
        if isinstance(marker, FileExists):
            if (self.root / marker.path).exists():
                return f"{marker.path} already exists"
            return None

        if isinstance(marker, UnitHealthy):
            unit = self.units.get(marker.unit)
            if unit is None or self.supervisor is None:
                return None
            if self.supervisor.status(unit) == ServiceState.HEALTHY:
                return f"{marker.unit} already healthy"
            return None

        raise TypeError(f"Unknown marker type: {type(marker).__name__}")

    def check(self, task: Task) -> Optional[Skip]:
        """Return Skip(reason) if every marker of `task` holds, else None."""
        if not task.skip_if:
            return None

        reasons = []
        for marker in task.skip_if:
            reason = self._satisfied(marker)
            if reason is None:
                return None
            reasons.append(reason)
        return Skip("; ".join(reasons))
