from __future__ import annotations

import os
import platform
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

CGROUP_MARKERS = ("/docker/", "/lxc/")

SANDBOX_WARNING = (
    "No sandbox boundary detected.\n"
    "The loop runs the agent with all tool calls auto-approved.\n"
    "Recommended: enable the agent's native sandbox or run inside a container."
)


@dataclass(slots=True)
class SandboxProbe:
    """Best-effort probe for an isolation boundary around this process.

    Every check is read-only and failures count as "not detected". A negative
    answer is advisory: the caller warns and carries on.
    """

    root: Path = Path("/")
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)
    which: Callable[[str], str | None] = shutil.which
    system: Callable[[], str] = platform.system

    def _in_container(self) -> bool:
        if (self.root / ".dockerenv").exists():
            return True
        if self.environ.get("CONTAINER", "") == "true":
            return True
        try:
            cgroup = (self.root / "proc" / "1" / "cgroup").read_text(
                encoding="utf-8", errors="replace"
            )
        except OSError:
            return False
        return any(marker in cgroup for marker in CGROUP_MARKERS)

    def reasons(self) -> list[str]:
        found: list[str] = []
        if self._in_container():
            found.append("container")
        if self.which("bwrap"):
            found.append("bubblewrap")
        if self.system() == "Darwin":
            found.append("seatbelt")
        return found

    def detect(self) -> bool:
        return bool(self.reasons())
