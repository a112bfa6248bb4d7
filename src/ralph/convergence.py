from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

from ralph.process import stop_process


class Verdict(Enum):
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"
    UNAVAILABLE = "unavailable"


class ConvergenceCheck(ABC):
    @abstractmethod
    async def evaluate(self) -> Verdict:
        """Decide whether another iteration is worth running."""


class ScriptConvergenceCheck(ConvergenceCheck):
    """Runs a project hook script; a non-zero exit means the work has converged."""

    def __init__(
        self,
        repo_root: Path,
        script: str,
        *,
        interpreter: str = "bash",
        grace_seconds: float = 0.5,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.script = Path(script)
        self.interpreter = interpreter
        self.grace_seconds = grace_seconds

    @property
    def script_path(self) -> Path:
        if self.script.is_absolute():
            return self.script
        return self.repo_root / self.script

    async def evaluate(self) -> Verdict:
        script_path = self.script_path
        if not script_path.is_file():
            return Verdict.UNAVAILABLE
        try:
            process = await asyncio.create_subprocess_exec(
                self.interpreter,
                str(script_path),
                cwd=str(self.repo_root),
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return Verdict.UNAVAILABLE
        try:
            return_code = await process.wait()
        except asyncio.CancelledError:
            await stop_process(process, self.grace_seconds)
            raise
        if return_code != 0:
            return Verdict.CONVERGED
        return Verdict.NOT_CONVERGED
