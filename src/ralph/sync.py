from __future__ import annotations

import asyncio
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ralph.process import stop_process


class SyncError(RuntimeError):
    """Raised when pushing the tracked branch to the remote fails."""


@dataclass(slots=True)
class PushResult:
    branch: str
    remote: str
    created_upstream: bool


def current_branch(repo_root: Path) -> str:
    proc = subprocess.run(
        ["git", "--no-pager", "branch", "--show-current"],
        cwd=repo_root,
        text=True,
        capture_output=True,
    )
    if proc.returncode != 0:
        return ""
    return proc.stdout.strip()


class GitSync:
    def __init__(
        self, repo_root: Path, *, remote: str = "origin", grace_seconds: float = 0.5
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.remote = remote
        self.grace_seconds = grace_seconds

    async def _run_git(self, args: list[str]) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                "--no-pager",
                *args,
                cwd=str(self.repo_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as exc:
            raise SyncError("git executable not found") from exc
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            await stop_process(process, self.grace_seconds)
            raise
        output = stderr.decode("utf-8", errors="replace").strip() or stdout.decode(
            "utf-8", errors="replace"
        ).strip()
        return process.returncode or 0, output

    async def has_upstream(self, branch: str) -> bool:
        code, _ = await self._run_git(
            ["rev-parse", "--abbrev-ref", "--symbolic-full-name", f"{branch}@{{upstream}}"]
        )
        return code == 0

    async def publish(self, branch: str) -> PushResult:
        if not branch:
            raise SyncError("No branch checked out; nothing to push.")
        if await self.has_upstream(branch):
            code, output = await self._run_git(["push", self.remote, branch])
            created = False
        else:
            code, output = await self._run_git(["push", "-u", self.remote, branch])
            created = True
        if code != 0:
            raise SyncError(output or f"git push exited with {code}")
        return PushResult(branch=branch, remote=self.remote, created_upstream=created)
