from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ralph.backends.base import BackendProcessError


async def stop_process(process: asyncio.subprocess.Process, grace_seconds: float) -> int | None:
    """SIGTERM the process, SIGKILL it after the grace period, and reap it."""
    try:
        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_seconds)
            except TimeoutError:
                process.kill()
                await process.wait()
    except ProcessLookupError:
        pass
    return process.returncode


@dataclass(slots=True)
class ChildHandle:
    pid: int
    process: asyncio.subprocess.Process


class ChildProcessController:
    """Owns the single agent subprocess of a session.

    The active handle is only touched from the event loop thread: the
    supervisor task spawns and waits, the signal bridge terminates. At most
    one handle is referenced at any time.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        working_directory: Path | None = None,
        env: Mapping[str, str] | None = None,
        grace_seconds: float = 0.5,
    ) -> None:
        self.command = list(command)
        self.working_directory = working_directory
        self.env = dict(env) if env is not None else None
        self.grace_seconds = grace_seconds
        self.spawn_count = 0
        self._active: ChildHandle | None = None

    @property
    def active(self) -> ChildHandle | None:
        return self._active

    def _child_env(self) -> dict[str, str] | None:
        if not self.env:
            return None
        merged = os.environ.copy()
        merged.update(self.env)
        return merged

    async def spawn(self, payload: str) -> ChildHandle:
        if self._active is not None:
            raise RuntimeError(f"Agent process {self._active.pid} is still active.")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=self._child_env(),
                stdin=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(f"Agent binary not found: {self.command[0]}") from exc

        handle = ChildHandle(pid=process.pid, process=process)
        self._active = handle
        self.spawn_count += 1

        if process.stdin is not None:
            try:
                process.stdin.write(payload.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # The agent stopped reading; its exit status tells the rest.
                pass
            finally:
                process.stdin.close()
        return handle

    async def wait(self) -> int:
        handle = self._active
        if handle is None:
            raise RuntimeError("No active agent process to wait for.")
        return_code = await handle.process.wait()
        if self._active is handle:
            self._active = None
        return return_code

    async def terminate(self) -> int | None:
        handle = self._active
        if handle is None:
            return None
        try:
            return await stop_process(handle.process, self.grace_seconds)
        finally:
            if self._active is handle:
                self._active = None
