from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from ralph.backends.base import BackendProcessError
from ralph.config import ConfigError
from ralph.convergence import ConvergenceCheck, Verdict
from ralph.modes import Mode, check_branch_allowed
from ralph.payload import PayloadRenderer
from ralph.process import ChildProcessController
from ralph.sandbox import SANDBOX_WARNING, SandboxProbe
from ralph.signals import DEFAULT_SIGNALS, SIGNAL_EXIT_CODE, SignalBridge
from ralph.sync import GitSync, SyncError

Phase = Literal[
    "INIT", "READY", "RENDER", "SPAWNED", "SYNCING", "GATE_CHECK", "TERMINATING", "DONE"
]
StopReason = Literal["bound_reached", "converged", "signaled", "aborted"]
EventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Session:
    mode: Mode
    payload_source: Path
    max_iterations: int
    tracked_branch: str
    json_output: bool = False
    iteration_count: int = 0
    failed_iterations: int = 0


@dataclass(slots=True)
class RunSummary:
    mode: str
    scope: str | None
    branch: str
    iterations: int
    failed_iterations: int
    reason: StopReason
    started_at: str
    ended_at: str
    phase_history: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return SIGNAL_EXIT_CODE if self.reason == "signaled" else 0


class IterationSupervisor:
    def __init__(
        self,
        session: Session,
        *,
        renderer: PayloadRenderer,
        controller: ChildProcessController,
        sync: GitSync | None = None,
        convergence: ConvergenceCheck | None = None,
        sandbox: SandboxProbe | None = None,
        sandbox_delay_seconds: float = 5.0,
        protected_branches: Sequence[str] = ("main", "master"),
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
        event_hook: EventHook | None = None,
    ) -> None:
        self.session = session
        self.renderer = renderer
        self.controller = controller
        self.sync = sync
        self.convergence = convergence
        self.sandbox = sandbox
        self.sandbox_delay_seconds = sandbox_delay_seconds
        self.protected_branches = tuple(protected_branches)
        self.event_hook = event_hook
        self.bridge = SignalBridge(controller, signals=signals, event_hook=event_hook)
        self.phase: Phase = "INIT"
        self.phase_history: list[str] = ["INIT"]

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        self.phase_history.append(phase)

    def prepare(self) -> None:
        """Validate everything that must hold before the first spawn.

        Raises UsageError for a scoped plan on a protected branch and
        ConfigError when the payload document is missing. These are the only
        errors that escape ``run``; failures once the loop has started end it
        with the ``aborted`` reason instead.
        """
        check_branch_allowed(
            self.session.mode, self.session.tracked_branch, self.protected_branches
        )
        self.renderer.ensure_exists()

    async def _advise_sandbox(self) -> None:
        if self.sandbox is None:
            return
        if self.sandbox.detect():
            return
        self._emit(
            {
                "event": "sandbox_warning",
                "message": SANDBOX_WARNING,
                "delay_seconds": self.sandbox_delay_seconds,
            }
        )
        if self.sandbox_delay_seconds > 0:
            await asyncio.sleep(self.sandbox_delay_seconds)

    async def _publish(self) -> None:
        if self.sync is None:
            return
        branch = self.session.tracked_branch
        try:
            result = await self.sync.publish(branch)
        except SyncError as exc:
            self._emit({"event": "sync_failed", "branch": branch, "error": str(exc)})
            return
        self._emit(
            {
                "event": "sync_ok",
                "branch": result.branch,
                "remote": result.remote,
                "created_upstream": result.created_upstream,
            }
        )

    async def _loop(self) -> StopReason:
        session = self.session
        while True:
            self._enter("READY")
            if session.max_iterations > 0 and session.iteration_count >= session.max_iterations:
                self._emit({"event": "bound_reached", "max_iterations": session.max_iterations})
                return "bound_reached"

            self._enter("RENDER")
            iteration = session.iteration_count + 1
            try:
                payload = self.renderer.render()
                self._emit({"event": "iteration_start", "iteration": iteration})
                handle = await self.controller.spawn(payload)
            except (ConfigError, BackendProcessError) as exc:
                # A payload or agent binary that vanished mid-session ends the loop.
                session.failed_iterations += 1
                self._emit(
                    {"event": "iteration_failed", "iteration": iteration, "error": str(exc)}
                )
                return "aborted"
            self._enter("SPAWNED")
            return_code = await self.controller.wait()
            session.iteration_count += 1
            if return_code != 0:
                session.failed_iterations += 1
            self._emit(
                {
                    "event": "child_exit",
                    "iteration": iteration,
                    "pid": handle.pid,
                    "exit_code": return_code,
                }
            )

            self._enter("SYNCING")
            await self._publish()

            if session.mode.is_build and self.convergence is not None:
                self._enter("GATE_CHECK")
                verdict = await self.convergence.evaluate()
                if verdict is Verdict.CONVERGED:
                    self._emit({"event": "converged", "iterations": session.iteration_count})
                    return "converged"

            self._emit({"event": "iteration_complete", "iteration": session.iteration_count})

    async def run(self) -> RunSummary:
        started_at = _utcnow_iso()
        self.prepare()
        session = self.session
        self._emit(
            {
                "event": "session_start",
                "mode": session.mode.name,
                "scope": session.mode.scope,
                "payload": session.payload_source.name,
                "branch": session.tracked_branch,
                "max_iterations": session.max_iterations,
                "json_output": session.json_output,
            }
        )

        task = asyncio.current_task()
        if task is not None:
            self.bridge.install(task)
        try:
            try:
                await self._advise_sandbox()
                reason = await self._loop()
            except asyncio.CancelledError:
                if not self.bridge.triggered:
                    raise
                if task is not None:
                    task.uncancel()
                self._enter("TERMINATING")
                await self.bridge.wait_shutdown()
                reason = "signaled"
        finally:
            self.bridge.uninstall()

        self._enter("DONE")
        summary = RunSummary(
            mode=session.mode.name,
            scope=session.mode.scope,
            branch=session.tracked_branch,
            iterations=session.iteration_count,
            failed_iterations=session.failed_iterations,
            reason=reason,
            started_at=started_at,
            ended_at=_utcnow_iso(),
            phase_history=list(self.phase_history),
        )
        self._emit(
            {
                "event": "session_end",
                "reason": reason,
                "iterations": summary.iterations,
                "failed_iterations": summary.failed_iterations,
            }
        )
        return summary
