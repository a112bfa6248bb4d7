import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Any

import pytest

from ralph.config import ConfigError, RalphConfig
from ralph.convergence import ConvergenceCheck, ScriptConvergenceCheck, Verdict
from ralph.modes import Mode, UsageError, resolve_mode
from ralph.payload import PayloadRenderer
from ralph.process import ChildHandle, ChildProcessController
from ralph.sandbox import SandboxProbe
from ralph.supervisor import IterationSupervisor, RunSummary, Session
from ralph.sync import GitSync, PushResult, SyncError

RECORD_SCRIPT = (
    "import os, sys\n"
    "payload = sys.stdin.read()\n"
    "with open(sys.argv[1], 'a', encoding='utf-8') as fh:\n"
    "    fh.write(payload + '|' + os.environ.get('WORK_SCOPE', '-') + '\\n')\n"
    "sys.exit(int(sys.argv[2]))\n"
)

HANG_SCRIPT = "import sys, time; sys.stdin.read(); time.sleep(30)"


class RecordingSync:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    async def publish(self, branch: str) -> PushResult:
        self.calls.append(branch)
        if self.fail:
            raise SyncError("Could not resolve host: github.com")
        return PushResult(branch=branch, remote="origin", created_upstream=len(self.calls) == 1)


class ScriptedConvergence(ConvergenceCheck):
    def __init__(self, verdicts: list[Verdict] | None = None) -> None:
        self.verdicts = list(verdicts or [])
        self.calls = 0

    async def evaluate(self) -> Verdict:
        self.calls += 1
        if self.verdicts:
            return self.verdicts.pop(0)
        return Verdict.NOT_CONVERGED


class InstrumentedController(ChildProcessController):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.idle_at_spawn: list[bool] = []
        self.handles: list[ChildHandle] = []

    async def spawn(self, payload: str) -> ChildHandle:
        self.idle_at_spawn.append(self.active is None)
        handle = await super().spawn(payload)
        self.handles.append(handle)
        return handle


def _write_prompts(repo: Path) -> None:
    (repo / "PROMPT_build.md").write_text("BUILD", encoding="utf-8")
    (repo / "PROMPT_plan.md").write_text("PLAN", encoding="utf-8")
    (repo / "PROMPT_plan_work.md").write_text(
        "Plan only ${WORK_SCOPE}; ignore the rest of $WORK_SCOPE work", encoding="utf-8"
    )


def _make_supervisor(
    repo: Path,
    tokens: list[str],
    *,
    branch: str = "feature/x",
    command: list[str] | None = None,
    exit_code: int = 0,
    sync: RecordingSync | None = None,
    convergence: ConvergenceCheck | None = None,
    sandbox: SandboxProbe | None = None,
    events: list[dict[str, Any]] | None = None,
    signals: tuple[signal.Signals, ...] = (),
) -> IterationSupervisor:
    config = RalphConfig.default()
    selection = resolve_mode(tokens, config)
    renderer = PayloadRenderer(repo / selection.payload_source, selection.mode)
    if command is None:
        command = [sys.executable, "-c", RECORD_SCRIPT, str(repo / "agent.log"), str(exit_code)]
    controller = InstrumentedController(
        command,
        working_directory=repo,
        env=renderer.substitutions(),
        grace_seconds=0.5,
    )
    session = Session(
        mode=selection.mode,
        payload_source=renderer.path,
        max_iterations=selection.max_iterations,
        tracked_branch=branch,
    )
    return IterationSupervisor(
        session,
        renderer=renderer,
        controller=controller,
        sync=sync if sync is not None else RecordingSync(),
        convergence=convergence,
        sandbox=sandbox,
        sandbox_delay_seconds=0.0,
        protected_branches=config.loop.protected_branches,
        signals=signals,
        event_hook=events.append if events is not None else None,
    )


def _agent_log(repo: Path) -> list[str]:
    path = repo / "agent.log"
    if not path.exists():
        return []
    return path.read_text(encoding="utf-8").splitlines()


def test_unbounded_build_renders_build_payload(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    convergence = ScriptedConvergence([Verdict.CONVERGED])
    supervisor = _make_supervisor(tmp_path, [], convergence=convergence)

    summary = asyncio.run(supervisor.run())

    assert supervisor.session.max_iterations == 0
    assert _agent_log(tmp_path) == ["BUILD|-"]
    assert summary.reason == "converged"
    assert summary.iterations == 1


def test_plan_bound_reached_without_convergence_check(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    convergence = ScriptedConvergence([Verdict.CONVERGED])
    sync = RecordingSync()
    supervisor = _make_supervisor(
        tmp_path, ["plan", "5"], convergence=convergence, sync=sync, events=events
    )

    summary = asyncio.run(supervisor.run())

    assert summary.reason == "bound_reached"
    assert summary.exit_code == 0
    assert summary.iterations == 5
    assert _agent_log(tmp_path) == ["PLAN|-"] * 5
    assert convergence.calls == 0
    assert "GATE_CHECK" not in summary.phase_history
    assert sync.calls == ["feature/x"] * 5
    assert [event["event"] for event in events].count("bound_reached") == 1


def test_scoped_plan_on_protected_branch_never_spawns(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    supervisor = _make_supervisor(tmp_path, ["plan-work", "add OAuth"], branch="main")

    with pytest.raises(UsageError, match="work branch"):
        asyncio.run(supervisor.run())

    assert supervisor.controller.spawn_count == 0
    assert _agent_log(tmp_path) == []


def test_scoped_plan_substitutes_scope_every_iteration(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    supervisor = _make_supervisor(tmp_path, ["plan-work", "add OAuth"])

    summary = asyncio.run(supervisor.run())

    assert summary.reason == "bound_reached"
    assert summary.iterations == 5
    assert summary.scope == "add OAuth"
    expected = "Plan only add OAuth; ignore the rest of add OAuth work|add OAuth"
    assert _agent_log(tmp_path) == [expected] * 5


def test_missing_payload_document_is_fatal_before_spawn(tmp_path: Path) -> None:
    supervisor = _make_supervisor(tmp_path, ["plan"])

    with pytest.raises(ConfigError, match="PROMPT_plan.md not found"):
        asyncio.run(supervisor.run())

    assert supervisor.controller.spawn_count == 0


def test_signal_mid_iteration_terminates_child_and_skips_count(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    supervisor = _make_supervisor(
        tmp_path,
        ["plan", "3"],
        command=[sys.executable, "-c", HANG_SCRIPT],
        events=events,
    )
    sync = supervisor.sync

    async def _interrupt_when_spawned() -> None:
        while not supervisor.controller.handles:
            await asyncio.sleep(0.01)
        supervisor.bridge.trigger(signal.SIGINT)

    async def _run() -> RunSummary:
        interrupter = asyncio.create_task(_interrupt_when_spawned())
        summary = await supervisor.run()
        await interrupter
        return summary

    summary = asyncio.run(_run())

    assert summary.reason == "signaled"
    assert summary.exit_code == 130
    assert summary.iterations == 0
    assert summary.phase_history[-2:] == ["TERMINATING", "DONE"]
    assert supervisor.controller.active is None
    (handle,) = supervisor.controller.handles
    assert handle.process.returncode == -signal.SIGTERM
    assert isinstance(sync, RecordingSync)
    assert sync.calls == []
    received = [event for event in events if event["event"] == "signal_received"]
    assert received == [{"event": "signal_received", "signal": "SIGINT", "child_pid": handle.pid}]


def test_real_sigterm_is_forwarded(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    supervisor = _make_supervisor(
        tmp_path,
        [],
        command=[sys.executable, "-c", HANG_SCRIPT],
        signals=(signal.SIGTERM,),
    )

    async def _interrupt_when_spawned() -> None:
        while not supervisor.controller.handles:
            await asyncio.sleep(0.01)
        os.kill(os.getpid(), signal.SIGTERM)

    async def _run() -> RunSummary:
        interrupter = asyncio.create_task(_interrupt_when_spawned())
        summary = await supervisor.run()
        await interrupter
        return summary

    summary = asyncio.run(_run())

    assert summary.reason == "signaled"
    assert summary.iterations == 0
    assert supervisor.bridge.received == signal.SIGTERM
    assert supervisor.controller.handles[0].process.returncode is not None


def test_second_signal_is_ignored(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    supervisor = _make_supervisor(
        tmp_path, [], command=[sys.executable, "-c", HANG_SCRIPT], events=events
    )

    async def _interrupt_twice() -> None:
        while not supervisor.controller.handles:
            await asyncio.sleep(0.01)
        supervisor.bridge.trigger(signal.SIGINT)
        supervisor.bridge.trigger(signal.SIGTERM)

    async def _run() -> RunSummary:
        interrupter = asyncio.create_task(_interrupt_twice())
        summary = await supervisor.run()
        await interrupter
        return summary

    summary = asyncio.run(_run())

    assert summary.reason == "signaled"
    assert supervisor.bridge.received == signal.SIGINT
    assert [event["event"] for event in events].count("signal_received") == 1


def test_convergence_after_third_iteration_ends_unbounded_build(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    convergence = ScriptedConvergence(
        [Verdict.NOT_CONVERGED, Verdict.UNAVAILABLE, Verdict.CONVERGED]
    )
    supervisor = _make_supervisor(tmp_path, [], convergence=convergence)

    summary = asyncio.run(supervisor.run())

    assert summary.reason == "converged"
    assert summary.exit_code == 0
    assert summary.iterations == 3
    assert convergence.calls == 3


def test_convergence_overrides_remaining_bound(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    convergence = ScriptedConvergence([Verdict.NOT_CONVERGED, Verdict.CONVERGED])
    supervisor = _make_supervisor(tmp_path, ["10"], convergence=convergence)

    summary = asyncio.run(supervisor.run())

    assert summary.reason == "converged"
    assert summary.iterations == 2


def test_failed_agent_runs_do_not_stop_the_loop(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    sync = RecordingSync()
    supervisor = _make_supervisor(tmp_path, ["plan", "3"], exit_code=2, sync=sync, events=events)

    summary = asyncio.run(supervisor.run())

    assert summary.reason == "bound_reached"
    assert summary.iterations == 3
    assert summary.failed_iterations == 3
    assert len(sync.calls) == 3
    exits = [event["exit_code"] for event in events if event["event"] == "child_exit"]
    assert exits == [2, 2, 2]


def test_sync_failure_is_not_fatal(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    supervisor = _make_supervisor(
        tmp_path, ["plan", "2"], sync=RecordingSync(fail=True), events=events
    )

    summary = asyncio.run(supervisor.run())

    assert summary.iterations == 2
    failures = [event for event in events if event["event"] == "sync_failed"]
    assert len(failures) == 2
    assert "Could not resolve host" in failures[0]["error"]


def test_only_one_child_is_ever_active(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    supervisor = _make_supervisor(tmp_path, ["plan", "4"])

    asyncio.run(supervisor.run())

    controller = supervisor.controller
    assert isinstance(controller, InstrumentedController)
    assert controller.idle_at_spawn == [True, True, True, True]
    assert all(handle.process.returncode == 0 for handle in controller.handles)
    assert controller.active is None


def test_phase_sequence_for_one_build_iteration(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    supervisor = _make_supervisor(
        tmp_path, ["1"], convergence=ScriptedConvergence([Verdict.NOT_CONVERGED])
    )

    summary = asyncio.run(supervisor.run())

    assert summary.phase_history == [
        "INIT",
        "READY",
        "RENDER",
        "SPAWNED",
        "SYNCING",
        "GATE_CHECK",
        "READY",
        "DONE",
    ]


def test_sandbox_warning_is_advisory(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    probe = SandboxProbe(
        root=tmp_path, environ={}, which=lambda name: None, system=lambda: "Linux"
    )
    supervisor = _make_supervisor(tmp_path, ["plan", "1"], sandbox=probe, events=events)

    summary = asyncio.run(supervisor.run())

    names = [event["event"] for event in events]
    assert names.index("sandbox_warning") < names.index("iteration_start")
    assert summary.iterations == 1


def test_no_sandbox_warning_inside_container(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    probe = SandboxProbe(
        root=tmp_path,
        environ={"CONTAINER": "true"},
        which=lambda name: None,
        system=lambda: "Linux",
    )
    supervisor = _make_supervisor(tmp_path, ["plan", "1"], sandbox=probe, events=events)

    asyncio.run(supervisor.run())

    assert "sandbox_warning" not in [event["event"] for event in events]


def test_mode_is_fixed_for_session(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    supervisor = _make_supervisor(tmp_path, ["plan", "2"])

    asyncio.run(supervisor.run())

    assert supervisor.session.mode == Mode.plan()


def test_payload_removed_by_agent_ends_loop_without_raising(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    events: list[dict[str, Any]] = []
    sync = RecordingSync()
    remover = "import os, sys; sys.stdin.read(); os.remove('PROMPT_plan.md')"
    supervisor = _make_supervisor(
        tmp_path,
        ["plan", "3"],
        command=[sys.executable, "-c", remover],
        sync=sync,
        events=events,
    )

    summary = asyncio.run(supervisor.run())

    assert summary.reason == "aborted"
    assert summary.exit_code == 0
    assert summary.iterations == 1
    assert summary.failed_iterations == 1
    assert summary.phase_history[-2:] == ["RENDER", "DONE"]
    assert supervisor.controller.spawn_count == 1
    assert sync.calls == ["feature/x"]
    (failure,) = [event for event in events if event["event"] == "iteration_failed"]
    assert failure["iteration"] == 2
    assert "PROMPT_plan.md" in failure["error"]
    assert events[-1]["event"] == "session_end"


def test_agent_binary_vanishing_mid_session_ends_loop(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    agent = tmp_path / "agent.sh"
    agent.write_text('#!/bin/sh\ncat > /dev/null\nrm "$0"\n', encoding="utf-8")
    agent.chmod(0o755)
    events: list[dict[str, Any]] = []
    supervisor = _make_supervisor(tmp_path, [], command=[str(agent)], events=events)

    summary = asyncio.run(supervisor.run())

    assert summary.reason == "aborted"
    assert summary.iterations == 1
    assert summary.failed_iterations == 1
    assert supervisor.controller.active is None
    (failure,) = [event for event in events if event["event"] == "iteration_failed"]
    assert "Agent binary not found" in failure["error"]


def _slow_script(markers: Path) -> str:
    return (
        "#!/bin/sh\n"
        f"touch '{markers / 'started'}'\n"
        "sleep 1\n"
        f"touch '{markers / 'survived'}'\n"
    )


async def _interrupt_once_started(supervisor: IterationSupervisor, marker: Path) -> None:
    while not marker.exists():
        await asyncio.sleep(0.01)
    supervisor.bridge.trigger(signal.SIGTERM)


def _run_with_interrupt(supervisor: IterationSupervisor, marker: Path) -> RunSummary:
    async def _run() -> RunSummary:
        interrupter = asyncio.create_task(_interrupt_once_started(supervisor, marker))
        summary = await supervisor.run()
        await interrupter
        # Long enough for an orphaned script to have finished its sleep.
        await asyncio.sleep(1.5)
        return summary

    return asyncio.run(_run())


def test_signal_during_convergence_hook_stops_the_hook(tmp_path: Path) -> None:
    _write_prompts(tmp_path)
    markers = tmp_path / "markers"
    markers.mkdir()
    hook = tmp_path / ".claude" / "hooks" / "convergence-check.sh"
    hook.parent.mkdir(parents=True)
    hook.write_text(_slow_script(markers), encoding="utf-8")
    supervisor = _make_supervisor(
        tmp_path, [], convergence=ScriptConvergenceCheck(tmp_path, str(hook), interpreter="sh")
    )

    summary = _run_with_interrupt(supervisor, markers / "started")

    assert summary.reason == "signaled"
    assert summary.exit_code == 130
    assert summary.iterations == 1
    assert "GATE_CHECK" in summary.phase_history
    assert not (markers / "survived").exists()


def test_signal_during_push_stops_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_prompts(tmp_path)
    markers = tmp_path / "markers"
    markers.mkdir()
    fake_bin = tmp_path / "bin"
    fake_bin.mkdir()
    fake_git = fake_bin / "git"
    fake_git.write_text(_slow_script(markers), encoding="utf-8")
    fake_git.chmod(0o755)
    monkeypatch.setenv("PATH", f"{fake_bin}{os.pathsep}{os.environ['PATH']}")
    supervisor = _make_supervisor(tmp_path, ["plan", "3"])
    supervisor.sync = GitSync(tmp_path)

    summary = _run_with_interrupt(supervisor, markers / "started")

    assert summary.reason == "signaled"
    assert summary.iterations == 1
    assert summary.phase_history[-3:] == ["SYNCING", "TERMINATING", "DONE"]
    assert not (markers / "survived").exists()
