from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import click

from ralph.backends import AgentBackend, build_backend
from ralph.config import ConfigError, RalphConfig, load_config, save_config
from ralph.convergence import ScriptConvergenceCheck
from ralph.modes import ModeSelection, UsageError, resolve_mode
from ralph.payload import PayloadRenderer
from ralph.process import ChildProcessController
from ralph.sandbox import SandboxProbe
from ralph.supervisor import IterationSupervisor, RunSummary, Session
from ralph.sync import GitSync, current_branch

RULE = "━" * 40


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_backend(config: RalphConfig) -> AgentBackend:
    return build_backend(config.agent)


def _warn(message: str) -> None:
    click.secho(f"⚠  WARNING: {message}", fg="yellow", err=True)


def _fatal(exc: UsageError | ConfigError) -> click.ClickException:
    message = str(exc)
    if exc.hint:
        message = f"{message}\n{exc.hint}"
    return click.ClickException(message)


def _render_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "session_start":
        click.echo(RULE)
        click.echo("Ralph loop")
        click.echo(RULE)
        click.echo(f"Mode:   {event['mode']}")
        click.echo(f"Prompt: {event['payload']}")
        click.echo(f"Output: {'stream-json' if event['json_output'] else 'human'}")
        click.echo(f"Branch: {event['branch'] or '(none)'}")
        if event.get("scope"):
            click.echo(f"Scope:  {event['scope']}")
        if event["max_iterations"] > 0:
            click.echo(f"Max:    {event['max_iterations']} iterations")
        click.echo("Stop:   Ctrl+C")
        click.echo(RULE)
    elif name == "sandbox_warning":
        lines = str(event["message"]).splitlines()
        _warn(lines[0])
        for line in lines[1:]:
            click.secho(f"   {line}", fg="yellow", err=True)
        delay = float(event.get("delay_seconds", 0))
        if delay > 0:
            click.secho(
                f"   Continuing in {delay:g} seconds... (Ctrl+C to abort)", fg="yellow", err=True
            )
    elif name == "child_exit" and event.get("exit_code") != 0:
        _warn(f"Agent exited with status {event['exit_code']}; continuing with the next iteration.")
    elif name == "sync_ok" and event.get("created_upstream"):
        click.echo(f"Created remote branch {event['remote']}/{event['branch']}")
    elif name == "iteration_failed":
        _warn(f"Iteration {event['iteration']} could not start: {event['error']}; stopping.")
    elif name == "sync_failed":
        _warn(f"Push of '{event['branch']}' failed: {event['error']}")
    elif name == "signal_received":
        click.echo("\n\nCaught signal, stopping...")
    elif name == "converged":
        click.echo(
            f"Loop auto-terminated: convergence detected after {event['iterations']} iterations"
        )
    elif name == "bound_reached":
        click.echo(f"Reached max iterations: {event['max_iterations']}")
    elif name == "iteration_complete":
        click.echo(f"\n\n════════════════════ LOOP {event['iteration']} ════════════════════\n")


def _build_supervisor(
    repo_root: Path, config: RalphConfig, selection: ModeSelection
) -> IterationSupervisor:
    backend = _build_backend(config)
    if backend.resolve_binary() is None:
        raise ConfigError(
            f"Agent binary not found on PATH: {backend.binary} ({backend.name})",
            hint="Install the agent CLI or switch backends with: ralph backend claude|codex",
        )

    grace = max(0.0, float(config.loop.terminate_grace_seconds))
    mode = selection.mode
    renderer = PayloadRenderer(
        repo_root / selection.payload_source,
        mode,
        scope_variable=config.prompts.scope_variable,
    )
    controller = ChildProcessController(
        backend.build_command(json_output=selection.json_output),
        working_directory=repo_root,
        env=renderer.substitutions(),
        grace_seconds=grace,
    )
    session = Session(
        mode=mode,
        payload_source=renderer.path,
        max_iterations=selection.max_iterations,
        tracked_branch=current_branch(repo_root),
        json_output=selection.json_output,
    )
    sync = None
    if config.sync.enabled:
        sync = GitSync(repo_root, remote=config.sync.remote, grace_seconds=grace)
    convergence = None
    if mode.is_build:
        convergence = ScriptConvergenceCheck(
            repo_root,
            config.convergence.script,
            interpreter=config.convergence.interpreter,
            grace_seconds=grace,
        )
    return IterationSupervisor(
        session,
        renderer=renderer,
        controller=controller,
        sync=sync,
        convergence=convergence,
        sandbox=SandboxProbe() if config.sandbox.enabled else None,
        sandbox_delay_seconds=max(0.0, float(config.sandbox.warning_delay_seconds)),
        protected_branches=config.loop.protected_branches,
        event_hook=_render_event,
    )


def _echo_summary(summary: RunSummary) -> None:
    if summary.reason == "bound_reached" and summary.scope:
        click.echo("")
        click.echo(f"Scoped plan created for: {summary.scope}")
        click.echo("To build: ralph run")
    click.echo(f"Iterations: {summary.iterations} (agent failures: {summary.failed_iterations})")
    click.echo(f"Started: {summary.started_at}  Ended: {summary.ended_at}")


@click.group()
def cli() -> None:
    """Ralph loop: run a coding agent repeatedly against this repository."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise _fatal(exc) from exc
    if backend:
        config.agent.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)

    click.echo(f"Initialized ralph in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.agent.backend}")
    missing = [
        name
        for name in (config.prompts.build, config.prompts.plan, config.prompts.plan_work)
        if not (repo_root / name).is_file()
    ]
    if missing:
        click.echo(f"Missing prompt documents: {', '.join(missing)}")


@cli.command("run", context_settings={"ignore_unknown_options": True})
@click.argument("tokens", nargs=-1)
@click.option("--json", "json_output", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context, tokens: tuple[str, ...], json_output: bool, config_value: str
) -> None:
    """Run the loop: [plan | plan-work "scope" | build] [max_iterations]."""
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value))
        selection = resolve_mode(tokens, config)
        if json_output and not selection.json_output:
            selection = ModeSelection(
                selection.mode, selection.payload_source, selection.max_iterations, True
            )
        supervisor = _build_supervisor(repo_root, config, selection)
        summary = asyncio.run(supervisor.run())
    except (UsageError, ConfigError) as exc:
        raise _fatal(exc) from exc

    _echo_summary(summary)
    if summary.exit_code:
        ctx.exit(summary.exit_code)


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["claude", "codex"]))
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise _fatal(exc) from exc
    config.agent.backend = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Agent backend set to {backend_name}")


@cli.command("sandbox")
def sandbox_command() -> None:
    reasons = SandboxProbe().reasons()
    if reasons:
        click.echo(f"Sandbox boundary detected: {', '.join(reasons)}")
        return
    _warn("No sandbox boundary detected.")
