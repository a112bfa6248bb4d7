from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex"]


class ConfigError(RuntimeError):
    """Raised when configuration or a required payload document is unusable."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    model: str = "opus"
    verbose: bool = True
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PromptsConfig:
    build: str = "PROMPT_build.md"
    plan: str = "PROMPT_plan.md"
    plan_work: str = "PROMPT_plan_work.md"
    scope_variable: str = "WORK_SCOPE"


@dataclass(slots=True)
class LoopConfig:
    plan_work_max_iterations: int = 5
    protected_branches: list[str] = field(default_factory=lambda: ["main", "master"])
    terminate_grace_seconds: float = 0.5


@dataclass(slots=True)
class SyncConfig:
    enabled: bool = True
    remote: str = "origin"


@dataclass(slots=True)
class ConvergenceConfig:
    script: str = ".claude/hooks/convergence-check.sh"
    interpreter: str = "bash"


@dataclass(slots=True)
class SandboxConfig:
    enabled: bool = True
    warning_delay_seconds: float = 5.0


@dataclass(slots=True)
class RalphConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    prompts: PromptsConfig = field(default_factory=PromptsConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        try:
            return cls(
                agent=AgentConfig(**data.get("agent", {})),
                prompts=PromptsConfig(**data.get("prompts", {})),
                loop=LoopConfig(**data.get("loop", {})),
                sync=SyncConfig(**data.get("sync", {})),
                convergence=ConvergenceConfig(**data.get("convergence", {})),
                sandbox=SandboxConfig(**data.get("sandbox", {})),
            )
        except TypeError as exc:
            raise ConfigError(
                f"Invalid configuration: {exc}",
                hint="Compare with the file written by: ralph init",
            ) from exc

    def to_dict(self) -> dict:
        return {
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "verbose": self.agent.verbose,
                "extra_args": list(self.agent.extra_args),
            },
            "prompts": {
                "build": self.prompts.build,
                "plan": self.prompts.plan,
                "plan_work": self.prompts.plan_work,
                "scope_variable": self.prompts.scope_variable,
            },
            "loop": {
                "plan_work_max_iterations": self.loop.plan_work_max_iterations,
                "protected_branches": list(self.loop.protected_branches),
                "terminate_grace_seconds": self.loop.terminate_grace_seconds,
            },
            "sync": {
                "enabled": self.sync.enabled,
                "remote": self.sync.remote,
            },
            "convergence": {
                "script": self.convergence.script,
                "interpreter": self.convergence.interpreter,
            },
            "sandbox": {
                "enabled": self.sandbox.enabled,
                "warning_delay_seconds": self.sandbox.warning_delay_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "prompts", "loop", "sync", "convergence", "sandbox"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(
            f"Could not read {path.name}: {exc}",
            hint=f"Fix or delete {path.name}, then run: ralph init",
        ) from exc
    return RalphConfig.from_dict(data)


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
