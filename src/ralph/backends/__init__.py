from ralph.backends.base import AgentBackend, BackendProcessError
from ralph.backends.claude import ClaudeCodeBackend
from ralph.backends.codex import CodexBackend
from ralph.config import AgentConfig

__all__ = [
    "AgentBackend",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "build_backend",
]


def build_backend(config: AgentConfig) -> AgentBackend:
    backend_cls: type[AgentBackend]
    if config.backend == "codex":
        backend_cls = CodexBackend
    else:
        backend_cls = ClaudeCodeBackend
    return backend_cls(
        config.binary or None,
        model=config.model or None,
        verbose=config.verbose,
        extra_args=config.extra_args,
    )
