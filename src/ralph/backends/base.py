from __future__ import annotations

import shutil
from abc import ABC, abstractmethod


class BackendProcessError(RuntimeError):
    """Raised when the agent process cannot be started."""


class AgentBackend(ABC):
    name: str = "agent"
    default_binary: str = "agent"

    def __init__(
        self,
        binary: str | None = None,
        *,
        model: str | None = None,
        verbose: bool = False,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary or self.default_binary
        self.model = model
        self.verbose = verbose
        self.extra_args = list(extra_args or [])

    def resolve_binary(self) -> str | None:
        return shutil.which(self.binary)

    @abstractmethod
    def build_command(self, *, json_output: bool = False) -> list[str]:
        """Return the argv that runs one headless agent iteration reading stdin."""
