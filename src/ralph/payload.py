from __future__ import annotations

import re
from pathlib import Path

from ralph.config import ConfigError
from ralph.modes import Mode


class PayloadRenderer:
    """Loads the payload document for a mode, substituting the scope if any."""

    def __init__(self, path: Path, mode: Mode, *, scope_variable: str = "WORK_SCOPE") -> None:
        self.path = path
        self.mode = mode
        self.scope_variable = scope_variable
        name = re.escape(scope_variable)
        self._placeholder = re.compile(rf"\$(?:\{{{name}\}}|{name}(?![A-Za-z0-9_]))")

    def ensure_exists(self) -> None:
        if not self.path.is_file():
            raise ConfigError(
                f"{self.path.name} not found",
                hint=f"Create {self.path.name} in {self.path.parent}",
            )

    def substitutions(self) -> dict[str, str]:
        if self.mode.is_scoped and self.mode.scope is not None:
            return {self.scope_variable: self.mode.scope}
        return {}

    def render(self) -> str:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Could not read {self.path.name}: {exc}") from exc
        if not self.mode.is_scoped or self.mode.scope is None:
            return text
        scope = self.mode.scope
        return self._placeholder.sub(lambda _match: scope, text)
