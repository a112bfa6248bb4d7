from __future__ import annotations

from ralph.backends.base import AgentBackend


class CodexBackend(AgentBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, *, json_output: bool = False) -> list[str]:
        command = [self.binary, "exec", "--dangerously-bypass-approvals-and-sandbox"]
        if json_output:
            command.append("--json")
        if self.model:
            command.extend(["-m", self.model])
        command.extend(self.extra_args)
        # "-" makes codex exec read the prompt from stdin.
        command.append("-")
        return command
