from __future__ import annotations

from ralph.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, *, json_output: bool = False) -> list[str]:
        # -p reads the prompt from stdin when no prompt argument is given.
        command = [self.binary, "-p", "--dangerously-skip-permissions"]
        if json_output:
            command.append("--output-format=stream-json")
        if self.model:
            command.extend(["--model", self.model])
        if self.verbose:
            command.append("--verbose")
        command.extend(self.extra_args)
        return command
