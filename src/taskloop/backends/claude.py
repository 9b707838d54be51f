from __future__ import annotations

from taskloop.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude-code"
    display_name = "Claude Code"
    default_binary = "claude"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "--print"]
        if self.dangerous_permissions:
            command.append("--dangerously-skip-permissions")
        if model and model.strip():
            command.extend(["--model", model.strip()])
        command.append(prompt)
        return command
