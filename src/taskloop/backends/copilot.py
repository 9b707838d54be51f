from __future__ import annotations

from taskloop.backends.base import AgentBackend


class CopilotBackend(AgentBackend):
    name = "copilot"
    display_name = "GitHub Copilot CLI"
    default_binary = "copilot"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "-p", prompt]
        if self.dangerous_permissions:
            command.append("--allow-all-tools")
        if model and model.strip() and model.strip() != "auto":
            command.extend(["--model", model.strip()])
        return command
