from __future__ import annotations

from taskloop.backends.base import AgentBackend


class GeminiBackend(AgentBackend):
    name = "gemini"
    display_name = "Gemini CLI"
    default_binary = "gemini"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary]
        if model and model.strip():
            command.extend(["--model", model.strip()])
        if self.dangerous_permissions:
            command.append("--yolo")
        command.extend(["--prompt", prompt])
        return command
