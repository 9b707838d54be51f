from __future__ import annotations

from taskloop.backends.base import AgentBackend


class CodexBackend(AgentBackend):
    name = "codex"
    display_name = "Codex"
    default_binary = "codex"

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "exec"]
        if self.dangerous_permissions:
            command.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            command.append("--full-auto")
        if model and model.strip():
            command.extend(["-m", model.strip()])
        command.extend(["--skip-git-repo-check", prompt])
        return command
