from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from taskloop.backends.base import (
    AgentBackend,
    BackendProcessError,
    InvocationResult,
    OutputHook,
)
from taskloop.backends.claude import ClaudeCodeBackend
from taskloop.backends.codex import CodexBackend
from taskloop.backends.copilot import CopilotBackend
from taskloop.backends.gemini import GeminiBackend
from taskloop.rotation import Candidate

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]

BACKEND_TYPES: dict[str, type[AgentBackend]] = {
    "claude-code": ClaudeCodeBackend,
    "codex": CodexBackend,
    "gemini": GeminiBackend,
    "copilot": CopilotBackend,
}


def build_backends(
    agent_names: list[str],
    working_directory: Path,
    *,
    dangerous_permissions: bool = True,
) -> dict[str, AgentBackend]:
    backends: dict[str, AgentBackend] = {}
    for name in agent_names:
        backend_type = BACKEND_TYPES.get(name)
        if backend_type is None:
            raise BackendProcessError(f"Unsupported agent: {name}", backend=name, retriable=False)
        backends[name] = backend_type(
            working_directory=working_directory,
            dangerous_permissions=dangerous_permissions,
        )
    return backends


class AgentInvoker:
    """Runs one candidate's backend under the configured time bound."""

    def __init__(
        self,
        backends: Mapping[str, AgentBackend],
        *,
        timeout_seconds: float = 7200,
        event_hook: BackendEventHook | None = None,
        output_hook: OutputHook | None = None,
    ) -> None:
        self.backends = dict(backends)
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook
        self.output_hook = output_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def backend_for(self, candidate: Candidate) -> AgentBackend:
        backend = self.backends.get(candidate.agent)
        if backend is None:
            raise BackendProcessError(
                f"No backend registered for agent '{candidate.agent}'.",
                backend=candidate.agent,
                retriable=False,
            )
        return backend

    def available_agents(self) -> dict[str, bool]:
        return {name: backend.is_available() for name, backend in self.backends.items()}

    async def invoke(self, candidate: Candidate, prompt: str) -> InvocationResult:
        backend = self.backend_for(candidate)
        self._emit(
            {
                "event": "agent_invocation_start",
                "agent": candidate.agent,
                "model": candidate.model,
                "timeout_seconds": self.timeout_seconds,
            }
        )
        logger.info("Invoking %s", candidate.label)
        result = await backend.invoke(
            prompt,
            model=candidate.model or None,
            timeout_seconds=self.timeout_seconds,
            output_hook=self.output_hook,
        )
        if result.timed_out:
            logger.warning(
                "%s timed out after %.0fs and was terminated",
                candidate.label,
                self.timeout_seconds,
            )
        self._emit(
            {
                "event": "agent_invocation_exit",
                "agent": candidate.agent,
                "model": candidate.model,
                "exit_status": result.exit_status,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 3),
                "output_chars": len(result.raw_output),
            }
        )
        return result
