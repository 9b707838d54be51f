from taskloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    InvocationResult,
)
from taskloop.backends.claude import ClaudeCodeBackend
from taskloop.backends.codex import CodexBackend
from taskloop.backends.copilot import CopilotBackend
from taskloop.backends.gemini import GeminiBackend
from taskloop.backends.invoker import BACKEND_TYPES, AgentInvoker, build_backends

__all__ = [
    "BACKEND_TYPES",
    "AgentBackend",
    "AgentInvoker",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CopilotBackend",
    "GeminiBackend",
    "InvocationResult",
    "build_backends",
]
