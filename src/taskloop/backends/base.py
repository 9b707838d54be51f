from __future__ import annotations

import asyncio
import codecs
import shutil
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from taskloop.classifier import TIMEOUT_EXIT_STATUS

OutputHook = Callable[[str], None]

READ_CHUNK_SIZE = 65536


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class InvocationResult:
    raw_output: str
    exit_status: int
    timed_out: bool = False
    duration_seconds: float = 0.0


class AgentBackend(ABC):
    name: str = "agent"
    display_name: str = "Agent"
    default_binary: str = ""

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        *,
        dangerous_permissions: bool = True,
    ) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory
        self.dangerous_permissions = dangerous_permissions

    @abstractmethod
    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        """Return the argv used to run one prompt."""

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    async def invoke(
        self,
        prompt: str,
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
        output_hook: OutputHook | None = None,
    ) -> InvocationResult:
        command = self.build_command(prompt, model)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise BackendProcessError(
                f"{self.display_name} could not be started ({self.binary}): {exc}",
                backend=self.name,
                retriable=False,
            ) from exc

        stdout = process.stdout
        if stdout is None:
            raise BackendProcessError(
                f"{self.display_name} backend did not expose stdout.",
                backend=self.name,
                retriable=False,
            )

        chunks: list[str] = []
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def _collect(text: str) -> None:
            if not text:
                return
            chunks.append(text)
            if output_hook:
                output_hook(text)

        async def _pump() -> int:
            while True:
                data = await stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                _collect(decoder.decode(data))
            _collect(decoder.decode(b"", final=True))
            return await process.wait()

        timed_out = False
        try:
            if timeout_seconds and timeout_seconds > 0:
                exit_status = await asyncio.wait_for(_pump(), timeout=timeout_seconds)
            else:
                exit_status = await _pump()
        except TimeoutError:
            timed_out = True
            if process.returncode is None:
                process.kill()
            await process.wait()
            exit_status = TIMEOUT_EXIT_STATUS

        return InvocationResult(
            raw_output="".join(chunks),
            exit_status=exit_status,
            timed_out=timed_out,
            duration_seconds=time.monotonic() - started,
        )
