from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
VOLATILE_PATTERN = re.compile(
    r"\b\d+(?:\.\d+)?\s*(?:s|ms|sec|seconds)\b"
    r"|\b0x[0-9a-f]+\b"
    r"|\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?",
    re.IGNORECASE,
)
ERROR_SUMMARY_LIMIT = 600


@dataclass(slots=True)
class CycleResult:
    test_passed: bool
    lint_passed: bool
    error_summary: str = ""
    test_output: str = ""
    lint_output: str = ""


def normalize_error_summary(text: str) -> str:
    """Reduce failing output to a signature that is stable across reruns."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    tail = "\n".join(lines[-12:])
    tail = VOLATILE_PATTERN.sub("<n>", tail)
    tail = re.sub(r"[ \t]+", " ", tail)
    return tail[-ERROR_SUMMARY_LIMIT:]


class VerificationRunner:
    def __init__(self, repo_root: Path, *, test_command: str, lint_command: str) -> None:
        self.repo_root = repo_root.resolve()
        self.test_command = test_command
        self.lint_command = lint_command

    def _run_command(self, command: str) -> dict[str, Any]:
        command_text = command.strip()
        if not command_text:
            return {
                "command": command,
                "exit_code": 0,
                "output_tail": "",
                "skipped": True,
            }

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        try:
            proc = subprocess.run(
                command_payload,
                cwd=self.repo_root,
                shell=used_shell,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            return {
                "command": command,
                "exit_code": 127,
                "output_tail": f"Command not found: {exc.filename or command_text}",
                "skipped": False,
            }
        combined = "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)
        return {
            "command": command,
            "exit_code": proc.returncode,
            "output_tail": combined[-2000:],
            "skipped": False,
        }

    def verify(self) -> CycleResult:
        test = self._run_command(self.test_command)
        lint = self._run_command(self.lint_command)
        test_passed = test["exit_code"] == 0
        lint_passed = lint["exit_code"] == 0
        failures: list[str] = []
        if not test_passed:
            failures.append(f"tests: {test['output_tail']}")
        if not lint_passed:
            failures.append(f"lint: {lint['output_tail']}")
        summary = normalize_error_summary("\n".join(failures)) if failures else ""
        logger.info(
            "Verification: tests %s, lint %s",
            "passed" if test_passed else "failed",
            "passed" if lint_passed else "failed",
        )
        return CycleResult(
            test_passed=test_passed,
            lint_passed=lint_passed,
            error_summary=summary,
            test_output=test["output_tail"],
            lint_output=lint["output_tail"],
        )
