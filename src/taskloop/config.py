from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentName = Literal["claude-code", "codex", "gemini", "copilot"]
RotationStrategy = Literal["sequential", "priority"]
PushTiming = Literal["iteration", "end"]
MergeMethod = Literal["squash", "merge", "rebase"]

AGENT_NAMES: tuple[str, ...] = ("claude-code", "codex", "gemini", "copilot")
ROTATION_STRATEGIES: tuple[str, ...] = ("sequential", "priority")
PUSH_TIMINGS: tuple[str, ...] = ("iteration", "end")
MERGE_METHODS: tuple[str, ...] = ("squash", "merge", "rebase")


class ConfigError(ValueError):
    """Raised when configuration values are out of range or unknown."""


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    lint_command: str = "ruff check ."


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 10
    agent_timeout_seconds: int = 7200
    iteration_pause_seconds: float = 2.0
    backlog_file: str = "prd.json"
    progress_file: str = "progress.txt"
    archive_dir: str = "archive"
    state_dir: str = ".taskloop"
    log_file: str = ".taskloop/taskloop.log"


@dataclass(slots=True)
class AgentsConfig:
    rotation: list[str] = field(default_factory=lambda: ["claude-code", "codex"])
    claude_code_models: list[str] = field(default_factory=lambda: ["claude-sonnet-4-5"])
    codex_models: list[str] = field(default_factory=lambda: ["gpt-5-codex"])
    gemini_models: list[str] = field(default_factory=lambda: ["gemini-2.5-pro"])
    copilot_models: list[str] = field(default_factory=list)
    dangerous_permissions: bool = True

    def models_for(self, agent: str) -> list[str]:
        mapping = {
            "claude-code": self.claude_code_models,
            "codex": self.codex_models,
            "gemini": self.gemini_models,
            "copilot": self.copilot_models,
        }
        return list(mapping.get(agent, []))


@dataclass(slots=True)
class RotationConfig:
    enabled: bool = True
    strategy: RotationStrategy = "sequential"
    failure_threshold: int = 2
    rate_limit_cooldown_seconds: int = 300
    exhausted_sleep_seconds: int = 60


@dataclass(slots=True)
class ReplConfig:
    enabled: bool = True
    max_cycles: int = 3
    retention_days: int = 1


@dataclass(slots=True)
class GitConfig:
    auto_checkout_branch: bool = True
    base_branch: str = "main"
    push_enabled: bool = False
    push_timing: PushTiming = "iteration"
    pr_enabled: bool = False
    pr_draft: bool = False
    auto_merge: bool = False
    merge_method: MergeMethod = "squash"


@dataclass(slots=True)
class TaskloopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    rotation: RotationConfig = field(default_factory=RotationConfig)
    repl: ReplConfig = field(default_factory=ReplConfig)
    git: GitConfig = field(default_factory=GitConfig)

    @classmethod
    def default(cls) -> TaskloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskloopConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                loop=LoopConfig(**data.get("loop", {})),
                agents=AgentsConfig(**data.get("agents", {})),
                rotation=RotationConfig(**data.get("rotation", {})),
                repl=ReplConfig(**data.get("repl", {})),
                git=GitConfig(**data.get("git", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if not self.agents.rotation:
            raise ConfigError("agents.rotation must list at least one agent.")
        unknown = [name for name in self.agents.rotation if name not in AGENT_NAMES]
        if unknown:
            raise ConfigError(
                f"Unknown agent(s) in agents.rotation: {', '.join(unknown)}. "
                f"Expected one of: {', '.join(AGENT_NAMES)}."
            )
        if self.rotation.strategy not in ROTATION_STRATEGIES:
            raise ConfigError(f"Unsupported rotation.strategy: {self.rotation.strategy}")
        if self.git.push_timing not in PUSH_TIMINGS:
            raise ConfigError(f"Unsupported git.push_timing: {self.git.push_timing}")
        if self.git.merge_method not in MERGE_METHODS:
            raise ConfigError(f"Unsupported git.merge_method: {self.git.merge_method}")
        if self.rotation.failure_threshold < 1:
            raise ConfigError("rotation.failure_threshold must be at least 1.")
        if self.repl.max_cycles < 1:
            raise ConfigError("repl.max_cycles must be at least 1.")
        if self.loop.max_iterations < 1:
            raise ConfigError("loop.max_iterations must be at least 1.")

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "agent_timeout_seconds": self.loop.agent_timeout_seconds,
                "iteration_pause_seconds": self.loop.iteration_pause_seconds,
                "backlog_file": self.loop.backlog_file,
                "progress_file": self.loop.progress_file,
                "archive_dir": self.loop.archive_dir,
                "state_dir": self.loop.state_dir,
                "log_file": self.loop.log_file,
            },
            "agents": {
                "rotation": list(self.agents.rotation),
                "claude_code_models": list(self.agents.claude_code_models),
                "codex_models": list(self.agents.codex_models),
                "gemini_models": list(self.agents.gemini_models),
                "copilot_models": list(self.agents.copilot_models),
                "dangerous_permissions": self.agents.dangerous_permissions,
            },
            "rotation": {
                "enabled": self.rotation.enabled,
                "strategy": self.rotation.strategy,
                "failure_threshold": self.rotation.failure_threshold,
                "rate_limit_cooldown_seconds": self.rotation.rate_limit_cooldown_seconds,
                "exhausted_sleep_seconds": self.rotation.exhausted_sleep_seconds,
            },
            "repl": {
                "enabled": self.repl.enabled,
                "max_cycles": self.repl.max_cycles,
                "retention_days": self.repl.retention_days,
            },
            "git": {
                "auto_checkout_branch": self.git.auto_checkout_branch,
                "base_branch": self.git.base_branch,
                "push_enabled": self.git.push_enabled,
                "push_timing": self.git.push_timing,
                "pr_enabled": self.git.pr_enabled,
                "pr_draft": self.git.pr_draft,
                "auto_merge": self.git.auto_merge,
                "merge_method": self.git.merge_method,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "loop", "agents", "rotation", "repl", "git"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskloopConfig:
    if not path.exists():
        return TaskloopConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return TaskloopConfig.from_dict(data)


def save_config(path: Path, config: TaskloopConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
