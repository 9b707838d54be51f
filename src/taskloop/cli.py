from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click

from taskloop import __version__
from taskloop.backends import AgentBackend, AgentInvoker, build_backends
from taskloop.backlog import BacklogStore, BacklogValidationError
from taskloop.config import ConfigError, TaskloopConfig, load_config, save_config
from taskloop.driver import IterationDriver, PreflightError, StopReason, format_duration
from taskloop.rotation import Candidate, build_candidates
from taskloop.state import GitSynchronizer, StateStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskloopConfig
    state: StateStore
    backlog: BacklogStore
    git: GitSynchronizer
    candidates: list[Candidate]
    driver: IterationDriver


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def _add_log_file(log_file: Path) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _load_config_or_fail(config_path: Path) -> TaskloopConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_backends(config: TaskloopConfig, repo_root: Path) -> dict[str, AgentBackend]:
    return build_backends(
        list(config.agents.rotation),
        repo_root,
        dangerous_permissions=config.agents.dangerous_permissions,
    )


def _stream_output(text: str) -> None:
    click.echo(text, nl=False, err=True)


def _load_runtime(
    repo_root: Path,
    config: TaskloopConfig,
    config_path: Path,
    *,
    stream: bool = False,
) -> Runtime:
    state = StateStore(_resolve_path(repo_root, config.loop.state_dir))
    backlog = BacklogStore(_resolve_path(repo_root, config.loop.backlog_file))
    git = GitSynchronizer(repo_root, config.git, excluded_paths=[config.loop.state_dir])
    candidates = build_candidates(config.agents, rotation_enabled=config.rotation.enabled)
    invoker = AgentInvoker(
        _build_backends(config, repo_root),
        timeout_seconds=config.loop.agent_timeout_seconds,
        event_hook=state.record_event,
        output_hook=_stream_output if stream else None,
    )
    driver = IterationDriver(
        config=config,
        repo_root=repo_root,
        backlog_store=backlog,
        state=state,
        invoker=invoker,
        git=git,
        candidates=candidates,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        backlog=backlog,
        git=git,
        candidates=candidates,
        driver=driver,
    )


@click.group()
@click.version_option(__version__, prog_name="taskloop")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Drive coding agents through a task backlog."""
    _setup_logging(verbose)


@cli.command("init")
@click.option("--agent", "agents", multiple=True, help="Agent to rotate through (repeatable).")
@click.option("--config", "config_value", default="taskloop.toml", show_default=True)
def init_command(agents: tuple[str, ...], config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = _load_config_or_fail(config_path)
    if agents:
        config.agents.rotation = list(agents)
        try:
            config.validate()
        except ConfigError as exc:
            raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)

    state_dir = _resolve_path(repo_root, config.loop.state_dir)
    StateStore(state_dir)
    gitignore = repo_root / ".gitignore"
    entry = config.loop.state_dir.rstrip("/") + "/"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    if entry not in existing.splitlines():
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        gitignore.write_text(f"{existing}{prefix}{entry}\n", encoding="utf-8")

    click.echo(f"Initialized taskloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agents: {', '.join(config.agents.rotation)}")
    click.echo(f"Backlog: {config.loop.backlog_file}")


@cli.command("run")
@click.argument("max_iterations", type=click.IntRange(min=1), required=False)
@click.option("--timeout", "timeout_seconds", type=click.IntRange(min=0), default=None,
              help="Per-invocation agent timeout in seconds (0 disables).")
@click.option("--no-timeout", is_flag=True, default=False, help="Disable the agent timeout.")
@click.option("--backlog", "backlog_value", default=None, help="Path to the backlog JSON file.")
@click.option("--stream/--no-stream", default=True, show_default=True,
              help="Echo agent output live to stderr.")
@click.option("--config", "config_value", default="taskloop.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    max_iterations: int | None,
    timeout_seconds: int | None,
    no_timeout: bool,
    backlog_value: str | None,
    stream: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = _load_config_or_fail(config_path)
    if max_iterations is not None:
        config.loop.max_iterations = max_iterations
    if timeout_seconds is not None:
        config.loop.agent_timeout_seconds = timeout_seconds
    if no_timeout:
        config.loop.agent_timeout_seconds = 0
    if backlog_value:
        config.loop.backlog_file = backlog_value

    _add_log_file(_resolve_path(repo_root, config.loop.log_file))
    runtime = _load_runtime(repo_root, config, config_path, stream=stream)
    try:
        summary = asyncio.run(runtime.driver.run())
    except (BacklogValidationError, PreflightError) as exc:
        raise click.ClickException(str(exc)) from exc

    color = "green" if summary.stop_reason is StopReason.COMPLETED else "yellow"
    click.echo(click.style(f"Run {summary.stop_reason.value}", fg=color, bold=True))
    click.echo(f"Iterations: {summary.iterations}")
    click.echo(f"Tasks: {summary.completed_tasks}/{summary.total_tasks}")
    click.echo(f"Duration: {format_duration(summary.duration_seconds)}")
    if summary.stop_reason is StopReason.MAX_ITERATIONS:
        click.echo("Re-run `taskloop run` to continue where this run stopped.")
    ctx.exit(summary.exit_code)


@cli.command("status")
@click.option("--config", "config_value", default="taskloop.toml", show_default=True)
def status_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    runtime = _load_runtime(repo_root, _load_config_or_fail(config_path), config_path)
    payload = runtime.driver.status()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("candidates")
@click.option("--config", "config_value", default="taskloop.toml", show_default=True)
def candidates_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    runtime = _load_runtime(repo_root, _load_config_or_fail(config_path), config_path)
    availability = runtime.driver.invoker.available_agents()
    for index, candidate in enumerate(runtime.candidates, start=1):
        installed = "installed" if availability.get(candidate.agent) else "missing"
        click.echo(f"{index}. {candidate.label} ({installed})")
    if not runtime.config.rotation.enabled:
        click.echo("Rotation disabled: only the first candidate is used.")


@cli.command("reset-rotation")
@click.option("--config", "config_value", default="taskloop.toml", show_default=True)
def reset_rotation_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_path(repo_root, config_value))
    state = StateStore(_resolve_path(repo_root, config.loop.state_dir))
    state.clear("rotation")
    click.echo("Rotation state cleared.")


if __name__ == "__main__":
    cli()
