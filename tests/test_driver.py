import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from taskloop.backends import AgentInvoker, InvocationResult
from taskloop.backends.base import AgentBackend
from taskloop.backlog import BacklogStore
from taskloop.config import TaskloopConfig
from taskloop.driver import IterationDriver, PreflightError, StopReason
from taskloop.repl import ReplStateStore
from taskloop.rotation import build_candidates, load_rotation_state
from taskloop.state import GitSynchronizer, StateStore
from taskloop.verification import CycleResult

DONE = "Implemented the story.\nTASKLOOP_COMPLETE\n"


class ScriptedBackend(AgentBackend):
    name = "claude-code"
    display_name = "Scripted agent"
    default_binary = "scripted-agent"

    def __init__(
        self,
        script: list[tuple[str, int]],
        *,
        available: bool = True,
        on_invoke: Callable[[], None] | None = None,
    ) -> None:
        super().__init__()
        self.script = list(script)
        self.available = available
        self.on_invoke = on_invoke
        self.prompts: list[str] = []
        self.models: list[str | None] = []

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        return [self.binary, prompt]

    def is_available(self) -> bool:
        return self.available

    async def invoke(self, prompt, *, model=None, timeout_seconds=None, output_hook=None):
        self.prompts.append(prompt)
        self.models.append(model)
        if self.on_invoke:
            self.on_invoke()
        output, status = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        return InvocationResult(raw_output=output, exit_status=status)


class ScriptedVerifier:
    def __init__(self, results: list[CycleResult]) -> None:
        self.results = list(results)

    def verify(self) -> CycleResult:
        return self.results.pop(0)


@dataclass
class Harness:
    driver: IterationDriver
    backend: ScriptedBackend
    backlog_path: Path
    state: StateStore
    sleeps: list[float] = field(default_factory=list)

    def run(self):
        return asyncio.run(self.driver.run())

    def on_disk(self) -> dict[str, Any]:
        return json.loads(self.backlog_path.read_text(encoding="utf-8"))


def _story(story_id: str, *, passes: bool = False, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": f"Add the {story_id} button",
        "acceptanceCriteria": ["button renders"],
        "passes": passes,
    }
    payload.update(extra)
    return payload


def _harness(
    tmp_path: Path,
    backend: ScriptedBackend,
    stories: list[dict[str, Any]],
    *,
    models: tuple[str, ...] = ("m1",),
    rotation: bool = True,
    max_iterations: int = 5,
    repl: bool = False,
    verifier: ScriptedVerifier | None = None,
) -> Harness:
    config = TaskloopConfig()
    config.agents.rotation = ["claude-code"]
    config.agents.claude_code_models = list(models)
    config.rotation.enabled = rotation
    config.loop.max_iterations = max_iterations
    config.loop.iteration_pause_seconds = 0
    config.repl.enabled = repl
    config.repl.max_cycles = 2
    config.project.test_command = ""
    config.project.lint_command = ""

    backlog_path = tmp_path / "prd.json"
    backlog_path.write_text(
        json.dumps({"project": "demo", "branchName": "taskloop/demo", "userStories": stories}),
        encoding="utf-8",
    )
    state = StateStore(tmp_path / ".taskloop")
    clock = [1000.0]
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock[0] += seconds

    driver = IterationDriver(
        config=config,
        repo_root=tmp_path,
        backlog_store=BacklogStore(backlog_path),
        state=state,
        invoker=AgentInvoker({"claude-code": backend}, event_hook=state.record_event),
        git=GitSynchronizer(tmp_path, config.git, excluded_paths=[".taskloop"]),
        candidates=build_candidates(config.agents, rotation_enabled=rotation),
        verifier=verifier,  # type: ignore[arg-type]
        repl_store=ReplStateStore(state.state_dir),
        sleep=_sleep,
        clock=lambda: clock[0],
    )
    return Harness(driver, backend, backlog_path, state, sleeps)


def test_completion_requires_sentinel_and_all_tasks_passing(tmp_path: Path) -> None:
    backend = ScriptedBackend([(DONE, 0)])
    harness = _harness(tmp_path, backend, [_story("US-001")])

    summary = harness.run()

    assert summary.stop_reason is StopReason.COMPLETED
    assert summary.exit_code == 0
    assert summary.iterations == 1
    assert harness.on_disk()["userStories"][0]["passes"] is True


def test_all_passing_without_sentinel_runs_completion_check(tmp_path: Path) -> None:
    backend = ScriptedBackend([("Implemented.", 0), (DONE, 0)])
    harness = _harness(tmp_path, backend, [_story("US-001")])

    summary = harness.run()

    assert summary.stop_reason is StopReason.COMPLETED
    assert summary.iterations == 2
    assert "US-001" in backend.prompts[0]


def test_false_completion_is_ignored(tmp_path: Path) -> None:
    backend = ScriptedBackend([(DONE, 0)])
    harness = _harness(tmp_path, backend, [_story("US-001"), _story("US-002")], max_iterations=1)

    summary = harness.run()

    assert summary.stop_reason is StopReason.MAX_ITERATIONS
    assert summary.completed_tasks == 1
    assert summary.exit_code == 1


def test_rate_limit_without_rotation_stops_the_run(tmp_path: Path) -> None:
    backend = ScriptedBackend([("Error: rate limit exceeded, try later", 1)])
    harness = _harness(tmp_path, backend, [_story("US-001")], rotation=False)

    summary = harness.run()

    assert summary.stop_reason is StopReason.RATE_LIMIT_STOPPED
    assert summary.iterations == 1
    assert summary.exit_code == 1
    assert harness.on_disk()["userStories"][0]["passes"] is False


def test_max_iterations_stops_a_failing_agent(tmp_path: Path) -> None:
    backend = ScriptedBackend([("Traceback: boom", 1)])
    harness = _harness(tmp_path, backend, [_story("US-001")], rotation=False, max_iterations=3)

    summary = harness.run()

    assert summary.stop_reason is StopReason.MAX_ITERATIONS
    assert summary.iterations == 3
    assert len(backend.prompts) == 3
    progress = (tmp_path / "progress.txt").read_text(encoding="utf-8")
    assert "iteration 3 | US-001" in progress


def test_two_errors_rotate_to_next_model(tmp_path: Path) -> None:
    backend = ScriptedBackend([("boom", 1), ("boom", 1), (DONE, 0)])
    harness = _harness(tmp_path, backend, [_story("US-001")], models=("m1", "m2"))

    summary = harness.run()

    assert summary.stop_reason is StopReason.COMPLETED
    assert backend.models == ["m1", "m1", "m2"]
    candidates = harness.driver.candidates
    assert load_rotation_state(harness.state, candidates).rotations_count == 1


def test_exhausted_candidates_sleep_until_cooldown_expires(tmp_path: Path) -> None:
    backend = ScriptedBackend([("429 Too Many Requests", 1), (DONE, 0)])
    harness = _harness(tmp_path, backend, [_story("US-001")])

    summary = harness.run()

    assert summary.stop_reason is StopReason.COMPLETED
    assert summary.iterations == 2
    assert 300.0 in harness.sleeps
    assert harness.state.get_metrics()["counters"]["rotation_exhausted"] == 1


def test_resumes_from_first_incomplete_task(tmp_path: Path) -> None:
    backend = ScriptedBackend([(DONE, 0)])
    stories = [_story("US-001", passes=True), _story("US-002", blockedBy=["US-001"])]
    harness = _harness(tmp_path, backend, stories)

    summary = harness.run()

    assert summary.stop_reason is StopReason.COMPLETED
    assert "US-002" in backend.prompts[0]
    assert [story["passes"] for story in harness.on_disk()["userStories"]] == [True, True]


def test_agent_edits_to_pass_flags_are_reverted(tmp_path: Path) -> None:
    backlog_path = tmp_path / "prd.json"

    def _tamper() -> None:
        payload = json.loads(backlog_path.read_text(encoding="utf-8"))
        for story in payload["userStories"]:
            story["passes"] = True
        backlog_path.write_text(json.dumps(payload), encoding="utf-8")

    backend = ScriptedBackend([("could not finish", 1)], on_invoke=_tamper)
    harness = _harness(tmp_path, backend, [_story("US-001")], max_iterations=1)

    summary = harness.run()

    assert summary.stop_reason is StopReason.MAX_ITERATIONS
    assert harness.on_disk()["userStories"][0]["passes"] is False


def test_blocked_backlog_stops_without_invoking(tmp_path: Path) -> None:
    backend = ScriptedBackend([(DONE, 0)])
    harness = _harness(tmp_path, backend, [_story("US-001", blockedBy=["US-404"])])

    summary = harness.run()

    assert summary.stop_reason is StopReason.BLOCKED
    assert summary.iterations == 0
    assert backend.prompts == []


def test_partial_refinement_keeps_task_incomplete(tmp_path: Path) -> None:
    backend = ScriptedBackend([("Implemented.", 0), ("Refined.", 0)])
    verifier = ScriptedVerifier(
        [
            CycleResult(test_passed=False, lint_passed=True, error_summary="error A"),
            CycleResult(test_passed=False, lint_passed=True, error_summary="error B"),
        ]
    )
    story = _story(
        "US-001",
        acceptanceCriteria=["form renders", "validation", "submit works", "error shown"],
    )
    harness = _harness(
        tmp_path, backend, [story], max_iterations=1, repl=True, verifier=verifier
    )

    summary = harness.run()

    assert summary.completed_tasks == 0
    assert harness.on_disk()["userStories"][0]["passes"] is False
    assert len(backend.prompts) == 2
    assert "Cycle 2 of 2" in backend.prompts[1]
    counters = harness.state.get_metrics()["counters"]
    assert counters["repl_finished"] == 1
    assert ReplStateStore(harness.state.state_dir).list_states() == []


def test_preflight_fails_when_no_agent_is_installed(tmp_path: Path) -> None:
    backend = ScriptedBackend([(DONE, 0)], available=False)
    harness = _harness(tmp_path, backend, [_story("US-001")])

    with pytest.raises(PreflightError, match="None of the configured agents"):
        harness.run()


def test_status_reports_backlog_and_rotation(tmp_path: Path) -> None:
    backend = ScriptedBackend([("boom", 1)])
    harness = _harness(tmp_path, backend, [_story("US-001"), _story("US-002")], max_iterations=1)
    harness.run()

    status = harness.driver.status()

    assert status["backlog"]["passing"] == 0
    assert status["backlog"]["next_task"] == "US-001"
    assert status["rotation"]["candidates"][0]["consecutive_failures"] == 1
    assert status["counters"]["iteration"] == 1
    assert status["recent_events"][-1]["event"] == "run_finished"
