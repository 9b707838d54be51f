from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from taskloop.backends.base import BackendExecutionError, InvocationResult
from taskloop.backends.invoker import AgentInvoker
from taskloop.backlog import (
    AllBlocked,
    AllComplete,
    Backlog,
    BacklogStateError,
    BacklogStore,
    BacklogValidationError,
    ReadyTask,
    Task,
    append_progress,
    archive_previous_run,
    ensure_progress_log,
)
from taskloop.classifier import Outcome, classify
from taskloop.config import TaskloopConfig
from taskloop.prompts import build_completion_prompt, build_refine_prompt, build_task_prompt
from taskloop.repl import ReplController, ReplState, ReplStatus, ReplStateStore, complexity_reason
from taskloop.rotation import (
    Candidate,
    RotationState,
    exhausted_delay,
    load_rotation_state,
    record_outcome,
    reset_after_exhaustion,
    save_rotation_state,
    select_candidate,
)
from taskloop.state.git_sync import GitSynchronizer
from taskloop.state.store import StateStore, utcnow_iso
from taskloop.verification import VerificationRunner

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]


class PreflightError(RuntimeError):
    """Raised when no configured agent can be started."""


class StopReason(StrEnum):
    COMPLETED = "completed"
    RATE_LIMIT_STOPPED = "rate_limit_stopped"
    MAX_ITERATIONS = "max_iterations"
    BLOCKED = "blocked"


@dataclass(slots=True)
class RunSummary:
    stop_reason: StopReason
    iterations: int
    completed_tasks: int
    total_tasks: int
    started_at: str
    ended_at: str
    duration_seconds: float

    @property
    def exit_code(self) -> int:
        return 0 if self.stop_reason is StopReason.COMPLETED else 1


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class IterationDriver:
    def __init__(
        self,
        *,
        config: TaskloopConfig,
        repo_root: Path,
        backlog_store: BacklogStore,
        state: StateStore,
        invoker: AgentInvoker,
        git: GitSynchronizer,
        candidates: list[Candidate],
        verifier: VerificationRunner | None = None,
        repl_store: ReplStateStore | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.time,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.backlog_store = backlog_store
        self.state = state
        self.invoker = invoker
        self.git = git
        self.candidates = list(candidates)
        self.verifier = verifier or VerificationRunner(
            self.repo_root,
            test_command=config.project.test_command,
            lint_command=config.project.lint_command,
        )
        self.repl_store = repl_store or ReplStateStore(state.state_dir)
        self.sleep = sleep
        self.clock = clock

    @property
    def progress_path(self) -> Path:
        return self.repo_root / self.config.loop.progress_file

    @property
    def rotation_enabled(self) -> bool:
        return self.config.rotation.enabled

    @property
    def selection_threshold(self) -> int:
        if not self.rotation_enabled:
            return sys.maxsize
        return self.config.rotation.failure_threshold

    def _record_event(self, event: dict[str, Any]) -> None:
        self.state.record_event(event)

    def _preflight(self) -> None:
        availability = self.invoker.available_agents()
        wanted = {candidate.agent for candidate in self.candidates}
        missing = sorted(name for name in wanted if not availability.get(name, False))
        for name in missing:
            logger.warning("Agent %s is not installed or not on PATH", name)
        if wanted and len(missing) == len(wanted):
            raise PreflightError(
                "None of the configured agents are available: " + ", ".join(missing)
            )

    def _prepare(self, backlog: Backlog) -> None:
        archive_previous_run(
            backlog=backlog,
            backlog_path=self.backlog_store.path,
            progress_path=self.progress_path,
            archive_dir=self.repo_root / self.config.loop.archive_dir,
            state_dir=self.state.state_dir,
        )
        ensure_progress_log(self.progress_path, backlog.branch_name)
        self.repl_store.cleanup_stale(self.config.repl.retention_days, now=self.clock())

    def _reload_backlog(self, current: Backlog) -> Backlog:
        try:
            reloaded = self.backlog_store.load()
        except BacklogValidationError as exc:
            logger.warning("Backlog became invalid during the run (%s); restoring it", exc)
            self.backlog_store.save(current)
            return current
        if [(task.id, task.passes) for task in reloaded.tasks] != [
            (task.id, task.passes) for task in current.tasks
        ]:
            logger.info("Backlog changed on disk; using the reloaded version")
        return reloaded

    def _load_rotation(self) -> RotationState:
        return load_rotation_state(self.state, self.candidates)

    async def _invoke(self, candidate: Candidate, prompt: str) -> InvocationResult:
        try:
            return await self.invoker.invoke(candidate, prompt)
        except BackendExecutionError as exc:
            logger.error("Invocation of %s failed: %s", candidate.label, exc)
            return InvocationResult(raw_output=str(exc), exit_status=exc.exit_code or 1)

    def _record_rotation(
        self, candidate: Candidate, outcome: Outcome, task_id: str | None
    ) -> RotationState:
        rotation = record_outcome(
            self._load_rotation(),
            self.candidates,
            candidate,
            outcome,
            now=self.clock(),
            failure_threshold=self.config.rotation.failure_threshold,
            cooldown_seconds=self.config.rotation.rate_limit_cooldown_seconds,
            task_id=task_id,
        )
        save_rotation_state(self.state, rotation)
        return rotation

    async def _run_repl(self, backlog: Backlog, task: Task, candidate: Candidate) -> ReplState:
        controller = ReplController(
            store=self.repl_store,
            verifier=self.verifier,
            max_cycles=self.config.repl.max_cycles,
        )

        async def _refine(state: ReplState) -> Outcome:
            prompt = build_refine_prompt(
                backlog,
                task,
                state,
                backlog_path=self.backlog_store.path,
                progress_path=self.progress_path,
            )
            result = await self._invoke(candidate, prompt)
            outcome = classify(result.raw_output, result.exit_status, result.timed_out)
            self.backlog_store.restore_if_tampered(backlog)
            self._record_rotation(candidate, outcome, task.id)
            self._record_event(
                {
                    "event": "repl_refine",
                    "task_id": task.id,
                    "cycle": state.current_cycle,
                    "agent": candidate.agent,
                    "model": candidate.model,
                    "outcome": outcome.value,
                }
            )
            return outcome

        final = await controller.run(task.id, _refine)
        self._record_event(
            {
                "event": "repl_finished",
                "task_id": task.id,
                "status": final.status.value,
                "cycles": len(final.cycles),
            }
        )
        return final

    def _wants_repl(self, task: Task) -> bool:
        if not self.config.repl.enabled:
            return False
        reason = complexity_reason(task.description, len(task.acceptance_criteria))
        if reason:
            logger.info("Refinement loop enabled for %s: %s", task.id, reason)
        return reason is not None

    async def _apply_success(
        self, backlog: Backlog, task: Task, candidate: Candidate
    ) -> tuple[Backlog, list[Task]]:
        if self._wants_repl(task):
            final = await self._run_repl(backlog, task, candidate)
            if final.status is not ReplStatus.SUCCESS:
                logger.warning(
                    "Task %s left incomplete after refinement (%s)", task.id, final.status.value
                )
                self.git.commit_partial_progress(task, final.status.value)
                return backlog, []
            backlog = self.backlog_store.restore_if_tampered(backlog)
        try:
            updated = self.backlog_store.mark_passing(backlog, task.id)
        except BacklogStateError as exc:
            logger.error("Could not mark %s passing: %s", task.id, exc)
            return backlog, []
        return updated, [task]

    async def run(self) -> RunSummary:
        started_at = utcnow_iso()
        started = time.monotonic()
        backlog = self.backlog_store.load()
        self._preflight()
        self._prepare(backlog)
        logger.info(
            "Starting run for %s on %s: %d/%d tasks passing",
            backlog.project,
            backlog.branch_name,
            backlog.passing_count,
            len(backlog.tasks),
        )
        self._record_event(
            {
                "event": "run_started",
                "branch": backlog.branch_name,
                "passing": backlog.passing_count,
                "total": len(backlog.tasks),
            }
        )

        max_iterations = self.config.loop.max_iterations
        sentinel_seen = False
        iteration = 0
        stop_reason = StopReason.MAX_ITERATIONS

        while iteration < max_iterations:
            self.git.ensure_feature_branch(backlog.branch_name)

            backlog = self._reload_backlog(backlog)
            selection = backlog.next_ready_task()
            task: Task | None = None
            if isinstance(selection, AllBlocked):
                logger.warning(
                    "No task is ready; every remaining task is blocked: %s",
                    ", ".join(selection.pending),
                )
                stop_reason = StopReason.BLOCKED
                break
            if isinstance(selection, AllComplete):
                if sentinel_seen:
                    stop_reason = StopReason.COMPLETED
                    break
                logger.info("All tasks pass; asking the agent to confirm completion")
            elif isinstance(selection, ReadyTask):
                task = selection.task

            rotation = self._load_rotation()
            choice = select_candidate(
                rotation,
                self.candidates,
                now=self.clock(),
                failure_threshold=self.selection_threshold,
                strategy=self.config.rotation.strategy,
            )
            if not isinstance(choice, Candidate):
                if not self.rotation_enabled:
                    logger.error("The agent is rate limited and rotation is disabled; stopping")
                    stop_reason = StopReason.RATE_LIMIT_STOPPED
                    break
                delay = exhausted_delay(
                    rotation,
                    self.candidates,
                    now=self.clock(),
                    default_seconds=self.config.rotation.exhausted_sleep_seconds,
                )
                logger.warning("All agent candidates unavailable; sleeping %.0fs", delay)
                self._record_event({"event": "rotation_exhausted", "sleep_seconds": delay})
                await self.sleep(delay)
                save_rotation_state(
                    self.state,
                    reset_after_exhaustion(
                        self._load_rotation(),
                        self.candidates,
                        failure_threshold=self.config.rotation.failure_threshold,
                    ),
                )
                continue

            iteration += 1
            task_label = task.id if task else "completion-check"
            logger.info(
                "Iteration %d/%d: %s with %s", iteration, max_iterations, task_label, choice.label
            )
            if task is not None:
                prompt = build_task_prompt(
                    backlog,
                    task,
                    backlog_path=self.backlog_store.path,
                    progress_path=self.progress_path,
                )
            else:
                prompt = build_completion_prompt(
                    backlog,
                    backlog_path=self.backlog_store.path,
                    progress_path=self.progress_path,
                )

            passing_before = backlog.passing_count
            result = await self._invoke(choice, prompt)
            outcome = classify(result.raw_output, result.exit_status, result.timed_out)
            backlog = self.backlog_store.restore_if_tampered(backlog)
            self._record_rotation(choice, outcome, task.id if task else None)
            logger.info("Iteration %d outcome: %s", iteration, outcome.value)

            newly_passing: list[Task] = []
            if outcome is Outcome.RATE_LIMITED:
                logger.warning("%s is rate limited", choice.label)
                if not self.rotation_enabled:
                    stop_reason = StopReason.RATE_LIMIT_STOPPED
                    self._log_iteration(iteration, task_label, choice, outcome, result)
                    break
            elif outcome.is_success and task is not None:
                backlog, newly_passing = await self._apply_success(backlog, task, choice)

            if outcome is Outcome.COMPLETE:
                sentinel_seen = True

            self.git.sync_after_iteration(
                branch=backlog.branch_name,
                passing_before=passing_before,
                passing_after=backlog.passing_count,
                newly_passing=newly_passing,
            )
            self._log_iteration(iteration, task_label, choice, outcome, result)

            if sentinel_seen and backlog.is_complete:
                stop_reason = StopReason.COMPLETED
                break
            if outcome is Outcome.COMPLETE:
                logger.warning(
                    "Agent reported completion but %d task(s) are still incomplete; continuing",
                    len(backlog.tasks) - backlog.passing_count,
                )

            if iteration < max_iterations:
                await self.sleep(self.config.loop.iteration_pause_seconds)

        final_report = self.git.finalize(backlog, completed=stop_reason is StopReason.COMPLETED)
        summary = RunSummary(
            stop_reason=stop_reason,
            iterations=iteration,
            completed_tasks=backlog.passing_count,
            total_tasks=len(backlog.tasks),
            started_at=started_at,
            ended_at=utcnow_iso(),
            duration_seconds=time.monotonic() - started,
        )
        self._record_event(
            {
                "event": "run_finished",
                "stop_reason": stop_reason.value,
                "iterations": iteration,
                "passing": summary.completed_tasks,
                "total": summary.total_tasks,
                "pushed": final_report.pushed,
                "pr_created": final_report.pr_created,
            }
        )
        logger.info(
            "Run finished (%s) after %d iteration(s): %d/%d tasks passing",
            stop_reason.value,
            iteration,
            summary.completed_tasks,
            summary.total_tasks,
        )
        return summary

    def _log_iteration(
        self,
        iteration: int,
        task_label: str,
        candidate: Candidate,
        outcome: Outcome,
        result: InvocationResult,
    ) -> None:
        append_progress(
            self.progress_path,
            f"[{utcnow_iso()}] iteration {iteration} | {task_label} | {candidate.label} | "
            f"{outcome.value} | {format_duration(result.duration_seconds)}",
        )
        self._record_event(
            {
                "event": "iteration",
                "iteration": iteration,
                "task_id": task_label,
                "agent": candidate.agent,
                "model": candidate.model,
                "outcome": outcome.value,
                "exit_status": result.exit_status,
                "timed_out": result.timed_out,
            }
        )

    def status(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        try:
            backlog = self.backlog_store.load()
        except BacklogValidationError as exc:
            payload["backlog_error"] = str(exc)
        else:
            selection = backlog.next_ready_task()
            payload["backlog"] = {
                "project": backlog.project,
                "branch": backlog.branch_name,
                "passing": backlog.passing_count,
                "total": len(backlog.tasks),
                "next_task": selection.task.id if isinstance(selection, ReadyTask) else None,
                "all_complete": isinstance(selection, AllComplete),
                "blocked": isinstance(selection, AllBlocked),
            }
        now = self.clock()
        rotation = self._load_rotation()
        payload["rotation"] = {
            "pointer": rotation.pointer,
            "rotations_count": rotation.rotations_count,
            "rate_limits_count": rotation.rate_limits_count,
            "candidates": [
                {
                    "agent": candidate.agent,
                    "model": candidate.model,
                    "consecutive_failures": rotation.health_for(candidate).consecutive_failures,
                    "cooldown_remaining_seconds": max(
                        0, int((rotation.health_for(candidate).cooldown_until or now) - now)
                    ),
                }
                for candidate in self.candidates
            ],
        }
        payload["repl"] = [state.to_dict() for state in self.repl_store.list_states()]
        metrics = self.state.get_metrics()
        payload["counters"] = metrics.get("counters", {})
        payload["recent_events"] = list(metrics.get("events", []))[-10:]
        return payload
