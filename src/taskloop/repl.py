from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any

from taskloop.classifier import Outcome
from taskloop.state.store import utcnow_iso, write_json_atomic
from taskloop.verification import CycleResult, VerificationRunner

logger = logging.getLogger(__name__)

STUCK_THRESHOLD = 2
ACCEPTANCE_CRITERIA_THRESHOLD = 3

COMPLEXITY_PATTERN = re.compile(
    r"integration|refactor|migration|multi-step|complex|multiple files|across.*files"
    r"|end-to-end|full-stack|database.*and.*api|api.*and.*ui",
    re.IGNORECASE,
)
MULTI_LAYER_PATTERN = re.compile(
    r"frontend.*backend|client.*server|ui.*api|database.*migration",
    re.IGNORECASE,
)


class ReplStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL = "partial"
    STUCK = "stuck"

    @property
    def is_terminal(self) -> bool:
        return self is not ReplStatus.IN_PROGRESS


@dataclass(slots=True, frozen=True)
class ReplState:
    task_id: str
    started_at: str
    current_cycle: int = 1
    max_cycles: int = 3
    status: ReplStatus = ReplStatus.IN_PROGRESS
    last_test_result: bool | None = None
    last_lint_result: bool | None = None
    last_error_summary: str = ""
    stuck_count: int = 0
    cycles: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def start(cls, task_id: str, max_cycles: int = 3) -> ReplState:
        return cls(task_id=task_id, started_at=utcnow_iso(), max_cycles=max(1, max_cycles))

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "started_at": self.started_at,
            "current_cycle": self.current_cycle,
            "max_cycles": self.max_cycles,
            "status": self.status.value,
            "last_test_result": self.last_test_result,
            "last_lint_result": self.last_lint_result,
            "last_error_summary": self.last_error_summary,
            "stuck_count": self.stuck_count,
            "cycles": [dict(item) for item in self.cycles],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ReplState:
        cycles = payload.get("cycles", [])
        return cls(
            task_id=str(payload["task_id"]),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            current_cycle=int(payload.get("current_cycle") or 1),
            max_cycles=int(payload.get("max_cycles") or 3),
            status=ReplStatus(payload.get("status") or ReplStatus.IN_PROGRESS.value),
            last_test_result=payload.get("last_test_result"),
            last_lint_result=payload.get("last_lint_result"),
            last_error_summary=str(payload.get("last_error_summary") or ""),
            stuck_count=int(payload.get("stuck_count") or 0),
            cycles=tuple(item for item in cycles if isinstance(item, dict))
            if isinstance(cycles, list)
            else (),
        )


def should_enable_repl(description: str, acceptance_criteria_count: int) -> bool:
    return complexity_reason(description, acceptance_criteria_count) is not None


def complexity_reason(description: str, acceptance_criteria_count: int) -> str | None:
    if acceptance_criteria_count > ACCEPTANCE_CRITERIA_THRESHOLD:
        return f"{acceptance_criteria_count} acceptance criteria"
    match = COMPLEXITY_PATTERN.search(description)
    if match:
        return f"complexity keyword '{match.group(0)}'"
    match = MULTI_LAYER_PATTERN.search(description)
    if match:
        return f"multi-layer change '{match.group(0)}'"
    return None


def advance_repl(state: ReplState, result: CycleResult) -> ReplState:
    """Apply one verification result and return the next REPL state."""
    if state.status.is_terminal:
        return state

    summary = result.error_summary.strip()
    if summary and summary == state.last_error_summary:
        stuck_count = state.stuck_count + 1
    else:
        stuck_count = 0

    cycle_record = {
        "cycle": state.current_cycle,
        "test_passed": result.test_passed,
        "lint_passed": result.lint_passed,
        "error_summary": summary,
        "at": utcnow_iso(),
    }
    updated = replace(
        state,
        last_test_result=result.test_passed,
        last_lint_result=result.lint_passed,
        last_error_summary=summary,
        stuck_count=stuck_count,
        cycles=(*state.cycles, cycle_record),
    )

    if result.test_passed and result.lint_passed:
        return replace(updated, status=ReplStatus.SUCCESS)
    if stuck_count >= STUCK_THRESHOLD:
        return replace(updated, status=ReplStatus.STUCK)
    if state.current_cycle >= state.max_cycles:
        return replace(updated, status=ReplStatus.PARTIAL)
    return replace(updated, current_cycle=state.current_cycle + 1)


class ReplStateStore:
    def __init__(self, state_dir: Path) -> None:
        self.directory = state_dir / "repl"

    def path_for(self, task_id: str) -> Path:
        safe_id = re.sub(r"[^A-Za-z0-9._-]+", "_", task_id)
        return self.directory / f"{safe_id}.json"

    def save(self, state: ReplState) -> None:
        write_json_atomic(self.path_for(state.task_id), state.to_dict(), indent=2)

    def load(self, task_id: str) -> ReplState | None:
        path = self.path_for(task_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return ReplState.from_dict(payload)
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            logger.warning("Ignoring unreadable REPL state %s: %s", path, exc)
            return None

    def remove(self, task_id: str) -> None:
        self.path_for(task_id).unlink(missing_ok=True)

    def list_states(self) -> list[ReplState]:
        if not self.directory.exists():
            return []
        states: list[ReplState] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                states.append(ReplState.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (json.JSONDecodeError, KeyError, ValueError) as exc:
                logger.warning("Skipping unreadable REPL state %s: %s", path, exc)
        return states

    def cleanup_stale(self, retention_days: float, *, now: float | None = None) -> list[Path]:
        if not self.directory.exists():
            return []
        cutoff = (time.time() if now is None else now) - retention_days * 86400
        removed: list[Path] = []
        for path in self.directory.glob("*.json"):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        if removed:
            logger.info("Removed %d stale REPL state file(s)", len(removed))
        return removed


RefineCallback = Callable[[ReplState], Awaitable[Outcome]]


class ReplController:
    def __init__(
        self,
        *,
        store: ReplStateStore,
        verifier: VerificationRunner,
        max_cycles: int = 3,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.max_cycles = max_cycles

    async def run(self, task_id: str, refine: RefineCallback) -> ReplState:
        state = self.store.load(task_id)
        if state is None or state.status.is_terminal:
            state = ReplState.start(task_id, self.max_cycles)
        else:
            logger.info("Resuming REPL for %s at cycle %d", task_id, state.current_cycle)
        self.store.save(state)

        first_cycle = True
        while True:
            if not first_cycle:
                outcome = await refine(state)
                if not outcome.is_success:
                    logger.warning(
                        "REPL refinement for %s ended with %s; stopping at cycle %d",
                        task_id,
                        outcome.value,
                        state.current_cycle,
                    )
                    state = replace(state, status=ReplStatus.PARTIAL)
                    break
            first_cycle = False

            result = self.verifier.verify()
            state = advance_repl(state, result)
            self.store.save(state)
            if state.status.is_terminal:
                break
            logger.info(
                "REPL %s cycle %d/%d: retrying (%s)",
                task_id,
                state.current_cycle,
                state.max_cycles,
                state.last_error_summary.splitlines()[0] if state.last_error_summary else "",
            )

        logger.info("REPL %s finished: %s", task_id, state.status.value)
        self.store.remove(task_id)
        return state
