"""Agent candidate rotation.

Every function here is pure: it takes a :class:`RotationState` and returns a new
one. Persistence goes through :func:`load_rotation_state` and
:func:`save_rotation_state` so the driver can reload the state at the start of
each iteration and write it back after each outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from taskloop.classifier import Outcome
from taskloop.config import AgentsConfig
from taskloop.state.store import StateStore

logger = logging.getLogger(__name__)

MAX_TASK_ATTEMPTS = 50


@dataclass(slots=True, frozen=True)
class Candidate:
    agent: str
    model: str = ""

    @property
    def key(self) -> str:
        return f"{self.agent}|{self.model}"

    @property
    def label(self) -> str:
        return f"{self.agent}/{self.model}" if self.model else self.agent


class _Exhausted:
    _instance: _Exhausted | None = None

    def __new__(cls) -> _Exhausted:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "EXHAUSTED"

    def __bool__(self) -> bool:
        return False


EXHAUSTED = _Exhausted()


@dataclass(slots=True, frozen=True)
class CandidateHealth:
    consecutive_failures: int = 0
    cooldown_until: float | None = None
    last_used_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "cooldown_until": self.cooldown_until,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> CandidateHealth:
        if not isinstance(payload, dict):
            return cls()
        cooldown = payload.get("cooldown_until")
        last_used = payload.get("last_used_at")
        return cls(
            consecutive_failures=max(0, int(payload.get("consecutive_failures") or 0)),
            cooldown_until=float(cooldown) if cooldown is not None else None,
            last_used_at=float(last_used) if last_used is not None else None,
        )


@dataclass(slots=True, frozen=True)
class RotationState:
    pointer: int = 0
    health: dict[str, CandidateHealth] = field(default_factory=dict)
    rotations_count: int = 0
    rate_limits_count: int = 0
    task_attempts: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def health_for(self, candidate: Candidate) -> CandidateHealth:
        return self.health.get(candidate.key, CandidateHealth())

    def to_dict(self) -> dict[str, Any]:
        return {
            "pointer": self.pointer,
            "candidates": {key: value.to_dict() for key, value in self.health.items()},
            "rotations_count": self.rotations_count,
            "rate_limits_count": self.rate_limits_count,
            "task_attempts": {key: list(value) for key, value in self.task_attempts.items()},
        }

    @classmethod
    def from_dict(cls, payload: Any) -> RotationState:
        if not isinstance(payload, dict):
            return cls()
        raw_health = payload.get("candidates", {})
        health = {}
        if isinstance(raw_health, dict):
            health = {
                str(key): CandidateHealth.from_dict(value) for key, value in raw_health.items()
            }
        raw_attempts = payload.get("task_attempts", {})
        attempts: dict[str, list[dict[str, Any]]] = {}
        if isinstance(raw_attempts, dict):
            for task_id, items in raw_attempts.items():
                if isinstance(items, list):
                    attempts[str(task_id)] = [item for item in items if isinstance(item, dict)]
        return cls(
            pointer=max(0, int(payload.get("pointer") or 0)),
            health=health,
            rotations_count=int(payload.get("rotations_count") or 0),
            rate_limits_count=int(payload.get("rate_limits_count") or 0),
            task_attempts=attempts,
        )


def build_candidates(agents: AgentsConfig, *, rotation_enabled: bool = True) -> list[Candidate]:
    candidates: list[Candidate] = []
    for agent in agents.rotation:
        models = agents.models_for(agent) or [""]
        for model in models:
            candidate = Candidate(agent=agent, model=model)
            if candidate not in candidates:
                candidates.append(candidate)
    if not rotation_enabled:
        return candidates[:1]
    return candidates


def is_eligible(
    state: RotationState, candidate: Candidate, *, now: float, failure_threshold: int
) -> bool:
    health = state.health_for(candidate)
    if health.cooldown_until is not None and health.cooldown_until > now:
        return False
    return health.consecutive_failures < failure_threshold


def select_candidate(
    state: RotationState,
    candidates: list[Candidate],
    *,
    now: float,
    failure_threshold: int = 2,
    strategy: str = "sequential",
) -> Candidate | _Exhausted:
    if not candidates:
        return EXHAUSTED
    start = 0 if strategy == "priority" else state.pointer % len(candidates)
    for offset in range(len(candidates)):
        candidate = candidates[(start + offset) % len(candidates)]
        if is_eligible(state, candidate, now=now, failure_threshold=failure_threshold):
            return candidate
    return EXHAUSTED


def _advance_pointer(candidates: list[Candidate], candidate: Candidate) -> int:
    if candidate in candidates:
        return (candidates.index(candidate) + 1) % len(candidates)
    return 0


def record_outcome(
    state: RotationState,
    candidates: list[Candidate],
    candidate: Candidate,
    outcome: Outcome,
    *,
    now: float,
    failure_threshold: int = 2,
    cooldown_seconds: float = 300,
    task_id: str | None = None,
) -> RotationState:
    health = state.health_for(candidate)
    pointer = state.pointer
    rotations = state.rotations_count
    rate_limits = state.rate_limits_count

    if outcome.is_success:
        health = CandidateHealth(consecutive_failures=0, cooldown_until=None, last_used_at=now)
    elif outcome is Outcome.RATE_LIMITED:
        health = replace(health, cooldown_until=now + cooldown_seconds, last_used_at=now)
        pointer = _advance_pointer(candidates, candidate)
        rotations += 1
        rate_limits += 1
    else:
        failures = health.consecutive_failures + 1
        health = replace(health, consecutive_failures=failures, last_used_at=now)
        if failures >= failure_threshold:
            pointer = _advance_pointer(candidates, candidate)
            rotations += 1

    new_health = dict(state.health)
    new_health[candidate.key] = health
    attempts = state.task_attempts
    if task_id:
        attempts = {key: list(value) for key, value in state.task_attempts.items()}
        history = attempts.setdefault(task_id, [])
        history.append(
            {
                "agent": candidate.agent,
                "model": candidate.model,
                "outcome": outcome.value,
                "at": now,
            }
        )
        attempts[task_id] = history[-MAX_TASK_ATTEMPTS:]

    return RotationState(
        pointer=pointer,
        health=new_health,
        rotations_count=rotations,
        rate_limits_count=rate_limits,
        task_attempts=attempts,
    )


def exhausted_delay(
    state: RotationState,
    candidates: list[Candidate],
    *,
    now: float,
    default_seconds: float = 60,
) -> float:
    remaining = [
        health.cooldown_until - now
        for candidate in candidates
        if (health := state.health_for(candidate)).cooldown_until is not None
        and health.cooldown_until > now
    ]
    if not remaining:
        return float(default_seconds)
    return max(1.0, min(remaining))


def reset_after_exhaustion(
    state: RotationState, candidates: list[Candidate], *, failure_threshold: int = 2
) -> RotationState:
    new_health = dict(state.health)
    for candidate in candidates:
        health = state.health_for(candidate)
        if health.consecutive_failures >= failure_threshold:
            new_health[candidate.key] = replace(health, consecutive_failures=0)
    return replace(state, pointer=0, health=new_health)


def load_rotation_state(store: StateStore, candidates: list[Candidate]) -> RotationState:
    state = RotationState.from_dict(store.get_json("rotation", default={}))
    if candidates and state.pointer >= len(candidates):
        logger.debug("Rotation pointer %s outside candidate list; resetting", state.pointer)
        state = replace(state, pointer=0)
    return state


def save_rotation_state(store: StateStore, state: RotationState) -> None:
    store.set_json("rotation", state.to_dict())
