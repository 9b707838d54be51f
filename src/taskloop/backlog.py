from __future__ import annotations

import copy
import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskloop.state.store import write_json_atomic

logger = logging.getLogger(__name__)

REQUIRED_TOP_LEVEL_FIELDS = ("project", "branchName", "userStories")
REQUIRED_TASK_FIELDS = ("id", "title", "passes")


class BacklogValidationError(RuntimeError):
    """Raised when the backlog file is malformed or internally inconsistent."""


class BacklogStateError(RuntimeError):
    """Raised when a backlog mutation would break the dependency invariant."""


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    passes: bool = False
    blocked_by: list[str] = field(default_factory=list)
    priority: int | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any], position: int) -> Task:
        for key in REQUIRED_TASK_FIELDS:
            if key not in payload:
                raise BacklogValidationError(
                    f"Task at position {position} is missing required field '{key}'."
                )
        if not isinstance(payload["passes"], bool):
            raise BacklogValidationError(
                f"Task '{payload['id']}' has a non-boolean 'passes' value."
            )
        criteria = payload.get("acceptanceCriteria", [])
        blocked_by = payload.get("blockedBy", [])
        if not isinstance(criteria, list):
            raise BacklogValidationError(
                f"Task '{payload['id']}' has a non-list 'acceptanceCriteria'."
            )
        if not isinstance(blocked_by, list):
            raise BacklogValidationError(f"Task '{payload['id']}' has a non-list 'blockedBy'.")
        priority = payload.get("priority")
        if priority is not None:
            try:
                priority = int(priority)
            except (TypeError, ValueError) as exc:
                raise BacklogValidationError(
                    f"Task '{payload['id']}' has a non-integer priority: {priority!r}"
                ) from exc
        return cls(
            id=str(payload["id"]),
            title=str(payload["title"]),
            description=str(payload.get("description") or ""),
            acceptance_criteria=[str(item) for item in criteria],
            passes=payload["passes"],
            blocked_by=[str(item) for item in blocked_by],
            priority=priority,
        )


@dataclass(slots=True, frozen=True)
class ReadyTask:
    task: Task


@dataclass(slots=True, frozen=True)
class AllComplete:
    pass


@dataclass(slots=True, frozen=True)
class AllBlocked:
    pending: tuple[str, ...] = ()


Selection = ReadyTask | AllComplete | AllBlocked


@dataclass(slots=True)
class Backlog:
    project: str
    branch_name: str
    tasks: list[Task]
    description: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def passing_count(self) -> int:
        return sum(1 for task in self.tasks if task.passes)

    @property
    def is_complete(self) -> bool:
        return all(task.passes for task in self.tasks)

    def unknown_dependencies(self) -> dict[str, list[str]]:
        known = {task.id for task in self.tasks}
        missing: dict[str, list[str]] = {}
        for task in self.tasks:
            unknown = [dep for dep in task.blocked_by if dep not in known]
            if unknown:
                missing[task.id] = unknown
        return missing

    def ready_tasks(self) -> list[Task]:
        task_by_id = {task.id: task for task in self.tasks}
        ready: list[Task] = []
        for task in self.tasks:
            if task.passes:
                continue
            if all(
                dep_id in task_by_id and task_by_id[dep_id].passes for dep_id in task.blocked_by
            ):
                ready.append(task)
        return ready

    def next_ready_task(self) -> Selection:
        if self.is_complete:
            return AllComplete()
        ready = self.ready_tasks()
        if not ready:
            pending = tuple(task.id for task in self.tasks if not task.passes)
            return AllBlocked(pending=pending)
        position = {task.id: index for index, task in enumerate(self.tasks)}
        ready.sort(
            key=lambda task: (
                task.priority is None,
                task.priority if task.priority is not None else 0,
                position[task.id],
            )
        )
        return ReadyTask(task=ready[0])

    def dependency_violations(self) -> list[tuple[str, str]]:
        task_by_id = {task.id: task for task in self.tasks}
        violations: list[tuple[str, str]] = []
        for task in self.tasks:
            if not task.passes:
                continue
            for dep_id in task.blocked_by:
                dep = task_by_id.get(dep_id)
                if dep is None or not dep.passes:
                    violations.append((task.id, dep_id))
        return violations

    def find_cycle(self) -> list[str] | None:
        task_by_id = {task.id: task for task in self.tasks}
        visiting: set[str] = set()
        done: set[str] = set()
        path: list[str] = []

        def _visit(task_id: str) -> list[str] | None:
            if task_id in done or task_id not in task_by_id:
                return None
            if task_id in visiting:
                start = path.index(task_id)
                return path[start:] + [task_id]
            visiting.add(task_id)
            path.append(task_id)
            for dep_id in task_by_id[task_id].blocked_by:
                cycle = _visit(dep_id)
                if cycle:
                    return cycle
            path.pop()
            visiting.discard(task_id)
            done.add(task_id)
            return None

        for task in self.tasks:
            cycle = _visit(task.id)
            if cycle:
                return cycle
        return None

    def with_passing(self, task_id: str) -> Backlog:
        """Return a copy of the backlog with ``task_id`` marked as passing."""
        target = self.task(task_id)
        if target is None:
            raise BacklogStateError(f"Unknown task id: {task_id}")
        if target.passes:
            raise BacklogStateError(f"Task {task_id} is already passing.")
        blockers = [
            dep_id
            for dep_id in target.blocked_by
            if (dep := self.task(dep_id)) is None or not dep.passes
        ]
        if blockers:
            raise BacklogStateError(
                f"Task {task_id} cannot pass while dependencies are incomplete: "
                + ", ".join(blockers)
            )
        tasks = [
            Task(
                id=task.id,
                title=task.title,
                description=task.description,
                acceptance_criteria=list(task.acceptance_criteria),
                passes=True if task.id == task_id else task.passes,
                blocked_by=list(task.blocked_by),
                priority=task.priority,
            )
            for task in self.tasks
        ]
        return Backlog(
            project=self.project,
            branch_name=self.branch_name,
            tasks=tasks,
            description=self.description,
            raw=self.raw,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = copy.deepcopy(self.raw) if self.raw else {}
        payload["project"] = self.project
        payload["branchName"] = self.branch_name
        if self.description or "description" in payload:
            payload["description"] = self.description
        raw_stories = payload.get("userStories")
        raw_by_id: dict[str, dict[str, Any]] = {}
        if isinstance(raw_stories, list):
            for item in raw_stories:
                if isinstance(item, dict) and "id" in item:
                    raw_by_id[str(item["id"])] = item
        stories: list[dict[str, Any]] = []
        for task in self.tasks:
            story = dict(raw_by_id.get(task.id, {}))
            story["id"] = task.id
            story["title"] = task.title
            story["description"] = task.description
            story["acceptanceCriteria"] = list(task.acceptance_criteria)
            if task.priority is not None:
                story["priority"] = task.priority
            if task.blocked_by or "blockedBy" in story:
                story["blockedBy"] = list(task.blocked_by)
            story["passes"] = task.passes
            stories.append(story)
        payload["userStories"] = stories
        return payload


def parse_backlog(payload: Any) -> Backlog:
    if not isinstance(payload, dict):
        raise BacklogValidationError("Backlog must be a JSON object.")
    missing = [key for key in REQUIRED_TOP_LEVEL_FIELDS if key not in payload]
    if missing:
        raise BacklogValidationError(
            "Backlog is missing required field(s): " + ", ".join(missing)
        )
    stories = payload["userStories"]
    if not isinstance(stories, list):
        raise BacklogValidationError("'userStories' must be an array.")
    if not stories:
        raise BacklogValidationError("'userStories' is empty; nothing to work on.")
    tasks: list[Task] = []
    seen: set[str] = set()
    for position, item in enumerate(stories, start=1):
        if not isinstance(item, dict):
            raise BacklogValidationError(f"Task at position {position} is not an object.")
        task = Task.from_dict(item, position)
        if task.id in seen:
            raise BacklogValidationError(f"Duplicate task id: {task.id}")
        seen.add(task.id)
        tasks.append(task)

    backlog = Backlog(
        project=str(payload["project"]),
        branch_name=str(payload["branchName"]),
        tasks=tasks,
        description=str(payload.get("description") or ""),
        raw=copy.deepcopy(payload),
    )
    validate_backlog(backlog)
    return backlog


def validate_backlog(backlog: Backlog) -> None:
    if not backlog.branch_name.strip():
        raise BacklogValidationError("'branchName' must not be empty.")
    cycle = backlog.find_cycle()
    if cycle:
        raise BacklogValidationError("Dependency cycle detected: " + " -> ".join(cycle))
    violations = backlog.dependency_violations()
    if violations:
        details = ", ".join(f"{task_id} (blocked by {dep_id})" for task_id, dep_id in violations)
        raise BacklogValidationError(
            "Backlog is corrupt: tasks marked passing with incomplete dependencies: " + details
        )


class BacklogStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def _read_payload(self) -> Any:
        if not self.path.exists():
            raise BacklogValidationError(f"Backlog file not found: {self.path}")
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise BacklogValidationError(f"Backlog file is not valid JSON: {exc}") from exc

    def load(self) -> Backlog:
        backlog = parse_backlog(self._read_payload())
        for task_id, unknown in backlog.unknown_dependencies().items():
            logger.warning(
                "Task %s is blocked by unknown task id(s): %s", task_id, ", ".join(unknown)
            )
        return backlog

    def save(self, backlog: Backlog) -> None:
        validate_backlog(backlog)
        write_json_atomic(self.path, backlog.to_dict(), indent=2)

    def mark_passing(self, backlog: Backlog, task_id: str) -> Backlog:
        updated = backlog.with_passing(task_id)
        violations = updated.dependency_violations()
        if violations:
            raise BacklogStateError(
                f"Marking {task_id} passing would violate dependencies: {violations}"
            )
        self.save(updated)
        logger.info("Task %s marked passing", task_id)
        return updated

    def restore_if_tampered(self, backlog: Backlog) -> Backlog:
        """Rewrite the on-disk pass flags if an agent changed them."""
        try:
            on_disk = self._read_payload()
        except BacklogValidationError as exc:
            logger.warning("Backlog unreadable after agent run, restoring: %s", exc)
            self.save(backlog)
            return backlog

        disk_flags: dict[str, Any] = {}
        stories = on_disk.get("userStories") if isinstance(on_disk, dict) else None
        if isinstance(stories, list):
            for item in stories:
                if isinstance(item, dict) and "id" in item:
                    disk_flags[str(item["id"])] = item.get("passes")
        expected = {task.id: task.passes for task in backlog.tasks}
        if disk_flags == expected:
            try:
                return parse_backlog(on_disk)
            except BacklogValidationError as exc:
                logger.warning("Backlog became invalid after agent run, restoring: %s", exc)
                self.save(backlog)
                return backlog
        changed = sorted(
            task_id
            for task_id in set(expected) | set(disk_flags)
            if disk_flags.get(task_id) != expected.get(task_id)
        )
        logger.warning(
            "Backlog pass flags were changed outside the loop (%s); restoring", ", ".join(changed)
        )
        self.save(backlog)
        return backlog


def _branch_slug(branch_name: str) -> str:
    stripped = re.sub(r"^[A-Za-z0-9_-]+/", "", branch_name.strip())
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", stripped).strip("-")
    return slug or "run"


def progress_header(branch_name: str) -> str:
    started = datetime.now(UTC).replace(microsecond=0).isoformat()
    return f"# Progress log\nBranch: {branch_name}\nStarted: {started}\n---\n"


def ensure_progress_log(progress_path: Path, branch_name: str) -> None:
    if progress_path.exists():
        return
    progress_path.parent.mkdir(parents=True, exist_ok=True)
    progress_path.write_text(progress_header(branch_name), encoding="utf-8")


def append_progress(progress_path: Path, line: str) -> None:
    progress_path.parent.mkdir(parents=True, exist_ok=True)
    with progress_path.open("a", encoding="utf-8") as handle:
        handle.write(line.rstrip("\n") + "\n")


def archive_previous_run(
    *,
    backlog: Backlog,
    backlog_path: Path,
    progress_path: Path,
    archive_dir: Path,
    state_dir: Path,
    today: str | None = None,
) -> Path | None:
    """Archive the previous run's files when the backlog moved to a new branch.

    Returns the archive folder, or ``None`` when nothing was archived.
    """
    marker = state_dir / "last-branch"
    previous = marker.read_text(encoding="utf-8").strip() if marker.exists() else ""
    archived: Path | None = None
    if previous and previous != backlog.branch_name:
        date_part = today or datetime.now(UTC).strftime("%Y-%m-%d")
        archived = archive_dir / f"{date_part}-{_branch_slug(previous)}"
        archived.mkdir(parents=True, exist_ok=True)
        if backlog_path.exists():
            shutil.copy2(backlog_path, archived / backlog_path.name)
        if progress_path.exists():
            shutil.copy2(progress_path, archived / progress_path.name)
            progress_path.write_text(progress_header(backlog.branch_name), encoding="utf-8")
        logger.info("Archived previous run (%s) to %s", previous, archived)
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text(backlog.branch_name + "\n", encoding="utf-8")
    return archived
