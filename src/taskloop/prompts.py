from __future__ import annotations

from pathlib import Path

from taskloop.backlog import Backlog, Task
from taskloop.classifier import COMPLETION_SENTINEL
from taskloop.repl import ReplState


def _completion_instruction() -> str:
    return (
        "When every task in the backlog is complete and verified, print the token "
        f"{COMPLETION_SENTINEL} by itself on a single line as the last line of your reply. "
        "Never print it otherwise."
    )


def _backlog_rules(backlog_path: Path, progress_path: Path) -> list[str]:
    return [
        "Rules:",
        f"- The backlog lives in {backlog_path.name}. Read it, but do not change any "
        "'passes' flag; the loop records task completion itself.",
        f"- Append a short note about what you did and what you learned to {progress_path.name}.",
        "- Keep changes focused on this task and leave the repository in a working state.",
        "- Commit your work with a descriptive message when the task is done.",
    ]


def build_task_prompt(
    backlog: Backlog,
    task: Task,
    *,
    backlog_path: Path,
    progress_path: Path,
) -> str:
    lines = [
        f"You are working on the project '{backlog.project}' on branch '{backlog.branch_name}'.",
        "",
        f"Current task: {task.id} - {task.title}",
    ]
    if task.description:
        lines.extend(["", task.description])
    if task.acceptance_criteria:
        lines.extend(["", "Acceptance criteria:"])
        lines.extend(f"- {item}" for item in task.acceptance_criteria)
    remaining = [item.id for item in backlog.tasks if not item.passes and item.id != task.id]
    lines.extend(
        [
            "",
            f"Progress: {backlog.passing_count}/{len(backlog.tasks)} tasks passing.",
            "Other unfinished tasks: " + (", ".join(remaining) if remaining else "none"),
            "",
            *_backlog_rules(backlog_path, progress_path),
            "",
            _completion_instruction(),
        ]
    )
    return "\n".join(lines)


def build_completion_prompt(
    backlog: Backlog, *, backlog_path: Path, progress_path: Path
) -> str:
    lines = [
        f"You are working on the project '{backlog.project}' on branch '{backlog.branch_name}'.",
        "",
        f"All {len(backlog.tasks)} backlog tasks are recorded as passing.",
        "Review the repository: run the tests and linters and confirm each task's acceptance "
        "criteria are met. Fix anything that is broken and commit the fix.",
        "",
        *_backlog_rules(backlog_path, progress_path),
        "",
        _completion_instruction(),
    ]
    return "\n".join(lines)


def repl_status_block(state: ReplState) -> str:
    def _result(value: bool | None) -> str:
        if value is None:
            return "not run"
        return "passed" if value else "failed"

    lines = [
        "## Refinement status",
        f"Cycle {state.current_cycle} of {state.max_cycles} for task {state.task_id}.",
        f"Tests: {_result(state.last_test_result)}. Lint: {_result(state.last_lint_result)}.",
    ]
    if state.last_error_summary:
        lines.extend(["Last failure output:", "```", state.last_error_summary, "```"])
    if state.stuck_count:
        lines.append(
            "The same failure repeated on the previous cycle. Try a different approach "
            "instead of repeating the last change."
        )
    lines.append("Fix the failures above, then re-run the tests and linters before finishing.")
    return "\n".join(lines)


def build_refine_prompt(
    backlog: Backlog,
    task: Task,
    state: ReplState,
    *,
    backlog_path: Path,
    progress_path: Path,
) -> str:
    base = build_task_prompt(
        backlog, task, backlog_path=backlog_path, progress_path=progress_path
    )
    return f"{repl_status_block(state)}\n\n{base}"
