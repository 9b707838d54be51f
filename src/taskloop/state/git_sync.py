from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from taskloop.config import GitConfig

if TYPE_CHECKING:
    from taskloop.backlog import Backlog, Task

logger = logging.getLogger(__name__)


class GitSyncError(RuntimeError):
    """Raised when a git or gh command fails."""


@dataclass(slots=True)
class SyncReport:
    committed: bool = False
    commit_message: str | None = None
    pushed: bool | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FinalizeReport:
    pushed: bool | None = None
    pr_created: bool | None = None
    pr_url: str | None = None
    merged: bool | None = None
    warnings: list[str] = field(default_factory=list)


class GitSynchronizer:
    def __init__(
        self,
        repo_root: Path,
        config: GitConfig,
        *,
        excluded_paths: Sequence[str] = (),
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.excluded_paths = [path.rstrip("/") for path in excluded_paths if path.strip()]
        self._git_enabled = self._is_git_repo()
        self._last_push_ok: bool | None = None

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    @property
    def last_push_ok(self) -> bool | None:
        return self._last_push_ok

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise GitSyncError("No git repository found. Git synchronization is disabled.")
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitSyncError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _run_gh(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if shutil.which("gh") is None:
            raise GitSyncError("GitHub CLI (gh) not found in PATH.")
        proc = subprocess.run(
            ["gh", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitSyncError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _warn(self, report: SyncReport | FinalizeReport, message: str) -> None:
        logger.warning(message)
        report.warnings.append(message)

    def _is_excluded(self, path: str) -> bool:
        normalized = path.replace("\\", "/").rstrip("/")
        return any(
            normalized == excluded or normalized.startswith(f"{excluded}/")
            for excluded in self.excluded_paths
        )

    def dirty_paths(self) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(
            ["status", "--porcelain", "-z", "--untracked-files=all"], check=True
        )
        entries = iter(proc.stdout.split("\0"))
        paths: list[str] = []
        for entry in entries:
            if len(entry) < 4:
                continue
            status, path = entry[:2], entry[3:]
            if "R" in status or "C" in status:
                # -z lists the rename source as a separate entry
                next(entries, None)
            if not self._is_excluded(path):
                paths.append(path)
        return paths

    def is_dirty(self) -> bool:
        return bool(self.dirty_paths())

    def current_branch(self) -> str:
        if not self.git_enabled:
            return "no-git"
        proc = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if proc.returncode != 0:
            return "HEAD"
        return proc.stdout.strip()

    def _local_branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def has_remote(self, remote: str = "origin") -> bool:
        if not self.git_enabled:
            return False
        return self._run_git(["remote", "get-url", remote], check=False).returncode == 0

    def _remote_branch_exists(self, branch: str) -> bool:
        if not self.has_remote():
            return False
        proc = self._run_git(["ls-remote", "--exit-code", "--heads", "origin", branch], check=False)
        return proc.returncode == 0

    def commit_all(self, message: str) -> bool:
        paths = self.dirty_paths()
        if not paths:
            return False
        # Staging the filtered paths keeps the state directory out of the index
        # whether or not it is gitignored.
        try:
            self._run_git(["add", "-A", "--", *paths], check=True)
            staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
            if staged.returncode == 0:
                return False
            self._run_git(["commit", "-m", message], check=True)
        except GitSyncError:
            self._run_git(["reset", "-q"], check=False)
            raise
        logger.info("Committed: %s", message)
        return True

    def ensure_feature_branch(self, branch: str) -> bool:
        """Put HEAD on ``branch``, committing stray work on the old branch first."""
        if not self.git_enabled or not self.config.auto_checkout_branch:
            return False
        current = self.current_branch()
        if current == branch:
            return True

        try:
            if self.is_dirty():
                self.commit_all(
                    f"chore: recover uncommitted work from {current} before switching to {branch}"
                )
            if self._local_branch_exists(branch):
                self._run_git(["checkout", branch], check=True)
            elif self._remote_branch_exists(branch):
                self._run_git(["fetch", "origin", branch], check=True)
                self._run_git(["checkout", "-b", branch, "--track", f"origin/{branch}"], check=True)
            else:
                self._run_git(["checkout", "-b", branch, self._branch_start_point()], check=True)
        except GitSyncError as exc:
            logger.warning("Could not switch to feature branch %s: %s", branch, exc)
            return False
        logger.info("Switched to feature branch %s", branch)
        return True

    def _branch_start_point(self) -> str:
        base = self.config.base_branch
        if self._remote_branch_exists(base):
            self._run_git(["fetch", "origin", base], check=False)
            return f"origin/{base}"
        if self._local_branch_exists(base):
            return base
        return "HEAD"

    def _ahead_of_remote(self, branch: str) -> bool:
        proc = self._run_git(["rev-list", "--count", f"origin/{branch}..{branch}"], check=False)
        if proc.returncode != 0:
            return True
        return proc.stdout.strip() != "0"

    def push(self, branch: str) -> bool:
        if not self.git_enabled:
            return False
        manual = f"Push manually with: git push -u origin {branch}"
        if not self.has_remote():
            logger.warning("No 'origin' remote configured; skipping push. %s", manual)
            self._last_push_ok = False
            return False
        proc = self._run_git(["push", "-u", "origin", branch], check=False)
        if proc.returncode != 0:
            logger.warning(
                "Push of %s failed: %s. %s", branch, (proc.stderr or proc.stdout).strip(), manual
            )
            self._last_push_ok = False
            return False
        self._last_push_ok = True
        logger.info("Pushed %s to origin", branch)
        return True

    def sync_after_iteration(
        self,
        *,
        branch: str,
        passing_before: int,
        passing_after: int,
        newly_passing: Sequence[Task] = (),
    ) -> SyncReport:
        report = SyncReport()
        if not self.git_enabled:
            return report
        progressed = passing_after > passing_before
        try:
            dirty = self.is_dirty()
            if progressed and dirty:
                message = self._progress_message(newly_passing)
                report.committed = self.commit_all(message)
                report.commit_message = message if report.committed else None
            elif dirty:
                self._warn(
                    report,
                    "Uncommitted changes left after an iteration without task progress; "
                    "leaving them for the next iteration.",
                )
        except GitSyncError as exc:
            self._warn(report, f"Safety-net commit failed: {exc}")

        if progressed and self.config.push_enabled and self.config.push_timing == "iteration":
            report.pushed = self.push(branch)
        return report

    @staticmethod
    def _progress_message(newly_passing: Sequence[Task]) -> str:
        if not newly_passing:
            return "feat: task progress"
        if len(newly_passing) == 1:
            task = newly_passing[0]
            return f"feat: {task.id} - {task.title}"
        return "feat: " + ", ".join(task.id for task in newly_passing)

    def commit_partial_progress(self, task: Task, status: str) -> bool:
        if not self.git_enabled:
            return False
        try:
            return self.commit_all(f"wip: {task.id} - {task.title} (refinement {status})")
        except GitSyncError as exc:
            logger.warning("Could not commit partial progress for %s: %s", task.id, exc)
            return False

    def _pr_title(self, backlog: Backlog) -> str:
        name = backlog.branch_name
        if "/" in name:
            name = name.split("/", maxsplit=1)[1]
        title = name.replace("-", " ").replace("_", " ").strip()
        return title[:1].upper() + title[1:] if title else backlog.project

    def _pr_body(self, backlog: Backlog) -> str:
        lines = [f"## {backlog.project}", ""]
        if backlog.description:
            lines.extend([backlog.description, ""])
        lines.append("### Completed tasks")
        for task in backlog.tasks:
            marker = "x" if task.passes else " "
            lines.append(f"- [{marker}] {task.id}: {task.title}")
        return "\n".join(lines) + "\n"

    def create_pull_request(self, backlog: Backlog) -> tuple[bool, str | None]:
        branch = backlog.branch_name
        existing = self._run_gh(
            ["pr", "view", branch, "--json", "url", "--jq", ".url"], check=False
        )
        if existing.returncode == 0 and existing.stdout.strip():
            logger.info("Pull request already exists: %s", existing.stdout.strip())
            return True, existing.stdout.strip()
        self._run_gh(["auth", "status"], check=True)
        args = [
            "pr",
            "create",
            "--base",
            self.config.base_branch,
            "--head",
            branch,
            "--title",
            self._pr_title(backlog),
            "--body",
            self._pr_body(backlog),
        ]
        if self.config.pr_draft:
            args.append("--draft")
        proc = self._run_gh(args, check=True)
        url = proc.stdout.strip().splitlines()[-1] if proc.stdout.strip() else None
        logger.info("Created pull request %s", url or branch)
        return True, url

    def merge_pull_request(self, branch: str) -> bool:
        self._run_gh(
            ["pr", "merge", branch, "--auto", f"--{self.config.merge_method}"], check=True
        )
        logger.info("Enabled auto-merge for %s", branch)
        return True

    def finalize(self, backlog: Backlog, *, completed: bool) -> FinalizeReport:
        report = FinalizeReport()
        if not self.git_enabled or not self.config.push_enabled:
            return report
        branch = backlog.branch_name
        if self.config.push_timing == "end":
            report.pushed = self.push(branch)
        elif completed and (self._last_push_ok is not True or self._ahead_of_remote(branch)):
            report.pushed = self.push(branch)
        else:
            report.pushed = self._last_push_ok

        if not completed or not self.config.pr_enabled:
            return report
        if not report.pushed:
            self._warn(report, "Skipping pull request: the branch was not pushed successfully.")
            report.pr_created = False
            return report
        try:
            report.pr_created, report.pr_url = self.create_pull_request(backlog)
        except GitSyncError as exc:
            self._warn(report, f"Pull request creation failed: {exc}")
            report.pr_created = False
            return report

        if self.config.auto_merge:
            try:
                report.merged = self.merge_pull_request(branch)
            except GitSyncError as exc:
                self._warn(report, f"Auto-merge failed: {exc}")
                report.merged = False
        return report
