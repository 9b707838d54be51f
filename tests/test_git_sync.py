import subprocess
from pathlib import Path

import pytest

from taskloop.backlog import Backlog, Task, parse_backlog
from taskloop.config import GitConfig
from taskloop.state.git_sync import GitSyncError, GitSynchronizer


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args],
        cwd=repo,
        text=True,
        capture_output=True,
        check=True,
    )
    return proc.stdout.strip()


def _init_git_repo(repo: Path) -> None:
    repo.mkdir(parents=True, exist_ok=True)
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "loop@example.com")
    _git(repo, "config", "user.name", "Loop Bot")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("demo\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "initial")


def _task() -> Task:
    return Task.from_dict({"id": "US-001", "title": "Add login", "passes": True}, 0)


def _last_subject(repo: Path, ref: str = "HEAD") -> str:
    return _git(repo, "log", "-1", "--format=%s", ref)


def _add_origin(tmp_path: Path, repo: Path) -> Path:
    origin = tmp_path / "origin.git"
    subprocess.run(["git", "init", "--bare", "-q", str(origin)], check=True)
    _git(repo, "remote", "add", "origin", str(origin))
    return origin


def _backlog(branch: str = "main") -> Backlog:
    return parse_backlog(
        {
            "project": "demo",
            "branchName": branch,
            "userStories": [{"id": "US-001", "title": "Add login", "passes": True}],
        }
    )


class FakeGh:
    def __init__(self, *, fail_create: bool = False) -> None:
        self.fail_create = fail_create
        self.calls: list[list[str]] = []

    def __call__(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        if args[:2] == ["pr", "view"]:
            return subprocess.CompletedProcess(args, 1, "", "no pull requests found")
        if args[:2] == ["pr", "create"] and self.fail_create:
            raise GitSyncError("GraphQL: No commits between main and main")
        return subprocess.CompletedProcess(args, 0, "https://github.com/acme/demo/pull/7\n", "")

    def ran(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == list(prefix) for call in self.calls)


def test_ensure_feature_branch_creates_branch_from_base(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    git = GitSynchronizer(tmp_path, GitConfig())

    assert git.ensure_feature_branch("taskloop/login") is True
    assert git.current_branch() == "taskloop/login"
    assert git.ensure_feature_branch("taskloop/login") is True


def test_dirty_tree_is_committed_before_switching_branches(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "stray.py").write_text("print('wip')\n", encoding="utf-8")
    git = GitSynchronizer(tmp_path, GitConfig())

    git.ensure_feature_branch("taskloop/login")

    assert _last_subject(tmp_path, "main").startswith("chore: recover uncommitted work from main")
    assert git.is_dirty() is False


def test_auto_checkout_disabled_leaves_branch_alone(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    git = GitSynchronizer(tmp_path, GitConfig(auto_checkout_branch=False))

    assert git.ensure_feature_branch("taskloop/login") is False
    assert git.current_branch() == "main"


def test_progress_produces_feature_commit(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "login.py").write_text("def login(): ...\n", encoding="utf-8")
    git = GitSynchronizer(tmp_path, GitConfig())

    report = git.sync_after_iteration(
        branch="main", passing_before=0, passing_after=1, newly_passing=[_task()]
    )

    assert report.committed is True
    assert report.commit_message == "feat: US-001 - Add login"
    assert _last_subject(tmp_path) == "feat: US-001 - Add login"
    assert report.pushed is None


def test_dirty_tree_without_progress_only_warns(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "half_done.py").write_text("x = 1\n", encoding="utf-8")
    git = GitSynchronizer(tmp_path, GitConfig())

    report = git.sync_after_iteration(branch="main", passing_before=1, passing_after=1)

    assert report.committed is False
    assert any("without task progress" in warning for warning in report.warnings)
    assert _last_subject(tmp_path) == "initial"


def test_state_directory_is_never_committed(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    state_file = tmp_path / ".taskloop" / "state" / "metrics.json"
    state_file.parent.mkdir(parents=True)
    state_file.write_text("{}", encoding="utf-8")
    git = GitSynchronizer(tmp_path, GitConfig(), excluded_paths=[".taskloop"])

    assert git.dirty_paths() == []

    (tmp_path / "feature.py").write_text("y = 2\n", encoding="utf-8")
    git.sync_after_iteration(
        branch="main", passing_before=0, passing_after=1, newly_passing=[_task()]
    )

    committed = _git(tmp_path, "show", "--name-only", "--format=", "HEAD").splitlines()
    assert committed == ["feature.py"]


def test_partial_progress_commit_message(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "partial.py").write_text("z = 3\n", encoding="utf-8")
    git = GitSynchronizer(tmp_path, GitConfig())

    assert git.commit_partial_progress(_task(), "stuck") is True
    assert _last_subject(tmp_path) == "wip: US-001 - Add login (refinement stuck)"


def test_push_without_remote_skips_pull_request(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    config = GitConfig(push_enabled=True, push_timing="end", pr_enabled=True)
    git = GitSynchronizer(tmp_path, config)
    backlog = parse_backlog(
        {
            "project": "demo",
            "branchName": "main",
            "userStories": [{"id": "US-001", "title": "Add login", "passes": True}],
        }
    )

    report = git.finalize(backlog, completed=True)

    assert report.pushed is False
    assert report.pr_created is False
    assert any("Skipping pull request" in warning for warning in report.warnings)


def test_pull_request_title_and_body(tmp_path: Path) -> None:
    git = GitSynchronizer(tmp_path, GitConfig())
    backlog = parse_backlog(
        {
            "project": "demo",
            "branchName": "taskloop/user-login",
            "description": "Login flow",
            "userStories": [
                {"id": "US-001", "title": "Add login", "passes": True},
                {"id": "US-002", "title": "Add logout", "passes": False},
            ],
        }
    )

    assert git._pr_title(backlog) == "User login"
    body = git._pr_body(backlog)
    assert "- [x] US-001: Add login" in body
    assert "- [ ] US-002: Add logout" in body


def test_outside_a_repository_sync_is_disabled(tmp_path: Path) -> None:
    git = GitSynchronizer(tmp_path, GitConfig(push_enabled=True))
    (tmp_path / "file.txt").write_text("x", encoding="utf-8")

    report = git.sync_after_iteration(branch="main", passing_before=0, passing_after=1)

    assert git.git_enabled is False
    assert report.committed is False
    assert report.pushed is None
    assert git.ensure_feature_branch("taskloop/x") is False


def test_gitignored_state_directory_does_not_block_commits(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / ".gitignore").write_text(".taskloop/\n", encoding="utf-8")
    _git(tmp_path, "add", ".gitignore")
    _git(tmp_path, "commit", "-q", "-m", "ignore state")
    state_file = tmp_path / ".taskloop" / "state" / "rotation.json"
    state_file.parent.mkdir(parents=True)
    state_file.write_text("{}", encoding="utf-8")
    (tmp_path / "feature.py").write_text("y = 2\n", encoding="utf-8")
    git = GitSynchronizer(tmp_path, GitConfig(), excluded_paths=[".taskloop"])

    report = git.sync_after_iteration(
        branch="main", passing_before=0, passing_after=1, newly_passing=[_task()]
    )

    assert report.committed is True
    assert report.warnings == []
    committed = _git(tmp_path, "show", "--name-only", "--format=", "HEAD").splitlines()
    assert committed == ["feature.py"]

    (tmp_path / "stray.py").write_text("print('wip')\n", encoding="utf-8")
    assert git.ensure_feature_branch("taskloop/demo") is True
    assert git.current_branch() == "taskloop/demo"
    assert _git(tmp_path, "diff", "--cached", "--name-only") == ""
    assert git.is_dirty() is False


def test_iteration_timing_pushes_only_after_progress(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    origin = _add_origin(tmp_path, repo)
    git = GitSynchronizer(repo, GitConfig(push_enabled=True, push_timing="iteration"))

    (repo / "half_done.py").write_text("x = 1\n", encoding="utf-8")
    idle = git.sync_after_iteration(branch="main", passing_before=0, passing_after=0)

    assert idle.pushed is None
    assert _git(origin, "for-each-ref", "refs/heads") == ""

    progress = git.sync_after_iteration(
        branch="main", passing_before=0, passing_after=1, newly_passing=[_task()]
    )

    assert progress.pushed is True
    assert _git(origin, "rev-parse", "refs/heads/main") == _git(repo, "rev-parse", "HEAD")


def test_end_timing_pushes_once_at_finalize(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    origin = _add_origin(tmp_path, repo)
    git = GitSynchronizer(repo, GitConfig(push_enabled=True, push_timing="end"))
    pushes: list[str] = []
    original_push = git.push

    def counting_push(branch: str) -> bool:
        pushes.append(branch)
        return original_push(branch)

    monkeypatch.setattr(git, "push", counting_push)
    (repo / "login.py").write_text("def login(): ...\n", encoding="utf-8")

    report = git.sync_after_iteration(
        branch="main", passing_before=0, passing_after=1, newly_passing=[_task()]
    )

    assert report.committed is True
    assert report.pushed is None
    assert pushes == []

    final = git.finalize(_backlog(), completed=True)

    assert final.pushed is True
    assert pushes == ["main"]
    assert _git(origin, "rev-parse", "refs/heads/main") == _git(repo, "rev-parse", "HEAD")


def test_completed_run_publishes_commits_made_after_last_push(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    origin = _add_origin(tmp_path, repo)
    git = GitSynchronizer(repo, GitConfig(push_enabled=True, push_timing="iteration"))
    (repo / "login.py").write_text("def login(): ...\n", encoding="utf-8")
    git.sync_after_iteration(
        branch="main", passing_before=0, passing_after=1, newly_passing=[_task()]
    )
    (repo / "notes.md").write_text("follow-up\n", encoding="utf-8")
    _git(repo, "add", "notes.md")
    _git(repo, "commit", "-q", "-m", "docs: notes")

    report = git.finalize(_backlog(), completed=True)

    assert report.pushed is True
    assert _git(origin, "rev-parse", "refs/heads/main") == _git(repo, "rev-parse", "HEAD")


def test_resumed_run_pushes_before_opening_pull_request(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    origin = _add_origin(tmp_path, repo)
    git = GitSynchronizer(
        repo, GitConfig(push_enabled=True, push_timing="iteration", pr_enabled=True)
    )
    gh = FakeGh()
    monkeypatch.setattr(git, "_run_gh", gh)

    report = git.finalize(_backlog(), completed=True)

    assert report.pushed is True
    assert report.pr_created is True
    assert report.pr_url == "https://github.com/acme/demo/pull/7"
    assert not any("Skipping pull request" in warning for warning in report.warnings)
    assert _git(origin, "rev-parse", "refs/heads/main") == _git(repo, "rev-parse", "HEAD")


def test_incomplete_run_does_not_push_or_open_pull_request(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    origin = _add_origin(tmp_path, repo)
    git = GitSynchronizer(
        repo, GitConfig(push_enabled=True, push_timing="iteration", pr_enabled=True)
    )
    gh = FakeGh()
    monkeypatch.setattr(git, "_run_gh", gh)

    report = git.finalize(_backlog(), completed=False)

    assert report.pushed is None
    assert report.pr_created is None
    assert gh.calls == []
    assert _git(origin, "for-each-ref", "refs/heads") == ""


def test_auto_merge_follows_pull_request_creation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    _add_origin(tmp_path, repo)
    config = GitConfig(push_enabled=True, push_timing="end", pr_enabled=True, auto_merge=True)
    git = GitSynchronizer(repo, config)
    gh = FakeGh()
    monkeypatch.setattr(git, "_run_gh", gh)

    report = git.finalize(_backlog(), completed=True)

    assert report.pr_created is True
    assert report.merged is True
    commands = [call[:2] for call in gh.calls]
    assert commands.index(["pr", "create"]) < commands.index(["pr", "merge"])
    assert ["pr", "merge", "main", "--auto", "--squash"] in gh.calls


def test_failed_pull_request_skips_auto_merge(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    _add_origin(tmp_path, repo)
    config = GitConfig(push_enabled=True, push_timing="end", pr_enabled=True, auto_merge=True)
    git = GitSynchronizer(repo, config)
    gh = FakeGh(fail_create=True)
    monkeypatch.setattr(git, "_run_gh", gh)

    report = git.finalize(_backlog(), completed=True)

    assert report.pushed is True
    assert report.pr_created is False
    assert report.merged is None
    assert gh.ran("pr", "create")
    assert not gh.ran("pr", "merge")
    assert any("Pull request creation failed" in warning for warning in report.warnings)
