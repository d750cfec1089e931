"""Shared fixtures and fakes for activity bot tests."""
import os
import shutil
import subprocess
import threading
from datetime import datetime, timedelta, timezone

import pytest

from activity_bot.config import BotConfig, RetryConfig
from activity_bot.errors import BranchExists, NothingToCommit
from activity_bot.tools.github_pr import MergeHandle, MergeStatus, PRHandle

FIXED_NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

ENV_VARS = ["GITHUB_TOKEN", "GITHUB_REPO", "GITHUB_USERNAME", "REPO_PATH", "CRON_SCHEDULE"]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of config loading."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def make_config(repo_path, **overrides):
    values = dict(
        username="octocat",
        repo="octocat/sandbox",
        repo_path=str(repo_path),
        cron_schedule="0 */8 * * *",
        min_files=1,
        max_files=3,
        min_lines=1,
        max_lines=5,
        base_branch="main",
        approve_delay_seconds=(0, 0),
        merge_delay_seconds=0,
        token="test-token",
        retry=RetryConfig(max_attempts=3, push_attempts=3, base_delay_seconds=1,
                          max_delay_seconds=4, merge_poll_attempts=3),
    )
    values.update(overrides)
    return BotConfig(**values)


def make_working_copy(root, n_files, lines=3):
    """Create `n_files` eligible text files (plus noise that must be ignored)."""
    root.mkdir(parents=True, exist_ok=True)
    for i in range(n_files):
        body = "".join(f"original line {j}\n" for j in range(lines))
        (root / f"file_{i}.txt").write_text(body)
    (root / ".git").mkdir(exist_ok=True)
    (root / ".git" / "HEAD.txt").write_text("ref: refs/heads/main\n")
    (root / "image.png").write_bytes(b"\x89PNG")
    return root


class Clock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start=FIXED_NOW):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(seconds=1)
        return current


class FakeRepo:
    """Stands in for GitRepo; records every call."""

    def __init__(self):
        self.calls = []
        self.branches = set()
        self.existing_branches = set()
        self.reject_all_branches = False
        self.applied = []
        self.push_error = None
        self.push_gate = None          # threading.Event the push waits on
        self.pushing = threading.Event()

    def names(self):
        return [c[0] for c in self.calls]

    def sync_base(self, base):
        self.calls.append(("sync_base", base))

    def create_branch(self, name):
        self.calls.append(("create_branch", name))
        if self.reject_all_branches or name in self.existing_branches:
            raise BranchExists(f"Branch {name} already exists")
        self.branches.add(name)

    def apply_edits(self, edits):
        self.calls.append(("apply_edits", len(edits)))
        self.applied.extend(edits)
        return sorted({e.path for e in edits})

    def commit(self, message):
        self.calls.append(("commit", message))
        if not self.applied:
            raise NothingToCommit("No staged changes after applying edits")
        return "c0ffee1234567890"

    def push(self, branch):
        self.calls.append(("push", branch))
        self.pushing.set()
        if self.push_gate is not None:
            self.push_gate.wait(5)
        if self.push_error is not None:
            raise self.push_error

    def cleanup(self, base, branch):
        self.calls.append(("cleanup", base, branch))


class FakePRs:
    """Stands in for PullRequestClient; errors are queued per method."""

    def __init__(self):
        self.calls = []
        self.errors = {}         # method name -> list of exceptions raised in order
        self.always = {}         # method name -> exception raised on every call
        self.statuses = [MergeStatus(mergeable=True, state="clean")]
        self.open_prs = {}
        self.deleted_branches = []

    def names(self):
        return [c[0] for c in self.calls]

    def _maybe_fail(self, method):
        if method in self.always:
            raise self.always[method]
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    def fail_always(self, method, error):
        self.always[method] = error

    def default_branch(self):
        self.calls.append(("default_branch",))
        self._maybe_fail("default_branch")
        return "trunk"

    def create_pull_request(self, head, base, title, body):
        self.calls.append(("create_pull_request", head, base))
        self._maybe_fail("create_pull_request")
        pr = PRHandle(number=42, html_url="https://github.com/octocat/sandbox/pull/42",
                      head=head, base=base)
        self.open_prs[pr.number] = pr
        return pr

    def approve(self, pr):
        self.calls.append(("approve", pr.number))
        self._maybe_fail("approve")

    def merge_status(self, pr):
        self.calls.append(("merge_status", pr.number))
        self._maybe_fail("merge_status")
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def merge(self, pr):
        self.calls.append(("merge", pr.number))
        self._maybe_fail("merge")
        self.open_prs.pop(pr.number, None)
        return MergeHandle(sha="deadbeefcafe", message="Pull Request successfully merged")

    def delete_branch(self, branch):
        self.calls.append(("delete_branch", branch))
        self.deleted_branches.append(branch)
        return True


@pytest.fixture
def fake_repo():
    return FakeRepo()


@pytest.fixture
def fake_prs():
    return FakePRs()


@pytest.fixture
def sleeps():
    """List that records every sleep the orchestrator asks for."""
    return []


def git(cwd, *args):
    """Run a real git command for test setup; returns stdout."""
    result = subprocess.run(["git", *args], cwd=str(cwd), capture_output=True, text=True,
                            check=True)
    return result.stdout


def make_git_clone(root, files):
    """Create a bare remote plus a working copy whose `main` holds `files`.

    Returns the working-copy path.
    """
    remote = root / "remote.git"
    wc = root / "wc"
    remote.mkdir(parents=True)
    wc.mkdir()
    git(remote, "init", "--bare", "--quiet")
    git(wc, "init", "--quiet")
    git(wc, "symbolic-ref", "HEAD", "refs/heads/main")
    for name, body in files.items():
        (wc / name).write_text(body)
    git(wc, "add", "-A")
    git(wc, "-c", "user.name=setup", "-c", "user.email=setup@example.com",
        "commit", "--quiet", "-m", "initial")
    git(wc, "remote", "add", "origin", str(remote))
    git(wc, "push", "--quiet", "--set-upstream", "origin", "main")
    return wc


@pytest.fixture
def git_clone(tmp_path, monkeypatch):
    """Real working copy with two eligible files, cloned from a local bare remote."""
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    body = "".join(f"original line {j}\n" for j in range(3))
    return make_git_clone(tmp_path, {"notes.txt": body, "README.md": body})
