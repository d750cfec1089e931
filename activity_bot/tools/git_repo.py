"""
Version control adapter — drives the local working copy with the git CLI.

Used by the orchestrator to sync the base branch, create the bot branch,
write the generated edits, commit, and push.
"""

from __future__ import annotations

import base64
import subprocess
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog

from activity_bot.errors import (
    BranchExists,
    NothingToCommit,
    PushRejected,
    SyncError,
    WriteError,
)
from activity_bot.tools.changes import Edit, apply_to_text, group_by_file

log = structlog.get_logger()

_NETWORK_COMMANDS = {"push", "pull", "fetch"}


class GitCommandError(Exception):
    def __init__(self, args: Iterable[str], returncode: int, stderr: str):
        self.args_ = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        super().__init__(f"git {' '.join(self.args_)} failed ({returncode}): {self.stderr}")


class GitRepo:
    """Thin wrapper around `git` for one working copy.

    Args:
        path:     working-copy root.
        token:    optional access token, sent to the remote as an HTTP header on
                  push/pull only. Never logged.
        username: commit author name; also used for the noreply e-mail.
        runner:   subprocess.run-compatible callable (tests inject a fake).
    """

    def __init__(
        self,
        path: str,
        token: str = "",
        username: str = "",
        remote: str = "origin",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.path = Path(path)
        self.remote = remote
        self._token = token
        self._username = username
        self._runner = runner

    def _auth_args(self) -> list[str]:
        if not self._token:
            return []
        basic = base64.b64encode(f"x-access-token:{self._token}".encode()).decode("ascii")
        return ["-c", f"http.extraheader=AUTHORIZATION: basic {basic}"]

    def _identity_args(self) -> list[str]:
        if not self._username:
            return []
        return [
            "-c", f"user.name={self._username}",
            "-c", f"user.email={self._username}@users.noreply.github.com",
        ]

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git"]
        if args[0] in _NETWORK_COMMANDS:
            cmd += self._auth_args()
        if args[0] == "commit":
            cmd += self._identity_args()
        cmd += list(args)

        try:
            result = self._runner(cmd, cwd=str(self.path), capture_output=True, text=True)
        except OSError as e:
            # Missing git binary or working copy; callers map it like a failed command.
            log.debug("git.command_error", args=list(args), error=str(e))
            raise GitCommandError(args, -1, str(e)) from e
        log.debug("git.command", args=list(args), returncode=result.returncode)
        if check and result.returncode != 0:
            log.debug("git.command_failed", args=list(args), stderr=result.stderr)
            raise GitCommandError(args, result.returncode, result.stderr)
        return result

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    def sync_base(self, base: str) -> None:
        """Discard leftovers of an earlier Run, checkout `base` and fast-forward it.

        The working copy belongs to the bot: uncommitted changes and untracked
        files are removed so a failed Run never leaks into the next commit.
        """
        try:
            self._git("reset", "--hard")
            self._git("clean", "-fd")
            self._git("checkout", base)
            self._git("pull", "--ff-only", self.remote, base)
        except GitCommandError as e:
            raise SyncError(f"Could not sync base branch {base}: {e.stderr}") from e
        log.info("git.base_synced", base=base)

    def create_branch(self, name: str) -> None:
        try:
            exists = self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}",
                               check=False)
            if exists.returncode == 0:
                raise BranchExists(f"Branch {name} already exists")
            self._git("checkout", "-b", name)
        except GitCommandError as e:
            if "already exists" in e.stderr:
                raise BranchExists(f"Branch {name} already exists") from e
            raise SyncError(f"Could not create branch {name}: {e.stderr}") from e
        log.info("git.branch_created", branch=name)

    def apply_edits(self, edits: Iterable[Edit]) -> list[str]:
        """Write the edits into the working copy. Returns the touched paths."""
        root = self.path.resolve()
        touched = []
        for rel_path, file_edits in group_by_file(edits).items():
            target = (root / rel_path).resolve()
            if root not in target.parents:
                raise WriteError(f"Refusing to write outside the working copy: {rel_path}")
            # newline="" keeps the file's own line endings on both sides.
            try:
                text = ""
                if target.exists():
                    with open(target, encoding="utf-8", newline="") as f:
                        text = f.read()
                target.parent.mkdir(parents=True, exist_ok=True)
                with open(target, "w", encoding="utf-8", newline="") as f:
                    f.write(apply_to_text(text, file_edits))
            except (OSError, UnicodeError) as e:
                raise WriteError(f"Could not write {rel_path}: {e}") from e
            touched.append(rel_path)
            log.debug("git.file_written", path=rel_path, edits=len(file_edits))
        return touched

    def commit(self, message: str) -> str:
        """Stage everything and commit. Returns the new commit SHA."""
        try:
            self._git("add", "-A")
            staged = self._git("diff", "--cached", "--quiet", check=False)
            if staged.returncode == 0:
                raise NothingToCommit("No staged changes after applying edits")
            self._git("commit", "-m", message)
            sha = self._git("rev-parse", "HEAD").stdout.strip()
        except GitCommandError as e:
            raise WriteError(f"Commit failed: {e.stderr}") from e
        log.info("git.committed", sha=sha[:8], message=message)
        return sha

    def push(self, branch: str) -> None:
        try:
            self._git("push", "--set-upstream", self.remote, branch)
        except GitCommandError as e:
            raise PushRejected(f"Push of {branch} rejected: {e.stderr}") from e
        log.info("git.pushed", branch=branch, remote=self.remote)

    # ------------------------------------------------------------------
    # Housekeeping after a completed cycle
    # ------------------------------------------------------------------

    def cleanup(self, base: str, branch: Optional[str]) -> None:
        """Switch back to `base` and delete the local bot branch."""
        try:
            self._git("checkout", base)
            if branch:
                self._git("branch", "-D", branch)
        except GitCommandError as e:
            raise SyncError(f"Cleanup of {branch} failed: {e.stderr}") from e
        log.info("git.cleaned_up", base=base, branch=branch)
