"""
Run orchestrator — sequences one activity cycle.

Pipeline (one Run, strictly linear):
1. Generating  sync base branch, list eligible files, generate edits
2. Committing  create the bot branch, write the edits, commit
3. Pushing     push the branch (retried on PushRejected)
4. OpeningPR   open a PR against the base branch
5. Approving   approve the PR (self-approval refusal is tolerated unless required)
6. Merging     wait until GitHub reports the PR mergeable, squash-merge it
7. Completed

Any ActivityError moves the Run to Failed, recording the state it failed from.
Nothing is rolled back: a pushed branch or an open PR stays on the remote and is
listed in `Run.left_behind` for manual cleanup.
"""

from __future__ import annotations

import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import structlog

from activity_bot.config import BotConfig, validate_config
from activity_bot.errors import (
    ActivityError,
    ApprovalError,
    BranchExists,
    MergeConflict,
    PushRejected,
    TransientNetworkError,
)
from activity_bot.tools.changes import Edit, generate_edits, list_eligible_files
from activity_bot.tools.git_repo import GitRepo
from activity_bot.tools.github_pr import MergeHandle, PRHandle, PullRequestClient

log = structlog.get_logger()


class RunState(str, Enum):
    IDLE = "Idle"
    GENERATING = "Generating"
    COMMITTING = "Committing"
    PUSHING = "Pushing"
    OPENING_PR = "OpeningPR"
    APPROVING = "Approving"
    MERGING = "Merging"
    COMPLETED = "Completed"
    FAILED = "Failed"


SUCCESS_PATH = (
    RunState.IDLE,
    RunState.GENERATING,
    RunState.COMMITTING,
    RunState.PUSHING,
    RunState.OPENING_PR,
    RunState.APPROVING,
    RunState.MERGING,
    RunState.COMPLETED,
)
TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.FAILED})


@dataclass
class Run:
    run_id: str
    branch: str
    state: RunState = RunState.IDLE
    history: list = field(default_factory=list)
    base: Optional[str] = None
    edits: list = field(default_factory=list)
    commit_sha: Optional[str] = None
    pr: Optional[PRHandle] = None
    merge: Optional[MergeHandle] = None
    approved: bool = False
    branch_created: bool = False
    branch_pushed: bool = False
    failed_from: Optional[RunState] = None
    error_kind: Optional[str] = None
    error_category: Optional[str] = None
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def touched_files(self) -> list[str]:
        return sorted({e.path for e in self.edits})

    @property
    def left_behind(self) -> dict:
        """Artifacts a failed Run leaves for manual cleanup."""
        if self.state != RunState.FAILED:
            return {}
        artifacts = {}
        if self.branch_created:
            artifacts["local_branch"] = self.branch
        if self.branch_pushed:
            artifacts["remote_branch"] = self.branch
        if self.pr is not None:
            artifacts["pull_request"] = self.pr.html_url or f"#{self.pr.number}"
        return artifacts

    def advance(self, state: RunState) -> None:
        """Move to the next state of the success path, or to Failed."""
        if self.terminal:
            raise RuntimeError(f"Run {self.run_id} is already {self.state.value}")
        if state == RunState.FAILED:
            self.failed_from = self.state
        else:
            expected = SUCCESS_PATH[SUCCESS_PATH.index(self.state) + 1]
            if state != expected:
                raise RuntimeError(
                    f"Illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def describe(self) -> str:
        if self.succeeded:
            return (f"Run {self.run_id} completed: merged PR #{self.pr.number} "
                    f"({self.merge.sha[:8]}) from {self.branch}")
        if self.state == RunState.FAILED:
            text = (f"Run {self.run_id} failed in {self.failed_from.value}: "
                    f"{self.error_kind}: {self.error}")
            if self.left_behind:
                leftovers = ", ".join(f"{k}={v}" for k, v in self.left_behind.items())
                text += f" (left behind: {leftovers})"
            return text
        return f"Run {self.run_id} is {self.state.value}"


class Orchestrator:
    """Executes Runs against one working copy and one GitHub repository.

    The git adapter, PR client, random source, clock and sleep are injected so
    every state can be driven from tests.
    """

    def __init__(
        self,
        config: BotConfig,
        repo: GitRepo,
        prs: PullRequestClient,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.repo = repo
        self.prs = prs
        self.rng = rng or random.Random()
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> Run:
        """Execute one cycle and return the terminal Run.

        Raises ConfigError before creating a Run if the configuration is invalid.
        """
        validate_config(self.config, require_token=False)

        run = Run(run_id=uuid.uuid4().hex[:8], branch=self._branch_name())
        structlog.contextvars.bind_contextvars(run_id=run.run_id, branch=run.branch)
        start = time.monotonic()
        log.info("orchestrator.run_started", branch=run.branch, repo=self.config.repo)
        try:
            self._execute(run)
        except ActivityError as e:
            self._fail(run, e)
        finally:
            elapsed = round(time.monotonic() - start, 1)
            if run.succeeded:
                log.info("orchestrator.run_completed",
                         branch=run.branch,
                         pr=run.pr.number,
                         merge_sha=run.merge.sha[:8],
                         files=len(run.touched_files),
                         edits=len(run.edits),
                         elapsed_seconds=elapsed)
            structlog.contextvars.unbind_contextvars("run_id", "branch")
        return run

    def _execute(self, run: Run) -> None:
        cfg = self.config

        self._enter(run, RunState.GENERATING)
        run.base = cfg.base_branch or self._call(self.prs.default_branch)
        self.repo.sync_base(run.base)
        targets = list_eligible_files(cfg.repo_path, cfg.extensions, cfg.target_dir)
        run.edits = generate_edits(cfg, targets, self.rng, self.clock())
        log.info("orchestrator.edits_generated",
                 eligible=len(targets),
                 files=run.touched_files,
                 edits=len(run.edits))

        self._enter(run, RunState.COMMITTING)
        self._create_branch(run)
        self.repo.apply_edits(run.edits)
        run.commit_sha = self.repo.commit(_commit_message(run.edits))

        self._enter(run, RunState.PUSHING)
        self._push(run)

        self._enter(run, RunState.OPENING_PR)
        stamp = self.clock().strftime("%Y-%m-%d %H:%M:%S")
        run.pr = self._call(
            self.prs.create_pull_request,
            run.branch,
            run.base,
            f"Bot update {stamp}",
            f"This is an automated PR created by the activity bot.\n\nTimestamp: {stamp}",
        )

        self._enter(run, RunState.APPROVING)
        low, high = cfg.approve_delay_seconds
        self._pause(self.rng.uniform(low, high), "approve")
        try:
            self._call(self.prs.approve, run.pr)
            run.approved = True
        except ApprovalError as e:
            if cfg.require_approval:
                raise
            log.warning("orchestrator.approval_skipped", pr=run.pr.number, error=str(e))

        self._enter(run, RunState.MERGING)
        self._pause(cfg.merge_delay_seconds, "merge")
        self._wait_mergeable(run)
        run.merge = self._call(self.prs.merge, run.pr)

        self._enter(run, RunState.COMPLETED)
        self._housekeeping(run)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _create_branch(self, run: Run) -> None:
        try:
            self.repo.create_branch(run.branch)
        except BranchExists:
            retry_name = self._branch_name(suffix=True)
            log.warning("orchestrator.branch_exists", branch=run.branch, retry=retry_name)
            run.branch = retry_name
            structlog.contextvars.bind_contextvars(branch=run.branch)
            self.repo.create_branch(run.branch)
        run.branch_created = True

    def _push(self, run: Run) -> None:
        attempts = self.config.retry.push_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.repo.push(run.branch)
                run.branch_pushed = True
                return
            except PushRejected as e:
                log.warning("orchestrator.push_rejected",
                            attempt=attempt, max_attempts=attempts, error=str(e))
                if attempt == attempts:
                    raise
                self.sleep(self._backoff(attempt))

    def _call(self, fn, *args):
        """Call a forge API method, retrying TransientNetworkError with exponential backoff."""
        attempts = self.config.retry.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args)
            except TransientNetworkError as e:
                log.warning("orchestrator.transient_error",
                            call=getattr(fn, "__name__", str(fn)),
                            attempt=attempt,
                            max_attempts=attempts,
                            error=str(e))
                if attempt == attempts:
                    raise
                delay = self._backoff(attempt)
                log.info("orchestrator.retrying", next_attempt=attempt + 1, delay_seconds=delay)
                self.sleep(delay)

    def _wait_mergeable(self, run: Run) -> None:
        """Poll until GitHub has computed mergeability; a False answer is a conflict."""
        polls = self.config.retry.merge_poll_attempts
        for attempt in range(1, polls + 1):
            status = self._call(self.prs.merge_status, run.pr)
            if status.mergeable is False:
                raise MergeConflict(
                    f"PR #{run.pr.number} is not mergeable (state: {status.state})")
            if status.mergeable:
                return
            if attempt < polls:
                self.sleep(self._backoff(attempt))
        # Still unknown: let the merge endpoint decide.
        log.info("orchestrator.mergeable_unknown", pr=run.pr.number, polls=polls)

    def _housekeeping(self, run: Run) -> None:
        """Remove the merged branch. Failures here never change the Run's state."""
        if self.config.delete_branch_after_merge:
            try:
                self.prs.delete_branch(run.branch)
            except ActivityError as e:
                log.warning("orchestrator.remote_cleanup_failed", branch=run.branch, error=str(e))
        try:
            self.repo.cleanup(run.base, run.branch)
        except ActivityError as e:
            log.warning("orchestrator.local_cleanup_failed", branch=run.branch, error=str(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter(self, run: Run, state: RunState) -> None:
        run.advance(state)
        log.info("orchestrator.state", state=state.value, branch=run.branch)

    def _fail(self, run: Run, error: ActivityError) -> None:
        run.error_kind = error.kind
        run.error_category = error.category
        run.error = str(error)
        run.advance(RunState.FAILED)
        log.error("orchestrator.run_failed",
                  failed_from=run.failed_from.value,
                  error_kind=run.error_kind,
                  category=run.error_category,
                  error=run.error,
                  left_behind=run.left_behind)

    def _backoff(self, attempt: int) -> float:
        r = self.config.retry
        return min(r.base_delay_seconds * 2 ** (attempt - 1), r.max_delay_seconds)

    def _pause(self, seconds: float, before: str) -> None:
        if seconds > 0:
            log.info("orchestrator.waiting", before=before, seconds=round(seconds, 1))
            self.sleep(seconds)

    def _branch_name(self, suffix: bool = False) -> str:
        name = f"bot-update-{int(self.clock().timestamp())}"
        if suffix:
            name += f"-{self.rng.getrandbits(16):04x}"
        return name


def _commit_message(edits: list[Edit]) -> str:
    n = len({e.path for e in edits})
    return f"Update {n} file{'s' if n != 1 else ''}"
