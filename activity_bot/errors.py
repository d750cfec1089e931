"""
Error taxonomy for the activity bot.

Every exception carries a ``kind`` (its class name, used in logs and in the
Run failure report) and a ``category``:

    configuration  fatal, raised before any Run starts
    generation     the Run aborts before any mutation
    local          the Run aborts, at most a local branch exists
    remote         the Run aborts, a branch and/or open PR may remain on the remote
    transient      retried with backoff, exhaustion fails the Run
"""

from __future__ import annotations


class ActivityError(Exception):
    category = "unknown"

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigError(ActivityError):
    category = "configuration"


class NoEligibleTargets(ActivityError):
    category = "generation"


class SyncError(ActivityError):
    """Local git state could not be prepared (checkout, pull, branch switch)."""
    category = "local"


class BranchExists(ActivityError):
    category = "local"


class WriteError(ActivityError):
    category = "local"


class NothingToCommit(ActivityError):
    category = "local"


class PushRejected(ActivityError):
    category = "remote"


class PRCreateError(ActivityError):
    category = "remote"


class ApprovalError(ActivityError):
    category = "remote"


class MergeConflict(ActivityError):
    category = "remote"


class MergeRejected(ActivityError):
    category = "remote"


class TransientNetworkError(ActivityError):
    category = "transient"
