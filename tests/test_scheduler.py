"""Tests for the scheduler's single-flight guard and run modes."""
import random
import threading
import time
from datetime import timedelta

import pytest

from activity_bot.errors import ConfigError
from activity_bot.orchestrator import Orchestrator, Run, RunState
from activity_bot.scheduler import Scheduler
from conftest import FIXED_NOW, Clock, make_config, make_working_copy


@pytest.fixture
def orchestrator(tmp_path, fake_repo, fake_prs):
    config = make_config(make_working_copy(tmp_path / "wc", 5))
    return Orchestrator(config, fake_repo, fake_prs, rng=random.Random(0), clock=Clock(),
                        sleep=lambda s: None)


class ImmediateTrigger:
    """Cron stand-in that is always due a moment from now."""

    def get_next_fire_time(self, previous, now):
        return now + timedelta(milliseconds=5)


class StoppingOrchestrator:
    """Asks the scheduler to stop, then keeps running for a while."""

    def __init__(self):
        self.scheduler = None
        self.calls = 0

    def run(self):
        self.calls += 1
        self.scheduler.stop()
        time.sleep(0.1)
        run = Run(run_id=f"r{self.calls}", branch="bot-update-test")
        run.error_kind = "NoEligibleTargets"
        run.error = "nothing to do"
        run.advance(RunState.GENERATING)
        run.advance(RunState.FAILED)
        return run


def test_run_once_returns_terminal_run(orchestrator):
    scheduler = Scheduler(orchestrator, "0 */8 * * *")

    run = scheduler.run_once()

    assert run.state == RunState.COMPLETED
    assert list(scheduler.completed) == [run]
    assert not scheduler.busy


def test_run_once_reports_failure(orchestrator, fake_repo):
    from activity_bot.errors import PushRejected
    fake_repo.push_error = PushRejected("rejected")
    run = Scheduler(orchestrator, "0 */8 * * *").run_once()
    assert run.state == RunState.FAILED
    assert run.failed_from == RunState.PUSHING


def test_overlapping_trigger_is_skipped(orchestrator, fake_repo):
    fake_repo.push_gate = threading.Event()
    scheduler = Scheduler(orchestrator, "0 */8 * * *")

    assert scheduler.trigger(FIXED_NOW) is True
    assert fake_repo.pushing.wait(5)
    assert scheduler.busy

    assert scheduler.trigger(FIXED_NOW + timedelta(minutes=1)) is False
    assert scheduler.run_once() is None

    fake_repo.push_gate.set()
    scheduler.wait(5)

    assert len(scheduler.completed) == 1
    assert scheduler.completed[0].state == RunState.COMPLETED
    assert len(scheduler.skipped) == 2
    assert scheduler.skipped[0].fired_at == FIXED_NOW + timedelta(minutes=1)
    assert scheduler.skipped[0].in_flight_since == FIXED_NOW
    assert fake_repo.names().count("create_branch") == 1
    assert not scheduler.busy


def test_trigger_after_completion_runs_again(orchestrator):
    scheduler = Scheduler(orchestrator, "0 */8 * * *")
    assert scheduler.trigger() is True
    scheduler.wait(5)
    assert scheduler.trigger() is True
    scheduler.wait(5)
    assert len(scheduler.completed) == 2
    assert scheduler.completed[0].branch != scheduler.completed[1].branch
    assert len(scheduler.skipped) == 0


def test_run_forever_finishes_in_flight_run_before_returning():
    orch = StoppingOrchestrator()
    scheduler = Scheduler(orch, "* * * * *")
    orch.scheduler = scheduler
    scheduler._trigger = ImmediateTrigger()

    worker = threading.Thread(target=scheduler.run_forever)
    worker.start()
    worker.join(5)

    assert not worker.is_alive()
    assert orch.calls == 1
    assert len(scheduler.completed) == 1
    assert not scheduler.busy


def test_stop_before_start_runs_nothing(orchestrator):
    scheduler = Scheduler(orchestrator, "* * * * *")
    scheduler.stop()
    scheduler.run_forever()
    assert len(scheduler.completed) == 0


def test_invalid_cron_expression(orchestrator):
    with pytest.raises(ConfigError):
        Scheduler(orchestrator, "not a cron")
