from __future__ import annotations

from threading import Event, Thread
from unittest.mock import Mock

from world_backup_manager.cancellation import CancellationToken
from world_backup_manager.config import SchedulerConfig
from world_backup_manager.models import CycleOutcome, OutcomeKind
from world_backup_manager.scheduler import Scheduler


def _outcome(kind: OutcomeKind = OutcomeKind.SUCCESS, reason: str = "") -> CycleOutcome:
    return CycleOutcome(kind=kind, started_at="2026-03-01T12:00:00+00:00", finished_at="2026-03-01T12:00:01+00:00", reason=reason)


class BlockingCycle:
    """Cycle double that holds until released or cancelled."""

    def __init__(self) -> None:
        self.started = Event()
        self.release = Event()
        self.tokens: list[CancellationToken] = []

    def run(self, cancel: CancellationToken) -> CycleOutcome:
        self.tokens.append(cancel)
        self.started.set()
        while not self.release.wait(0.01):
            if cancel.cancelled:
                return _outcome(OutcomeKind.FAILED, "cycle cancelled at checkpoint: between files")
        return _outcome()


def test_trigger_runs_cycle_and_reports_outcome() -> None:
    cycle = Mock()
    cycle.run.return_value = _outcome()
    reporter = Mock()
    scheduler = Scheduler(cycle=cycle, config=SchedulerConfig(interval_seconds=60), reporter=reporter)

    outcome = scheduler.trigger()

    assert outcome == _outcome()
    reporter.report.assert_called_once_with(outcome)
    token = cycle.run.call_args.args[0]
    assert isinstance(token, CancellationToken)
    assert token.cancelled is False


def test_trigger_while_cycle_running_is_coalesced() -> None:
    cycle = BlockingCycle()
    reporter = Mock()
    scheduler = Scheduler(cycle=cycle, config=SchedulerConfig(interval_seconds=60), reporter=reporter)
    worker = Thread(target=scheduler.trigger)
    worker.start()
    assert cycle.started.wait(2)

    assert scheduler.trigger() is None

    cycle.release.set()
    worker.join(timeout=2)
    assert len(cycle.tokens) == 1
    assert reporter.report.call_count == 1


def test_stop_during_cycle_cancels_in_flight_token() -> None:
    cycle = BlockingCycle()
    reporter = Mock()
    scheduler = Scheduler(cycle=cycle, config=SchedulerConfig(interval_seconds=60), reporter=reporter)
    worker = Thread(target=scheduler.trigger)
    worker.start()
    assert cycle.started.wait(2)

    scheduler.stop()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert cycle.tokens[0].cancelled is True
    reported = reporter.report.call_args.args[0]
    assert reported.kind == OutcomeKind.FAILED
    assert scheduler.trigger() is None


def test_stop_interrupts_idle_wait() -> None:
    cycle = Mock()
    scheduler = Scheduler(cycle=cycle, config=SchedulerConfig(interval_seconds=3600), reporter=Mock())
    worker = Thread(target=scheduler.run)
    worker.start()

    scheduler.stop()
    worker.join(timeout=2)

    assert not worker.is_alive()
    cycle.run.assert_not_called()


def test_run_triggers_one_cycle_per_interval_until_stopped() -> None:
    done = Event()
    reporter = Mock()
    reporter.report.side_effect = lambda outcome: done.set() if reporter.report.call_count >= 3 else None
    cycle = Mock()
    cycle.run.return_value = _outcome()
    scheduler = Scheduler(cycle=cycle, config=SchedulerConfig(interval_seconds=0.01), reporter=reporter)
    worker = Thread(target=scheduler.run)
    worker.start()

    assert done.wait(2)
    scheduler.stop()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert cycle.run.call_count >= 3


def test_next_delay_adds_bounded_jitter() -> None:
    scheduler = Scheduler(
        cycle=Mock(),
        config=SchedulerConfig(interval_seconds=600, jitter_seconds=60),
        reporter=Mock(),
        jitter=lambda bound: bound / 2,
    )

    assert scheduler.next_delay() == 630
