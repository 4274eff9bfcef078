from __future__ import annotations

from threading import Event, Lock
from typing import Callable
import random
import signal

from .cancellation import CancellationToken
from .config import SchedulerConfig
from .cycle import BackupCycle
from .logs import BackupLogger, OutcomeReporter
from .models import CycleOutcome


class Scheduler:
    """Run one backup cycle per interval until stopped.

    Triggers that arrive while a cycle is running are coalesced into it rather
    than queued. ``stop()`` interrupts the idle wait immediately and asks an
    in-flight cycle to cancel at its next checkpoint; ``run()`` returns only once
    that cycle has finished.
    """

    def __init__(
        self,
        *,
        cycle: BackupCycle,
        config: SchedulerConfig,
        reporter: OutcomeReporter,
        logger: BackupLogger | None = None,
        jitter: Callable[[float], float] | None = None,
    ) -> None:
        self.cycle = cycle
        self.config = config
        self.reporter = reporter
        self.logger = logger or BackupLogger()
        self.jitter = jitter or (lambda bound: random.uniform(0, bound))
        self._stop = Event()
        self._cycle_lock = Lock()
        self._current_token: CancellationToken | None = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def next_delay(self) -> float:
        delay = self.config.interval_seconds
        if self.config.jitter_seconds > 0:
            delay += self.jitter(self.config.jitter_seconds)
        return delay

    def run(self) -> None:
        self.logger.info("scheduler_started", interval_seconds=self.config.interval_seconds)
        try:
            while not self._stop.is_set():
                if self._stop.wait(self.next_delay()):
                    break
                self.trigger()
        finally:
            # An externally triggered cycle may still be running.
            with self._cycle_lock:
                pass
            self.logger.info("scheduler_stopped")

    def trigger(self) -> CycleOutcome | None:
        if self._stop.is_set():
            return None
        if not self._cycle_lock.acquire(blocking=False):
            self.logger.info("cycle_trigger_coalesced")
            return None

        try:
            token = CancellationToken()
            self._current_token = token
            if self._stop.is_set():
                token.cancel()
            outcome = self.cycle.run(token)
            self.reporter.report(outcome)
            return outcome
        finally:
            self._current_token = None
            self._cycle_lock.release()

    def stop(self) -> None:
        self._stop.set()
        token = self._current_token
        if token is not None:
            token.cancel()

    def install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum: int, _frame: object) -> None:
        self.logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        self.stop()
