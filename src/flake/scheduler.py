"""Fixed-interval scheduling of sync cycles with coalesced manual triggers."""

import enum
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from .constants import APP_NAME, DEFAULT_INTERVAL
from .engine import Trigger

logger = logging.getLogger(APP_NAME)


class SchedulerState(enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    FIRING = "firing"


class SyncScheduler:
    """Runs one sync cycle per interval, or sooner when triggered manually.

    At most one cycle runs at a time. The next tick is measured from the end
    of the previous cycle, so a slow push never causes overlapping cycles.
    A manual trigger while a cycle is running is dropped; one received while
    waiting fires straight away and restarts the interval.

    Attributes:
        interval (float): Seconds between the end of one cycle and the next tick.
        state (SchedulerState): Current position in the IDLE/WAITING/FIRING cycle.
        next_tick (float): Clock value at which the next timed cycle fires.
    """

    def __init__(
        self,
        run_cycle: Callable[[Trigger], Any],
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 1.0,
        on_poll: Callable[[], None] | None = None,
    ):
        """Initializes the scheduler.

        Args:
            run_cycle (Callable[[Trigger], Any]): Executes one sync cycle.
            interval (float): Seconds between cycles. Defaults to 30 minutes.
            clock (Callable[[], float]): Monotonic time source.
            poll_interval (float): Longest single wait, so `on_poll` and the
                                   stop event are checked regularly.
            on_poll (Callable[[], None] | None): Called between waits; an
                                                 exception from it ends `run`.
        """
        if interval <= 0:
            raise ValueError(f"Sync interval must be positive, got {interval}")
        self.interval = interval
        self._run_cycle = run_cycle
        self._clock = clock
        self._poll_interval = poll_interval
        self._on_poll = on_poll
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self.state = SchedulerState.IDLE
        self.next_tick = self._clock() + self.interval
        self.cycles_run = 0

    def trigger(self) -> bool:
        """Requests an immediate cycle.

        Returns:
            bool: False if a cycle is already running and the request was
                  coalesced into it, True otherwise.
        """
        with self._lock:
            if self.state is SchedulerState.FIRING:
                logger.info("Manual sync ignored: a cycle is already running.")
                return False
            self._wakeup.set()
        return True

    def fire(self, trigger: Trigger) -> Any:
        """Runs exactly one cycle now, returning the cycle's result.

        Raises:
            RuntimeError: If a cycle is already running.
        """
        with self._lock:
            if self.state is SchedulerState.FIRING:
                raise RuntimeError("A sync cycle is already running")
            previous = self.state
            self.state = SchedulerState.FIRING
            self._wakeup.clear()
        try:
            return self._run_cycle(trigger)
        finally:
            with self._lock:
                self.cycles_run += 1
                self.next_tick = self._clock() + self.interval
                self.state = (
                    SchedulerState.WAITING
                    if previous is not SchedulerState.IDLE
                    else SchedulerState.IDLE
                )

    def run(self, stop: threading.Event) -> None:
        """Schedules cycles until `stop` is set.

        A cycle in progress always completes before the stop is honoured.

        Args:
            stop (threading.Event): Set by the shutdown handler.
        """
        with self._lock:
            self.state = SchedulerState.WAITING
        logger.info(f"Scheduler started, syncing every {self.interval:.0f}s.")
        try:
            while not stop.is_set():
                if self._on_poll is not None:
                    self._on_poll()

                remaining = self.next_tick - self._clock()
                if remaining > 0:
                    manual = self._wakeup.wait(min(remaining, self._poll_interval))
                    if stop.is_set():
                        break
                    if manual:
                        self.fire(Trigger.MANUAL)
                    continue

                self.fire(Trigger.TIMER)
        finally:
            with self._lock:
                self.state = SchedulerState.IDLE
            logger.info("Scheduler stopped.")
