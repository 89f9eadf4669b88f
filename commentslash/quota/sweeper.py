"""Background reclamation of abandoned reservations and idle sessions.

Two independently timed passes run on one daemon thread:
  1. presence pass: drops idle sessions and reaps their reservations
  2. reservation pass: reaps reservations past their TTL, even for sessions
     that are still connected
"""

import logging
import threading
import time
from collections.abc import Callable

from commentslash.quota.service import QuotaService

logger = logging.getLogger(__name__)

# Returns a monotonic timestamp in seconds.
Monotonic = Callable[[], float]


class Sweeper:
    """Runs the sweep passes on a fixed schedule until stopped.

    Usage::

        sweeper = Sweeper(service)
        sweeper.start()
        ...
        sweeper.stop()
    """

    def __init__(
        self,
        service: QuotaService,
        monotonic: Monotonic = time.monotonic,
        tick_seconds: float = 1.0,
    ) -> None:
        self._service = service
        self._monotonic = monotonic
        self._tick = tick_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        start = monotonic()
        self._next_presence = start
        self._next_reservation = start

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="quota-sweeper", daemon=True)
        self._thread.start()
        logger.debug("Sweeper started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.debug("Sweeper stopped")

    def run_pending(self) -> tuple[int, int]:
        """Run whichever passes are due. Returns (sessions dropped, reservations reaped)."""
        cfg = self._service.config
        now = self._monotonic()
        dropped = reaped = 0
        if now >= self._next_presence:
            dropped = self._run_pass("presence", self._service.sweep_inactive_sessions)
            self._next_presence = now + cfg.sweep_interval_seconds
        if now >= self._next_reservation:
            reaped = self._run_pass("reservation", self._service.sweep_stale_reservations)
            self._next_reservation = now + cfg.reservation_sweep_interval_seconds
        return dropped, reaped

    def _run_pass(self, name: str, sweep: Callable[[], int]) -> int:
        try:
            count = sweep()
        except Exception as exc:
            logger.exception("Sweeper %s pass failed: %s", name, exc)
            return 0
        if count:
            logger.info("Sweeper %s pass reclaimed %d", name, count)
        return count

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            wait = min(self._next_presence, self._next_reservation) - self._monotonic()
            self._stop_event.wait(timeout=max(0.0, min(wait, self._tick)))
