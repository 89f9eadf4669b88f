"""Persistent ledger of quota units irrevocably consumed today.

One record per provider day. Only the consumed total is persisted;
reservations live in memory and start from zero on every process start.

Persistence failures never raise: the ledger logs the error, stops writing,
and keeps the in-memory value authoritative for the rest of the process.
"""

import logging
import sqlite3
from pathlib import Path

from commentslash.core.db import get_latest_record, init_db, save_record
from commentslash.core.epoch import DEFAULT_PROVIDER_TZ, Clock, provider_date_key, utc_now
from commentslash.core.schemas import LedgerRecord

logger = logging.getLogger(__name__)


class Ledger:
    """Durable daily counter.

    Not thread-safe on its own; QuotaService serialises access.

    Usage::

        ledger = Ledger("data/quota.db")
        ledger.load()
        ledger.check_day_reset()
        ledger.record_used(50)
    """

    def __init__(
        self,
        path: str | Path | None,
        clock: Clock = utc_now,
        tz: str = DEFAULT_PROVIDER_TZ,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._clock = clock
        self._tz = tz
        self._conn: sqlite3.Connection | None = None
        self._record = self._fresh_record()

    @property
    def date(self) -> str:
        return self._record.date

    @property
    def total_used(self) -> int:
        return self._record.total_used

    @property
    def record(self) -> LedgerRecord:
        return self._record.model_copy()

    @property
    def is_persistent(self) -> bool:
        """False once storage is unavailable (or was never configured)."""
        return self._conn is not None

    def load(self) -> LedgerRecord:
        """Open storage and read the latest persisted record.

        Absent or unreadable storage leaves a zero record for the current day.
        """
        if self._path is None:
            logger.info("No ledger path configured - running in memory only")
            return self.record
        try:
            self._conn = init_db(self._path)
            loaded = get_latest_record(self._conn)
        except (sqlite3.Error, OSError, ValueError) as e:
            logger.error("Failed to load ledger from %s: %s", self._path, e)
            self._disable_storage()
            return self.record

        if loaded is None:
            logger.info("No ledger record in %s - starting at zero", self._path)
        else:
            self._record = loaded
            logger.info("Loaded ledger: %d used on %s", loaded.total_used, loaded.date)
        return self.record

    def check_day_reset(self) -> bool:
        """Zero the counter if the provider day has advanced.

        Returns True when a reset happened so the caller can drop every
        reservation in the same critical section. Idempotent.
        """
        today = provider_date_key(self._clock(), self._tz)
        # ISO keys order as dates; a clock stepping back never resets.
        if today <= self._record.date:
            return False
        logger.info("Quota reset for new provider day: %s", today)
        self._record = self._fresh_record(today)
        self.persist()
        return True

    def record_used(self, delta: int) -> int:
        """Add consumed units and persist before returning the new total."""
        if delta < 0:
            msg = f"delta must be non-negative, got {delta}"
            raise ValueError(msg)
        self._record.total_used += delta
        self.persist()
        return self._record.total_used

    def persist(self) -> None:
        """Write the current record. Logs and degrades on failure."""
        if self._conn is None:
            return
        try:
            save_record(self._conn, self._record)
        except sqlite3.Error as e:
            logger.error(
                "Failed to save ledger to %s: %s - continuing in memory only",
                self._path, e,
            )
            self._disable_storage()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _disable_storage(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.debug("Ignoring error while closing ledger connection")
        self._conn = None

    def _fresh_record(self, date: str | None = None) -> LedgerRecord:
        now = self._clock()
        return LedgerRecord(
            date=date or provider_date_key(now, self._tz),
            total_used=0,
            last_reset=now,
        )
