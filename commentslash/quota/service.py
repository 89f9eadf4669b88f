"""Quota service: reservation-based admission control over a shared daily budget.

Protocol per session: reserve a chunk → perform provider calls → confirm what
was actually consumed → repeat → release. Sessions interleave small chunks so
one large job cannot starve the others.

Conservation: ledger.total_used + Σ(reserved − used) <= daily_limit. Every
grant is capped by what is available after the other sessions' outstanding
reservations, and confirmations are capped by the caller's own outstanding
reservation, so no sequence of calls can break it.

All state sits behind one RLock: FastAPI runs sync endpoints on a thread pool
and the sweeper is its own thread. Snapshots are taken under the lock and
published after it is released. Each snapshot carries a version taken under
the lock, so the broadcaster never delivers an older one after a newer one.
"""

import logging
import math
import threading
from collections.abc import Callable
from datetime import timedelta

from commentslash.core.config import LiveQuotaConfig, QuotaConfig, Settings
from commentslash.core.epoch import (
    Clock,
    seconds_until_next_minute,
    time_until_reset,
    utc_now,
)
from commentslash.core.ledger import Ledger
from commentslash.core.log import short_id
from commentslash.core.schemas import BatchReport, QuotaStatus, Reservation, ReserveResult
from commentslash.quota.broadcast import Listener, StatusBroadcaster, Subscription, deliver
from commentslash.quota.tables import MinuteCounter, PresenceTable, ReservationTable

logger = logging.getLogger(__name__)

ConfigSource = Callable[[], QuotaConfig]

OPERATION_DELETE = "delete"
OPERATION_ENRICH = "enrich"
OPERATION_LIST = "list"


def estimate_cost(cfg: QuotaConfig, operation: str, item_count: int) -> int:
    """Units needed for a batch: deletes cost per item, reads per page."""
    if item_count < 0:
        msg = f"item_count must be non-negative, got {item_count}"
        raise ValueError(msg)
    if operation == OPERATION_DELETE:
        return item_count * cfg.delete_unit_cost
    if operation in (OPERATION_ENRICH, OPERATION_LIST):
        return math.ceil(item_count / cfg.provider_page_size) * cfg.list_unit_cost
    msg = f"Unknown operation '{operation}'. Available: delete, enrich, list"
    raise ValueError(msg)


class QuotaService:
    """Admission controller, session tables and broadcaster in one object.

    Usage::

        service = QuotaService(QuotaConfig(), ledger)
        result = service.reserve("session-1", total_planned=5000)
        if result.success:
            ...  # perform result.chunk_size // 50 deletes
            service.confirm("session-1", actual_used=900)
        service.release("session-1")
    """

    def __init__(
        self,
        config: QuotaConfig | ConfigSource,
        ledger: Ledger,
        clock: Clock = utc_now,
        broadcaster: StatusBroadcaster | None = None,
    ) -> None:
        if isinstance(config, QuotaConfig):
            fixed = config
            self._config: ConfigSource = lambda: fixed
        else:
            self._config = config
        self._ledger = ledger
        self._clock = clock
        self._broadcaster = broadcaster if broadcaster is not None else StatusBroadcaster()
        self._lock = threading.RLock()
        self._reservations = ReservationTable()
        self._presence = PresenceTable()
        self._minute = MinuteCounter(clock())
        self._version = 0

    @property
    def config(self) -> QuotaConfig:
        return self._config()

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self._broadcaster

    def reservation(self, session_id: str) -> Reservation | None:
        """Copy of a session's reservation, for inspection."""
        with self._lock:
            r = self._reservations.get(session_id)
            return r.model_copy() if r is not None else None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> QuotaStatus:
        cfg = self._config()
        with self._lock:
            reset = self._check_day_reset()
            snapshot = self._snapshot(cfg)
        if reset:
            self._broadcaster.publish(snapshot)
        return snapshot

    def subscribe(self, listener: Listener) -> Subscription:
        """Add a listener and hand it the current snapshot straight away."""
        subscription = self._broadcaster.subscribe(listener)
        if not deliver(listener, self.status()):
            subscription.cancel()
        return subscription

    # ------------------------------------------------------------------
    # Reserve / confirm / release
    # ------------------------------------------------------------------

    def reserve(self, session_id: str, total_planned: int) -> ReserveResult:
        """Grant (or keep) a bounded chunk of the shared budget for a session."""
        if total_planned <= 0:
            msg = f"total_planned must be positive, got {total_planned}"
            raise ValueError(msg)
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            now = self._clock()
            self._minute.roll(now)

            available = self._available_for(session_id, cfg)
            if available <= 0:
                countdown = time_until_reset(now, cfg.provider_timezone)
                logger.info(
                    "Reserve refused for session %s: daily quota exhausted (resets in %s)",
                    short_id(session_id), countdown.formatted,
                )
                return ReserveResult(
                    success=False,
                    message="Daily quota exhausted",
                    resets_in=countdown.formatted,
                    retry_after_seconds=countdown.total_seconds,
                    status=self._snapshot(cfg),
                )
            if cfg.enforce_per_minute_limit and self._minute.used >= cfg.per_minute_limit:
                logger.info("Reserve refused for session %s: per-minute limit reached",
                            short_id(session_id))
                return ReserveResult(
                    success=False,
                    message="Per-minute quota exhausted",
                    retry_after_seconds=seconds_until_next_minute(now),
                    status=self._snapshot(cfg),
                )

            existing = self._reservations.get(session_id)
            if existing is not None and existing.outstanding >= cfg.reservation_chunk_size:
                # Enough held already; no top-up.
                granted = max(0, min(existing.outstanding, total_planned - existing.used))
                existing.total_planned = total_planned
                existing.created_at = now
            else:
                granted = min(cfg.reservation_chunk_size, available, total_planned)
                if existing is None:
                    self._reservations.put(Reservation(
                        session_id=session_id,
                        total_planned=total_planned,
                        reserved=granted,
                        created_at=now,
                    ))
                else:
                    existing.reserved = existing.used + granted
                    existing.total_planned = total_planned
                    existing.created_at = now
            self._presence.touch(session_id, now, is_deleting=True)
            snapshot = self._snapshot(cfg)

        self._broadcaster.publish(snapshot)
        logger.info(
            "Reserved %d quota for session %s (total reserved: %d)",
            granted, short_id(session_id), snapshot.reserved,
        )
        return ReserveResult(success=True, chunk_size=granted, status=snapshot)

    def confirm(self, session_id: str, actual_used: int) -> int:
        """Convert reserved units to used. Returns the amount confirmed.

        Never confirms more than the session's outstanding reservation; a
        session with no reservation confirms nothing.
        """
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            confirmed = self._confirm_locked(session_id, actual_used)
            if confirmed == 0:
                return 0
            snapshot = self._snapshot(cfg)

        self._broadcaster.publish(snapshot)
        logger.info(
            "Confirmed %d quota usage (total used: %d/%d)",
            confirmed, snapshot.used, snapshot.daily_limit,
        )
        return confirmed

    def confirm_batch(self, session_id: str, succeeded: int, failed: int = 0) -> BatchReport:
        """Confirm a batch of deletes and work out the next allowable chunk.

        Confirms succeeded × delete cost, then either reuses what is still
        reserved or tops the reservation up against the remaining plan.
        """
        if succeeded < 0 or failed < 0:
            msg = f"batch counts must be non-negative, got {succeeded}/{failed}"
            raise ValueError(msg)
        cfg = self._config()
        cost = cfg.delete_unit_cost
        with self._lock:
            self._check_day_reset()
            now = self._clock()
            confirmed = self._confirm_locked(session_id, succeeded * cost)
            message: str | None = None
            next_chunk = 0
            r = self._reservations.get(session_id)
            if r is None:
                message = "No active reservation"
            else:
                remaining_plan = r.total_planned - r.used
                if remaining_plan < cost:
                    message = "Planned work complete"
                elif r.outstanding >= cost:
                    next_chunk = min(r.outstanding, remaining_plan)
                else:
                    target = min(
                        cfg.reservation_chunk_size,
                        self._available_for(session_id, cfg),
                        remaining_plan,
                    )
                    if target < cost:
                        message = "Daily quota exhausted"
                    else:
                        r.reserved = r.used + target
                        r.created_at = now
                        next_chunk = target
            parallel = self._parallel_locked(cfg)
            snapshot = self._snapshot(cfg)

        self._broadcaster.publish(snapshot)
        if failed:
            logger.info("Batch for session %s: %d succeeded, %d failed",
                        short_id(session_id), succeeded, failed)
        return BatchReport(
            confirmed=confirmed,
            next_chunk=next_chunk,
            should_continue=next_chunk > 0,
            parallel=parallel,
            message=message,
            status=snapshot,
        )

    def release(self, session_id: str) -> None:
        """Return unconsumed units to the pool and drop the reservation.

        Releasing a session without a reservation changes nothing.
        """
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            released = self._drop_reservation_locked(session_id)
            entry = self._presence.get(session_id)
            was_deleting = entry is not None and entry.is_deleting
            if released is None and not was_deleting:
                return
            self._presence.set_deleting(session_id, False)
            snapshot = self._snapshot(cfg)
        self._broadcaster.publish(snapshot)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def register_session(self, session_id: str) -> None:
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            self._presence.touch(session_id, self._clock(), is_deleting=False)
            snapshot = self._snapshot(cfg)
        self._broadcaster.publish(snapshot)

    def unregister_session(self, session_id: str) -> None:
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            removed = self._presence.remove(session_id)
            released = self._drop_reservation_locked(session_id)
            if not removed and released is None:
                return
            snapshot = self._snapshot(cfg)
        self._broadcaster.publish(snapshot)

    def touch_activity(self, session_id: str, is_deleting: bool | None = None) -> None:
        """Refresh a session's presence, creating it on first contact."""
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            before = self._presence.get(session_id)
            was = None if before is None else before.is_deleting
            entry = self._presence.touch(session_id, self._clock(), is_deleting=is_deleting)
            if was is not None and was == entry.is_deleting:
                return
            snapshot = self._snapshot(cfg)
        self._broadcaster.publish(snapshot)

    def parallel_allowance(self, session_id: str) -> int:
        """Recommended concurrent provider calls for a session right now.

        Fair division of the configured cap across deleting sessions,
        recomputed on every call.
        """
        cfg = self._config()
        with self._lock:
            return self._parallel_locked(cfg)

    # ------------------------------------------------------------------
    # Direct usage (no reservation)
    # ------------------------------------------------------------------

    def has_enough_quota(self, cost: int) -> bool:
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            effective = self._ledger.total_used + self._reservations.outstanding_total()
            return effective + cost <= cfg.daily_limit

    def has_per_minute_quota(self, cost: int) -> bool:
        cfg = self._config()
        with self._lock:
            self._minute.roll(self._clock())
            return self._minute.used + cost <= cfg.per_minute_limit

    def record_usage(self, cost: int) -> bool:
        """Charge `cost` straight to the ledger if it fits. Check and add are atomic."""
        if cost <= 0:
            msg = f"cost must be positive, got {cost}"
            raise ValueError(msg)
        cfg = self._config()
        with self._lock:
            self._check_day_reset()
            effective = self._ledger.total_used + self._reservations.outstanding_total()
            if effective + cost > cfg.daily_limit:
                logger.warning("Quota limit would be exceeded: requested %d", cost)
                return False
            self._minute.roll(self._clock())
            self._ledger.record_used(cost)
            self._minute.add(cost)
            snapshot = self._snapshot(cfg)
        self._broadcaster.publish(snapshot)
        logger.info("Quota used: +%d (total: %d/%d)", cost, snapshot.used, cfg.daily_limit)
        return True

    def estimate_cost(self, operation: str, item_count: int) -> int:
        return estimate_cost(self._config(), operation, item_count)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def sweep_stale_reservations(self) -> int:
        """Reap reservations untouched for longer than the TTL."""
        cfg = self._config()
        max_age = timedelta(seconds=cfg.reservation_ttl_seconds)
        with self._lock:
            self._check_day_reset()
            stale = self._reservations.stale(self._clock(), max_age)
            for session_id in stale:
                self._drop_reservation_locked(session_id, reason="stale")
                self._presence.set_deleting(session_id, False)
            if not stale:
                return 0
            snapshot = self._snapshot(cfg)
        self._broadcaster.publish(snapshot)
        return len(stale)

    def sweep_inactive_sessions(self) -> int:
        """Drop idle sessions along with any reservation they still hold."""
        cfg = self._config()
        max_idle = timedelta(seconds=cfg.inactivity_timeout_seconds)
        with self._lock:
            inactive = self._presence.inactive(self._clock(), max_idle)
            for session_id in inactive:
                self._presence.remove(session_id)
                self._drop_reservation_locked(session_id, reason="inactive")
            if not inactive:
                return 0
            snapshot = self._snapshot(cfg)
        logger.debug("Removed %d inactive session(s)", len(inactive))
        self._broadcaster.publish(snapshot)
        return len(inactive)

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _check_day_reset(self) -> bool:
        if not self._ledger.check_day_reset():
            return False
        dropped = len(self._reservations)
        self._reservations.clear()
        if dropped:
            logger.info("Cleared %d reservation(s) at day reset", dropped)
        return True

    def _available_for(self, session_id: str, cfg: QuotaConfig) -> int:
        others = self._reservations.outstanding_total(exclude=session_id)
        return cfg.daily_limit - self._ledger.total_used - others

    def _confirm_locked(self, session_id: str, actual_used: int) -> int:
        if actual_used < 0:
            logger.warning("Quota confirm rejected: negative amount %d for session %s",
                           actual_used, short_id(session_id))
            return 0
        r = self._reservations.get(session_id)
        if r is None:
            logger.warning("Quota confirm rejected: no reservation for session %s",
                           short_id(session_id))
            return 0
        confirmed = min(actual_used, r.outstanding)
        if actual_used > confirmed:
            logger.warning(
                "Quota confirm clamped for session %s: requested %d, outstanding %d",
                short_id(session_id), actual_used, confirmed,
            )
        now = self._clock()
        r.used += confirmed
        r.created_at = now
        self._presence.touch(session_id, now)
        if confirmed:
            self._minute.roll(now)
            self._minute.add(confirmed)
            self._ledger.record_used(confirmed)
        return confirmed

    def _drop_reservation_locked(self, session_id: str, reason: str = "released") -> int | None:
        """Remove a reservation; returns its unused units or None if absent."""
        r = self._reservations.pop(session_id)
        if r is None:
            return None
        unused = max(0, r.outstanding)
        if unused:
            logger.info("%s reservation for session %s: returned %d units",
                        reason.capitalize(), short_id(session_id), unused)
        return unused

    def _parallel_locked(self, cfg: QuotaConfig) -> int:
        cap = cfg.max_parallel_deletions
        deleting = self._presence.deleting_count()
        if deleting <= 1:
            return cap
        return max(1, cap // deleting)

    def _snapshot(self, cfg: QuotaConfig) -> QuotaStatus:
        now = self._clock()
        self._version += 1
        self._minute.roll(now)
        used = self._ledger.total_used
        reserved = self._reservations.outstanding_total()
        effective = used + reserved
        return QuotaStatus(
            used=used,
            reserved=reserved,
            remaining=max(0, cfg.daily_limit - effective),
            daily_limit=cfg.daily_limit,
            per_minute_used=self._minute.used,
            per_minute_limit=cfg.per_minute_limit,
            per_user_per_minute_limit=cfg.per_user_per_minute_limit,
            connected_users=len(self._presence),
            deleting_users=self._presence.deleting_count(),
            max_parallel_deletions=cfg.max_parallel_deletions,
            percent_used=math.floor(effective * 100 / cfg.daily_limit + 0.5),
            date=self._ledger.date,
            timestamp=int(now.timestamp() * 1000),
            resets_in_seconds=time_until_reset(now, cfg.provider_timezone).total_seconds,
            version=self._version,
        )


def build_service(settings: Settings, clock: Clock = utc_now) -> QuotaService:
    """Wire a service from settings: live env-driven limits, loaded ledger."""
    base = settings.quota
    ledger = Ledger(settings.storage.ledger_path, clock=clock, tz=base.provider_timezone)
    ledger.load()
    return QuotaService(LiveQuotaConfig(base), ledger, clock=clock)
