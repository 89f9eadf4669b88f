"""In-memory session tables: reservations, presence, and the minute counter.

None of these persist. They are plain containers; locking and the rules for
moving units between them belong to QuotaService.
"""

from collections.abc import Iterator
from datetime import datetime, timedelta

from commentslash.core.epoch import minute_key
from commentslash.core.schemas import PresenceEntry, Reservation


class ReservationTable:
    """session_id → Reservation."""

    def __init__(self) -> None:
        self._rows: dict[str, Reservation] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._rows

    def __iter__(self) -> Iterator[Reservation]:
        return iter(list(self._rows.values()))

    def get(self, session_id: str) -> Reservation | None:
        return self._rows.get(session_id)

    def put(self, reservation: Reservation) -> None:
        self._rows[reservation.session_id] = reservation

    def pop(self, session_id: str) -> Reservation | None:
        return self._rows.pop(session_id, None)

    def clear(self) -> None:
        self._rows.clear()

    def outstanding_total(self, exclude: str | None = None) -> int:
        """Σ(reserved − used), optionally skipping one session."""
        return sum(
            r.outstanding for sid, r in self._rows.items() if sid != exclude
        )

    def stale(self, now: datetime, max_age: timedelta) -> list[str]:
        """Sessions whose reservation was last touched more than max_age ago."""
        return [sid for sid, r in self._rows.items() if now - r.created_at > max_age]


class PresenceTable:
    """session_id → PresenceEntry."""

    def __init__(self) -> None:
        self._rows: dict[str, PresenceEntry] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._rows

    def get(self, session_id: str) -> PresenceEntry | None:
        return self._rows.get(session_id)

    def touch(self, session_id: str, now: datetime, is_deleting: bool | None = None) -> PresenceEntry:
        """Create or refresh an entry. is_deleting=None keeps the current flag."""
        entry = self._rows.get(session_id)
        if entry is None:
            entry = PresenceEntry(
                session_id=session_id,
                is_deleting=bool(is_deleting),
                last_activity=now,
            )
            self._rows[session_id] = entry
            return entry
        entry.last_activity = now
        if is_deleting is not None:
            entry.is_deleting = is_deleting
        return entry

    def set_deleting(self, session_id: str, is_deleting: bool) -> None:
        entry = self._rows.get(session_id)
        if entry is not None:
            entry.is_deleting = is_deleting

    def remove(self, session_id: str) -> bool:
        return self._rows.pop(session_id, None) is not None

    def deleting_count(self) -> int:
        return sum(1 for e in self._rows.values() if e.is_deleting)

    def inactive(self, now: datetime, max_idle: timedelta) -> list[str]:
        return [sid for sid, e in self._rows.items() if now - e.last_activity > max_idle]


class MinuteCounter:
    """Confirmed usage within the current UTC minute."""

    def __init__(self, now: datetime) -> None:
        self.minute = minute_key(now)
        self.used = 0

    def roll(self, now: datetime) -> None:
        """Start a new count when the minute label changes."""
        current = minute_key(now)
        if current != self.minute:
            self.minute = current
            self.used = 0

    def add(self, amount: int) -> None:
        self.used += amount
