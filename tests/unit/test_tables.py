"""Tests for the in-memory reservation, presence and minute tables."""

from datetime import UTC, datetime, timedelta

from commentslash.core.schemas import Reservation
from commentslash.quota.tables import MinuteCounter, PresenceTable, ReservationTable

T0 = datetime(2025, 6, 1, 19, 0, tzinfo=UTC)


def _reservation(sid: str, reserved: int, used: int = 0, at: datetime = T0) -> Reservation:
    return Reservation(session_id=sid, total_planned=10_000, reserved=reserved, used=used, created_at=at)


class TestReservationTable:
    def test_put_get_pop(self) -> None:
        table = ReservationTable()
        table.put(_reservation("a", 100))
        assert "a" in table
        assert len(table) == 1
        assert table.get("a").reserved == 100
        assert table.pop("a") is not None
        assert table.pop("a") is None
        assert "a" not in table

    def test_outstanding_total(self) -> None:
        table = ReservationTable()
        table.put(_reservation("a", 1000, used=250))
        table.put(_reservation("b", 500))
        assert table.outstanding_total() == 1250
        assert table.outstanding_total(exclude="a") == 500

    def test_stale(self) -> None:
        table = ReservationTable()
        table.put(_reservation("old", 100, at=T0 - timedelta(minutes=10)))
        table.put(_reservation("new", 100, at=T0 - timedelta(minutes=1)))
        assert table.stale(T0, timedelta(minutes=5)) == ["old"]

    def test_iteration_is_a_snapshot(self) -> None:
        table = ReservationTable()
        table.put(_reservation("a", 1))
        table.put(_reservation("b", 1))
        for r in table:
            table.pop(r.session_id)
        assert len(table) == 0


class TestPresenceTable:
    def test_touch_creates_entry(self) -> None:
        table = PresenceTable()
        entry = table.touch("a", T0)
        assert entry.is_deleting is False
        assert entry.last_activity == T0
        assert len(table) == 1

    def test_touch_keeps_flag_when_none(self) -> None:
        table = PresenceTable()
        table.touch("a", T0, is_deleting=True)
        later = T0 + timedelta(seconds=30)
        entry = table.touch("a", later)
        assert entry.is_deleting is True
        assert entry.last_activity == later

    def test_deleting_count(self) -> None:
        table = PresenceTable()
        table.touch("a", T0, is_deleting=True)
        table.touch("b", T0, is_deleting=True)
        table.touch("c", T0)
        assert table.deleting_count() == 2
        table.set_deleting("a", False)
        assert table.deleting_count() == 1

    def test_set_deleting_unknown_session_is_noop(self) -> None:
        table = PresenceTable()
        table.set_deleting("ghost", True)
        assert "ghost" not in table

    def test_remove(self) -> None:
        table = PresenceTable()
        table.touch("a", T0)
        assert table.remove("a") is True
        assert table.remove("a") is False

    def test_inactive(self) -> None:
        table = PresenceTable()
        table.touch("idle", T0 - timedelta(minutes=5))
        table.touch("busy", T0)
        assert table.inactive(T0, timedelta(minutes=2)) == ["idle"]


class TestMinuteCounter:
    def test_rolls_on_new_minute(self) -> None:
        counter = MinuteCounter(T0)
        counter.add(50)
        counter.roll(T0 + timedelta(seconds=59))
        assert counter.used == 50
        counter.roll(T0 + timedelta(seconds=60))
        assert counter.used == 0
        assert counter.minute == "2025-06-01T19:01"
