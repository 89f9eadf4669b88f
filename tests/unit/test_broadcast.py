"""Tests for the snapshot broadcaster."""

from unittest.mock import MagicMock

from commentslash.core.schemas import QuotaStatus
from commentslash.quota.broadcast import StatusBroadcaster


def _status(used: int = 0, version: int = 0) -> QuotaStatus:
    return QuotaStatus(
        used=used,
        reserved=0,
        remaining=10000 - used,
        daily_limit=10000,
        per_minute_used=0,
        per_minute_limit=1_800_000,
        per_user_per_minute_limit=180_000,
        connected_users=0,
        deleting_users=0,
        max_parallel_deletions=5,
        percent_used=0,
        date="2025-06-01",
        timestamp=0,
        resets_in_seconds=43200,
        version=version,
    )


class TestStatusBroadcaster:
    def test_publish_reaches_every_listener(self) -> None:
        broadcaster = StatusBroadcaster()
        first, second = MagicMock(), MagicMock()
        broadcaster.subscribe(first)
        broadcaster.subscribe(second)

        status = _status(50)
        assert broadcaster.publish(status) == 0

        first.assert_called_once_with(status)
        second.assert_called_once_with(status)

    def test_failing_listener_is_dropped(self) -> None:
        broadcaster = StatusBroadcaster()
        healthy = MagicMock()
        broken = MagicMock(side_effect=RuntimeError("socket closed"))
        broadcaster.subscribe(healthy)
        broadcaster.subscribe(broken)

        assert broadcaster.publish(_status()) == 1
        assert len(broadcaster) == 1

        broadcaster.publish(_status(10))
        assert broken.call_count == 1
        assert healthy.call_count == 2

    def test_cancel_subscription(self) -> None:
        broadcaster = StatusBroadcaster()
        listener = MagicMock()
        subscription = broadcaster.subscribe(listener)
        assert subscription.active is True

        subscription()
        assert subscription.active is False
        broadcaster.publish(_status())
        listener.assert_not_called()

    def test_cancel_twice_is_harmless(self) -> None:
        broadcaster = StatusBroadcaster()
        subscription = broadcaster.subscribe(MagicMock())
        subscription.cancel()
        subscription.cancel()
        assert len(broadcaster) == 0

    def test_superseded_snapshot_not_delivered(self) -> None:
        broadcaster = StatusBroadcaster()
        listener = MagicMock()
        broadcaster.subscribe(listener)

        broadcaster.publish(_status(100, version=2))
        broadcaster.publish(_status(50, version=1))

        listener.assert_called_once()
        assert listener.call_args.args[0].used == 100

    def test_unversioned_snapshots_always_delivered(self) -> None:
        broadcaster = StatusBroadcaster()
        listener = MagicMock()
        broadcaster.subscribe(listener)
        broadcaster.publish(_status(10, version=5))
        broadcaster.publish(_status(20))
        assert listener.call_count == 2

    def test_wire_format_is_camel_case(self) -> None:
        wire = _status(25).to_wire()
        assert wire["used"] == 25
        assert wire["dailyLimit"] == 10000
        assert wire["perMinuteUsed"] == 0
        assert wire["connectedUsers"] == 0
        assert wire["maxParallelDeletions"] == 5
        assert wire["percentUsed"] == 0
        assert wire["resetsInSeconds"] == 43200
        assert "version" not in wire
