"""Shared fixtures: a controllable clock and an in-memory quota service."""

from datetime import UTC, datetime, timedelta

import pytest

from commentslash.core.config import QuotaConfig
from commentslash.core.ledger import Ledger
from commentslash.quota.service import QuotaService

# 2025-06-01 12:00 in Los Angeles (PDT, UTC-7).
NOON_LA = datetime(2025, 6, 1, 19, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = NOON_LA) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def quota_config() -> QuotaConfig:
    return QuotaConfig(daily_limit=10000, reservation_chunk_size=1000, delete_unit_cost=50)


@pytest.fixture
def service(quota_config: QuotaConfig, clock: FakeClock) -> QuotaService:
    ledger = Ledger(None, clock=clock)
    ledger.load()
    return QuotaService(quota_config, ledger, clock=clock)
