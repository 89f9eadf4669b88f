"""Data models for quota state, reservations and operation results."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Reservation(BaseModel):
    """Quota set aside for one session's current operation.

    Mutable: owned and updated in place by QuotaService only.
    """

    session_id: str
    total_planned: int
    reserved: int = 0
    used: int = 0
    created_at: datetime

    @property
    def outstanding(self) -> int:
        """Units reserved but not yet confirmed."""
        return self.reserved - self.used


class PresenceEntry(BaseModel):
    """A connected session and whether it is currently deleting."""

    session_id: str
    is_deleting: bool = False
    last_activity: datetime


class LedgerRecord(BaseModel):
    """The persisted daily usage record. Reservations are never part of it."""

    date: str
    total_used: int = Field(default=0, ge=0)
    last_reset: datetime


class QuotaStatus(BaseModel):
    """Aggregate snapshot pushed to dashboards. Derived, never stored."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    used: int
    reserved: int
    remaining: int
    daily_limit: int
    per_minute_used: int
    per_minute_limit: int
    per_user_per_minute_limit: int
    connected_users: int
    deleting_users: int
    max_parallel_deletions: int
    percent_used: int
    date: str
    timestamp: int
    resets_in_seconds: int
    # Assigned under the service lock; never sent to clients.
    version: int = Field(default=0, exclude=True)

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


class ReserveResult(BaseModel):
    """Outcome of a reserve call. Never a bare boolean."""

    model_config = ConfigDict(frozen=True)

    success: bool
    chunk_size: int = 0
    message: str | None = None
    resets_in: str | None = None
    retry_after_seconds: int | None = None
    status: QuotaStatus


class BatchReport(BaseModel):
    """Result of confirming one batch of deletes."""

    model_config = ConfigDict(frozen=True)

    confirmed: int
    next_chunk: int
    should_continue: bool
    parallel: int
    message: str | None = None
    status: QuotaStatus
