"""Configuration models, YAML loader and live environment overrides."""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# Hard ceiling on concurrent provider calls per session.
MAX_PARALLEL_CAP = 10

# Environment variable → QuotaConfig field.
QUOTA_ENV_VARS: dict[str, str] = {
    "YOUTUBE_DAILY_QUOTA_LIMIT": "daily_limit",
    "YOUTUBE_PER_MINUTE_QUOTA_LIMIT": "per_minute_limit",
    "YOUTUBE_PER_USER_MINUTE_LIMIT": "per_user_per_minute_limit",
    "QUOTA_RESERVATION_CHUNK_SIZE": "reservation_chunk_size",
    "MAX_PARALLEL_DELETIONS": "max_parallel_deletions",
    "QUOTA_DELETE_COST": "delete_unit_cost",
}


class QuotaConfig(BaseModel):
    """Provider quota limits and admission tunables."""

    daily_limit: int = Field(default=10000, ge=1)
    per_minute_limit: int = Field(default=1_800_000, ge=1)
    per_user_per_minute_limit: int = Field(default=180_000, ge=1)
    reservation_chunk_size: int = Field(default=1000, ge=1)
    max_parallel_deletions: int = Field(default=5, ge=1)
    delete_unit_cost: int = Field(default=50, ge=1)
    list_unit_cost: int = Field(default=1, ge=0)
    provider_page_size: int = Field(default=50, ge=1)
    provider_timezone: str = "America/Los_Angeles"
    enforce_per_minute_limit: bool = False
    reservation_ttl_seconds: float = Field(default=300.0, gt=0)
    inactivity_timeout_seconds: float = Field(default=120.0, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    reservation_sweep_interval_seconds: float = Field(default=60.0, gt=0)

    @field_validator("max_parallel_deletions")
    @classmethod
    def cap_parallelism(cls, v: int) -> int:
        return min(v, MAX_PARALLEL_CAP)

    @field_validator("provider_timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        v = v.strip()
        if not v:
            msg = "provider_timezone must not be empty"
            raise ValueError(msg)
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"Unknown provider_timezone '{v}'"
            raise ValueError(msg) from e
        return v

    def with_env(self, environ: Mapping[str, str] | None = None) -> "QuotaConfig":
        """Return a copy with integer limits overridden from the environment.

        Each override is validated on its own. Unparseable or out-of-range
        values are ignored and the configured value is kept.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = self.model_dump()
        changed = False
        for var, field in QUOTA_ENV_VARS.items():
            raw = env.get(var)
            if raw is None or not raw.strip():
                continue
            try:
                value = int(raw)
            except ValueError:
                logger.warning("Ignoring non-integer %s=%r", var, raw)
                continue
            try:
                QuotaConfig.model_validate({**values, field: value})
            except ValidationError as e:
                logger.warning("Ignoring out-of-range %s=%r: %s", var, raw, e.errors()[0]["msg"])
                continue
            values[field] = value
            changed = True
        enforce = env.get("QUOTA_ENFORCE_PER_MINUTE")
        if enforce is not None:
            values["enforce_per_minute_limit"] = enforce.strip().lower() == "true"
            changed = True
        if not changed:
            return self
        return QuotaConfig.model_validate(values)


class LiveQuotaConfig:
    """Config source that re-reads environment overrides on every call.

    The service calls its config source at the start of every operation, so
    a changed environment takes effect without rebuilding anything.
    """

    def __init__(self, base: QuotaConfig | None = None) -> None:
        self._base = base or QuotaConfig()

    def __call__(self) -> QuotaConfig:
        return self._base.with_env()


class StorageConfig(BaseModel):
    """Where the ledger file lives."""

    data_dir: str = "data"
    ledger_filename: str = "quota.db"

    @property
    def ledger_path(self) -> Path:
        return Path(self.data_dir) / self.ledger_filename


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)
    keepalive_seconds: float = Field(default=30.0, gt=0)
    session_cookie: str = "quota_session"
    session_cookie_max_age: int = Field(default=60 * 60 * 24, ge=60)


class LoggingConfig(BaseModel):
    """Logging verbosity."""

    detailed: bool = False


class Settings(BaseModel):
    """Top-level settings loaded from YAML."""

    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise FileNotFoundError(msg)
        raw: dict[str, Any] = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(raw)

    def with_env(self, environ: Mapping[str, str] | None = None) -> "Settings":
        """Apply DATA_DIR and DETAILED_LOGGING on top of the loaded settings.

        Quota limits are not applied here; they are read live through
        LiveQuotaConfig.
        """
        env = os.environ if environ is None else environ
        updated = self
        data_dir = env.get("DATA_DIR")
        if data_dir:
            storage = self.storage.model_copy(update={"data_dir": data_dir})
            updated = updated.model_copy(update={"storage": storage})
        detailed = env.get("DETAILED_LOGGING")
        if detailed is not None:
            log_cfg = LoggingConfig(detailed=detailed.strip().lower() == "true")
            updated = updated.model_copy(update={"logging": log_cfg})
        return updated
