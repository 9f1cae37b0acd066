"""Configuration models and YAML loader for the shift marketplace core."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

Environment = Literal["development", "test", "production"]
VerificationPolicy = Literal["strict", "lenient"]


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "data/shiftbook.db"


class QualificationConfig(BaseModel):
    """Instant Book evaluation policy.

    ``strict`` only counts verified language skills; ``lenient`` also
    accepts skills still pending review (rejected skills never count).
    """

    verification_policy: VerificationPolicy = "strict"


class ReliabilityConfig(BaseModel):
    """Freeze and ban rules for the reliability score ledger."""

    freeze_days: int = Field(default=7, ge=1)
    no_show_ban_threshold: int = Field(default=3, ge=1)
    no_show_window_days: int = Field(default=30, ge=1)


class ScheduleConfig(BaseModel):
    """Timezone in which shift dates and start times are written."""

    timezone: str = "Asia/Ho_Chi_Minh"

    @field_validator("timezone")
    @classmethod
    def timezone_known(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            msg = f"unknown timezone '{v}'"
            raise ValueError(msg) from None
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class CheckinConfig(BaseModel):
    """QR signing and GPS gate configuration."""

    environment: Environment = "development"
    qr_secret: str | None = None
    gps_radius_meters: float = Field(default=200.0, gt=0)
    late_grace_minutes: int = Field(default=15, ge=0)
    severe_late_minutes: int = Field(default=30, ge=0)


class Settings(BaseModel):
    """Top-level settings loaded from YAML."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    qualification: QualificationConfig = Field(default_factory=QualificationConfig)
    reliability: ReliabilityConfig = Field(default_factory=ReliabilityConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    checkin: CheckinConfig = Field(default_factory=CheckinConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise FileNotFoundError(msg)
        raw: dict[str, Any] = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(raw)

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> "Settings":
        """Return a copy with SHIFTBOOK_* environment variables applied on top."""
        env = os.environ if environ is None else environ
        data = self.model_dump()
        if "SHIFTBOOK_ENV" in env:
            data["checkin"]["environment"] = env["SHIFTBOOK_ENV"]
        if "SHIFTBOOK_QR_SECRET" in env:
            data["checkin"]["qr_secret"] = env["SHIFTBOOK_QR_SECRET"]
        if "SHIFTBOOK_GPS_RADIUS_METERS" in env:
            data["checkin"]["gps_radius_meters"] = env["SHIFTBOOK_GPS_RADIUS_METERS"]
        if "SHIFTBOOK_DB_PATH" in env:
            data["database"]["path"] = env["SHIFTBOOK_DB_PATH"]
        if "SHIFTBOOK_TIMEZONE" in env:
            data["schedule"]["timezone"] = env["SHIFTBOOK_TIMEZONE"]
        return type(self).model_validate(data)
