"""Core data models for the shift marketplace."""

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from shiftbook.matching.languages import normalize

VerificationStatus = Literal["verified", "pending", "rejected"]


class ErrorCode(str, Enum):
    """Stable codes returned in failed results so callers can branch or translate."""

    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    INVALID_STATUS = "INVALID_STATUS"
    ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    GPS_OUT_OF_RANGE = "GPS_OUT_OF_RANGE"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class PenaltyTier(str, Enum):
    FREE = "free"
    LATE = "late"
    VERY_LATE = "very_late"
    NO_SHOW = "no_show"


def _as_utc(value: datetime | None) -> datetime | None:
    """Naive timestamps from the store are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Qualification inputs and output
# ---------------------------------------------------------------------------


class LanguageSkill(BaseModel):
    """One certified language level held by a worker."""

    model_config = ConfigDict(frozen=True)

    language: str
    level: str
    verification_status: VerificationStatus = "pending"

    @field_validator("language", "level")
    @classmethod
    def lowercase(cls, v: str) -> str:
        return normalize(v)


class WorkerProfile(BaseModel):
    """Read-only view of a worker as the qualification evaluator sees it."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    reliability_score: int = Field(default=100, ge=0, le=100)
    is_account_frozen: bool = False
    frozen_until: datetime | None = None
    is_verified: bool = False
    language_skills: list[LanguageSkill] = Field(default_factory=list)

    @field_validator("frozen_until")
    @classmethod
    def frozen_until_aware(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    def skill_for(self, language: str) -> LanguageSkill | None:
        """Return the worker's skill entry for ``language``, if any."""
        wanted = normalize(language)
        for skill in self.language_skills:
            if skill.language == wanted:
                return skill
        return None


class JobRequirements(BaseModel):
    """What a job demands before a worker may book it instantly."""

    model_config = ConfigDict(frozen=True)

    required_language: str
    required_language_level: str
    min_reliability_score: int = Field(default=0, ge=0, le=100)

    @field_validator("required_language", "required_language_level")
    @classmethod
    def lowercase(cls, v: str) -> str:
        return normalize(v)


class WorkerQualification(BaseModel):
    """Snapshot of every Instant Book criterion for one worker/job pair."""

    model_config = ConfigDict(frozen=True)

    has_required_language: bool
    meets_language_level: bool
    meets_reliability_score: bool
    is_account_active: bool
    is_verified: bool

    @computed_field  # type: ignore[prop-decorator]
    @property
    def qualifies_for_instant_book(self) -> bool:
        return (
            self.has_required_language
            and self.meets_language_level
            and self.meets_reliability_score
            and self.is_account_active
            and self.is_verified
        )


# ---------------------------------------------------------------------------
# Jobs, applications, reliability
# ---------------------------------------------------------------------------


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class Job(BaseModel):
    """A posted shift."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    title: str
    shift_date: date
    shift_start_time: time
    shift_end_time: time | None = None
    hourly_rate: int = Field(default=0, ge=0)
    restaurant_lat: float | None = None
    restaurant_lng: float | None = None
    required_language: str = "japanese"
    required_language_level: str = "beginner"
    min_reliability_score: int = Field(default=0, ge=0, le=100)

    @property
    def requirements(self) -> JobRequirements:
        return JobRequirements(
            required_language=self.required_language,
            required_language_level=self.required_language_level,
            min_reliability_score=self.min_reliability_score,
        )

    @property
    def restaurant_location(self) -> Coordinates | None:
        if self.restaurant_lat is None or self.restaurant_lng is None:
            return None
        return Coordinates(latitude=self.restaurant_lat, longitude=self.restaurant_lng)


class Application(BaseModel):
    """A worker's application to a job."""

    model_config = ConfigDict(frozen=True)

    id: str
    job_id: str
    worker_id: str
    status: ApplicationStatus = ApplicationStatus.PENDING
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    cancellation_penalty: int = 0


class CancellationOutcome(BaseModel):
    """Penalty owed for a worker-initiated cancellation."""

    model_config = ConfigDict(frozen=True)

    points: int = Field(le=0)
    freeze: bool
    tier: PenaltyTier


class CancellationResult(BaseModel):
    success: bool
    message: str
    penalty: int = Field(default=0, ge=0)
    tier: PenaltyTier | None = None
    error_code: ErrorCode | None = None


class ScoreChange(BaseModel):
    """One applied reliability delta, as recorded in the history table."""

    model_config = ConfigDict(frozen=True)

    worker_id: str
    delta: int
    previous_score: int
    new_score: int
    reason: str
    created_at: datetime


class FreezeStatus(BaseModel):
    is_frozen: bool
    frozen_until: datetime | None = None
    freeze_reason: str | None = None
    no_show_count: int = 0
    can_apply: bool = True


# ---------------------------------------------------------------------------
# QR check-in
# ---------------------------------------------------------------------------


class JobQRPayload(BaseModel):
    """Version 2 signed job QR payload. Unknown or missing fields are rejected."""

    model_config = ConfigDict(frozen=True, extra="forbid", strict=True)

    job_id: str
    owner_id: str
    secret_key: str
    created_at: str
    signature: str
    version: Literal[2]

    def signed_fields(self) -> dict[str, str]:
        """The fields covered by the signature, in canonical order."""
        return {
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "secret_key": self.secret_key,
            "created_at": self.created_at,
        }


class GeneratedQR(BaseModel):
    model_config = ConfigDict(frozen=True)

    qr_data_url: str
    qr_data: str
    secret_key: str


class QRValidationResult(BaseModel):
    valid: bool
    job_id: str | None = None
    owner_id: str | None = None
    error: str | None = None
    error_code: ErrorCode | None = None


class GPSValidationResult(BaseModel):
    valid: bool
    distance_meters: int
    error: str | None = None
    error_code: ErrorCode | None = None


class CheckinResult(BaseModel):
    success: bool
    message: str
    kind: Literal["check_in", "check_out"] | None = None
    application_id: str | None = None
    is_late: bool = False
    minutes_late: int = 0
    hours_worked: float | None = None
    total_pay: int | None = None
    distance_meters: int | None = None
    error_code: ErrorCode | None = None


class OperationResult(BaseModel):
    success: bool
    message: str
    error_code: ErrorCode | None = None
