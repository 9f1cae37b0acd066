"""Tests for worker and owner cancellation of applications."""

import sqlite3
from datetime import date, datetime, time, timedelta, timezone

import pytest

from shiftbook.core import db as db_module
from shiftbook.core.config import ScheduleConfig
from shiftbook.core.db import (
    get_application,
    get_notifications,
    get_profile,
    get_reliability_history,
    init_db,
    insert_application,
    insert_checkin,
    insert_job,
    set_application_status,
    transaction,
    upsert_profile,
)
from shiftbook.core.schemas import (
    Application,
    ApplicationStatus,
    ErrorCode,
    Job,
    PenaltyTier,
    ScoreChange,
    WorkerProfile,
)
from shiftbook.reliability.cancellation import CancellationService
from shiftbook.reliability.ledger import ReliabilityLedger

# Shift starts 2026-03-10 18:00 UTC.
SHIFT_START = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path: pytest.TempPathFactory) -> sqlite3.Connection:  # type: ignore[type-arg]
    conn = init_db(tmp_path / "test.db")
    upsert_profile(conn, WorkerProfile(id="w1", reliability_score=90))
    insert_job(
        conn,
        Job(
            id="j1",
            owner_id="owner-1",
            title="Izakaya hall staff",
            shift_date=date(2026, 3, 10),
            shift_start_time=time(18, 0),
        ),
    )
    insert_application(
        conn,
        Application(id="a1", job_id="j1", worker_id="w1", status=ApplicationStatus.APPROVED),
    )
    return conn


@pytest.fixture
def service(db: sqlite3.Connection) -> CancellationService:
    return CancellationService(db, ReliabilityLedger(db), ScheduleConfig(timezone="UTC"))


def _before(hours: float) -> datetime:
    return SHIFT_START - timedelta(hours=hours)


def _score(db: sqlite3.Connection) -> int:
    profile = get_profile(db, "w1")
    assert profile is not None
    return profile.reliability_score


# ---------------------------------------------------------------------------
# Worker cancellation
# ---------------------------------------------------------------------------


class TestCancelByWorker:
    def test_free_cancellation(self, db: sqlite3.Connection, service: CancellationService) -> None:
        result = service.cancel_by_worker("a1", "w1", now=_before(24))
        assert result.success is True
        assert result.penalty == 0
        assert result.tier == PenaltyTier.FREE
        assert result.message == "Application cancelled"
        assert _score(db) == 90
        assert get_reliability_history(db, "w1") == []

    def test_late_cancellation(self, db: sqlite3.Connection, service: CancellationService) -> None:
        result = service.cancel_by_worker("a1", "w1", reason="Sick", now=_before(3))
        assert result.success is True
        assert result.penalty == 5
        assert result.tier == PenaltyTier.LATE
        assert result.message == "Application cancelled. 5 reliability points deducted."
        assert _score(db) == 85
        app = get_application(db, "a1")
        assert app is not None
        assert app.status == ApplicationStatus.CANCELLED
        assert app.cancelled_by == "w1"
        assert app.cancellation_reason == "Sick"
        assert app.cancellation_penalty == 5

    def test_very_late_cancellation(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        result = service.cancel_by_worker("a1", "w1", now=_before(0.5))
        assert result.penalty == 15
        assert result.tier == PenaltyTier.VERY_LATE
        assert _score(db) == 75

    def test_no_show_cancellation_freezes(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        now = _before(-1)
        result = service.cancel_by_worker("a1", "w1", now=now)
        assert result.penalty == 20
        assert result.tier == PenaltyTier.NO_SHOW
        assert result.message == (
            "Application cancelled. 20 reliability points deducted."
            " Your account is frozen for 7 days."
        )
        profile = get_profile(db, "w1")
        assert profile is not None
        assert profile.reliability_score == 70
        assert profile.is_account_frozen is True
        assert profile.frozen_until == now + timedelta(days=7)

    def test_history_reason_names_tier(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        service.cancel_by_worker("a1", "w1", now=_before(3))
        history = get_reliability_history(db, "w1")
        assert [h.reason for h in history] == ["cancellation_late"]

    def test_notifies_owner(self, db: sqlite3.Connection, service: CancellationService) -> None:
        service.cancel_by_worker("a1", "w1", reason="Family emergency", now=_before(3))
        rows = get_notifications(db, "owner-1")
        assert len(rows) == 1
        assert "Family emergency" in rows[0]["message"]
        assert rows[0]["related_id"] == "a1"

    def test_second_cancel_is_rejected_without_penalty(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        service.cancel_by_worker("a1", "w1", now=_before(3))
        result = service.cancel_by_worker("a1", "w1", now=_before(0.5))
        assert result.success is False
        assert result.error_code == ErrorCode.ALREADY_CANCELLED
        assert result.penalty == 0
        assert _score(db) == 85

    def test_other_workers_application(self, service: CancellationService) -> None:
        result = service.cancel_by_worker("a1", "w2", now=_before(24))
        assert result.success is False
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_unknown_application(self, service: CancellationService) -> None:
        result = service.cancel_by_worker("nope", "w1", now=_before(24))
        assert result.error_code == ErrorCode.NOT_FOUND

    @pytest.mark.parametrize(
        "status",
        [ApplicationStatus.COMPLETED, ApplicationStatus.NO_SHOW, ApplicationStatus.REJECTED],
    )
    def test_terminal_status_rejected(
        self,
        db: sqlite3.Connection,
        service: CancellationService,
        status: ApplicationStatus,
    ) -> None:
        with transaction(db):
            set_application_status(db, "a1", status)
        result = service.cancel_by_worker("a1", "w1", now=_before(24))
        assert result.error_code == ErrorCode.INVALID_STATUS
        assert _score(db) == 90

    def test_checked_in_rejected(self, db: sqlite3.Connection, service: CancellationService) -> None:
        with transaction(db):
            insert_checkin(db, "a1", "w1", "j1", "check_in", SHIFT_START)
        result = service.cancel_by_worker("a1", "w1", now=SHIFT_START + timedelta(minutes=5))
        assert result.error_code == ErrorCode.ALREADY_CHECKED_IN

    def test_pending_application_can_be_cancelled(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        with transaction(db):
            set_application_status(db, "a1", ApplicationStatus.PENDING)
        assert service.cancel_by_worker("a1", "w1", now=_before(24)).success is True


class TestShiftTimezone:
    def test_hours_measured_in_restaurant_timezone(self, db: sqlite3.Connection) -> None:
        # 18:00 in Ho Chi Minh City is 11:00 UTC; at 08:00 UTC that is 3 h away.
        service = CancellationService(db, ReliabilityLedger(db), ScheduleConfig())
        result = service.cancel_by_worker(
            "a1", "w1", now=datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
        )
        assert result.tier == PenaltyTier.LATE


# ---------------------------------------------------------------------------
# Owner cancellation
# ---------------------------------------------------------------------------


class TestCancelByOwner:
    def test_no_penalty_for_worker(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        result = service.cancel_by_owner("a1", "owner-1", reason="Closed", now=_before(0.5))
        assert result.success is True
        assert result.penalty == 0
        assert result.message == "Shift cancelled"
        assert _score(db) == 90
        profile = get_profile(db, "w1")
        assert profile is not None
        assert profile.is_account_frozen is False
        app = get_application(db, "a1")
        assert app is not None
        assert app.status == ApplicationStatus.CANCELLED
        assert app.cancelled_by == "owner-1"

    def test_late_cancellation_annotated(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        service.cancel_by_owner("a1", "owner-1", now=_before(0.5))
        rows = get_notifications(db, "w1")
        assert rows[0]["message"].endswith("(Late cancellation - recorded)")

    def test_early_cancellation_not_annotated(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        service.cancel_by_owner("a1", "owner-1", now=_before(5))
        rows = get_notifications(db, "w1")
        assert "Late cancellation" not in rows[0]["message"]

    def test_wrong_owner_forbidden(self, service: CancellationService) -> None:
        result = service.cancel_by_owner("a1", "owner-2", now=_before(5))
        assert result.success is False
        assert result.error_code == ErrorCode.FORBIDDEN

    def test_already_cancelled(self, service: CancellationService) -> None:
        service.cancel_by_worker("a1", "w1", now=_before(24))
        result = service.cancel_by_owner("a1", "owner-1", now=_before(5))
        assert result.error_code == ErrorCode.ALREADY_CANCELLED


# ---------------------------------------------------------------------------
# Concurrent changes and rollback
# ---------------------------------------------------------------------------


class _FailingLedger(ReliabilityLedger):
    def apply_delta(self, *args: object, **kwargs: object) -> ScoreChange:  # type: ignore[override]
        raise RuntimeError("ledger unavailable")


def _stale_reads(monkeypatch: pytest.MonkeyPatch, stale: Application, count: int) -> None:
    """Serve ``stale`` for the next ``count`` application reads, then the real row."""
    real = db_module.get_application
    remaining = [count]

    def fake(conn: sqlite3.Connection, application_id: str) -> Application | None:
        if remaining[0] > 0:
            remaining[0] -= 1
            return stale
        return real(conn, application_id)

    monkeypatch.setattr(db_module, "get_application", fake)


class TestConcurrentChanges:
    @pytest.mark.parametrize(
        "status",
        [ApplicationStatus.COMPLETED, ApplicationStatus.NO_SHOW, ApplicationStatus.REJECTED],
    )
    def test_status_changed_after_first_read(
        self,
        db: sqlite3.Connection,
        service: CancellationService,
        monkeypatch: pytest.MonkeyPatch,
        status: ApplicationStatus,
    ) -> None:
        stale = get_application(db, "a1")
        assert stale is not None
        with transaction(db):
            set_application_status(db, "a1", status)
        _stale_reads(monkeypatch, stale, count=1)

        result = service.cancel_by_worker("a1", "w1", now=_before(3))

        assert result.success is False
        assert result.error_code == ErrorCode.INVALID_STATUS
        assert _score(db) == 90
        assert get_reliability_history(db, "w1") == []
        assert get_notifications(db, "owner-1") == []
        app = get_application(db, "a1")
        assert app is not None
        assert app.status == status

    def test_checked_in_worker_not_penalized(
        self, db: sqlite3.Connection, service: CancellationService
    ) -> None:
        with transaction(db):
            insert_checkin(db, "a1", "w1", "j1", "check_in", SHIFT_START)
        result = service.cancel_by_worker("a1", "w1", now=_before(-1))
        assert result.error_code == ErrorCode.ALREADY_CHECKED_IN
        assert _score(db) == 90
        profile = get_profile(db, "w1")
        assert profile is not None
        assert profile.is_account_frozen is False

    def test_storage_refuses_completed_application(
        self,
        db: sqlite3.Connection,
        service: CancellationService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        stale = get_application(db, "a1")
        assert stale is not None
        with transaction(db):
            set_application_status(db, "a1", ApplicationStatus.COMPLETED)
        # Both reads see the stale row, so only the conditional update stops it.
        _stale_reads(monkeypatch, stale, count=2)

        result = service.cancel_by_owner("a1", "owner-1", now=_before(5))

        assert result.error_code == ErrorCode.INVALID_STATUS
        assert result.message == "Cannot cancel an application that is completed"
        assert get_notifications(db, "w1") == []
        app = get_application(db, "a1")
        assert app is not None
        assert app.status == ApplicationStatus.COMPLETED

    def test_ledger_failure_rolls_back(self, db: sqlite3.Connection) -> None:
        service = CancellationService(
            db, _FailingLedger(db), ScheduleConfig(timezone="UTC")
        )
        with pytest.raises(RuntimeError, match="ledger unavailable"):
            service.cancel_by_worker("a1", "w1", reason="Sick", now=_before(3))

        app = get_application(db, "a1")
        assert app is not None
        assert app.status == ApplicationStatus.APPROVED
        assert app.cancelled_by is None
        assert app.cancellation_penalty == 0
        assert _score(db) == 90
        assert get_reliability_history(db, "w1") == []
        assert get_notifications(db, "owner-1") == []
        assert db.in_transaction is False
