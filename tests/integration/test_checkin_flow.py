"""Integration test: qualification, QR check-in, cancellation and no-show ban on one database."""

import sqlite3
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path

import pytest

from shiftbook.checkin.qr import QRSigner
from shiftbook.checkin.service import CheckinService
from shiftbook.core.config import CheckinConfig, ScheduleConfig, Settings
from shiftbook.core.db import (
    get_application,
    get_profile,
    init_db,
    insert_application,
    insert_job,
    upsert_profile,
)
from shiftbook.core.schemas import (
    Application,
    ApplicationStatus,
    Coordinates,
    ErrorCode,
    Job,
    LanguageSkill,
    WorkerProfile,
)
from shiftbook.matching.qualification import (
    evaluate_worker_qualification,
    get_qualification_feedback,
)
from shiftbook.reliability.cancellation import CancellationService
from shiftbook.reliability.ledger import NO_SHOW_BAN_REASON, ReliabilityLedger

DAY = date(2026, 3, 10)
RESTAURANT = Coordinates(latitude=10.7725, longitude=106.6980)


def _settings() -> Settings:
    return Settings(
        schedule=ScheduleConfig(timezone="Asia/Ho_Chi_Minh"),
        checkin=CheckinConfig(environment="test", qr_secret="integration-secret-0123"),
    )


def _job(job_id: str, day: date = DAY, level: str = "n4") -> Job:
    return Job(
        id=job_id,
        owner_id="owner-1",
        title=f"Shift {job_id}",
        shift_date=day,
        shift_start_time=time(18, 0),
        hourly_rate=40000,
        restaurant_lat=RESTAURANT.latitude,
        restaurant_lng=RESTAURANT.longitude,
        required_language="japanese",
        required_language_level=level,
        min_reliability_score=80,
    )


def _start_utc(day: date = DAY) -> datetime:
    # 18:00 in Ho Chi Minh City (UTC+7)
    return datetime(day.year, day.month, day.day, 11, 0, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path: Path) -> sqlite3.Connection:
    conn = init_db(tmp_path / "flow.db")
    upsert_profile(
        conn,
        WorkerProfile(
            id="w1",
            reliability_score=85,
            is_verified=True,
            language_skills=[
                LanguageSkill(language="japanese", level="n3", verification_status="verified")
            ],
        ),
    )
    return conn


class TestShiftLifecycle:
    def test_qualify_check_in_and_out(self, db: sqlite3.Connection) -> None:
        settings = _settings()
        insert_job(db, _job("j1"))
        ledger = ReliabilityLedger(db, settings.reliability)
        service = CheckinService(db, QRSigner.from_config(settings.checkin), ledger, settings)

        worker = get_profile(db, "w1")
        assert worker is not None
        qualification = evaluate_worker_qualification(
            worker, _job("j1").requirements, now=_start_utc() - timedelta(days=1)
        )
        assert qualification.qualifies_for_instant_book is True
        assert get_qualification_feedback(qualification) == "You qualify for Instant Book!"

        insert_application(
            db, Application(id="a1", job_id="j1", worker_id="w1", status=ApplicationStatus.APPROVED)
        )
        generated = service.issue_job_qr("j1", "owner-1", now=_start_utc() - timedelta(hours=3))
        assert generated is not None

        checked_in = service.scan(
            generated.qr_data, "w1", RESTAURANT, now=_start_utc() - timedelta(minutes=5)
        )
        assert checked_in.success is True
        assert checked_in.kind == "check_in"

        checked_out = service.scan(
            generated.qr_data, "w1", RESTAURANT, now=_start_utc() + timedelta(hours=3, minutes=55)
        )
        assert checked_out.success is True
        assert checked_out.hours_worked == 4.0
        assert checked_out.total_pay == 160000

        app = get_application(db, "a1")
        assert app is not None
        assert app.status == ApplicationStatus.COMPLETED
        assert ledger.get_freeze_status("w1").is_frozen is False
        profile = get_profile(db, "w1")
        assert profile is not None
        assert profile.reliability_score == 87

    def test_late_cancellation_then_frozen_worker_loses_instant_book(
        self, db: sqlite3.Connection
    ) -> None:
        settings = _settings()
        insert_job(db, _job("j1"))
        insert_application(
            db, Application(id="a1", job_id="j1", worker_id="w1", status=ApplicationStatus.APPROVED)
        )
        ledger = ReliabilityLedger(db, settings.reliability)
        cancellations = CancellationService(db, ledger, settings.schedule)

        # Cancelled 30 minutes after the start: no-show tier.
        now = _start_utc() + timedelta(minutes=30)
        result = cancellations.cancel_by_worker("a1", "w1", reason="Overslept", now=now)
        assert result.success is True
        assert result.penalty == 20

        worker = get_profile(db, "w1")
        assert worker is not None
        assert worker.reliability_score == 65
        qualification = evaluate_worker_qualification(
            worker, _job("j2").requirements, now=now + timedelta(days=1)
        )
        assert qualification.meets_reliability_score is False
        assert qualification.is_account_active is False
        assert qualification.qualifies_for_instant_book is False

        later = evaluate_worker_qualification(
            worker, _job("j2").requirements, now=now + timedelta(days=8)
        )
        assert later.is_account_active is True

    def test_repeated_no_shows_ban_the_worker(self, db: sqlite3.Connection) -> None:
        settings = _settings()
        ledger = ReliabilityLedger(db, settings.reliability)
        service = CheckinService(db, QRSigner.from_config(settings.checkin), ledger, settings)

        for i in range(3):
            day = DAY + timedelta(days=i * 3)
            insert_job(db, _job(f"j{i}", day=day))
            insert_application(
                db,
                Application(
                    id=f"a{i}", job_id=f"j{i}", worker_id="w1", status=ApplicationStatus.APPROVED
                ),
            )
            result = service.process_no_show(f"a{i}", now=_start_utc(day) + timedelta(hours=2))
            assert result.success is True

        status = ledger.get_freeze_status("w1", now=_start_utc() + timedelta(days=60))
        assert status.is_frozen is True
        assert status.frozen_until is None
        assert status.freeze_reason == NO_SHOW_BAN_REASON
        assert status.no_show_count == 3
        assert status.can_apply is False
        profile = get_profile(db, "w1")
        assert profile is not None
        assert profile.reliability_score == 0

    def test_reissued_qr_blocks_old_code(self, db: sqlite3.Connection) -> None:
        settings = _settings()
        insert_job(db, _job("j1"))
        insert_application(
            db, Application(id="a1", job_id="j1", worker_id="w1", status=ApplicationStatus.APPROVED)
        )
        service = CheckinService(
            db, QRSigner.from_config(settings.checkin), ReliabilityLedger(db), settings
        )
        first = service.issue_job_qr("j1", "owner-1")
        second = service.issue_job_qr("j1", "owner-1")
        assert first is not None
        assert second is not None

        stale = service.scan(first.qr_data, "w1", RESTAURANT, now=_start_utc())
        assert stale.error_code == ErrorCode.INVALID_SIGNATURE
        fresh = service.scan(second.qr_data, "w1", RESTAURANT, now=_start_utc())
        assert fresh.success is True
