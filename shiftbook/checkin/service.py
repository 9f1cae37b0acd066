"""Check-in orchestration: QR issuance, scan handling, check-out and no-shows.

Scan flow:
  1. Validate the QR against the job's currently stored secret
  2. Require an approved application for the scanning worker
  3. GPS gate (when both positions are known)
  4. First scan records the check-in and scores punctuality;
     second scan records the check-out and completes the application
"""

import logging
import sqlite3
from datetime import datetime, timezone

from shiftbook.checkin.gps import validate_gps_location
from shiftbook.checkin.qr import QRSigner
from shiftbook.core import db
from shiftbook.core.config import Settings
from shiftbook.core.schemas import (
    ApplicationStatus,
    CheckinResult,
    Coordinates,
    ErrorCode,
    GeneratedQR,
    Job,
    OperationResult,
)
from shiftbook.reliability.ledger import ReliabilityLedger
from shiftbook.reliability.penalty import (
    NO_SHOW_POINTS,
    REASON_COMPLETED,
    REASON_NO_SHOW,
    minutes_late,
    punctuality_score_change,
    shift_start,
)

logger = logging.getLogger(__name__)

CHECK_IN = "check_in"
CHECK_OUT = "check_out"


def _failure(message: str, code: ErrorCode) -> CheckinResult:
    return CheckinResult(success=False, message=message, error_code=code)


class CheckinService:
    """Issues job QR codes and records worker check-ins against them."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        signer: QRSigner,
        ledger: ReliabilityLedger,
        settings: Settings | None = None,
    ) -> None:
        self._conn = conn
        self._signer = signer
        self._ledger = ledger
        self._settings = settings or Settings()

    def issue_job_qr(
        self,
        job_id: str,
        owner_id: str,
        now: datetime | None = None,
    ) -> GeneratedQR | None:
        """Generate and store a new QR for the job, superseding any previous one.

        Returns None when the job does not exist or belongs to someone else.
        """
        job = db.get_job(self._conn, job_id)
        if job is None or job.owner_id != owner_id:
            logger.warning("Owner '%s' cannot issue a QR for job '%s'", owner_id, job_id)
            return None
        generated = self._signer.generate_job_qr(job_id, owner_id, now=now)
        db.upsert_job_qr(self._conn, job_id, generated.qr_data, generated.secret_key, now=now)
        logger.info("Issued check-in QR for job '%s'", job_id)
        return generated

    def scan(
        self,
        qr_string: str,
        worker_id: str,
        location: Coordinates | None = None,
        now: datetime | None = None,
    ) -> CheckinResult:
        """Handle a worker scanning the restaurant's QR code."""
        now = now or datetime.now(timezone.utc)

        validation = self._signer.validate_job_qr(qr_string)
        if validation.valid and validation.job_id is not None:
            # Only the job's current secret is accepted; no stored QR matches nothing.
            stored = db.get_job_qr(self._conn, validation.job_id)
            current_key = stored["secret_key"] if stored is not None else ""
            validation = self._signer.validate_job_qr(qr_string, current_key)
        if not validation.valid or validation.job_id is None:
            return _failure(
                validation.error or "Invalid QR code",
                validation.error_code or ErrorCode.INVALID_FORMAT,
            )

        job = db.get_job(self._conn, validation.job_id)
        application = db.find_application(self._conn, validation.job_id, worker_id)
        if job is None or application is None:
            return _failure("You have not been approved for this job", ErrorCode.NOT_FOUND)
        if (
            application.status == ApplicationStatus.COMPLETED
            and db.get_checkin(self._conn, application.id, CHECK_OUT) is not None
        ):
            return _failure(
                "You have already checked out of this shift", ErrorCode.ALREADY_CHECKED_IN
            )
        if application.status != ApplicationStatus.APPROVED:
            return _failure("Your application has not been approved", ErrorCode.INVALID_STATUS)

        distance: int | None = None
        restaurant = job.restaurant_location
        if location is not None and restaurant is not None:
            gps = validate_gps_location(
                location, restaurant, self._settings.checkin.gps_radius_meters
            )
            if not gps.valid:
                return CheckinResult(
                    success=False,
                    message=gps.error or "Too far from the restaurant",
                    distance_meters=gps.distance_meters,
                    error_code=ErrorCode.GPS_OUT_OF_RANGE,
                )
            distance = gps.distance_meters

        checked_in = db.get_checkin(self._conn, application.id, CHECK_IN)
        if checked_in is None:
            return self._check_in(job, application.id, worker_id, location, distance, now)
        return self._check_out(job, application.id, worker_id, checked_in, location, distance, now)

    def process_no_show(
        self,
        application_id: str,
        now: datetime | None = None,
    ) -> OperationResult:
        """Mark an approved application with no check-in as a no-show."""
        now = now or datetime.now(timezone.utc)
        application = db.get_application(self._conn, application_id)
        if application is None:
            return OperationResult(
                success=False, message="Application not found", error_code=ErrorCode.NOT_FOUND
            )
        if application.status != ApplicationStatus.APPROVED:
            return OperationResult(
                success=False,
                message="Application is not approved",
                error_code=ErrorCode.INVALID_STATUS,
            )
        if db.get_checkin(self._conn, application_id, CHECK_IN) is not None:
            return OperationResult(
                success=False,
                message="Worker has already checked in",
                error_code=ErrorCode.ALREADY_CHECKED_IN,
            )

        with db.transaction(self._conn):
            db.set_application_status(self._conn, application_id, ApplicationStatus.NO_SHOW)
            self._ledger.freeze(application.worker_id, reason=REASON_NO_SHOW, now=now)
            self._ledger.apply_delta(
                application.worker_id, NO_SHOW_POINTS, REASON_NO_SHOW,
                application_id=application_id, job_id=application.job_id, now=now,
            )
        logger.info("Recorded no-show for application '%s'", application_id)
        return OperationResult(success=True, message="No-show recorded")

    def _check_in(
        self,
        job: Job,
        application_id: str,
        worker_id: str,
        location: Coordinates | None,
        distance: int | None,
        now: datetime,
    ) -> CheckinResult:
        cfg = self._settings.checkin
        start = shift_start(job.shift_date, job.shift_start_time, self._settings.schedule.tzinfo)
        late_by = minutes_late(start, now)
        is_late = late_by > cfg.late_grace_minutes
        delta, reason = punctuality_score_change(
            late_by, cfg.late_grace_minutes, cfg.severe_late_minutes
        )
        try:
            with db.transaction(self._conn):
                db.insert_checkin(
                    self._conn, application_id, worker_id, job.id, CHECK_IN, now,
                    latitude=location.latitude if location else None,
                    longitude=location.longitude if location else None,
                    distance_meters=distance,
                )
                self._ledger.apply_delta(
                    worker_id, delta, reason,
                    application_id=application_id, job_id=job.id, now=now,
                )
        except sqlite3.IntegrityError:
            return _failure("You have already checked in", ErrorCode.ALREADY_CHECKED_IN)

        logger.info(
            "Worker '%s' checked in to job '%s'%s",
            worker_id, job.id, f" {late_by} min late" if is_late else "",
        )
        return CheckinResult(
            success=True,
            message=f"Checked in {late_by} minutes late" if is_late else "Checked in",
            kind=CHECK_IN,
            application_id=application_id,
            is_late=is_late,
            minutes_late=late_by if is_late else 0,
            distance_meters=distance,
        )

    def _check_out(
        self,
        job: Job,
        application_id: str,
        worker_id: str,
        checked_in: sqlite3.Row,
        location: Coordinates | None,
        distance: int | None,
        now: datetime,
    ) -> CheckinResult:
        started = datetime.fromisoformat(checked_in["checkin_time"])
        hours = (now - started).total_seconds() / 3600.0
        total_pay = round(hours * job.hourly_rate)
        try:
            with db.transaction(self._conn):
                db.insert_checkin(
                    self._conn, application_id, worker_id, job.id, CHECK_OUT, now,
                    latitude=location.latitude if location else None,
                    longitude=location.longitude if location else None,
                    distance_meters=distance,
                )
                db.set_application_status(
                    self._conn, application_id, ApplicationStatus.COMPLETED
                )
                self._ledger.apply_delta(
                    worker_id, 1, REASON_COMPLETED,
                    application_id=application_id, job_id=job.id, now=now,
                )
        except sqlite3.IntegrityError:
            return _failure("You have already checked out of this shift",
                            ErrorCode.ALREADY_CHECKED_IN)

        logger.info("Worker '%s' checked out of job '%s' after %.1f h", worker_id, job.id, hours)
        return CheckinResult(
            success=True,
            message="Checked out",
            kind=CHECK_OUT,
            application_id=application_id,
            hours_worked=round(hours, 1),
            total_pay=total_pay,
            distance_meters=distance,
        )
