"""Worker- and owner-initiated cancellation of job applications.

Worker cancellations are penalized by how close to the shift start they
happen (see penalty.get_worker_penalty). The status change, score delta,
freeze and owner notification commit as one transaction, so a worker is
never penalized without the cancellation being recorded or the reverse.

Owner cancellations never touch the worker's score or freeze state; a
cancellation less than an hour before the start is only annotated on the
worker's notification.
"""

import logging
import sqlite3
from datetime import datetime, timezone

from shiftbook.core import db
from shiftbook.core.config import ScheduleConfig
from shiftbook.core.errors import AlreadyCancelledError, InvalidStatusError
from shiftbook.core.schemas import (
    ApplicationStatus,
    CancellationResult,
    ErrorCode,
    Job,
)
from shiftbook.reliability.ledger import ReliabilityLedger
from shiftbook.reliability.penalty import calculate_hours_until_shift, get_worker_penalty

logger = logging.getLogger(__name__)

OWNER_LATE_CANCEL_HOURS = 1.0

_NOT_CANCELLABLE = {
    ApplicationStatus.COMPLETED,
    ApplicationStatus.NO_SHOW,
    ApplicationStatus.REJECTED,
}


def _failure(message: str, code: ErrorCode) -> CancellationResult:
    return CancellationResult(success=False, message=message, penalty=0, error_code=code)


class CancellationService:
    """Cancels applications on behalf of workers and owners."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        ledger: ReliabilityLedger,
        schedule: ScheduleConfig | None = None,
    ) -> None:
        self._conn = conn
        self._ledger = ledger
        self._schedule = schedule or ScheduleConfig()

    def hours_until_shift(self, job: Job, now: datetime | None = None) -> float:
        return calculate_hours_until_shift(
            job.shift_date, job.shift_start_time, self._schedule.tzinfo, now
        )

    def cancel_by_worker(
        self,
        application_id: str,
        worker_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> CancellationResult:
        now = now or datetime.now(timezone.utc)
        application = db.get_application(self._conn, application_id)
        if application is None or application.worker_id != worker_id:
            return _failure("Application not found", ErrorCode.NOT_FOUND)
        job = db.get_job(self._conn, application.job_id)
        if job is None:
            return _failure("Job not found", ErrorCode.NOT_FOUND)
        penalty = get_worker_penalty(self.hours_until_shift(job, now))
        score_reason = f"cancellation_{penalty.tier.value}"

        try:
            with db.transaction(self._conn):
                blocked = self._check_cancellable(application_id)
                if blocked is not None:
                    return blocked
                db.cancel_application(
                    self._conn,
                    application_id,
                    cancelled_by=worker_id,
                    reason=reason or "Worker cancelled",
                    penalty=abs(penalty.points),
                    now=now,
                )
                if penalty.points < 0:
                    self._ledger.apply_delta(
                        worker_id, penalty.points, score_reason,
                        application_id=application_id, job_id=job.id, now=now,
                    )
                if penalty.freeze:
                    self._ledger.freeze(worker_id, reason=score_reason, now=now)
                db.insert_notification(
                    self._conn,
                    user_id=job.owner_id,
                    title="Worker cancelled",
                    message=f'A worker cancelled the shift "{job.title}".'
                    + (f" Reason: {reason}" if reason else ""),
                    related_id=application_id,
                    now=now,
                )
        except AlreadyCancelledError:
            logger.info("Application '%s' was cancelled concurrently", application_id)
            return _failure("Application was already cancelled", ErrorCode.ALREADY_CANCELLED)
        except InvalidStatusError as e:
            return _failure(
                f"Cannot cancel an application that is {e.status}", ErrorCode.INVALID_STATUS
            )

        logger.info(
            "Worker '%s' cancelled application '%s' (%s, %d points)",
            worker_id, application_id, penalty.tier.value, penalty.points,
        )
        if penalty.points == 0:
            message = "Application cancelled"
        else:
            message = (
                f"Application cancelled. {abs(penalty.points)} reliability points deducted."
            )
            if penalty.freeze:
                message += (
                    f" Your account is frozen for {self._ledger.config.freeze_days} days."
                )
        return CancellationResult(
            success=True,
            message=message,
            penalty=abs(penalty.points),
            tier=penalty.tier,
        )

    def cancel_by_owner(
        self,
        application_id: str,
        owner_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> CancellationResult:
        now = now or datetime.now(timezone.utc)
        application = db.get_application(self._conn, application_id)
        if application is None:
            return _failure("Application not found", ErrorCode.NOT_FOUND)
        job = db.get_job(self._conn, application.job_id)
        if job is None:
            return _failure("Job not found", ErrorCode.NOT_FOUND)
        if job.owner_id != owner_id:
            return _failure("You cannot cancel this application", ErrorCode.FORBIDDEN)
        late = self.hours_until_shift(job, now) < OWNER_LATE_CANCEL_HOURS
        try:
            with db.transaction(self._conn):
                blocked = self._check_cancellable(application_id)
                if blocked is not None:
                    return blocked
                db.cancel_application(
                    self._conn,
                    application_id,
                    cancelled_by=owner_id,
                    reason=reason or "Owner cancelled",
                    penalty=0,
                    now=now,
                )
                message = f'The restaurant cancelled the shift "{job.title}".'
                if reason:
                    message += f" Reason: {reason}"
                if late:
                    message += " (Late cancellation - recorded)"
                db.insert_notification(
                    self._conn,
                    user_id=application.worker_id,
                    title="Shift cancelled",
                    message=message,
                    related_id=application_id,
                    now=now,
                )
        except AlreadyCancelledError:
            return _failure("Application was already cancelled", ErrorCode.ALREADY_CANCELLED)
        except InvalidStatusError as e:
            return _failure(
                f"Cannot cancel an application that is {e.status}", ErrorCode.INVALID_STATUS
            )

        logger.info(
            "Owner '%s' cancelled application '%s'%s",
            owner_id, application_id, " late" if late else "",
        )
        return CancellationResult(success=True, message="Shift cancelled", penalty=0)

    def _check_cancellable(self, application_id: str) -> CancellationResult | None:
        """Re-read the application under the write lock and report why it cannot be cancelled."""
        application = db.get_application(self._conn, application_id)
        if application is None:
            return _failure("Application not found", ErrorCode.NOT_FOUND)
        if application.status == ApplicationStatus.CANCELLED:
            return _failure("Application was already cancelled", ErrorCode.ALREADY_CANCELLED)
        if application.status in _NOT_CANCELLABLE:
            return _failure(
                f"Cannot cancel an application that is {application.status.value}",
                ErrorCode.INVALID_STATUS,
            )
        if db.get_checkin(self._conn, application_id, "check_in") is not None:
            return _failure("Worker has already checked in", ErrorCode.ALREADY_CHECKED_IN)
        return None
