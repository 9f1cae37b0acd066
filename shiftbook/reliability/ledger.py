"""Reliability score ledger: clamped score deltas, freezes and the no-show ban.

The score only moves through ``apply_delta``; each call writes the new score
and a history row in one transaction. Calls made inside an open
``transaction()`` join it, so a cancellation and its penalty commit together.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from shiftbook.core import db
from shiftbook.core.config import ReliabilityConfig
from shiftbook.core.errors import NotFoundError
from shiftbook.core.schemas import FreezeStatus, ScoreChange
from shiftbook.reliability.penalty import REASON_NO_SHOW

logger = logging.getLogger(__name__)

NO_SHOW_BAN_REASON = "no_show_ban"


class ReliabilityLedger:
    """Applies score changes and freezes for workers.

    Usage::

        ledger = ReliabilityLedger(conn, settings.reliability)
        ledger.apply_delta("worker-1", -5, "cancellation_late", application_id="app-1")
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: ReliabilityConfig | None = None,
    ) -> None:
        self._conn = conn
        self._config = config or ReliabilityConfig()

    @property
    def config(self) -> ReliabilityConfig:
        return self._config

    def apply_delta(
        self,
        worker_id: str,
        delta: int,
        reason: str,
        application_id: str | None = None,
        job_id: str | None = None,
        now: datetime | None = None,
    ) -> ScoreChange:
        """Add ``delta`` to the score (clamped to [0, 100]) and record why."""
        now = now or datetime.now(timezone.utc)
        with db.transaction(self._conn):
            change = db.apply_score_delta(
                self._conn, worker_id, delta, reason,
                job_id=job_id, application_id=application_id, now=now,
            )
            if reason == REASON_NO_SHOW:
                self._check_no_show_ban(worker_id, now)
        logger.info(
            "Reliability %s for '%s': %+d -> %d (%s)",
            "penalty" if delta < 0 else "bonus",
            worker_id, delta, change.new_score, reason,
        )
        return change

    def freeze(
        self,
        worker_id: str,
        days: int | None = None,
        reason: str = REASON_NO_SHOW,
        now: datetime | None = None,
    ) -> datetime | None:
        """Freeze the account for ``days`` (default from config).

        Returns the end time, or None when the account is already banned.
        """
        now = now or datetime.now(timezone.utc)
        until = now + timedelta(days=days if days is not None else self._config.freeze_days)
        with db.transaction(self._conn):
            row = db.get_freeze_row(self._conn, worker_id)
            if row is not None and row["freeze_reason"] == NO_SHOW_BAN_REASON:
                # A permanent ban is never shortened by a timed freeze.
                logger.info("Account '%s' already banned; freeze skipped", worker_id)
                return None
            db.freeze_account(self._conn, worker_id, until, reason)
        logger.info("Froze account '%s' until %s (%s)", worker_id, until.isoformat(), reason)
        return until

    def history(self, worker_id: str, limit: int = 20) -> list[ScoreChange]:
        return db.get_reliability_history(self._conn, worker_id, limit)

    def get_freeze_status(self, worker_id: str, now: datetime | None = None) -> FreezeStatus:
        """Current freeze state; a freeze whose end has passed reads as lifted."""
        row = db.get_freeze_row(self._conn, worker_id)
        if row is None:
            msg = f"worker {worker_id} not found"
            raise NotFoundError(msg)
        now = now or datetime.now(timezone.utc)
        no_shows = db.count_history_reason(self._conn, worker_id, REASON_NO_SHOW)
        score = row["reliability_score"]
        frozen_until = (
            datetime.fromisoformat(row["frozen_until"]) if row["frozen_until"] else None
        )
        is_frozen = bool(row["is_account_frozen"])
        if is_frozen and frozen_until is not None and now > frozen_until:
            return FreezeStatus(
                is_frozen=False,
                no_show_count=no_shows,
                can_apply=score > 0,
            )
        return FreezeStatus(
            is_frozen=is_frozen,
            frozen_until=frozen_until,
            freeze_reason=row["freeze_reason"],
            no_show_count=no_shows,
            can_apply=not is_frozen and score > 0,
        )

    def _check_no_show_ban(self, worker_id: str, now: datetime) -> None:
        """Permanently freeze and zero the score after too many recent no-shows."""
        since = now - timedelta(days=self._config.no_show_window_days)
        count = db.count_history_reason(self._conn, worker_id, REASON_NO_SHOW, since=since)
        if count < self._config.no_show_ban_threshold:
            return
        db.set_score(self._conn, worker_id, 0)
        db.freeze_account(self._conn, worker_id, None, NO_SHOW_BAN_REASON)
        logger.warning(
            "Worker '%s' banned: %d no-shows in %d days",
            worker_id, count, self._config.no_show_window_days,
        )
