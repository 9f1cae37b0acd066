"""SQLite persistence for profiles, jobs, applications, reliability history and QR codes.

Single-row writes that stand alone commit immediately. Writes that belong to
a larger unit (cancellation, score deltas, check-ins) leave the commit to the
enclosing ``transaction()`` block.
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from pathlib import Path

from shiftbook.core.errors import AlreadyCancelledError, InvalidStatusError, NotFoundError
from shiftbook.core.schemas import (
    Application,
    ApplicationStatus,
    Job,
    LanguageSkill,
    ScoreChange,
    WorkerProfile,
)

_PROFILES_TABLE = """
CREATE TABLE IF NOT EXISTS profiles (
    id                  TEXT    PRIMARY KEY,
    role                TEXT    NOT NULL DEFAULT 'worker',
    reliability_score   INTEGER NOT NULL DEFAULT 100
                        CHECK (reliability_score BETWEEN 0 AND 100),
    is_account_frozen   INTEGER NOT NULL DEFAULT 0,
    frozen_until        TEXT,
    freeze_reason       TEXT,
    is_verified         INTEGER NOT NULL DEFAULT 0
);
"""

_LANGUAGE_SKILLS_TABLE = """
CREATE TABLE IF NOT EXISTS language_skills (
    worker_id           TEXT NOT NULL REFERENCES profiles(id),
    language            TEXT NOT NULL,
    level               TEXT NOT NULL,
    verification_status TEXT NOT NULL DEFAULT 'pending',
    PRIMARY KEY (worker_id, language)
);
"""

_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS jobs (
    id                      TEXT    PRIMARY KEY,
    owner_id                TEXT    NOT NULL,
    title                   TEXT    NOT NULL,
    shift_date              TEXT    NOT NULL,
    shift_start_time        TEXT    NOT NULL,
    shift_end_time          TEXT,
    hourly_rate             INTEGER NOT NULL DEFAULT 0,
    restaurant_lat          REAL,
    restaurant_lng          REAL,
    required_language       TEXT    NOT NULL,
    required_language_level TEXT    NOT NULL,
    min_reliability_score   INTEGER NOT NULL DEFAULT 0
);
"""

_APPLICATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS applications (
    id                   TEXT    PRIMARY KEY,
    job_id               TEXT    NOT NULL REFERENCES jobs(id),
    worker_id            TEXT    NOT NULL REFERENCES profiles(id),
    status               TEXT    NOT NULL DEFAULT 'pending',
    cancelled_at         TEXT,
    cancelled_by         TEXT,
    cancellation_reason  TEXT,
    cancellation_penalty INTEGER NOT NULL DEFAULT 0,
    UNIQUE(job_id, worker_id)
);
"""

_RELIABILITY_HISTORY_TABLE = """
CREATE TABLE IF NOT EXISTS reliability_history (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    worker_id               TEXT    NOT NULL,
    score_change            INTEGER NOT NULL,
    previous_score          INTEGER NOT NULL,
    new_score               INTEGER NOT NULL,
    reason                  TEXT    NOT NULL,
    related_job_id          TEXT,
    related_application_id  TEXT,
    created_at              TEXT    NOT NULL
);
"""

_JOB_QR_CODES_TABLE = """
CREATE TABLE IF NOT EXISTS job_qr_codes (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id      TEXT    NOT NULL UNIQUE,
    qr_data     TEXT    NOT NULL,
    secret_key  TEXT    NOT NULL,
    is_active   INTEGER NOT NULL DEFAULT 1,
    created_at  TEXT    NOT NULL
);
"""

_CHECKINS_TABLE = """
CREATE TABLE IF NOT EXISTS checkins (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    application_id  TEXT    NOT NULL,
    worker_id       TEXT    NOT NULL,
    job_id          TEXT    NOT NULL,
    checkin_type    TEXT    NOT NULL CHECK (checkin_type IN ('check_in', 'check_out')),
    checkin_time    TEXT    NOT NULL,
    latitude        REAL,
    longitude       REAL,
    distance_meters INTEGER,
    UNIQUE(application_id, checkin_type)
);
"""

_NOTIFICATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS notifications (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    title       TEXT NOT NULL,
    message     TEXT NOT NULL,
    type        TEXT NOT NULL,
    related_id  TEXT,
    created_at  TEXT NOT NULL
);
"""

_TABLES = (
    _PROFILES_TABLE,
    _LANGUAGE_SKILLS_TABLE,
    _JOBS_TABLE,
    _APPLICATIONS_TABLE,
    _RELIABILITY_HISTORY_TABLE,
    _JOB_QR_CODES_TABLE,
    _CHECKINS_TABLE,
    _NOTIFICATIONS_TABLE,
)


def init_db(path: str | Path) -> sqlite3.Connection:
    """Create the database and tables, returning a connection."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    for ddl in _TABLES:
        conn.execute(ddl)
    conn.commit()
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block as one write transaction.

    Opens with BEGIN IMMEDIATE so the write lock is held before any
    read-modify-write. Nested use joins the outer transaction.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    """UTC ISO text, so stored timestamps compare correctly as strings."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc).isoformat()
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def upsert_profile(conn: sqlite3.Connection, profile: WorkerProfile) -> None:
    """Insert or replace a worker profile together with its language skills."""
    with transaction(conn):
        conn.execute(
            """
            INSERT INTO profiles (id, reliability_score, is_account_frozen, frozen_until, is_verified)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                reliability_score = excluded.reliability_score,
                is_account_frozen = excluded.is_account_frozen,
                frozen_until = excluded.frozen_until,
                is_verified = excluded.is_verified
            """,
            (
                profile.id,
                profile.reliability_score,
                int(profile.is_account_frozen),
                _ts(profile.frozen_until),
                int(profile.is_verified),
            ),
        )
        conn.execute("DELETE FROM language_skills WHERE worker_id = ?", (profile.id,))
        conn.executemany(
            """
            INSERT INTO language_skills (worker_id, language, level, verification_status)
            VALUES (?, ?, ?, ?)
            """,
            [
                (profile.id, s.language, s.level, s.verification_status)
                for s in profile.language_skills
            ],
        )


def get_profile(conn: sqlite3.Connection, worker_id: str) -> WorkerProfile | None:
    row = conn.execute("SELECT * FROM profiles WHERE id = ?", (worker_id,)).fetchone()
    if row is None:
        return None
    skills = conn.execute(
        "SELECT language, level, verification_status FROM language_skills WHERE worker_id = ?",
        (worker_id,),
    ).fetchall()
    return WorkerProfile(
        id=row["id"],
        reliability_score=row["reliability_score"],
        is_account_frozen=bool(row["is_account_frozen"]),
        frozen_until=_parse_ts(row["frozen_until"]),
        is_verified=bool(row["is_verified"]),
        language_skills=[LanguageSkill(**dict(s)) for s in skills],
    )


def get_freeze_row(conn: sqlite3.Connection, worker_id: str) -> sqlite3.Row | None:
    return conn.execute(
        """
        SELECT reliability_score, is_account_frozen, frozen_until, freeze_reason
        FROM profiles WHERE id = ?
        """,
        (worker_id,),
    ).fetchone()


def apply_score_delta(
    conn: sqlite3.Connection,
    worker_id: str,
    delta: int,
    reason: str,
    job_id: str | None = None,
    application_id: str | None = None,
    now: datetime | None = None,
) -> ScoreChange:
    """Add ``delta`` to the worker's score, clamped to [0, 100], and log it.

    Must run inside ``transaction()`` so the read and the write are not
    interleaved with another writer.
    """
    row = conn.execute(
        "SELECT reliability_score FROM profiles WHERE id = ?", (worker_id,)
    ).fetchone()
    if row is None:
        msg = f"worker {worker_id} not found"
        raise NotFoundError(msg)
    previous = row["reliability_score"]
    new = max(0, min(100, previous + delta))
    created_at = now or _now()
    conn.execute(
        "UPDATE profiles SET reliability_score = ? WHERE id = ?",
        (new, worker_id),
    )
    conn.execute(
        """
        INSERT INTO reliability_history
            (worker_id, score_change, previous_score, new_score, reason,
             related_job_id, related_application_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (worker_id, delta, previous, new, reason, job_id, application_id, _ts(created_at)),
    )
    return ScoreChange(
        worker_id=worker_id,
        delta=delta,
        previous_score=previous,
        new_score=new,
        reason=reason,
        created_at=created_at,
    )


def set_score(conn: sqlite3.Connection, worker_id: str, score: int) -> None:
    conn.execute(
        "UPDATE profiles SET reliability_score = ? WHERE id = ?",
        (max(0, min(100, score)), worker_id),
    )


def freeze_account(
    conn: sqlite3.Connection,
    worker_id: str,
    until: datetime | None,
    reason: str,
) -> None:
    """Freeze the account; ``until=None`` freezes it with no end date."""
    cursor = conn.execute(
        """
        UPDATE profiles
        SET is_account_frozen = 1, frozen_until = ?, freeze_reason = ?
        WHERE id = ?
        """,
        (_ts(until), reason, worker_id),
    )
    if cursor.rowcount == 0:
        msg = f"worker {worker_id} not found"
        raise NotFoundError(msg)


def get_reliability_history(
    conn: sqlite3.Connection,
    worker_id: str,
    limit: int = 20,
) -> list[ScoreChange]:
    """Most recent score changes first."""
    rows = conn.execute(
        """
        SELECT * FROM reliability_history
        WHERE worker_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (worker_id, limit),
    ).fetchall()
    return [
        ScoreChange(
            worker_id=r["worker_id"],
            delta=r["score_change"],
            previous_score=r["previous_score"],
            new_score=r["new_score"],
            reason=r["reason"],
            created_at=datetime.fromisoformat(r["created_at"]),
        )
        for r in rows
    ]


def count_history_reason(
    conn: sqlite3.Connection,
    worker_id: str,
    reason: str,
    since: datetime | None = None,
) -> int:
    """Count history entries with ``reason``, optionally only those at or after ``since``."""
    if since is None:
        row = conn.execute(
            "SELECT COUNT(*) FROM reliability_history WHERE worker_id = ? AND reason = ?",
            (worker_id, reason),
        ).fetchone()
    else:
        row = conn.execute(
            """
            SELECT COUNT(*) FROM reliability_history
            WHERE worker_id = ? AND reason = ? AND created_at >= ?
            """,
            (worker_id, reason, _ts(since)),
        ).fetchone()
    return row[0]


# ---------------------------------------------------------------------------
# Jobs and applications
# ---------------------------------------------------------------------------


def insert_job(conn: sqlite3.Connection, job: Job) -> None:
    conn.execute(
        """
        INSERT INTO jobs
            (id, owner_id, title, shift_date, shift_start_time, shift_end_time,
             hourly_rate, restaurant_lat, restaurant_lng, required_language,
             required_language_level, min_reliability_score)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job.id,
            job.owner_id,
            job.title,
            job.shift_date.isoformat(),
            job.shift_start_time.isoformat(),
            job.shift_end_time.isoformat() if job.shift_end_time else None,
            job.hourly_rate,
            job.restaurant_lat,
            job.restaurant_lng,
            job.required_language,
            job.required_language_level,
            job.min_reliability_score,
        ),
    )
    conn.commit()


def get_job(conn: sqlite3.Connection, job_id: str) -> Job | None:
    row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if row is None:
        return None
    data = dict(row)
    data["shift_date"] = date.fromisoformat(data["shift_date"])
    data["shift_start_time"] = time.fromisoformat(data["shift_start_time"])
    if data["shift_end_time"]:
        data["shift_end_time"] = time.fromisoformat(data["shift_end_time"])
    return Job(**data)


def insert_application(conn: sqlite3.Connection, application: Application) -> None:
    conn.execute(
        "INSERT INTO applications (id, job_id, worker_id, status) VALUES (?, ?, ?, ?)",
        (
            application.id,
            application.job_id,
            application.worker_id,
            application.status.value,
        ),
    )
    conn.commit()


def _row_to_application(row: sqlite3.Row) -> Application:
    data = dict(row)
    data["cancelled_at"] = _parse_ts(data["cancelled_at"])
    return Application(**data)


def get_application(conn: sqlite3.Connection, application_id: str) -> Application | None:
    row = conn.execute(
        "SELECT * FROM applications WHERE id = ?", (application_id,)
    ).fetchone()
    return _row_to_application(row) if row is not None else None


def find_application(
    conn: sqlite3.Connection,
    job_id: str,
    worker_id: str,
) -> Application | None:
    row = conn.execute(
        "SELECT * FROM applications WHERE job_id = ? AND worker_id = ?",
        (job_id, worker_id),
    ).fetchone()
    return _row_to_application(row) if row is not None else None


def set_application_status(
    conn: sqlite3.Connection,
    application_id: str,
    status: ApplicationStatus,
) -> None:
    conn.execute(
        "UPDATE applications SET status = ? WHERE id = ?",
        (status.value, application_id),
    )


def cancel_application(
    conn: sqlite3.Connection,
    application_id: str,
    cancelled_by: str,
    reason: str,
    penalty: int,
    now: datetime | None = None,
) -> None:
    """Mark a pending or approved application cancelled.

    The update only matches cancellable rows. When it matches nothing the
    current status decides the error: AlreadyCancelledError for a cancelled
    row, InvalidStatusError for any other status.
    """
    cursor = conn.execute(
        """
        UPDATE applications
        SET status = 'cancelled', cancelled_at = ?, cancelled_by = ?,
            cancellation_reason = ?, cancellation_penalty = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (
            _ts(now or _now()),
            cancelled_by,
            reason,
            penalty,
            application_id,
            ApplicationStatus.PENDING.value,
            ApplicationStatus.APPROVED.value,
        ),
    )
    if cursor.rowcount > 0:
        return
    row = conn.execute(
        "SELECT status FROM applications WHERE id = ?", (application_id,)
    ).fetchone()
    if row is None:
        msg = f"application {application_id} not found"
        raise NotFoundError(msg)
    if row["status"] == ApplicationStatus.CANCELLED.value:
        raise AlreadyCancelledError(application_id)
    raise InvalidStatusError(application_id, row["status"])


# ---------------------------------------------------------------------------
# QR codes, check-ins, notifications
# ---------------------------------------------------------------------------


def upsert_job_qr(
    conn: sqlite3.Connection,
    job_id: str,
    qr_data: str,
    secret_key: str,
    now: datetime | None = None,
) -> None:
    """Store the job's QR, replacing any previous one (one live secret per job)."""
    conn.execute(
        """
        INSERT INTO job_qr_codes (job_id, qr_data, secret_key, is_active, created_at)
        VALUES (?, ?, ?, 1, ?)
        ON CONFLICT(job_id) DO UPDATE SET
            qr_data = excluded.qr_data,
            secret_key = excluded.secret_key,
            is_active = 1,
            created_at = excluded.created_at
        """,
        (job_id, qr_data, secret_key, _ts(now or _now())),
    )
    conn.commit()


def get_job_qr(conn: sqlite3.Connection, job_id: str) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM job_qr_codes WHERE job_id = ? AND is_active = 1",
        (job_id,),
    ).fetchone()


def deactivate_job_qr(conn: sqlite3.Connection, job_id: str) -> bool:
    cursor = conn.execute(
        "UPDATE job_qr_codes SET is_active = 0 WHERE job_id = ? AND is_active = 1",
        (job_id,),
    )
    conn.commit()
    return cursor.rowcount > 0


def insert_checkin(
    conn: sqlite3.Connection,
    application_id: str,
    worker_id: str,
    job_id: str,
    checkin_type: str,
    checkin_time: datetime,
    latitude: float | None = None,
    longitude: float | None = None,
    distance_meters: int | None = None,
) -> int:
    """Record a check-in or check-out. Returns the row ID."""
    cursor = conn.execute(
        """
        INSERT INTO checkins
            (application_id, worker_id, job_id, checkin_type, checkin_time,
             latitude, longitude, distance_meters)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            application_id,
            worker_id,
            job_id,
            checkin_type,
            _ts(checkin_time),
            latitude,
            longitude,
            distance_meters,
        ),
    )
    return cursor.lastrowid or 0


def get_checkin(
    conn: sqlite3.Connection,
    application_id: str,
    checkin_type: str,
) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM checkins WHERE application_id = ? AND checkin_type = ?",
        (application_id, checkin_type),
    ).fetchone()


def insert_notification(
    conn: sqlite3.Connection,
    user_id: str,
    title: str,
    message: str,
    type_: str = "application_update",
    related_id: str | None = None,
    now: datetime | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO notifications (user_id, title, message, type, related_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (user_id, title, message, type_, related_id, _ts(now or _now())),
    )


def get_notifications(conn: sqlite3.Connection, user_id: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM notifications WHERE user_id = ? ORDER BY id",
        (user_id,),
    ).fetchall()
