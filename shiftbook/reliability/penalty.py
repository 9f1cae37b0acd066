"""Cancellation penalty tiers and punctuality scoring.

Worker cancellation, by hours until the shift starts (h):

  h > 6              0 points             free
  1 < h <= 6        -5 points             late
  -0.25 < h <= 1   -15 points             very_late
  h <= -0.25       -20 points + freeze    no_show   (15+ min after start)

Check-in punctuality: on time +1, more than 15 min late -1, more than
30 min late -2. Completing a shift earns +1.
"""

import math
from datetime import date, datetime, time, timezone, tzinfo

from shiftbook.core.schemas import CancellationOutcome, PenaltyTier

FREE_CANCEL_HOURS = 6.0
LATE_CANCEL_HOURS = 1.0
NO_SHOW_AFTER_HOURS = -0.25

NO_SHOW_POINTS = -20

# Score history reasons
REASON_NO_SHOW = "no_show"
REASON_ON_TIME = "on_time_checkin"
REASON_LATE_CHECKIN = "late_checkin"
REASON_LATE_CHECKIN_SEVERE = "late_checkin_severe"
REASON_COMPLETED = "job_completed"

_FREE = CancellationOutcome(points=0, freeze=False, tier=PenaltyTier.FREE)
_LATE = CancellationOutcome(points=-5, freeze=False, tier=PenaltyTier.LATE)
_VERY_LATE = CancellationOutcome(points=-15, freeze=False, tier=PenaltyTier.VERY_LATE)
_NO_SHOW = CancellationOutcome(points=NO_SHOW_POINTS, freeze=True, tier=PenaltyTier.NO_SHOW)


def shift_start(shift_date: date, shift_start_time: time, tz: tzinfo) -> datetime:
    """Shift start as an aware datetime in the restaurant's timezone."""
    return datetime.combine(shift_date, shift_start_time.replace(tzinfo=None), tzinfo=tz)


def calculate_hours_until_shift(
    shift_date: date,
    shift_start_time: time,
    tz: tzinfo,
    now: datetime | None = None,
) -> float:
    """Hours from ``now`` until the shift starts; negative once it has started."""
    start = shift_start(shift_date, shift_start_time, tz)
    now = now or datetime.now(timezone.utc)
    return (start - now).total_seconds() / 3600.0


def get_worker_penalty(hours_until_shift: float) -> CancellationOutcome:
    """Penalty for a worker cancelling ``hours_until_shift`` before the start."""
    if hours_until_shift > FREE_CANCEL_HOURS:
        return _FREE
    elif hours_until_shift > LATE_CANCEL_HOURS:
        return _LATE
    elif hours_until_shift > NO_SHOW_AFTER_HOURS:
        return _VERY_LATE
    return _NO_SHOW


def minutes_late(start: datetime, checkin_time: datetime) -> int:
    """Whole minutes between shift start and check-in; negative when early."""
    return math.floor((checkin_time - start).total_seconds() / 60)


def punctuality_score_change(
    late_by: int,
    grace_minutes: int = 15,
    severe_minutes: int = 30,
) -> tuple[int, str]:
    """Return (score delta, history reason) for a check-in ``late_by`` minutes."""
    if late_by > severe_minutes:
        return -2, REASON_LATE_CHECKIN_SEVERE
    if late_by > grace_minutes:
        return -1, REASON_LATE_CHECKIN
    return 1, REASON_ON_TIME
