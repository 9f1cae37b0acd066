"""Instant Book qualification.

A worker books a job instantly only when all five criteria hold:

  1. has a skill in the job's language
  2. that skill is verified (or pending, under the lenient policy) and its
     level ranks at or above the required level
  3. reliability score >= the job's minimum (inclusive)
  4. account is not frozen, or the freeze has already ended
  5. identity verification is complete

Any miss routes the worker to manual "Request to Book". Every criterion is
evaluated and reported so the worker sees all blockers at once.
"""

import logging
from datetime import datetime, timezone

from shiftbook.core.config import VerificationPolicy
from shiftbook.core.schemas import JobRequirements, WorkerProfile, WorkerQualification
from shiftbook.matching.languages import compare_levels

logger = logging.getLogger(__name__)

# Feedback message keys in the order they are reported.
MISSING_LANGUAGE = "missingLanguage"
LOW_LANGUAGE_LEVEL = "lowLanguageLevel"
LOW_RELIABILITY = "lowReliability"
ACCOUNT_FROZEN = "accountFrozen"
NOT_VERIFIED = "notVerified"
INSTANT_BOOK_SUCCESS = "instantBookSuccess"

DEFAULT_MESSAGES: dict[str, str] = {
    MISSING_LANGUAGE: "You do not have the required language skill",
    LOW_LANGUAGE_LEVEL: "Your language level does not meet the requirement",
    LOW_RELIABILITY: "Your reliability score is below the job's minimum",
    ACCOUNT_FROZEN: "Your account is temporarily frozen",
    NOT_VERIFIED: "You need to complete identity verification (upload an intro video)",
    INSTANT_BOOK_SUCCESS: "You qualify for Instant Book!",
}

_ACCEPTED_STATUSES: dict[str, frozenset[str]] = {
    "strict": frozenset({"verified"}),
    "lenient": frozenset({"verified", "pending"}),
}


def is_account_active(worker: WorkerProfile, now: datetime | None = None) -> bool:
    """Not frozen, or frozen with an end time strictly in the past."""
    if not worker.is_account_frozen:
        return True
    if worker.frozen_until is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now > worker.frozen_until


def evaluate_worker_qualification(
    worker: WorkerProfile,
    job: JobRequirements,
    policy: VerificationPolicy = "strict",
    now: datetime | None = None,
) -> WorkerQualification:
    """Evaluate every Instant Book criterion for ``worker`` against ``job``."""
    skill = worker.skill_for(job.required_language)
    has_language = skill is not None
    meets_level = (
        skill is not None
        and skill.verification_status in _ACCEPTED_STATUSES[policy]
        and compare_levels(skill.level, job.required_language_level, job.required_language)
    )

    qualification = WorkerQualification(
        has_required_language=has_language,
        meets_language_level=meets_level,
        meets_reliability_score=worker.reliability_score >= job.min_reliability_score,
        is_account_active=is_account_active(worker, now),
        is_verified=worker.is_verified,
    )
    logger.debug(
        "Qualification for worker '%s': %s",
        worker.id,
        qualification.model_dump(),
    )
    return qualification


def feedback_keys(qualification: WorkerQualification) -> list[str]:
    """Message keys for every unmet criterion, or the success key."""
    if qualification.qualifies_for_instant_book:
        return [INSTANT_BOOK_SUCCESS]

    keys: list[str] = []
    if not qualification.has_required_language:
        keys.append(MISSING_LANGUAGE)
    elif not qualification.meets_language_level:
        keys.append(LOW_LANGUAGE_LEVEL)
    if not qualification.meets_reliability_score:
        keys.append(LOW_RELIABILITY)
    if not qualification.is_account_active:
        keys.append(ACCOUNT_FROZEN)
    if not qualification.is_verified:
        keys.append(NOT_VERIFIED)
    return keys


def get_qualification_feedback(
    qualification: WorkerQualification,
    messages: dict[str, str] | None = None,
) -> str:
    """Human-readable summary listing every reason Instant Book is unavailable.

    ``messages`` maps feedback keys to text, for translated catalogues.
    """
    catalogue = {**DEFAULT_MESSAGES, **(messages or {})}
    keys = feedback_keys(qualification)
    if keys == [INSTANT_BOOK_SUCCESS]:
        return catalogue[INSTANT_BOOK_SUCCESS]
    return "To book instantly you need to fix: " + "; ".join(catalogue[k] for k in keys)
