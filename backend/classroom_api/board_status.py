"""Board status derivation.

Turns the full, timestamp-ordered attempt history of one (student, board)
pair into the board's current mastery status and its permanent achievement
tier. Everything here is pure: callers load the history and persist the
result (see ``store.refresh_board_status``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable, List, NamedTuple, Optional, Sequence, Union

COOLDOWN_SECONDS = 3600
ACHIEVEMENT_SPACING_DAYS = 6

# Normalized per-attempt results
RESULT_CORRECT = "correct"
RESULT_FAILED = "failed"
RESULT_CORRECTED = "corrected"

# Board statuses
NOT_ATTEMPTED = "not_attempted"
FAILED = "failed"
CORRECTED = "corrected"
FRESH_CORRECT = "fresh_correct"
CLEAN_CORRECT = "clean_correct"

# Achievement tiers
ACHIEVEMENT_NONE = "none"
ACHIEVEMENT_SILVER = "silver"
ACHIEVEMENT_GOLD = "gold"

_ACHIEVEMENT_RANK = {
    ACHIEVEMENT_NONE: 0,
    ACHIEVEMENT_SILVER: 1,
    ACHIEVEMENT_GOLD: 2,
}

_BAD_RESULTS = (RESULT_FAILED, RESULT_CORRECTED)

# fromisoformat before 3.11 only takes 3 or 6 fractional digits
_FRACTION = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")


def _pad_fraction(match) -> str:
    return "%s.%s" % (match.group(1), match.group(2)[:6].ljust(6, "0"))


@dataclass(frozen=True)
class Attempt:
    """Minimal attempt record. ORM ``Observation`` rows carry the same
    attributes and can be passed anywhere an ``Attempt`` is expected."""

    timestamp: str
    correct: bool
    board_result: Optional[str] = None


class BoardOutcome(NamedTuple):
    status: str
    achievement: str
    last_observation_at: Optional[str]


def classify(attempt) -> str:
    """Return the attempt's result, inferring it from ``correct`` for legacy
    rows recorded before ``board_result`` existed."""
    raw = getattr(attempt, "board_result", None)
    if raw:
        return str(raw)
    return RESULT_CORRECT if getattr(attempt, "correct", False) else RESULT_FAILED


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 instant to an aware UTC datetime.

    Anything that is not an instant with an explicit offset (or ``Z``) gives
    ``None``; callers treat that as "unknown" rather than as an error.
    """
    if isinstance(value, datetime):
        moment = value
    else:
        if not isinstance(value, str):
            return None
        text = value.strip()
        if not text:
            return None
        if text[-1] in "zZ":
            text = text[:-1] + "+00:00"
        text = _FRACTION.sub(_pad_fraction, text, count=1)
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return None
    if moment.tzinfo is None:
        return None
    return moment.astimezone(timezone.utc)


def _cooldown_elapsed(attempt, last_bad) -> bool:
    # No prior bad attempt, or a timestamp we cannot read, counts as elapsed.
    if last_bad is None:
        return True
    current = parse_timestamp(attempt.timestamp)
    bad = parse_timestamp(last_bad.timestamp)
    if current is None or bad is None:
        return True
    return int((current - bad).total_seconds()) >= COOLDOWN_SECONDS


def _last_bad_before(history: Sequence, index: int):
    for prior in reversed(history[:index]):
        if classify(prior) in _BAD_RESULTS:
            return prior
    return None


def current_status(history: Sequence) -> str:
    if not history:
        return NOT_ATTEMPTED

    latest = history[-1]
    effective = classify(latest)
    if effective == RESULT_FAILED:
        return FAILED
    if effective == RESULT_CORRECTED:
        return CORRECTED
    if effective == RESULT_CORRECT:
        last_bad = _last_bad_before(history, len(history) - 1)
        return CLEAN_CORRECT if _cooldown_elapsed(latest, last_bad) else FRESH_CORRECT

    # Unknown board_result value
    return CLEAN_CORRECT if latest.correct else FAILED


def clean_correct_dates(history: Iterable) -> List[date]:
    """Sorted, de-duplicated UTC dates of every clean correct attempt."""
    dates = set()
    last_bad = None
    for attempt in history:
        result = classify(attempt)
        if result in _BAD_RESULTS:
            last_bad = attempt
            continue
        if result != RESULT_CORRECT:
            continue
        moment = parse_timestamp(attempt.timestamp)
        if moment is None:
            continue
        if _cooldown_elapsed(attempt, last_bad):
            dates.add(moment.date())
    return sorted(dates)


def _as_date(value: Union[date, str]) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        return None


def compute_achievement(dates: Sequence[Union[date, str]]) -> str:
    """Achievement tier for sorted qualifying dates.

    Walks the dates greedily: a date extends the chain when it is at least
    ``ACHIEVEMENT_SPACING_DAYS`` after the last date that extended it. Two
    links earn silver, three or more gold.
    """
    if len(dates) < 2:
        return ACHIEVEMENT_NONE

    longest = 1
    chain = 1
    anchor = _as_date(dates[0])
    for value in dates[1:]:
        day = _as_date(value)
        if day is None or anchor is None:
            continue
        if abs((day - anchor).days) >= ACHIEVEMENT_SPACING_DAYS:
            chain += 1
            anchor = day
            longest = max(longest, chain)

    if longest >= 3:
        return ACHIEVEMENT_GOLD
    if longest >= 2:
        return ACHIEVEMENT_SILVER
    return ACHIEVEMENT_NONE


def achievement_rank(achievement: Optional[str]) -> int:
    return _ACHIEVEMENT_RANK.get(achievement or ACHIEVEMENT_NONE, 0)


def max_achievement(a: Optional[str], b: Optional[str]) -> str:
    a = a if a in _ACHIEVEMENT_RANK else ACHIEVEMENT_NONE
    b = b if b in _ACHIEVEMENT_RANK else ACHIEVEMENT_NONE
    return a if achievement_rank(a) >= achievement_rank(b) else b


def recompute(history: Iterable, previous_achievement: Optional[str] = None) -> BoardOutcome:
    """Derive a board's status from its complete history.

    ``history`` must be ordered by timestamp, oldest first. The achievement
    is merged with ``previous_achievement`` so it never goes down.
    """
    history = list(history)
    if not history:
        return BoardOutcome(
            NOT_ATTEMPTED,
            max_achievement(previous_achievement, ACHIEVEMENT_NONE),
            None,
        )

    status = current_status(history)
    computed = compute_achievement(clean_correct_dates(history))
    return BoardOutcome(
        status,
        max_achievement(previous_achievement, computed),
        history[-1].timestamp,
    )


def display_color(status: str, last_observation_at: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Color the classroom board grid uses for a status.

    A correction stays yellow while it is younger than the cooldown window,
    then turns orange like a fresh correct.
    """
    if status == FAILED:
        return "red"
    if status == CORRECTED:
        seen = parse_timestamp(last_observation_at)
        if seen is None:
            return "orange"
        now = now or datetime.now(timezone.utc)
        age = (now - seen).total_seconds()
        return "yellow" if age < COOLDOWN_SECONDS else "orange"
    if status == FRESH_CORRECT:
        return "orange"
    if status == CLEAN_CORRECT:
        return "green"
    return "grey"
