# attend75/engine/modules/analytics.py

import math
from fractions import Fraction
from typing import Tuple

from ..models.stats_models import AttendanceAdvice, RiskLevel

# Returned when there is no limit on how many classes can be missed (target <= 0).
UNBOUNDED_SKIPS = 999
# Returned when the target can never be reached again (e.g. 100% after one absence).
UNREACHABLE = 999
# Used in place of a target that is not a number.
DEFAULT_TARGET = 75.0


def _whole(value) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return int(value)


def _clamp_counts(attended: int, held: int) -> Tuple[int, int]:
    held = max(0, _whole(held))
    attended = min(max(0, _whole(attended)), held)
    return attended, held


def _clean_target(target: float) -> float:
    """NaN falls back to DEFAULT_TARGET; infinities land just outside the 0-100 range."""
    if math.isnan(target):
        return DEFAULT_TARGET
    if math.isinf(target):
        return 101.0 if target > 0 else 0.0
    return target


def _ratio(target: float) -> Fraction:
    """
    Converts a percentage target into an exact fraction so that the floor/ceil
    boundaries below do not drift with binary floating point (70.0 -> 7/10).
    """
    return Fraction(target).limit_denominator(10_000) / 100


def _meets_target(attended: int, held: int, target: float) -> bool:
    if held == 0:
        return False
    return Fraction(attended, held) >= _ratio(target)


def percentage(attended: int, held: int) -> float:
    """Attendance percentage, 0.0 when nothing has been held yet."""
    attended, held = _clamp_counts(attended, held)
    if held == 0:
        return 0.0
    return attended / held * 100


def max_skippable(attended: int, held: int, target: float) -> int:
    """
    The largest k >= 0 such that missing the next k classes keeps
    attended / (held + k) at or above the target.

    Args:
        attended: classes attended so far.
        held: classes held so far.
        target: required percentage (0-100).

    Returns:
        UNBOUNDED_SKIPS for a non-positive target, 0 for a target above 100.
    """
    attended, held = _clamp_counts(attended, held)
    target = _clean_target(target)
    if target <= 0:
        return UNBOUNDED_SKIPS
    if target > 100:
        return 0

    # k <= attended / r - held
    k = math.floor(Fraction(attended) / _ratio(target) - held)
    return max(0, k)


def classes_needed(attended: int, held: int, target: float) -> int:
    """
    The smallest n >= 0 of further classes, all attended, such that
    (attended + n) / (held + n) reaches the target.

    Args:
        attended: classes attended so far.
        held: classes held so far.
        target: required percentage (0-100).

    Returns:
        0 when the target is already met, UNREACHABLE when no number of
        classes can get there (a 100% target after an absence, or a target above 100).
    """
    attended, held = _clamp_counts(attended, held)
    target = _clean_target(target)
    if target <= 0 or held == 0:
        return 0
    if target >= 100 and attended < held:
        return UNREACHABLE
    if _meets_target(attended, held, target):
        return 0
    if target > 100:
        return UNREACHABLE

    r = _ratio(target)
    denominator = 1 - r
    if denominator == 0:
        return UNREACHABLE

    # n >= (r*held - attended) / (1 - r)
    n = math.ceil((r * held - attended) / denominator)
    return max(0, n)


def advise(attended: int, held: int, weekly_occurrences: int, target: float = 75.0) -> AttendanceAdvice:
    """
    Builds the skip/attend recommendation shown for a subject.

    Args:
        attended: classes attended so far.
        held: classes held so far.
        weekly_occurrences: how many times the subject meets per week.
        target: required percentage.

    Returns:
        An AttendanceAdvice. With no classes held yet every count is zero.
    """
    attended, held = _clamp_counts(attended, held)
    target = _clean_target(target)
    shown_target = int(round(target))

    if held == 0:
        return AttendanceAdvice(
            percentage=0.0,
            is_above_threshold=False,
            classes_to_skip=0,
            classes_to_attend=0,
            message="No classes held yet",
        )

    current = percentage(attended, held)

    if _meets_target(attended, held, target):
        skip = max_skippable(attended, held, target)
        if skip > 0:
            message = f"You can skip {skip} classes and stay above {shown_target}%"
        else:
            message = f"Attend all remaining classes to maintain {shown_target}%"
        return AttendanceAdvice(
            percentage=current,
            is_above_threshold=True,
            classes_to_skip=skip,
            classes_to_attend=0,
            message=message,
        )

    needed = classes_needed(attended, held, target)
    weeks = None
    if needed >= UNREACHABLE:
        message = f"{shown_target}% can no longer be reached"
    elif needed > 0:
        message = f"Attend {needed} more classes to reach {shown_target}%"
        if weekly_occurrences > 0:
            weeks = math.ceil(needed / weekly_occurrences)
    else:
        message = "Almost there! Stay consistent"

    return AttendanceAdvice(
        percentage=current,
        is_above_threshold=False,
        classes_to_skip=0,
        classes_to_attend=needed,
        weeks_to_target=weeks,
        message=message,
    )


def risk_level(current_percentage: float, warning_at: float, critical_at: float) -> RiskLevel:
    """Classifies a percentage against the user's warning/critical thresholds."""
    if current_percentage < critical_at:
        return RiskLevel.CRITICAL
    if current_percentage < warning_at:
        return RiskLevel.WARNING
    return RiskLevel.OK
