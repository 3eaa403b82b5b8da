"""
Due checks and target selection
"""

import random
import re
from datetime import datetime, timedelta, tzinfo
from typing import Optional, Sequence, TypeVar

from ..errors import NoEligibleMembersError, ValidationError
from ..models import RotationMode, RotationStrategy

T = TypeVar("T")

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def normalize_schedule_time(value: str) -> str:
    """Validate an ``HH:MM`` time and return it zero padded."""
    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        raise ValidationError(f"Invalid scheduled time '{value}', expected HH:MM")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def is_due(
    mode: RotationMode,
    interval_minutes: int,
    scheduled_times: Sequence[str],
    last_rotated_at: Optional[datetime],
    now: datetime,
    debounce: timedelta,
    tz: tzinfo,
) -> bool:
    """
    Decide whether a pool should rotate at ``now``.

    Interval mode is due when the pool never rotated or the interval has
    elapsed. Scheduled mode is due when the wall clock in ``tz`` matches one
    of the scheduled ``HH:MM`` times and the pool did not rotate within the
    debounce window.
    """
    if mode == RotationMode.INTERVAL:
        if last_rotated_at is None:
            return True
        return now - last_rotated_at >= timedelta(minutes=interval_minutes)

    if mode == RotationMode.SCHEDULED:
        current = now.astimezone(tz).strftime("%H:%M")
        for scheduled in scheduled_times:
            try:
                if normalize_schedule_time(scheduled) != current:
                    continue
            except ValidationError:
                continue
            return last_rotated_at is None or now - last_rotated_at >= debounce
        return False

    raise ValidationError(f"Unknown rotation mode '{mode}'")


def select_next(
    candidates: Sequence[T],
    strategy: RotationStrategy,
    current_index: int,
    rng: Optional[random.Random] = None,
) -> tuple[int, T]:
    """
    Pick the next target.

    Round robin advances ``current_index`` by one modulo the candidate count,
    so the stored index stays usable when membership shrinks or grows.

    Returns:
        (index, candidate)

    Raises:
        NoEligibleMembersError: If there are no candidates
    """
    if not candidates:
        raise NoEligibleMembersError("No eligible machines in pool")

    if strategy == RotationStrategy.ROUND_ROBIN:
        index = (current_index + 1) % len(candidates)
    elif strategy == RotationStrategy.RANDOM:
        index = (rng or random).randrange(len(candidates))
    else:
        raise ValidationError(f"Unknown rotation strategy '{strategy}'")

    return index, candidates[index]
