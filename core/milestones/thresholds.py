from __future__ import annotations

from fractions import Fraction

SMALL_EVENT_LIMIT = 50
SMALL_STEP = 10
LARGE_STEP = 20

# Once the notified milestone reaches SMALL_EVENT_LIMIT, a new milestone must
# also be at least this multiple of the previous one.
DAMPENING_RATIO = Fraction(6, 5)

MIN_NOTIFY_COUNT = 10


def milestone_for(count: int) -> int:
    """
    Map a registration count onto its milestone.

    Counts below 50 step by 10, counts from 50 step by 20. The switch is not
    smoothed: milestone_for(49) and milestone_for(50) are both 40.
    """
    if count < 0:
        raise ValueError(f"count must be non-negative, got {count}")

    if count < SMALL_EVENT_LIMIT:
        return (count // SMALL_STEP) * SMALL_STEP
    return (count // LARGE_STEP) * LARGE_STEP


def passes_dampening(previous_milestone: int, milestone: int, count: int) -> bool:
    """
    Return True if moving from previous_milestone to milestone is worth a
    notification at the given exact count.
    """
    if count < MIN_NOTIFY_COUNT:
        return False

    if milestone <= previous_milestone:
        return False

    if previous_milestone >= SMALL_EVENT_LIMIT:
        return milestone >= previous_milestone * DAMPENING_RATIO

    return True
