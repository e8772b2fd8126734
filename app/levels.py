"""Level tiers derived from a user's point total."""
from enum import Enum
from typing import Dict, Optional


class Level(str, Enum):
    BEGINNER = 'Beginner'
    INTERMEDIATE = 'Intermediate'
    ADVANCED = 'Advanced'
    EXPERT = 'Expert'


# Lowest total that reaches each tier, in ascending order.
LEVEL_THRESHOLDS = (
    (Level.BEGINNER, 0),
    (Level.INTERMEDIATE, 1000),
    (Level.ADVANCED, 5000),
    (Level.EXPERT, 10000),
)

_ORDER = {level: index for index, (level, _) in enumerate(LEVEL_THRESHOLDS)}


def classify_level(total_points: int) -> Level:
    """Return the tier for *total_points*.

    The mapping is a monotonic step function: a larger total never yields a
    lower tier.  Negative totals classify as ``Beginner``.
    """
    current = Level.BEGINNER
    for level, threshold in LEVEL_THRESHOLDS:
        if total_points >= threshold:
            current = level
    return current


def level_rank(level: Level) -> int:
    """Return the position of *level* in the tier order (Beginner is 0)."""
    return _ORDER[Level(level)]


def level_progress(total_points: int) -> Dict:
    """Describe how far *total_points* is through the current tier.

    Returns:
        Dict with ``level``, ``next_level`` (``None`` at Expert),
        ``points_to_next`` and ``progress`` (0.0-1.0).
    """
    level = classify_level(total_points)
    index = level_rank(level)
    start = LEVEL_THRESHOLDS[index][1]
    next_level: Optional[Level] = None
    points_to_next = 0
    progress = 1.0
    if index + 1 < len(LEVEL_THRESHOLDS):
        next_level, end = LEVEL_THRESHOLDS[index + 1]
        points_to_next = end - total_points
        progress = max(0.0, (total_points - start) / (end - start))
    return {
        'level': level.value,
        'next_level': next_level.value if next_level else None,
        'points_to_next': points_to_next,
        'progress': round(min(progress, 1.0), 4),
    }
