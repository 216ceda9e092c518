import math
from typing import Mapping

POSITIVE_EXPRESSIONS = ("happy", "surprised", "neutral")
NEGATIVE_EXPRESSIONS = ("sad", "angry", "fearful", "disgusted")
EXPRESSIONS = POSITIVE_EXPRESSIONS + NEGATIVE_EXPRESSIONS


def round_half_up(value: float) -> int:
    # 62.5 -> 63, not Python's banker's rounding
    return int(math.floor(value + 0.5))


def engagement_score(expressions: Mapping[str, float]) -> int:
    """
    Heuristic engagement proxy in [0, 100] from expression probabilities.

    positive = happy + surprised + neutral
    negative = sad + angry + fearful + disgusted
    score    = clamp((positive - negative + 1) * 50, 0, 100)

    This is a rough signal for dashboards, not a validated measure of
    attention. Missing expressions count as 0.
    """
    positive = sum(float(expressions.get(k, 0.0) or 0.0) for k in POSITIVE_EXPRESSIONS)
    negative = sum(float(expressions.get(k, 0.0) or 0.0) for k in NEGATIVE_EXPRESSIONS)
    raw = (positive - negative + 1) * 50
    return round_half_up(max(0.0, min(100.0, raw)))
