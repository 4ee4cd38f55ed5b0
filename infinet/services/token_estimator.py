"""
Token Estimator - heuristic token counts for metering

No tokenizer is involved. Short messages are counted by words (~0.75
tokens per word), long ones by characters (~4 characters per token).
Image generation carries a flat surcharge.
"""

import math
from datetime import datetime
from typing import Optional, Tuple

# Below this many characters the word heuristic is used
WORD_HEURISTIC_MAX_CHARS = 1000
TOKENS_PER_WORD = 0.75
CHARS_PER_TOKEN = 4
IMAGE_SURCHARGE_TOKENS = 500

# Display thresholds (percent of quota)
WARNING_PERCENT = 80
CRITICAL_PERCENT = 95
EXCEEDED_PERCENT = 100


def estimate(text: Optional[str], includes_image: bool = False) -> int:
    """Estimate the token cost of ``text``. Pure and never negative."""
    text = text or ""
    if len(text) < WORD_HEURISTIC_MAX_CHARS:
        words = len(text.split())
        tokens = math.ceil(words * TOKENS_PER_WORD)
    else:
        tokens = math.ceil(len(text) / CHARS_PER_TOKEN)

    if includes_image:
        tokens += IMAGE_SURCHARGE_TOKENS
    return tokens


def estimate_exchange(
    user_text: Optional[str],
    response_text: Optional[str],
    includes_image: bool = False,
) -> int:
    """Post-hoc cost of one exchange: the user message plus everything streamed back."""
    return estimate(user_text) + estimate(response_text, includes_image=includes_image)


def usage_status(used: int, limit: Optional[int]) -> Tuple[float, str]:
    """
    Percentage of quota consumed and a display bucket.

    Returns (percentage, status) where status is one of
    "safe", "warning", "critical", "exceeded". Unlimited or zero
    quotas are always "safe".
    """
    if not limit:
        return 0.0, "safe"

    percentage = used / limit * 100
    if percentage >= EXCEEDED_PERCENT:
        return 100.0, "exceeded"
    if percentage >= CRITICAL_PERCENT:
        return round(percentage, 2), "critical"
    if percentage >= WARNING_PERCENT:
        return round(percentage, 2), "warning"
    return round(percentage, 2), "safe"


def days_until_reset(period_end: datetime, now: datetime) -> int:
    """Whole days (rounded up) until the period ends, floored at zero."""
    seconds = (period_end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def recommended_daily_pace(limit: Optional[int], days_in_period: int) -> Optional[int]:
    if limit is None or days_in_period <= 0:
        return None
    return limit // days_in_period
