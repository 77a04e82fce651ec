from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.core.proximity_config import CONSECUTIVE_THRESHOLD, NOTIFICATION_COOLDOWN_SECONDS


@dataclass(frozen=True)
class HysteresisDecision:
    proximity_count: int
    last_notified_at: Optional[datetime]
    should_notify: bool


def evaluate(
    previous_count: int,
    previous_notified_at: Optional[datetime],
    proximity_detected: bool,
    now: datetime,
    threshold: int = CONSECUTIVE_THRESHOLD,
    cooldown: timedelta = timedelta(seconds=NOTIFICATION_COOLDOWN_SECONDS),
) -> HysteresisDecision:
    """
    Debounce the "someone is nearby" signal.

    Rules:
      - a miss resets the counter to 0 but keeps last_notified_at
      - a hit increments the counter, saturating at `threshold`
      - once saturated, a hit notifies only if the previous notification is
        older than `cooldown` (or there never was one)
    """
    if not proximity_detected:
        return HysteresisDecision(0, previous_notified_at, False)

    next_count = min(previous_count + 1, threshold)

    if next_count < threshold:
        return HysteresisDecision(next_count, previous_notified_at, False)

    if previous_notified_at is None or now - previous_notified_at > cooldown:
        return HysteresisDecision(next_count, now, True)

    return HysteresisDecision(next_count, previous_notified_at, False)
