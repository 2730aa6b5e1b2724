"""
Temporal context: how much time passed since the user's last turn.

The gap feeds both the recognition prompt and the fallback plan (a small
gap implies the current session's Warm memory is likely relevant).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import time


class TimeGap(str, Enum):
    SEAMLESS = "seamless"          # < 5 minutes
    RECENT_PAUSE = "recent_pause"  # 5 min - 1 hour
    SAME_DAY = "same_day"          # 1 - 6 hours
    NEXT_DAY = "next_day"          # 6 - 24 hours
    DAYS_LATER = "days_later"      # 1 - 7 days
    WEEKS_LATER = "weeks_later"    # 7 - 30 days
    LONG_GAP = "long_gap"          # 30+ days
    FIRST_CONTACT = "first_contact"


# (upper bound in minutes, gap)
_GAP_BOUNDS = (
    (5, TimeGap.SEAMLESS),
    (60, TimeGap.RECENT_PAUSE),
    (360, TimeGap.SAME_DAY),
    (1440, TimeGap.NEXT_DAY),
    (10080, TimeGap.DAYS_LATER),
    (43200, TimeGap.WEEKS_LATER),
)

_DESCRIPTIONS = {
    TimeGap.SEAMLESS: "continuing our conversation",
    TimeGap.RECENT_PAUSE: "a few minutes ago",
    TimeGap.SAME_DAY: "earlier today",
    TimeGap.NEXT_DAY: "yesterday",
    TimeGap.DAYS_LATER: "a few days ago",
    TimeGap.WEEKS_LATER: "a few weeks ago",
    TimeGap.LONG_GAP: "quite a while ago",
    TimeGap.FIRST_CONTACT: "for the first time",
}


def classify_gap(gap_seconds: Optional[float]) -> TimeGap:
    if gap_seconds is None:
        return TimeGap.FIRST_CONTACT
    minutes = gap_seconds / 60.0
    for bound, gap in _GAP_BOUNDS:
        if minutes < bound:
            return gap
    return TimeGap.LONG_GAP


@dataclass(frozen=True)
class TemporalContext:
    """Time since the last interaction and a human-readable framing."""

    gap_seconds: Optional[float]
    time_gap: TimeGap
    framing: str

    @classmethod
    def from_last_turn(cls, last_turn_at: Optional[float], now: Optional[float] = None) -> "TemporalContext":
        now = time.time() if now is None else now
        gap = None if last_turn_at is None else max(0.0, now - last_turn_at)
        time_gap = classify_gap(gap)

        if time_gap in (TimeGap.SEAMLESS, TimeGap.RECENT_PAUSE, TimeGap.SAME_DAY):
            framing = "Continuing the conversation"
        elif time_gap == TimeGap.FIRST_CONTACT:
            framing = "First interaction with this user"
        else:
            framing = f"Resuming after a gap: last spoke {_DESCRIPTIONS[time_gap]}"

        return cls(gap_seconds=gap, time_gap=time_gap, framing=framing)

    def is_recent(self, threshold_seconds: float) -> bool:
        return self.gap_seconds is not None and self.gap_seconds < threshold_seconds
