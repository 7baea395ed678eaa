"""
gitcity.engine.streaks — Check-in & Kudos Streak Math
=======================================================

Pure date arithmetic, no database I/O.  All dates are UTC calendar days.

Check-in rules:

* Already checked in today → nothing changes.
* Last check-in was yesterday → streak + 1.
* Exactly one day was missed and a freeze is available → the freeze is
  consumed and the streak continues (``was_frozen``).
* Anything else → the streak restarts at 1.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

FREEZE_MILESTONE_STREAK = 30
STREAK_MILESTONES: tuple[int, ...] = (7, 30, 100, 365)


@dataclass(frozen=True, slots=True)
class CheckinResult:
    checked_in: bool
    already_today: bool
    streak: int
    longest: int
    was_frozen: bool = False
    freezes_left: int = 0
    # Streak length that was lost, when the check-in restarted the streak.
    broken_streak: int = 0


def compute_checkin(
    today: date,
    last_checkin: date | None,
    streak: int,
    longest: int,
    freezes_available: int,
) -> CheckinResult:
    if last_checkin == today:
        return CheckinResult(
            checked_in=False,
            already_today=True,
            streak=streak,
            longest=longest,
            freezes_left=freezes_available,
        )

    was_frozen = False
    broken = 0
    if last_checkin == today - timedelta(days=1):
        new_streak = streak + 1
    elif (
        last_checkin == today - timedelta(days=2)
        and freezes_available > 0
        and streak > 0
    ):
        new_streak = streak + 1
        freezes_available -= 1
        was_frozen = True
    else:
        broken = streak if last_checkin is not None else 0
        new_streak = 1

    return CheckinResult(
        checked_in=True,
        already_today=False,
        streak=new_streak,
        longest=max(longest, new_streak),
        was_frozen=was_frozen,
        freezes_left=freezes_available,
        broken_streak=broken,
    )


def next_kudos_streak(today: date, last_given: date | None, streak: int) -> int:
    """Consecutive days the developer has given kudos, after giving today."""
    if last_given == today:
        return max(streak, 1)
    if last_given == today - timedelta(days=1):
        return streak + 1
    return 1
