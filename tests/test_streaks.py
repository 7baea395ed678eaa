"""
tests/test_streaks.py — Check-in & Kudos Streak Math
======================================================
"""

from __future__ import annotations

from datetime import date, timedelta

from gitcity.engine.streaks import compute_checkin, next_kudos_streak

TODAY = date(2026, 3, 15)
YESTERDAY = TODAY - timedelta(days=1)


class TestComputeCheckin:
    def test_first_checkin_starts_at_one(self):
        result = compute_checkin(TODAY, None, 0, 0, 0)
        assert result.checked_in
        assert result.streak == 1
        assert result.longest == 1
        assert result.broken_streak == 0

    def test_second_checkin_same_day_changes_nothing(self):
        result = compute_checkin(TODAY, TODAY, 4, 9, 1)
        assert not result.checked_in
        assert result.already_today
        assert (result.streak, result.longest, result.freezes_left) == (4, 9, 1)

    def test_consecutive_day_extends_streak(self):
        result = compute_checkin(TODAY, YESTERDAY, 6, 6, 0)
        assert result.streak == 7
        assert result.longest == 7
        assert not result.was_frozen

    def test_longest_is_kept_when_higher(self):
        assert compute_checkin(TODAY, YESTERDAY, 2, 40, 0).longest == 40

    def test_one_missed_day_consumes_a_freeze(self):
        result = compute_checkin(TODAY, TODAY - timedelta(days=2), 10, 10, 2)
        assert result.was_frozen
        assert result.streak == 11
        assert result.freezes_left == 1

    def test_one_missed_day_without_freeze_resets(self):
        result = compute_checkin(TODAY, TODAY - timedelta(days=2), 10, 10, 0)
        assert result.streak == 1
        assert result.longest == 10
        assert result.broken_streak == 10

    def test_two_missed_days_reset_even_with_freezes(self):
        result = compute_checkin(TODAY, TODAY - timedelta(days=3), 10, 12, 3)
        assert result.streak == 1
        assert result.freezes_left == 3
        assert not result.was_frozen


class TestKudosStreak:
    def test_first_kudos(self):
        assert next_kudos_streak(TODAY, None, 0) == 1

    def test_consecutive_day(self):
        assert next_kudos_streak(TODAY, YESTERDAY, 3) == 4

    def test_same_day_does_not_double_count(self):
        assert next_kudos_streak(TODAY, TODAY, 3) == 3
        assert next_kudos_streak(TODAY, TODAY, 0) == 1

    def test_gap_resets(self):
        assert next_kudos_streak(TODAY, TODAY - timedelta(days=2), 8) == 1
