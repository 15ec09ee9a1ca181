from datetime import date, datetime, timedelta

import pytest
import pytz

from errors import (
    InvalidInputError, AlreadyClaimedError, NotCompletedError, HeartsFullError, CooldownActiveError
)
from gamification import (
    MAX_HEARTS, HEART_REGENERATION_INTERVAL_MS,
    STREAK_BONUS_PERCENT_PER_DAY, STREAK_BONUS_CAP_PERCENT,
    HeartState, XPEvent, ChallengeProgress, AchievementStats,
    compute_hearts, lose_heart, recover_heart, format_time_until,
    evaluate_streak, advance_streak, streak_bonus_percent, streak_bonus_xp,
    sum_in_window, daily_buckets, day_window, week_window, month_window, local_day,
    apply_progress, claim, achievements_to_unlock,
    parse_challenge_type, parse_xp_source, parse_period,
)
from models import ChallengeType, XPSource, LeaderboardPeriod

T = datetime(2026, 3, 4, 12, 0, 0)
FOUR_HOURS_MS = 4 * 60 * 60 * 1000
INTERVAL = timedelta(hours=4)


class TestComputeHearts:
    def test_defaults(self):
        assert MAX_HEARTS == 5
        assert HEART_REGENERATION_INTERVAL_MS == FOUR_HOURS_MS

    def test_full_hearts_never_schedule_regeneration(self):
        for elapsed_hours in (0, 1, 4, 100):
            state = compute_hearts(5, 5, T, T + timedelta(hours=elapsed_hours), FOUR_HOURS_MS)
            assert state == HeartState(5, None)

    def test_two_hearts_four_hours_later(self):
        state = compute_hearts(2, 5, T, T + INTERVAL, FOUR_HOURS_MS)
        assert state.hearts_available == 3
        assert state.next_regeneration_at == T + 2 * INTERVAL

    def test_exact_interval_boundary(self):
        just_before = compute_hearts(2, 5, T, T + 2 * INTERVAL - timedelta(milliseconds=1), FOUR_HOURS_MS)
        assert just_before.hearts_available == 3
        assert just_before.next_regeneration_at == T + 2 * INTERVAL

        on_boundary = compute_hearts(2, 5, T, T + 2 * INTERVAL, FOUR_HOURS_MS)
        assert on_boundary.hearts_available == 4
        assert on_boundary.next_regeneration_at == T + 3 * INTERVAL

    def test_before_first_interval(self):
        state = compute_hearts(4, 5, T, T + timedelta(hours=1), FOUR_HOURS_MS)
        assert state.hearts_available == 4
        assert state.next_regeneration_at == T + INTERVAL

    def test_capped_at_max(self):
        state = compute_hearts(1, 5, T, T + timedelta(hours=100), FOUR_HOURS_MS)
        assert state == HeartState(5, None)

    def test_reaching_max_clears_next_regeneration(self):
        state = compute_hearts(4, 5, T, T + INTERVAL, FOUR_HOURS_MS)
        assert state == HeartState(5, None)

    def test_monotonic_and_bounded(self):
        previous = -1
        for minutes in range(0, 30 * 60, 17):
            state = compute_hearts(0, 5, T, T + timedelta(minutes=minutes), FOUR_HOURS_MS)
            assert previous <= state.hearts_available <= 5
            previous = state.hearts_available

    def test_rejects_invalid_input(self):
        with pytest.raises(InvalidInputError):
            compute_hearts(-1, 5, T, T, FOUR_HOURS_MS)
        with pytest.raises(InvalidInputError):
            compute_hearts(2, 5, T, T - timedelta(seconds=1), FOUR_HOURS_MS)
        with pytest.raises(InvalidInputError):
            compute_hearts(2, 5, T, T, 0)
        with pytest.raises(InvalidInputError):
            compute_hearts(2, 5, None, T, FOUR_HOURS_MS)


class TestLoseHeart:
    def test_resets_countdown_to_loss_time(self):
        now = T + timedelta(milliseconds=1)
        snapshot = lose_heart(3, 5, T, now, FOUR_HOURS_MS)
        assert snapshot.hearts == 2
        assert snapshot.updated_at == now

    def test_materializes_regenerated_hearts_first(self):
        now = T + INTERVAL + timedelta(minutes=30)
        snapshot = lose_heart(2, 5, T, now, FOUR_HOURS_MS)
        # 2 + 1 regenerado - 1 perdido
        assert snapshot.hearts == 2
        assert snapshot.updated_at == now
        # la media hora acumulada se pierde: la cuenta empieza de nuevo
        assert compute_hearts(2, 5, now, now + timedelta(hours=3, minutes=59), FOUR_HOURS_MS).hearts_available == 2

    def test_floored_at_zero(self):
        snapshot = lose_heart(0, 5, T, T + timedelta(minutes=5), FOUR_HOURS_MS)
        assert snapshot.hearts == 0

    def test_from_full(self):
        snapshot = lose_heart(5, 5, None, T, FOUR_HOURS_MS)
        assert snapshot == (4, T)


class TestRecoverHeart:
    HOUR_MS = 60 * 60 * 1000

    def recover(self, hearts, now, last_recovery_at=None, last_update=T):
        return recover_heart(hearts, 5, last_update, now, last_recovery_at, self.HOUR_MS, FOUR_HOURS_MS)

    def test_adds_one_and_keeps_the_countdown(self):
        before = compute_hearts(2, 5, T, T + timedelta(hours=5), FOUR_HOURS_MS)
        snapshot = self.recover(2, T + timedelta(hours=5))

        assert snapshot == (4, T + INTERVAL)
        after = compute_hearts(snapshot.hearts, 5, snapshot.updated_at, T + timedelta(hours=5), FOUR_HOURS_MS)
        assert after.hearts_available == before.hearts_available + 1
        assert after.next_regeneration_at == before.next_regeneration_at == T + 2 * INTERVAL

    def test_capped_at_max(self):
        now = T + timedelta(hours=1)
        assert self.recover(4, now) == (5, now)
        # 4 + 1 regenerado = lleno
        with pytest.raises(HeartsFullError):
            self.recover(4, T + INTERVAL)
        with pytest.raises(HeartsFullError):
            self.recover(5, now, last_update=None)

    def test_cooldown_boundary(self):
        last_ad = T + timedelta(minutes=30)

        with pytest.raises(CooldownActiveError) as exc:
            self.recover(1, last_ad + timedelta(minutes=59, seconds=59), last_recovery_at=last_ad)
        assert exc.value.retry_after == 1

        snapshot = self.recover(1, last_ad + timedelta(hours=1), last_recovery_at=last_ad)
        assert snapshot.hearts == 2

    def test_hearts_full_is_checked_before_cooldown(self):
        with pytest.raises(HeartsFullError):
            self.recover(5, T, last_recovery_at=T)


def test_format_time_until():
    assert format_time_until(None) == "Full"
    assert format_time_until(timedelta(hours=3, minutes=20)) == "3h 20m"
    assert format_time_until(timedelta(hours=4)) == "4h"
    assert format_time_until(timedelta(minutes=45, seconds=10)) == "45m 10s"
    assert format_time_until(timedelta(minutes=2)) == "2m"
    assert format_time_until(timedelta(seconds=12)) == "12s"


class TestStreak:
    TODAY = date(2026, 3, 4)

    def test_new_user(self):
        status = evaluate_streak(None, self.TODAY)
        assert status.days_since_last_activity is None
        assert status.needs_update is False

    def test_same_day(self):
        assert evaluate_streak(self.TODAY, self.TODAY) == (0, False)

    def test_yesterday_is_still_alive(self):
        assert evaluate_streak(self.TODAY - timedelta(days=1), self.TODAY) == (1, False)

    def test_two_days_is_broken(self):
        assert evaluate_streak(self.TODAY - timedelta(days=2), self.TODAY) == (2, True)

    def test_timestamps_are_normalized_to_local_day(self):
        late_yesterday = datetime(2026, 3, 3, 23, 59)
        early_today = datetime(2026, 3, 4, 0, 1)
        assert evaluate_streak(late_yesterday, early_today) == (1, False)

    def test_future_activity_is_rejected(self):
        with pytest.raises(InvalidInputError):
            evaluate_streak(self.TODAY + timedelta(days=1), self.TODAY)

    def test_advance(self):
        yesterday = self.TODAY - timedelta(days=1)
        assert advance_streak(0, 0, None, self.TODAY) == (1, 1)
        assert advance_streak(4, 6, self.TODAY, self.TODAY) == (4, 6)
        assert advance_streak(4, 4, yesterday, self.TODAY) == (5, 5)
        assert advance_streak(9, 9, self.TODAY - timedelta(days=3), self.TODAY) == (1, 9)

    def test_bonus_percent(self):
        assert STREAK_BONUS_PERCENT_PER_DAY == 10
        assert STREAK_BONUS_CAP_PERCENT == 50
        assert streak_bonus_percent(0) == 0
        assert streak_bonus_percent(3) == 30
        assert streak_bonus_percent(5) == 50
        assert streak_bonus_percent(10) == 50

    def test_bonus_xp(self):
        assert streak_bonus_xp(10, 1) == 1
        assert streak_bonus_xp(15, 3) == 4
        assert streak_bonus_xp(20, 30) == 10
        with pytest.raises(InvalidInputError):
            streak_bonus_percent(-1)


class TestTimeWindows:
    DAY1 = datetime(2026, 3, 1)
    DAY2 = datetime(2026, 3, 2)
    DAY3 = datetime(2026, 3, 3)

    def test_half_open_window(self):
        events = [XPEvent(10, self.DAY1), XPEvent(20, self.DAY2), XPEvent(5, self.DAY3)]
        assert sum_in_window(events, self.DAY1, self.DAY3) == 30

    def test_adjacent_windows_do_not_double_count(self):
        events = [XPEvent(7, self.DAY2)]
        assert sum_in_window(events, self.DAY1, self.DAY2) + sum_in_window(events, self.DAY2, self.DAY3) == 7

    def test_rejects_negative_amounts(self):
        with pytest.raises(InvalidInputError):
            sum_in_window([XPEvent(-1, self.DAY1)], self.DAY1, self.DAY2)

    def test_daily_buckets_are_dense(self):
        today = date(2026, 3, 7)
        events = [
            XPEvent(10, datetime(2026, 3, 1, 9)),
            XPEvent(5, datetime(2026, 3, 1, 18)),
            XPEvent(20, datetime(2026, 3, 3, 12)),
            XPEvent(8, datetime(2026, 3, 7, 8)),
            XPEvent(99, datetime(2026, 2, 20, 8)),   # fuera de la gráfica
        ]
        buckets = daily_buckets(events, today, 7)

        assert len(buckets) == 7
        assert [b.day for b in buckets] == [date(2026, 3, d) for d in range(1, 8)]
        assert [b.xp for b in buckets] == [15, 0, 20, 0, 0, 0, 8]

    def test_daily_buckets_without_events(self):
        assert [b.xp for b in daily_buckets([], date(2026, 3, 7), 7)] == [0] * 7
        with pytest.raises(InvalidInputError):
            daily_buckets([], date(2026, 3, 7), 0)

    def test_week_starts_on_sunday(self):
        start, end = week_window(date(2026, 3, 4))
        assert start == datetime(2026, 3, 1)
        assert end == datetime(2026, 3, 8)
        assert week_window(date(2026, 3, 1))[0] == datetime(2026, 3, 1)
        assert week_window(date(2026, 3, 7))[0] == datetime(2026, 3, 1)

    def test_month_window_crosses_year(self):
        assert month_window(date(2026, 12, 15)) == (datetime(2026, 12, 1), datetime(2027, 1, 1))

    def test_windows_follow_local_timezone(self):
        new_york = pytz.timezone("America/New_York")
        start, end = day_window(date(2026, 1, 15), new_york)
        assert start == datetime(2026, 1, 15, 5)
        assert end == datetime(2026, 1, 16, 5)
        assert local_day(datetime(2026, 1, 16, 3), new_york) == date(2026, 1, 15)


class TestChallengeProgress:
    def make(self, **fields):
        defaults = dict(challenge_id=1, type=ChallengeType.xp, target=10, reward_xp=20)
        defaults.update(fields)
        return ChallengeProgress(**defaults)

    def test_progress_never_exceeds_target(self):
        updated = apply_progress(self.make(progress=8), 100)
        assert updated.progress == 10
        assert updated.is_completed is True

    def test_partial_progress(self):
        updated = apply_progress(self.make(progress=2), 3)
        assert updated.progress == 5
        assert updated.is_completed is False

    def test_negative_delta_is_rejected(self):
        with pytest.raises(InvalidInputError):
            apply_progress(self.make(), -1)

    def test_claim_requires_completion(self):
        with pytest.raises(NotCompletedError):
            claim(self.make(progress=3))

    def test_claim_only_once(self):
        claimed = claim(apply_progress(self.make(), 10))
        assert claimed.reward_claimed is True
        with pytest.raises(AlreadyClaimedError):
            claim(claimed)


class TestAchievements:
    def test_unlocks_met_criteria(self):
        stats = AchievementStats(lessons_completed=1, current_streak=7, total_xp=40)
        assert achievements_to_unlock(stats, set()) == ["first_lesson", "streak_3", "streak_7"]

    def test_already_unlocked_are_skipped(self):
        stats = AchievementStats(lessons_completed=12, perfect_lessons=10, current_streak=30, total_xp=500)
        unlocked = {"first_lesson", "streak_3", "streak_7", "streak_30", "perfect_10", "xp_100"}
        assert achievements_to_unlock(stats, unlocked) == []

    def test_nothing_for_new_user(self):
        assert achievements_to_unlock(AchievementStats(), []) == []


def test_enums_are_closed():
    assert parse_xp_source("streak") is XPSource.streak
    assert parse_challenge_type(ChallengeType.lessons) is ChallengeType.lessons
    assert parse_period("all_time") is LeaderboardPeriod.all_time
    with pytest.raises(InvalidInputError):
        parse_xp_source("bonus")
    with pytest.raises(InvalidInputError):
        parse_challenge_type("weekly")
