"""Tests for schedule policies, cron expressions and due slot computation."""

from datetime import datetime, timedelta, timezone

import pytest

from dagrun.schedule import CronExpression, SchedulePolicy, due_slots


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


T0 = utc(2024, 1, 1)
HOUR = timedelta(hours=1)


class TestCronExpression:
    """Tests for CronExpression."""

    def test_every_fifteen_minutes(self):
        cron = CronExpression("*/15 * * * *")
        assert cron.next_after(utc(2024, 1, 1, 10, 7)) == utc(2024, 1, 1, 10, 15)
        assert cron.next_after(utc(2024, 1, 1, 10, 45)) == utc(2024, 1, 1, 11, 0)

    def test_next_after_is_strict(self):
        cron = CronExpression("0 * * * *")
        assert cron.next_after(utc(2024, 1, 1, 10)) == utc(2024, 1, 1, 11)

    def test_at_or_before_is_inclusive(self):
        cron = CronExpression("30 2 * * *")
        assert cron.at_or_before(utc(2024, 1, 5, 2, 30)) == utc(2024, 1, 5, 2, 30)
        assert cron.at_or_before(utc(2024, 1, 5, 2, 29)) == utc(2024, 1, 4, 2, 30)

    def test_presets(self):
        assert CronExpression("@daily").expression == "0 0 * * *"
        assert CronExpression("@hourly").next_after(utc(2024, 1, 1, 0, 30)) == utc(2024, 1, 1, 1)

    def test_weekday_range(self):
        # 2024-01-06 is a Saturday
        cron = CronExpression("0 9 * * 1-5")
        assert cron.next_after(utc(2024, 1, 5, 12)) == utc(2024, 1, 8, 9)

    def test_sunday_as_seven(self):
        cron = CronExpression("0 0 * * 7")
        assert cron.weekdays == frozenset({0})
        assert cron.next_after(utc(2024, 1, 1)) == utc(2024, 1, 7)

    def test_day_of_month_or_day_of_week(self):
        # Restricted day-of-month and day-of-week match when either does
        cron = CronExpression("0 0 15 * 1")
        assert cron.matches(utc(2024, 1, 15))  # 15th (also a Monday)
        assert cron.matches(utc(2024, 1, 8))   # Monday
        assert cron.matches(utc(2024, 2, 15))  # Thursday the 15th
        assert not cron.matches(utc(2024, 1, 9))

    def test_month_rollover(self):
        cron = CronExpression("0 0 1 */3 *")
        assert cron.next_after(utc(2024, 2, 10)) == utc(2024, 4, 1)
        assert cron.next_after(utc(2024, 11, 10)) == utc(2025, 1, 1)

    def test_list_field(self):
        cron = CronExpression("0 6,18 * * *")
        assert cron.next_after(utc(2024, 1, 1, 7)) == utc(2024, 1, 1, 18)

    @pytest.mark.parametrize("expression", [
        "* * * *",
        "61 * * * *",
        "* 24 * * *",
        "*/0 * * * *",
        "5-1 * * * *",
        "a * * * *",
    ])
    def test_invalid(self, expression):
        with pytest.raises(ValueError):
            CronExpression(expression)


class TestSchedulePolicy:
    """Tests for SchedulePolicy.parse() and slot arithmetic."""

    @pytest.mark.parametrize("value", [None, "manual", "@none", "@once"])
    def test_parse_manual(self, value):
        assert SchedulePolicy.parse(value).is_manual

    def test_parse_interval_seconds(self):
        policy = SchedulePolicy.parse(3600)
        assert policy.kind == "interval"
        assert policy.interval == HOUR

    def test_parse_every_mapping(self):
        policy = SchedulePolicy.parse({"every": 900})
        assert policy.interval == timedelta(minutes=15)
        assert policy.to_value() == {"every": 900.0}

    def test_parse_cron(self):
        policy = SchedulePolicy.parse("@daily")
        assert policy.kind == "cron"
        assert policy.to_value() == "@daily"

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            SchedulePolicy.parse(True)
        with pytest.raises(ValueError):
            SchedulePolicy.parse([1, 2])

    def test_non_positive_interval(self):
        with pytest.raises(ValueError):
            SchedulePolicy.every(timedelta(0))

    def test_manual_has_no_slots(self):
        with pytest.raises(ValueError):
            SchedulePolicy.manual().following(T0)

    def test_interval_slots_align_to_anchor(self):
        policy = SchedulePolicy.every(HOUR)
        anchor = utc(2024, 1, 1, 0, 30)
        assert policy.at_or_before(utc(2024, 1, 1, 5, 10), anchor) == utc(2024, 1, 1, 4, 30)
        assert policy.first_at_or_after(utc(2024, 1, 1, 5, 10), anchor) == utc(2024, 1, 1, 5, 30)

    def test_latest_due_slot_interval(self):
        policy = SchedulePolicy.every(HOUR)
        # The 03:00 slot covers 03:00-04:00 and is due at 04:00
        assert policy.latest_due_slot(T0, utc(2024, 1, 1, 4, 0)) == utc(2024, 1, 1, 3)
        assert policy.latest_due_slot(T0, utc(2024, 1, 1, 3, 59)) == utc(2024, 1, 1, 2)

    def test_latest_due_slot_before_first_close(self):
        policy = SchedulePolicy.every(HOUR)
        assert policy.latest_due_slot(T0, utc(2024, 1, 1, 0, 59)) is None
        assert policy.latest_due_slot(T0, T0 - HOUR) is None

    def test_latest_due_slot_cron(self):
        policy = SchedulePolicy.from_cron("@daily")
        assert policy.latest_due_slot(T0, utc(2024, 1, 3, 0, 30)) == utc(2024, 1, 2)

    def test_slots_between(self):
        policy = SchedulePolicy.from_cron("@daily")
        slots = policy.slots_between(utc(2024, 1, 1, 12), utc(2024, 1, 4), T0)
        assert slots == [utc(2024, 1, 2), utc(2024, 1, 3), utc(2024, 1, 4)]


class TestDueSlots:
    """Tests for due_slots() (catch-up semantics)."""

    def test_catchup_materializes_every_missed_slot(self):
        policy = SchedulePolicy.every(HOUR)
        slots = due_slots(policy, T0, T0 + 5 * HOUR, catchup=True)
        assert slots == [T0 + i * HOUR for i in range(5)]

    def test_no_catchup_only_latest(self):
        policy = SchedulePolicy.every(HOUR)
        assert due_slots(policy, T0, T0 + 5 * HOUR, catchup=False) == [T0 + 4 * HOUR]

    def test_after_latest_materialized(self):
        policy = SchedulePolicy.every(HOUR)
        now = T0 + 5 * HOUR
        assert due_slots(policy, T0, now, after=T0 + 1 * HOUR, catchup=True) == [
            T0 + 2 * HOUR, T0 + 3 * HOUR, T0 + 4 * HOUR,
        ]
        assert due_slots(policy, T0, now, after=T0 + 4 * HOUR, catchup=True) == []
        assert due_slots(policy, T0, now, after=T0 + 4 * HOUR, catchup=False) == []

    def test_end_boundary(self):
        policy = SchedulePolicy.every(HOUR)
        slots = due_slots(policy, T0, T0 + 10 * HOUR, catchup=True, end=T0 + 2 * HOUR)
        assert slots == [T0, T0 + HOUR, T0 + 2 * HOUR]

    def test_nothing_due_yet(self):
        policy = SchedulePolicy.from_cron("@daily")
        assert due_slots(policy, T0, T0 + 23 * HOUR, catchup=True) == []

    def test_manual(self):
        assert due_slots(SchedulePolicy.manual(), T0, T0 + 100 * HOUR, catchup=True) == []
