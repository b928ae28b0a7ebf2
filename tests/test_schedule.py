"""Tests for time-rule evaluation, validation and presets."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from streamgate.exceptions import ValidationError
from streamgate.models import TimeRule
from streamgate.policies import schedule

# 2024-03-04 is a Monday (day 1), 2024-03-09 a Saturday (day 6), 2024-03-10 a Sunday (day 0)
MONDAY_10AM = datetime(2024, 3, 4, 10, 0)


def rule(day: int, start: str, end: str, **kwargs) -> TimeRule:
    return TimeRule(user_id="alice", day_of_week=day, start_time=start, end_time=end, **kwargs)


class TestTimeParsing:
    """Tests for HH:MM parsing and range validation."""

    def test_parse_time(self) -> None:
        assert schedule.parse_time("00:00") == 0
        assert schedule.parse_time("09:30") == 570
        assert schedule.parse_time("23:59") == 1439

    def test_end_of_day_only_when_allowed(self) -> None:
        assert schedule.parse_time("24:00", allow_end_of_day=True) == 1440
        with pytest.raises(ValidationError):
            schedule.parse_time("24:00")

    @pytest.mark.parametrize("value", ["9:00", "25:00", "12:60", "noon", "", "10:00\n", "10:00 ", "24:00\n"])
    def test_parse_time_rejects_malformed(self, value: str) -> None:
        with pytest.raises(ValidationError):
            schedule.parse_time(value)

    def test_validate_time_range(self) -> None:
        assert schedule.validate_time_range("09:00", "17:00")
        assert schedule.validate_time_range("00:00", "24:00")
        assert not schedule.validate_time_range("17:00", "09:00")
        assert not schedule.validate_time_range("09:00", "09:00")

    def test_midnight_spanning_window_is_rejected(self) -> None:
        assert not schedule.validate_time_range("22:00", "02:00")
        with pytest.raises(ValidationError):
            schedule.validate_rule(rule(5, "22:00", "02:00"))

    def test_validate_rule_day_range(self) -> None:
        with pytest.raises(ValidationError):
            schedule.validate_rule(rule(7, "09:00", "10:00"))
        with pytest.raises(ValidationError):
            schedule.validate_rule(rule(-1, "09:00", "10:00"))
        schedule.validate_rule(rule(0, "09:00", "10:00"))


class TestOverlap:
    """Tests for overlap detection within a scope."""

    def test_overlapping_windows(self) -> None:
        assert schedule.rules_overlap(rule(1, "09:00", "12:00"), rule(1, "11:00", "13:00"))

    def test_adjacent_windows_do_not_overlap(self) -> None:
        assert not schedule.rules_overlap(rule(1, "09:00", "12:00"), rule(1, "12:00", "13:00"))

    def test_different_days_do_not_overlap(self) -> None:
        assert not schedule.rules_overlap(rule(1, "09:00", "12:00"), rule(2, "09:00", "12:00"))

    def test_different_scopes_do_not_overlap(self) -> None:
        user_wide = rule(1, "09:00", "12:00")
        device = rule(1, "09:00", "12:00", device_identifier="tv")
        assert not schedule.rules_overlap(user_wide, device)

    def test_rule_never_overlaps_itself(self) -> None:
        existing = rule(1, "09:00", "12:00", id=5)
        edited = rule(1, "10:00", "12:00", id=5)
        assert not schedule.rules_overlap(edited, existing)

    def test_check_no_overlap_names_conflict(self) -> None:
        existing = [rule(1, "09:00", "12:00", id=3, rule_name="Morning")]
        with pytest.raises(ValidationError, match="Morning"):
            schedule.check_no_overlap(rule(1, "11:00", "13:00"), existing)

    def test_disabled_rules_are_ignored(self) -> None:
        existing = [rule(1, "09:00", "12:00", id=3, enabled=False)]
        schedule.check_no_overlap(rule(1, "11:00", "13:00"), existing)

    def test_disabled_candidate_is_not_checked(self) -> None:
        existing = [rule(1, "09:00", "12:00", id=3)]
        schedule.check_no_overlap(rule(1, "11:00", "13:00", enabled=False), existing)


class TestIsWithinSchedule:
    """Tests for window evaluation."""

    def test_no_rules_means_unrestricted(self) -> None:
        assert schedule.is_within_schedule([], MONDAY_10AM)

    def test_only_disabled_rules_means_unrestricted(self) -> None:
        assert schedule.is_within_schedule([rule(3, "09:00", "10:00", enabled=False)], MONDAY_10AM)

    def test_inside_window(self) -> None:
        assert schedule.is_within_schedule([rule(1, "09:00", "12:00")], MONDAY_10AM)

    def test_start_is_inclusive_end_is_exclusive(self) -> None:
        rules = [rule(1, "10:00", "11:00")]
        assert schedule.is_within_schedule(rules, datetime(2024, 3, 4, 10, 0))
        assert schedule.is_within_schedule(rules, datetime(2024, 3, 4, 10, 59))
        assert not schedule.is_within_schedule(rules, datetime(2024, 3, 4, 11, 0))

    def test_rule_for_other_day_blocks(self) -> None:
        assert not schedule.is_within_schedule([rule(2, "00:00", "24:00")], MONDAY_10AM)

    def test_sunday_is_day_zero(self) -> None:
        sunday = datetime(2024, 3, 10, 12, 0)
        assert schedule.day_of_week(sunday) == 0
        assert schedule.is_within_schedule([rule(0, "00:00", "24:00")], sunday)
        assert not schedule.is_within_schedule([rule(6, "00:00", "24:00")], sunday)

    def test_end_of_day_covers_last_minute(self) -> None:
        assert schedule.is_within_schedule([rule(1, "20:00", "24:00")], datetime(2024, 3, 4, 23, 59))

    def test_find_active_rule(self) -> None:
        morning = rule(1, "09:00", "12:00", id=1)
        evening = rule(1, "18:00", "20:00", id=2)
        assert schedule.find_active_rule([morning, evening], MONDAY_10AM) is morning
        assert schedule.find_active_rule([evening], MONDAY_10AM) is None

    def test_to_local_converts_aware_times(self) -> None:
        utc_moment = datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)
        local = schedule.to_local(utc_moment, ZoneInfo("America/New_York"))
        assert (local.hour, local.minute) == (10, 0)

    def test_to_local_keeps_naive_wall_clock(self) -> None:
        assert schedule.to_local(MONDAY_10AM, ZoneInfo("America/New_York")) == MONDAY_10AM


class TestResolveRules:
    """Tests for device vs user-wide scope resolution."""

    def test_device_rules_supersede_user_rules(self) -> None:
        device_rules = [rule(1, "18:00", "20:00", device_identifier="tv")]
        user_rules = [rule(1, "09:00", "12:00")]
        assert schedule.resolve_rules(device_rules, user_rules) == device_rules

    def test_disabled_device_rules_still_supersede(self) -> None:
        device_rules = [rule(1, "18:00", "20:00", device_identifier="tv", enabled=False)]
        user_rules = [rule(1, "09:00", "12:00")]
        assert schedule.resolve_rules(device_rules, user_rules) == device_rules

    def test_no_device_rules_falls_back_to_user_rules(self) -> None:
        user_rules = [rule(1, "09:00", "12:00")]
        assert schedule.resolve_rules([], user_rules) == user_rules


class TestPresets:
    """Tests for preset construction and schedule summaries."""

    def test_weekdays_only(self) -> None:
        rules = schedule.build_preset("weekdays-only", "alice")
        assert [r.day_of_week for r in rules] == [1, 2, 3, 4, 5]
        assert all(r.start_time == "00:00" and r.end_time == "24:00" for r in rules)
        assert all(r.device_identifier is None for r in rules)

    def test_weekends_only_for_device(self) -> None:
        rules = schedule.build_preset("weekends-only", "alice", "tv")
        assert sorted(r.day_of_week for r in rules) == [0, 6]
        assert all(r.device_identifier == "tv" for r in rules)

    def test_unknown_preset(self) -> None:
        with pytest.raises(ValidationError):
            schedule.build_preset("school-nights", "alice")

    def test_preset_rules_are_valid(self) -> None:
        for name in schedule.PRESETS:
            for preset_rule in schedule.build_preset(name, "alice"):
                schedule.validate_rule(preset_rule)

    def test_describe_schedule(self) -> None:
        rules = schedule.build_preset("weekdays-only", "alice") + [rule(6, "10:00", "12:00")]
        assert schedule.describe_schedule(rules) == "Weekdays 00:00-24:00; Sat 10:00-12:00"

    def test_describe_empty_schedule(self) -> None:
        assert schedule.describe_schedule([]) == "No time restrictions"
