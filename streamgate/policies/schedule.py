"""Time-rule evaluation, validation and presets.

A time rule is a weekly window during which streaming is permitted. When a
scope (one device, or all of a user's devices) has enabled rules, streaming
is only permitted inside one of them. A scope with no enabled rules is not
restricted at all.

Days use 0 = Sunday ... 6 = Saturday. Windows are same-day and half-open:
start <= now < end. Midnight-spanning windows are rejected; "24:00" may be
used as an end time to cover the rest of the day.
"""

import logging
import re
from collections.abc import Iterable, Sequence
from datetime import datetime, tzinfo
from typing import Optional

from streamgate.exceptions import ValidationError
from streamgate.models import TimeRule

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"([01][0-9]|2[0-3]):([0-5][0-9])")
END_OF_DAY = "24:00"
MINUTES_PER_DAY = 24 * 60

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
WEEKDAYS = [1, 2, 3, 4, 5]
WEEKENDS = [0, 6]

# Preset name -> days covered by a whole-day window
PRESETS: dict[str, list[int]] = {
    "weekdays-only": WEEKDAYS,
    "weekends-only": WEEKENDS,
}


def parse_time(value: str, allow_end_of_day: bool = False) -> int:
    """Convert "HH:MM" to minutes since midnight.

    Args:
        value: Time of day in 24-hour "HH:MM" form
        allow_end_of_day: Accept "24:00" (only valid as a window end)

    Raises:
        ValidationError: If the value is not a valid time of day
    """
    if allow_end_of_day and value == END_OF_DAY:
        return MINUTES_PER_DAY

    match = TIME_PATTERN.fullmatch(value or "")
    if not match:
        raise ValidationError(
            f"Invalid time '{value}', expected HH:MM (24-hour)",
            details={"value": value},
        )
    return int(match.group(1)) * 60 + int(match.group(2))


def validate_time_range(start_time: str, end_time: str) -> bool:
    """Check that a window ends strictly after it starts on the same day."""
    try:
        start = parse_time(start_time)
        end = parse_time(end_time, allow_end_of_day=True)
    except ValidationError:
        return False
    return end > start


def validate_rule(rule: TimeRule) -> None:
    """Validate a rule's day and window before it is written.

    Raises:
        ValidationError: If the day is out of range or the window is invalid
    """
    if not isinstance(rule.day_of_week, int) or not 0 <= rule.day_of_week <= 6:
        raise ValidationError(
            "Day of week must be between 0 (Sunday) and 6 (Saturday)",
            details={"day_of_week": rule.day_of_week},
        )

    # Raises on malformed values
    parse_time(rule.start_time)
    parse_time(rule.end_time, allow_end_of_day=True)

    if not validate_time_range(rule.start_time, rule.end_time):
        raise ValidationError(
            "End time must be greater than start time",
            details={"start_time": rule.start_time, "end_time": rule.end_time},
        )


def same_scope(a: TimeRule, b: TimeRule) -> bool:
    """Check whether two rules govern the same user and device scope."""
    return a.user_id == b.user_id and a.device_identifier == b.device_identifier


def rules_overlap(a: TimeRule, b: TimeRule) -> bool:
    """Check whether two rules overlap on the same day in the same scope.

    Overlap is start_a < end_b and end_a > start_b, so windows that only
    touch (09:00-12:00 and 12:00-13:00) do not overlap. A rule never
    overlaps itself.
    """
    if a.id is not None and a.id == b.id:
        return False
    if not same_scope(a, b) or a.day_of_week != b.day_of_week:
        return False

    try:
        a_start = parse_time(a.start_time)
        a_end = parse_time(a.end_time, allow_end_of_day=True)
        b_start = parse_time(b.start_time)
        b_end = parse_time(b.end_time, allow_end_of_day=True)
    except ValidationError:
        return False

    return a_start < b_end and a_end > b_start


def check_no_overlap(candidate: TimeRule, existing: Iterable[TimeRule]) -> None:
    """Reject a rule that would overlap an enabled rule in its scope.

    Disabled candidates are not checked; they are checked again when they
    are switched back on.

    Raises:
        ValidationError: Naming the first conflicting rule
    """
    if not candidate.enabled:
        return

    for other in existing:
        if not other.enabled:
            continue
        if rules_overlap(candidate, other):
            label = other.rule_name or f"#{other.id}"
            raise ValidationError(
                f"Rule overlaps with existing rule \"{label}\" "
                f"({DAY_NAMES[other.day_of_week]} {other.start_time}-{other.end_time})",
                details={"conflicting_rule_id": other.id},
            )


def day_of_week(moment: datetime) -> int:
    """Day of week with 0 = Sunday."""
    return (moment.weekday() + 1) % 7


def to_local(moment: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Project an instant onto the wall clock used by time rules.

    Aware datetimes are converted to tz when one is given. Naive datetimes
    are taken to already be wall-clock time.
    """
    if tz is not None and moment.tzinfo is not None:
        return moment.astimezone(tz)
    return moment


def local_timezone() -> Optional[tzinfo]:
    """Zone of this machine's wall clock."""
    return datetime.now().astimezone().tzinfo


def enabled_rules(rules: Iterable[TimeRule]) -> list[TimeRule]:
    return [rule for rule in rules if rule.enabled]


def has_restrictions(rules: Iterable[TimeRule]) -> bool:
    """True if any rule is enabled, i.e. the scope is schedule-restricted."""
    return any(rule.enabled for rule in rules)


def find_active_rule(rules: Iterable[TimeRule], now: datetime) -> Optional[TimeRule]:
    """Return the enabled rule whose window contains now, if any."""
    today = day_of_week(now)
    current = now.hour * 60 + now.minute

    for rule in rules:
        if not rule.enabled or rule.day_of_week != today:
            continue
        try:
            start = parse_time(rule.start_time)
            end = parse_time(rule.end_time, allow_end_of_day=True)
        except ValidationError:
            # A malformed stored rule never opens a window
            logger.warning(f"Ignoring malformed time rule {rule.id}: {rule.start_time}-{rule.end_time}")
            continue
        if start <= current < end:
            return rule

    return None


def is_within_schedule(rules: Sequence[TimeRule], now: datetime) -> bool:
    """Check whether now falls inside the schedule defined by rules.

    Args:
        rules: Rules for one resolved scope
        now: Wall-clock time (see to_local)

    Returns:
        True if there are no enabled rules, or an enabled rule for today
        contains now
    """
    if not has_restrictions(rules):
        return True
    return find_active_rule(rules, now) is not None


def resolve_rules(
    device_rules: Sequence[TimeRule],
    user_rules: Sequence[TimeRule],
) -> list[TimeRule]:
    """Pick the rule set that governs one device.

    Device-specific rules fully replace the user-wide rules whenever the
    device has any rules of its own, enabled or not.
    """
    if device_rules:
        return list(device_rules)
    return list(user_rules)


def build_preset(
    preset: str,
    user_id: str,
    device_identifier: Optional[str] = None,
) -> list[TimeRule]:
    """Build the whole-day rules for a named preset.

    Raises:
        ValidationError: If the preset name is unknown
    """
    days = PRESETS.get(preset)
    if days is None:
        raise ValidationError(
            f"Unknown preset '{preset}', expected one of: {', '.join(PRESETS)}",
            details={"preset": preset},
        )

    label = "Weekdays Only" if preset == "weekdays-only" else "Weekends Only"
    return [
        TimeRule(
            user_id=user_id,
            device_identifier=device_identifier,
            day_of_week=day,
            start_time="00:00",
            end_time=END_OF_DAY,
            rule_name=f"{label} ({DAY_NAMES[day]})",
        )
        for day in days
    ]


def day_name(day: int) -> str:
    return DAY_NAMES[day] if 0 <= day <= 6 else str(day)


def format_days(days: Iterable[int]) -> str:
    """Format a set of days, collapsing the common groupings."""
    ordered = sorted(set(days))
    if len(ordered) == 7:
        return "Daily"
    if ordered == WEEKDAYS:
        return "Weekdays"
    if ordered == WEEKENDS:
        return "Weekends"
    return ", ".join(day_name(day) for day in ordered)


def describe_schedule(rules: Iterable[TimeRule]) -> str:
    """Summarize enabled rules, e.g. "Weekdays 15:00-17:00; Sat 10:00-12:00"."""
    windows: dict[tuple[str, str], list[int]] = {}
    for rule in enabled_rules(rules):
        windows.setdefault((rule.start_time, rule.end_time), []).append(rule.day_of_week)

    if not windows:
        return "No time restrictions"

    summaries = [
        f"{format_days(days)} {start}-{end}"
        for (start, end), days in sorted(windows.items(), key=lambda item: (min(item[1]), item[0]))
    ]
    return "; ".join(summaries)
