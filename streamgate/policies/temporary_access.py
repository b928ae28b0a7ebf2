"""Temporary access grants.

A grant lets a device stream until an expiry instant regardless of every
other policy. Expiry is computed from an injected "now"; nothing needs to
run at expiry time for a grant to stop applying.
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

from streamgate.exceptions import ValidationError
from streamgate.models import Device

MIN_DURATION_MINUTES = 1
MAX_DURATION_MINUTES = 365 * 24 * 60  # one year

UNIT_MINUTES = {
    "minutes": 1,
    "hours": 60,
    "days": 24 * 60,
    "weeks": 7 * 24 * 60,
}


def _utc(moment: datetime) -> datetime:
    """Make a datetime comparable with stored (UTC) instants."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def validate_duration(duration_minutes: int) -> int:
    """Check a grant length against [1, 525600] minutes.

    Raises:
        ValidationError: If the duration is not an integer or out of range
    """
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
        raise ValidationError(
            "Duration must be a whole number of minutes",
            details={"duration_minutes": duration_minutes},
        )
    if not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES:
        raise ValidationError(
            f"Duration must be between {MIN_DURATION_MINUTES} and "
            f"{MAX_DURATION_MINUTES} minutes (one year)",
            details={"duration_minutes": duration_minutes},
        )
    return duration_minutes


def to_minutes(value: float, unit: str = "minutes") -> int:
    """Convert a duration in minutes/hours/days/weeks to whole minutes.

    Raises:
        ValidationError: If the unit is unknown or the value is not positive
    """
    if unit not in UNIT_MINUTES:
        raise ValidationError(
            f"Unknown duration unit '{unit}', expected one of: {', '.join(UNIT_MINUTES)}",
            details={"unit": unit},
        )
    if value <= 0:
        raise ValidationError("Duration must be positive", details={"value": value})
    return round(value * UNIT_MINUTES[unit])


def grant(device: Device, duration_minutes: int, now: datetime) -> Device:
    """Return a copy of the device with a temporary grant starting now.

    Both timestamps and the duration are set together so a stored grant is
    never half written.
    """
    validate_duration(duration_minutes)
    granted_at = _utc(now)
    return replace(
        device,
        temporary_access_granted_at=granted_at,
        temporary_access_until=granted_at + timedelta(minutes=duration_minutes),
        temporary_access_duration_minutes=duration_minutes,
    )


def revoke(device: Device) -> Device:
    """Return a copy of the device with its grant ended.

    The granted-at time and duration are kept for display.
    """
    return replace(device, temporary_access_until=None)


def is_active(device: Optional[Device], now: datetime) -> bool:
    """True iff the device has a grant that expires strictly after now."""
    if device is None or device.temporary_access_until is None:
        return False
    return _utc(device.temporary_access_until) > _utc(now)


def is_expired(device: Device, now: datetime) -> bool:
    """True if the device still carries a grant that has run out."""
    return device.temporary_access_until is not None and not is_active(device, now)


def clear_expired(device: Device, now: datetime) -> Device:
    """Drop a stale expiry for storage hygiene; decisions are unaffected."""
    if is_expired(device, now):
        return revoke(device)
    return device


def time_left(device: Device, now: datetime) -> Optional[str]:
    """Remaining grant time, e.g. "1w 2d 3h 4m", "Expired", or None."""
    if device.temporary_access_until is None:
        return None

    remaining = _utc(device.temporary_access_until) - _utc(now)
    if remaining.total_seconds() <= 0:
        return "Expired"

    total_minutes = math.ceil(remaining.total_seconds() / 60)
    weeks, rest = divmod(total_minutes, 7 * 24 * 60)
    days, rest = divmod(rest, 24 * 60)
    hours, minutes = divmod(rest, 60)

    parts = []
    if weeks:
        parts.append(f"{weeks}w")
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts)
