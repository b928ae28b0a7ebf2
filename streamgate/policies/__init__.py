"""Access policies: network classification, schedules, grants and the engine."""

from streamgate.policies.engine import (
    AccessContext,
    AccessDecisionEngine,
    DEFAULT_CHECKS,
    PolicyCheck,
)
from streamgate.policies.network import classify, is_allowed, is_ip_in_cidr, is_valid_cidr
from streamgate.policies.schedule import is_within_schedule, rules_overlap, validate_time_range

__all__ = [
    "AccessContext",
    "AccessDecisionEngine",
    "DEFAULT_CHECKS",
    "PolicyCheck",
    "classify",
    "is_allowed",
    "is_ip_in_cidr",
    "is_valid_cidr",
    "is_within_schedule",
    "rules_overlap",
    "validate_time_range",
]
