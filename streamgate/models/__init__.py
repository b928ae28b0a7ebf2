"""Data models for streamgate."""

from streamgate.models.access import (
    AccessReason,
    AccessVerdict,
    AdmissionRequest,
    ApprovalStatus,
    Device,
    IPAccessPolicy,
    NetworkPolicy,
    NetworkType,
    TimeRule,
    UserPreference,
)

__all__ = [
    "AccessReason",
    "AccessVerdict",
    "AdmissionRequest",
    "ApprovalStatus",
    "Device",
    "IPAccessPolicy",
    "NetworkPolicy",
    "NetworkType",
    "TimeRule",
    "UserPreference",
]
