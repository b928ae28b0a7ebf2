"""Data models for device access decisions."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class ApprovalStatus(str, Enum):
    """Approval state of a client device."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NetworkPolicy(str, Enum):
    """Which networks a user may stream from."""

    BOTH = "both"
    LAN = "lan"
    WAN = "wan"


class IPAccessPolicy(str, Enum):
    """Whether a user is limited to an explicit list of addresses."""

    ALL = "all"
    RESTRICTED = "restricted"


class NetworkType(str, Enum):
    """Classification of a source address."""

    LAN = "lan"
    WAN = "wan"
    INVALID = "invalid"


class AccessReason(str, Enum):
    """Reason code attached to every verdict."""

    TEMPORARY_ACCESS = "TEMPORARY_ACCESS"
    DEVICE_REJECTED = "DEVICE_REJECTED"
    DEVICE_PENDING = "DEVICE_PENDING"
    NETWORK_POLICY = "NETWORK_POLICY"
    IP_RESTRICTED = "IP_RESTRICTED"
    OUTSIDE_SCHEDULE = "OUTSIDE_SCHEDULE"
    DEFAULT_BLOCK = "DEFAULT_BLOCK"
    DEFAULT_ALLOW = "DEFAULT_ALLOW"
    # Only produced by the gatekeeper when the store cannot be read
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


# Stop codes shown to the client when a session is terminated.
# Keys double as the [messages] section keys in the config file.
DEFAULT_STOP_MESSAGES: dict[str, str] = {
    "DEVICE_PENDING": (
        "Device Pending Approval. The server owner must approve this device "
        "before it can be used."
    ),
    "DEVICE_REJECTED": (
        "You are not authorized to use this device. Please contact the server "
        "administrator for more information."
    ),
    "IP_POLICY_LAN_ONLY": "Only LAN access is allowed",
    "IP_POLICY_WAN_ONLY": "Only WAN access is allowed",
    "IP_POLICY_INVALID": "Your connection address could not be verified",
    "IP_POLICY_NOT_ALLOWED": "Your current IP address is not in the allowed list",
    "TIME_RESTRICTED": "Streaming is not allowed at this time due to scheduling restrictions",
    "DEFAULT_BLOCK": "Streaming from this account is blocked by default",
    "STORE_UNAVAILABLE": "Access could not be verified right now. Please try again later.",
}

# Administrator-facing descriptions used in audit listings
STOP_CODE_DESCRIPTIONS: dict[str, str] = {
    "DEVICE_PENDING": "device requires administrator approval",
    "DEVICE_REJECTED": "device has been explicitly rejected",
    "IP_POLICY_LAN_ONLY": "device attempted external access but is restricted to local network only",
    "IP_POLICY_WAN_ONLY": "device attempted local access but is restricted to external connections only",
    "IP_POLICY_INVALID": "source address is not a valid IPv4 address",
    "IP_POLICY_NOT_ALLOWED": "device IP address is not in the approved access list",
    "TIME_RESTRICTED": "time-based scheduling restrictions",
    "DEFAULT_BLOCK": "account is blocked by default policy",
    "STORE_UNAVAILABLE": "access state could not be read",
}


def describe_stop_code(stop_code: str) -> str:
    """Return an administrator-facing sentence for a stop code."""
    description = STOP_CODE_DESCRIPTIONS.get(stop_code)
    if description is None:
        return f"A streaming session was blocked: {stop_code}"
    return f"A streaming session was blocked because the {description}"


@dataclass
class Device:
    """One client instance owned by a user.

    Attributes:
        user_id: Owning user
        device_identifier: Stable external id, unique per user
        status: Approval state
        temporary_access_until: Expiry of a temporary grant, if any
        temporary_access_granted_at: When the last grant was made
        temporary_access_duration_minutes: Length of the last grant (informational)
    """

    user_id: str
    device_identifier: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    temporary_access_until: Optional[datetime] = None
    temporary_access_granted_at: Optional[datetime] = None
    temporary_access_duration_minutes: Optional[int] = None

    # Informational, populated from observed sessions
    username: Optional[str] = None
    device_name: Optional[str] = None
    device_platform: Optional[str] = None
    device_product: Optional[str] = None
    device_version: Optional[str] = None
    ip_address: Optional[str] = None
    current_session_key: Optional[str] = None
    session_count: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.device_name or self.device_product or self.device_identifier


@dataclass
class UserPreference:
    """Per-user default policy.

    Attributes:
        user_id: User the preference belongs to
        default_block: True/False, or None to inherit the global default
        network_policy: Networks the user may stream from
        ip_access_policy: ALL, or RESTRICTED to allowed_ips
        allowed_ips: Exact IPv4 addresses or CIDR ranges, in entry order
    """

    user_id: str
    username: Optional[str] = None
    default_block: Optional[bool] = None
    network_policy: NetworkPolicy = NetworkPolicy.BOTH
    ip_access_policy: IPAccessPolicy = IPAccessPolicy.ALL
    allowed_ips: list[str] = field(default_factory=list)


@dataclass
class TimeRule:
    """A recurring weekly window during which streaming is permitted.

    Attributes:
        id: Store-assigned identifier (None until saved)
        user_id: Owning user
        device_identifier: Device the rule applies to, or None for all devices
        day_of_week: 0 = Sunday ... 6 = Saturday
        start_time: Window start, "HH:MM" (24-hour)
        end_time: Window end, "HH:MM" (24-hour), exclusive; "24:00" is end of day
        enabled: Disabled rules are ignored by evaluation
    """

    user_id: str
    day_of_week: int
    start_time: str  # "15:00"
    end_time: str  # "17:00"
    device_identifier: Optional[str] = None
    rule_name: str = ""
    enabled: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AdmissionRequest:
    """A playback session asking to be admitted."""

    user_id: str
    device_identifier: str
    source_ip: str
    request_time: datetime


@dataclass(frozen=True)
class AccessVerdict:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the session may continue
        reason: Which policy layer decided
        stop_code: Finer-grained code for denials (e.g. IP_POLICY_LAN_ONLY)
        message: Text shown to the client when the session is stopped
        detail: Operator-facing explanation for the audit log
    """

    allowed: bool
    reason: AccessReason
    stop_code: Optional[str] = None
    message: str = ""
    detail: str = ""
