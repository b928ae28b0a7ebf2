"""Access decision engine.

Combines device approval, network policy, IP allow-lists, time rules,
temporary grants and the default policy into one verdict per admission
request. The policy layers are an ordered list of named checks; the first
check that is decisive produces the verdict:

1. Temporary access active        -> allowed (TEMPORARY_ACCESS)
2. Device rejected                -> blocked (DEVICE_REJECTED)
3. Device pending or unknown      -> blocked (DEVICE_PENDING)
4. Network policy mismatch        -> blocked (NETWORK_POLICY)
5. IP not in restricted list      -> blocked (IP_RESTRICTED)
6. Outside every enabled window   -> blocked (OUTSIDE_SCHEDULE)
7. Effective default block        -> blocked (DEFAULT_BLOCK)
8. Otherwise                      -> allowed (DEFAULT_ALLOW)

The engine performs no I/O in decide() and keeps no state between calls.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Optional, Protocol

from streamgate.models import (
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
from streamgate.models.access import DEFAULT_STOP_MESSAGES
from streamgate.policies import network, schedule, temporary_access

logger = logging.getLogger(__name__)

# Used when neither the user nor the settings store says otherwise
FALLBACK_DEFAULT_BLOCK = True


class AccessStateReader(Protocol):
    """Read side of the state store consumed by the engine."""

    def get_device(self, user_id: str, device_identifier: str) -> Optional[Device]: ...

    def get_user_preference(self, user_id: str) -> Optional[UserPreference]: ...

    def get_time_rules(
        self, user_id: str, device_identifier: Optional[str] = None
    ) -> list[TimeRule]: ...

    def get_global_default_block(self) -> Optional[bool]: ...


@dataclass
class AccessContext:
    """Everything one decision looks at, already loaded and normalized."""

    request: AdmissionRequest
    device: Optional[Device]
    preference: UserPreference
    rules: list[TimeRule]
    global_default_block: bool
    local_time: datetime

    @property
    def effective_default_block(self) -> bool:
        if self.preference.default_block is not None:
            return self.preference.default_block
        return self.global_default_block


@dataclass(frozen=True)
class Finding:
    """Why a check was decisive."""

    stop_code: Optional[str] = None
    detail: str = ""


@dataclass(frozen=True)
class PolicyCheck:
    """One policy layer: a named predicate paired with the verdict it produces.

    Attributes:
        name: Identifier used in logs
        reason: Reason code of the verdict when the check is decisive
        allowed: Verdict when the check is decisive
        evaluate: Returns a Finding when decisive, None to fall through
    """

    name: str
    reason: AccessReason
    allowed: bool
    evaluate: Callable[[AccessContext], Optional[Finding]]


def _temporary_access(ctx: AccessContext) -> Optional[Finding]:
    if temporary_access.is_active(ctx.device, ctx.request.request_time):
        until = ctx.device.temporary_access_until
        return Finding(detail=f"temporary access until {until.isoformat()}")
    return None


def _device_rejected(ctx: AccessContext) -> Optional[Finding]:
    if ctx.device is not None and ctx.device.status == ApprovalStatus.REJECTED:
        return Finding("DEVICE_REJECTED", "device is rejected")
    return None


def _device_pending(ctx: AccessContext) -> Optional[Finding]:
    if ctx.device is None:
        return Finding("DEVICE_PENDING", "device is not known yet")
    if ctx.device.status != ApprovalStatus.APPROVED:
        return Finding("DEVICE_PENDING", "device is awaiting approval")
    return None


def _network_policy(ctx: AccessContext) -> Optional[Finding]:
    source = ctx.request.source_ip
    network_type = network.classify(source)
    if network_type == NetworkType.INVALID:
        return Finding("IP_POLICY_INVALID", f"source address '{source}' is not a valid IPv4 address")

    policy = ctx.preference.network_policy
    if policy == NetworkPolicy.LAN and network_type != NetworkType.LAN:
        return Finding("IP_POLICY_LAN_ONLY", f"{source} is not a LAN address")
    if policy == NetworkPolicy.WAN and network_type != NetworkType.WAN:
        return Finding("IP_POLICY_WAN_ONLY", f"{source} is not a WAN address")
    return None


def _ip_restricted(ctx: AccessContext) -> Optional[Finding]:
    if ctx.preference.ip_access_policy != IPAccessPolicy.RESTRICTED:
        return None

    allowed_ips = ctx.preference.allowed_ips
    if not allowed_ips:
        return Finding("IP_POLICY_NOT_ALLOWED", "restricted IP policy with an empty allow-list")
    if not network.is_allowed(ctx.request.source_ip, allowed_ips):
        return Finding("IP_POLICY_NOT_ALLOWED", f"{ctx.request.source_ip} is not in the allow-list")
    return None


def _outside_schedule(ctx: AccessContext) -> Optional[Finding]:
    if schedule.is_within_schedule(ctx.rules, ctx.local_time):
        return None
    return Finding(
        "TIME_RESTRICTED",
        f"{ctx.local_time.strftime('%a %H:%M')} is outside {schedule.describe_schedule(ctx.rules)}",
    )


def _default_block(ctx: AccessContext) -> Optional[Finding]:
    if ctx.effective_default_block:
        source = "user preference" if ctx.preference.default_block is not None else "global default"
        return Finding("DEFAULT_BLOCK", f"blocked by {source}")
    return None


def _default_allow(ctx: AccessContext) -> Optional[Finding]:
    return Finding(detail="no policy blocks this session")


DEFAULT_CHECKS: tuple[PolicyCheck, ...] = (
    PolicyCheck("temporary_access", AccessReason.TEMPORARY_ACCESS, True, _temporary_access),
    PolicyCheck("device_rejected", AccessReason.DEVICE_REJECTED, False, _device_rejected),
    PolicyCheck("device_pending", AccessReason.DEVICE_PENDING, False, _device_pending),
    PolicyCheck("network_policy", AccessReason.NETWORK_POLICY, False, _network_policy),
    PolicyCheck("ip_restricted", AccessReason.IP_RESTRICTED, False, _ip_restricted),
    PolicyCheck("schedule", AccessReason.OUTSIDE_SCHEDULE, False, _outside_schedule),
    PolicyCheck("default_block", AccessReason.DEFAULT_BLOCK, False, _default_block),
    PolicyCheck("default_allow", AccessReason.DEFAULT_ALLOW, True, _default_allow),
)


def coerce_preference(user_id: str, preference: Optional[UserPreference]) -> UserPreference:
    """Normalize a possibly missing or malformed preference record.

    Missing records and unknown policy values fall back to network policy
    BOTH, IP policy ALL and the global default block.
    """
    if preference is None:
        return UserPreference(user_id=user_id)

    try:
        network_policy = NetworkPolicy(preference.network_policy)
    except ValueError:
        logger.warning(f"Unknown network policy {preference.network_policy!r} for {user_id}, using 'both'")
        network_policy = NetworkPolicy.BOTH

    try:
        ip_access_policy = IPAccessPolicy(preference.ip_access_policy)
    except ValueError:
        logger.warning(f"Unknown IP policy {preference.ip_access_policy!r} for {user_id}, using 'all'")
        ip_access_policy = IPAccessPolicy.ALL

    default_block = preference.default_block if isinstance(preference.default_block, bool) else None

    raw_ips = preference.allowed_ips if isinstance(preference.allowed_ips, (list, tuple)) else []
    allowed_ips = [entry for entry in raw_ips if isinstance(entry, str)]
    if len(allowed_ips) != len(raw_ips):
        logger.warning(f"Dropped malformed allow-list entries for {user_id}")

    return UserPreference(
        user_id=preference.user_id,
        username=preference.username,
        default_block=default_block,
        network_policy=network_policy,
        ip_access_policy=ip_access_policy,
        allowed_ips=allowed_ips,
    )


@dataclass
class AccessDecisionEngine:
    """Produces allow/block verdicts for admission requests.

    Attributes:
        timezone: Zone time rules are written in; None uses the request's own clock
        messages: Client-facing stop messages keyed by stop code
        checks: Ordered policy layers
    """

    timezone: Optional[tzinfo] = None
    messages: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STOP_MESSAGES))
    checks: Sequence[PolicyCheck] = DEFAULT_CHECKS

    def build_context(
        self,
        request: AdmissionRequest,
        device: Optional[Device],
        preference: Optional[UserPreference],
        device_rules: Sequence[TimeRule] = (),
        user_rules: Sequence[TimeRule] = (),
        global_default_block: Optional[bool] = None,
    ) -> AccessContext:
        """Normalize raw records into a decision context."""
        return AccessContext(
            request=request,
            device=device,
            preference=coerce_preference(request.user_id, preference),
            rules=schedule.resolve_rules(device_rules, user_rules),
            global_default_block=(
                global_default_block if global_default_block is not None else FALLBACK_DEFAULT_BLOCK
            ),
            local_time=schedule.to_local(request.request_time, self.timezone),
        )

    def decide(
        self,
        request: AdmissionRequest,
        device: Optional[Device],
        preference: Optional[UserPreference],
        device_rules: Sequence[TimeRule] = (),
        user_rules: Sequence[TimeRule] = (),
        global_default_block: Optional[bool] = None,
    ) -> AccessVerdict:
        """Decide one admission request from already-loaded records.

        Args:
            request: The session asking to be admitted
            device: The device record, or None if it is not known
            preference: The owner's preference, or None for defaults
            device_rules: Rules scoped to this device
            user_rules: User-wide rules
            global_default_block: Global setting, or None if unset

        Returns:
            The verdict of the first decisive check
        """
        ctx = self.build_context(
            request, device, preference, device_rules, user_rules, global_default_block
        )
        return self.decide_context(ctx)

    def decide_context(self, ctx: AccessContext) -> AccessVerdict:
        for check in self.checks:
            finding = check.evaluate(ctx)
            if finding is None:
                continue

            verdict = AccessVerdict(
                allowed=check.allowed,
                reason=check.reason,
                stop_code=finding.stop_code,
                message=self.messages.get(finding.stop_code, "") if finding.stop_code else "",
                detail=finding.detail,
            )
            self._log_verdict(ctx.request, check, verdict)
            return verdict

        # Only reachable with a custom check list lacking a catch-all
        logger.warning(f"No check was decisive for {ctx.request.user_id}/{ctx.request.device_identifier}")
        return AccessVerdict(
            allowed=False,
            reason=AccessReason.DEFAULT_BLOCK,
            stop_code="DEFAULT_BLOCK",
            message=self.messages.get("DEFAULT_BLOCK", ""),
            detail="no decisive policy",
        )

    def evaluate(self, request: AdmissionRequest, store: AccessStateReader) -> AccessVerdict:
        """Load the records for a request from the store and decide it.

        Store failures propagate; the caller decides how to fail.
        """
        device = store.get_device(request.user_id, request.device_identifier)
        preference = store.get_user_preference(request.user_id)
        device_rules = store.get_time_rules(request.user_id, request.device_identifier)
        user_rules = store.get_time_rules(request.user_id)
        global_default_block = store.get_global_default_block()

        return self.decide(
            request, device, preference, device_rules, user_rules, global_default_block
        )

    @staticmethod
    def _log_verdict(request: AdmissionRequest, check: PolicyCheck, verdict: AccessVerdict) -> None:
        summary = (
            f"{request.user_id}/{request.device_identifier} from {request.source_ip}: "
            f"{verdict.reason.value} ({check.name}) {verdict.detail}"
        )
        if verdict.allowed:
            logger.debug(f"Allowed {summary}")
        else:
            logger.info(f"Blocked {summary}")
