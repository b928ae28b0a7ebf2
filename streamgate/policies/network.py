"""IPv4 classification and allow-list matching.

Addresses are classified as LAN (private, loopback) or WAN (anything else
that parses). Anything that is not a dotted-quad IPv4 address, including
IPv6, is INVALID and fails every check it takes part in.
"""

import re
from typing import Iterable, Optional

from streamgate.exceptions import ValidationError
from streamgate.models import NetworkType

_OCTET = r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"

IPV4_PATTERN = re.compile(rf"(?:{_OCTET}\.){{3}}{_OCTET}")
CIDR_PATTERN = re.compile(rf"((?:{_OCTET}\.){{3}}{_OCTET})/([0-9]|[12][0-9]|3[0-2])")

FULL_MASK = 0xFFFFFFFF

# (network, prefix length) pairs treated as local
PRIVATE_RANGES: list[tuple[str, int]] = [
    ("10.0.0.0", 8),
    ("172.16.0.0", 12),
    ("192.168.0.0", 16),
    ("127.0.0.0", 8),
]


def is_valid_ipv4(ip: Optional[str]) -> bool:
    """Check whether a string is a dotted-quad IPv4 address."""
    if not ip:
        return False
    return IPV4_PATTERN.fullmatch(ip.strip()) is not None


def is_valid_cidr(cidr: Optional[str]) -> bool:
    """Check whether a string is IPv4 CIDR notation with prefix 0-32."""
    if not cidr:
        return False
    return CIDR_PATTERN.fullmatch(cidr.strip()) is not None


def is_valid_ip_or_cidr(entry: Optional[str]) -> bool:
    """Check whether an allow-list entry is usable."""
    return is_valid_ipv4(entry) or is_valid_cidr(entry)


def ip_to_int(ip: str) -> int:
    """Convert a dotted-quad address to a 32-bit integer."""
    value = 0
    for octet in ip.strip().split("."):
        value = (value << 8) + int(octet)
    return value


def int_to_ip(value: int) -> str:
    """Convert a 32-bit integer back to dotted-quad notation."""
    return ".".join(str((value >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def prefix_mask(prefix_length: int) -> int:
    """Network mask for a prefix length (prefix 0 masks everything)."""
    return (FULL_MASK << (32 - prefix_length)) & FULL_MASK


def is_ip_in_cidr(ip: str, cidr: str) -> bool:
    """Check whether an address falls inside a CIDR block.

    Args:
        ip: IPv4 address to test
        cidr: Block in "network/prefix" form

    Returns:
        True if (ip & mask) == (network & mask); False if either input is invalid
    """
    if not is_valid_ipv4(ip):
        return False
    match = CIDR_PATTERN.fullmatch(cidr.strip()) if cidr else None
    if not match:
        return False

    network, prefix = match.group(1), int(match.group(2))
    mask = prefix_mask(prefix)
    return (ip_to_int(ip) & mask) == (ip_to_int(network) & mask)


def is_private_ip(ip: str) -> bool:
    """Check whether an address is in a private or loopback range."""
    if not is_valid_ipv4(ip):
        return False
    value = ip_to_int(ip)
    for network, prefix in PRIVATE_RANGES:
        mask = prefix_mask(prefix)
        if (value & mask) == (ip_to_int(network) & mask):
            return True
    return False


def classify(ip: Optional[str]) -> NetworkType:
    """Classify a source address as LAN, WAN or INVALID."""
    if not is_valid_ipv4(ip):
        return NetworkType.INVALID
    return NetworkType.LAN if is_private_ip(ip) else NetworkType.WAN


def is_allowed(ip: Optional[str], allow_list: Iterable[str]) -> bool:
    """Check an address against an allow-list of IPs and CIDR blocks.

    An empty allow-list places no restriction at this level; deciding that
    an empty list under a restricted policy means deny-all is the caller's
    job. Invalid addresses never match.

    Args:
        ip: Source address
        allow_list: Exact IPv4 addresses and/or CIDR blocks

    Returns:
        True if the address matches any entry
    """
    if not is_valid_ipv4(ip):
        return False

    entries = list(allow_list)
    if not entries:
        return True

    candidate = ip.strip()
    for entry in entries:
        if not isinstance(entry, str):
            continue
        trimmed = entry.strip()
        if is_valid_ipv4(trimmed):
            if candidate == trimmed:
                return True
        elif is_valid_cidr(trimmed):
            if is_ip_in_cidr(candidate, trimmed):
                return True

    return False


def normalize_allow_list(entries: Iterable[str]) -> list[str]:
    """Trim and de-duplicate allow-list entries, keeping their order.

    Raises:
        ValidationError: If any entry is neither an IPv4 address nor a CIDR block
    """
    normalized: list[str] = []
    invalid: list[str] = []
    for entry in entries:
        trimmed = entry.strip()
        if not trimmed:
            continue
        if not is_valid_ip_or_cidr(trimmed):
            invalid.append(trimmed)
            continue
        if trimmed not in normalized:
            normalized.append(trimmed)

    if invalid:
        raise ValidationError(
            f"Invalid IP address or CIDR range: {', '.join(invalid)}",
            details={"invalid_entries": invalid},
        )
    return normalized


def cidr_info(cidr: str) -> Optional[dict]:
    """Describe a CIDR block.

    Returns:
        Dict with network, broadcast, first_host, last_host and total_hosts
        (usable hosts, excluding network and broadcast), or None if invalid
    """
    match = CIDR_PATTERN.fullmatch(cidr.strip()) if cidr else None
    if not match:
        return None

    prefix = int(match.group(2))
    mask = prefix_mask(prefix)
    network = ip_to_int(match.group(1)) & mask
    broadcast = network | (~mask & FULL_MASK)

    return {
        "network": int_to_ip(network),
        "broadcast": int_to_ip(broadcast),
        "first_host": int_to_ip(min(network + 1, FULL_MASK)),
        "last_host": int_to_ip(max(broadcast - 1, 0)),
        "total_hosts": max(0, 2 ** (32 - prefix) - 2),
    }


def format_ip_for_display(entry: Optional[str]) -> str:
    """Render an address or block with its type, e.g. "10.0.0.5 (LAN)"."""
    if not entry:
        return "Unknown"

    if is_valid_cidr(entry):
        info = cidr_info(entry)
        if info:
            return f"{entry} ({info['total_hosts']} hosts)"

    if is_valid_ipv4(entry):
        return f"{entry} ({classify(entry).value.upper()})"

    return entry
