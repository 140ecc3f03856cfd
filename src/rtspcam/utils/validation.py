"""Input validation utilities.

Provides validation functions for:
- Public host (IP or domain) embedded in viewer URLs
- Port range constants shared with the models

Note on Logging:
    These are pure validation functions that return (bool, error_message).
    Callers decide how to report failures.

Note on Pydantic:
    Ports and credentials inside ServerConfig are validated by Pydantic.
    The public host is free-form text, so AppSettings calls validate_host
    from a field validator.
"""
from __future__ import annotations

import re
from typing import Final

# ============================================================================
# Constants
# ============================================================================

MIN_PORT: Final[int] = 1
MAX_PORT: Final[int] = 65535
"""Valid TCP/UDP port range."""

ValidationResult = tuple[bool, str | None]
"""Validation result: (is_valid, error_message)"""

# ============================================================================
# Host Validation
# ============================================================================

def validate_host(host: str) -> ValidationResult:
    """Validate a public IP address or domain name.

    Examples:
        >>> validate_host("203.0.113.7")
        (True, None)

        >>> validate_host("cam.example.org")
        (True, None)

        >>> validate_host("not a host")
        (False, "Invalid hostname: not a host")
    """
    if not host or not isinstance(host, str):
        return False, "Host is required and must be a string"

    if not _is_valid_hostname(host):
        return False, f"Invalid hostname: {host}"

    return True, None


def _is_valid_hostname(hostname: str) -> bool:
    return _is_valid_ip(hostname) or _is_valid_domain(hostname)


def _is_valid_ip(ip: str) -> bool:
    """Check if string is valid IPv4 or IPv6 address."""
    # IPv4: 0.0.0.0 to 255.255.255.255
    ipv4_pattern = r'^(\d{1,3}\.){3}\d{1,3}$'
    if re.match(ipv4_pattern, ip):
        try:
            return all(0 <= int(octet) <= 255 for octet in ip.split('.'))
        except ValueError:
            return False

    # IPv6: simplified pattern
    ipv6_pattern = r'^([0-9a-fA-F]{0,4}:){2,7}[0-9a-fA-F]{0,4}$'
    return bool(re.match(ipv6_pattern, ip))


def _is_valid_domain(domain: str) -> bool:
    """Check if string is valid domain name (RFC 1035)."""
    if not domain or len(domain) > 253:
        return False

    # RFC 1035: labels separated by dots, 63 chars max per label
    domain_pattern = r'^([a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?\.)*[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?$'
    return bool(re.match(domain_pattern, domain))
