"""
Gateway security utilities - SSRF protection and credential redaction
"""

import re
import ipaddress
from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse


# Blocked internal IP ranges (SSRF protection)
BLOCKED_IP_RANGES = [
    ipaddress.ip_network("127.0.0.0/8"),      # Localhost
    ipaddress.ip_network("10.0.0.0/8"),       # Private
    ipaddress.ip_network("172.16.0.0/12"),    # Private
    ipaddress.ip_network("192.168.0.0/16"),   # Private
    ipaddress.ip_network("169.254.0.0/16"),   # Link-local
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),          # IPv6 localhost
    ipaddress.ip_network("fc00::/7"),         # IPv6 private
    ipaddress.ip_network("fe80::/10"),        # IPv6 link-local
]

# Allowed URL schemes
ALLOWED_SCHEMES = {"http", "https"}

BLOCKED_HOSTS = [
    "localhost",
    "127.0.0.1",
    "0.0.0.0",
    "::1",
    "[::1]",
]

SENSITIVE_KEYS = [
    "api_key", "apikey", "api-key", "x-api-key",
    "secret", "token", "authorization", "password",
]


def is_internal_ip(ip: str) -> bool:
    """Check if an IP literal is internal/private"""
    try:
        ip_obj = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(ip_obj in blocked_range for blocked_range in BLOCKED_IP_RANGES)


def validate_url_safe(url: str) -> Tuple[bool, Optional[str]]:
    """
    Validate URL is safe for an outbound fetch (SSRF protection)

    Returns:
        (is_safe, error_message)
    """
    try:
        parsed = urlparse(url)
    except ValueError as e:
        return False, f"Invalid URL format: {e}"

    if parsed.scheme not in ALLOWED_SCHEMES:
        return False, f"Invalid URL scheme: {parsed.scheme}. Only http/https allowed."

    if not parsed.hostname:
        return False, "URL must have a hostname"

    hostname_lower = parsed.hostname.lower()

    if hostname_lower in BLOCKED_HOSTS:
        return False, f"Blocked hostname: {hostname_lower}"

    if is_internal_ip(hostname_lower):
        return False, f"Blocked internal address: {hostname_lower}"

    if "@" in parsed.netloc:
        return False, "URL contains credentials (not allowed)"

    return True, None


def is_allowed_host(url: str, allowed_prefixes: Iterable[str]) -> bool:
    """True when the URL starts with one of the allow-listed prefixes"""
    lowered = url.lower()
    return any(lowered.startswith(prefix.lower()) for prefix in allowed_prefixes)


def redact_secrets(data: dict) -> dict:
    """
    Remove credentials from a dict before logging

    Args:
        data: Dictionary that might contain sensitive data

    Returns:
        Sanitized copy
    """
    sanitized = {}
    for key, value in data.items():
        key_lower = str(key).lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            sanitized[key] = "***REDACTED***"
        elif isinstance(value, dict):
            sanitized[key] = redact_secrets(value)
        elif isinstance(value, list):
            sanitized[key] = [
                redact_secrets(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            sanitized[key] = value
    return sanitized


def sanitize_for_logging(message: str) -> str:
    """
    Remove provider credentials from log messages and URLs

    Args:
        message: Log message that might contain a key

    Returns:
        Sanitized message
    """
    # Alchemy puts the key in the path: /v2/<key>/ or /nft/v3/<key>/
    message = re.sub(r'(/(?:nft/)?v\d/)[A-Za-z0-9_\-]{8,}', r'\1***', message)
    message = re.sub(r'((?:api_key|apikey|key|token)=)[^&\s]+', r'\1***', message, flags=re.IGNORECASE)
    return message
