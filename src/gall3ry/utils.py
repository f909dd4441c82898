"""Utility functions for validation and parsing"""

import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple, Union
from eth_utils import is_hex_address
from loguru import logger

from .errors import InvalidAddress, InvalidInput
from .models import Chain

USERNAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9\-_.]{0,63}$')


def validate_ethereum_address(address: str) -> Tuple[bool, Optional[str]]:
    """
    Validate Ethereum address format

    Returns:
        (is_valid, lowercase_address or None)
    """
    if not address or not isinstance(address, str):
        return False, None

    address = address.strip()

    if not address.startswith('0x') or len(address) != 42:
        return False, None

    if not is_hex_address(address):
        return False, None

    return True, address.lower()


def require_address(address: str) -> str:
    """Return the lowercase address or raise InvalidAddress"""
    is_valid, normalized = validate_ethereum_address(address)
    if not is_valid:
        raise InvalidAddress(f"Invalid address: {address!r}")
    return normalized


def sanitize_input(text: str, max_length: int = 200) -> str:
    """
    Sanitize free-text user input

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text or not isinstance(text, str):
        return ""

    text = text.replace('\x00', '')

    if len(text) > max_length:
        text = text[:max_length]
        logger.warning(f"Input truncated to {max_length} characters")

    # Remove control characters except newlines and tabs
    text = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]', '', text)

    return text.strip()


def parse_identity_query(username_or_fid: Union[str, int]) -> Union[str, int]:
    """
    Classify a username-or-FID query

    Returns:
        int FID when the input is numeric, otherwise the lowercase username
        without a leading '@'
    """
    if isinstance(username_or_fid, bool):
        raise InvalidInput("usernameOrFid must be a string or integer")
    if isinstance(username_or_fid, int):
        if username_or_fid < 0:
            raise InvalidInput("FID must be non-negative")
        return username_or_fid

    value = sanitize_input(str(username_or_fid or ""), max_length=64).lower().lstrip("@")
    if not value:
        raise InvalidInput("usernameOrFid is required")
    if value.isdigit():
        return int(value)
    if not USERNAME_PATTERN.match(value):
        raise InvalidInput(f"Invalid username: {value!r}")
    return value


def parse_fid(value: Any) -> int:
    """Parse a numeric FID"""
    try:
        fid = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidInput("FID must be a numeric value")
    if fid < 0:
        raise InvalidInput("FID must be non-negative")
    return fid


def parse_chains(chains: Optional[Union[str, Iterable[str]]], default: Iterable[str]) -> List[Chain]:
    """
    Parse a chain selection; 'all' or empty selects the defaults

    Raises:
        InvalidInput for unknown chain names
    """
    if chains is None:
        values: List[str] = []
    elif isinstance(chains, str):
        values = [c.strip() for c in chains.split(",") if c.strip()]
    else:
        values = [str(c).strip() for c in chains if str(c).strip()]

    if not values or any(v.lower() == "all" for v in values):
        values = list(default)

    result: List[Chain] = []
    for value in values:
        chain = Chain.from_string(value)
        if chain not in result:
            result.append(chain)
    return result


def to_decimal_token_id(value: Any) -> Optional[str]:
    """Decimal string form of an upstream token id (hex or decimal)"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        if text.lower().startswith("0x"):
            return str(int(text, 16))
        return str(int(text))
    except ValueError:
        return text


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings or unix seconds into an aware datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug(f"Timestamp out of range: {value!r}")
            return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
