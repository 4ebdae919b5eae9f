"""
TradeLedger Input Validation Utilities
Validation functions for user-facing fields: emails, URLs, names, symbols, ranges.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import validators
from email_validator import EmailNotValidError, validate_email

from ..config.settings import settings
from ..errors import ValidationError

# Known API key permissions; "*" grants everything
API_KEY_PERMISSIONS = ("read", "write", "trade", "admin", "*")

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


# ============================================================================
# Email / URL Validation
# ============================================================================

def validate_email_address(email: str) -> Tuple[bool, Optional[str]]:
    """
    Validate email address format.

    Args:
        email: Email address to validate.

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, normalized_email or error_message)
    """
    try:
        info = validate_email(email, check_deliverability=False)
        return True, info.normalized
    except EmailNotValidError as e:
        return False, str(e)


def validate_url(url: str) -> Tuple[bool, Optional[str]]:
    """
    Validate URL format.

    Args:
        url: URL to validate.

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, error_message)
    """
    if validators.url(url):
        return True, None

    return False, "Invalid URL format"


# ============================================================================
# String Validation
# ============================================================================

def validate_string_length(value: Optional[str],
                           min_length: int = 0,
                           max_length: int = 255,
                           field_name: str = "Value") -> Tuple[bool, Optional[str]]:
    """
    Validate string length.

    Args:
        value: String to validate.
        min_length: Minimum length.
        max_length: Maximum length.
        field_name: Name of the field for error messages.

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, error_message)
    """
    if value is None:
        return False, f"{field_name} cannot be None"

    if len(value) < min_length:
        return False, f"{field_name} must be at least {min_length} characters"

    if len(value) > max_length:
        return False, f"{field_name} must not exceed {max_length} characters"

    return True, None


def validate_username(username: str) -> Tuple[bool, Optional[str]]:
    """Username: 3-50 characters of letters, digits, underscore, dot or hyphen."""
    is_valid, error = validate_string_length(username, 3, 50, "Username")
    if not is_valid:
        return is_valid, error
    if not USERNAME_PATTERN.match(username):
        return False, "Username must contain only alphanumeric characters, underscores, dots, hyphens"
    return True, None


def validate_api_permissions(permissions: List[str]) -> Tuple[bool, List[str], List[str]]:
    """
    Validate API key permissions.

    Permissions are compared verbatim (case-sensitive).

    Returns:
        Tuple[bool, List[str], List[str]]: (all_valid, valid_permissions, invalid_permissions)
    """
    valid = [p for p in permissions if p in API_KEY_PERMISSIONS]
    invalid = [p for p in permissions if p not in API_KEY_PERMISSIONS]
    return len(invalid) == 0, valid, invalid


# ============================================================================
# Range Validation
# ============================================================================

def check_time_range(start: Optional[datetime], end: Optional[datetime],
                     field_name: str = "start_date") -> None:
    """Raise when both bounds are present and start is after end."""
    if start is not None and end is not None and start > end:
        raise ValidationError(field_name, "start date/time cannot be after end date/time", "range")


def check_amount_range(minimum: Optional[Decimal], maximum: Optional[Decimal],
                       field_name: str = "min_amount") -> None:
    """Raise when both bounds are present and min is greater than max."""
    if minimum is not None and maximum is not None and minimum > maximum:
        raise ValidationError(field_name, "min amount cannot be greater than max amount", "range")


def clamp_limit(limit: Optional[int]) -> int:
    """Default and clamp a page size to the configured bounds."""
    if not limit or limit < 1:
        return settings.query.default_limit
    return min(limit, settings.query.max_limit)
