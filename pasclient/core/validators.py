"""Input validation helpers for credential data."""
from __future__ import annotations
from typing import Optional


def normalize_username(raw: Optional[str]) -> str:
    """Normalize and validate a vault username.

    Vault usernames keep their case and may carry a domain suffix
    (``user@corp.example``) or prefix (``CORP\\user``), so only surrounding
    whitespace is removed.

    Args:
        raw: Raw username input

    Returns:
        Normalized username

    Raises:
        ValueError: If username is invalid
    """
    if raw is None:
        raise ValueError("Username is required")
    normalized = raw.strip()
    if not normalized:
        raise ValueError("Username is required")
    if len(normalized) > 128:
        raise ValueError("Username must not exceed 128 characters")
    if any(ord(char) < 32 for char in normalized):
        raise ValueError("Username contains control characters")
    return normalized


def require_secret(value: Optional[str], field: str) -> str:
    """Validate that a secret value is present.

    Secrets are returned untouched: leading or trailing spaces may be part
    of a password.

    Raises:
        ValueError: If the secret is missing or empty
    """
    if value is None or value == "":
        raise ValueError(f"{field} is required")
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    return value


def validate_otp_delimiter(delimiter: str) -> str:
    """Validate the separator placed between password and passcode."""
    if not delimiter or len(delimiter) != 1:
        raise ValueError("OTP delimiter must be a single character")
    if delimiter.isalnum():
        raise ValueError("OTP delimiter cannot be a letter or digit")
    return delimiter
