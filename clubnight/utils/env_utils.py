"""
Environment variable helpers.

.env files store every value as a string; these helpers convert them to the
types the services expect.
"""

import os
from typing import Optional


def get_bool_env(key: str, default: bool = True) -> bool:
    """
    Parse a boolean environment variable from a string value.

    "true", "True", "TRUE", "1" and "yes" are True. Everything else (including
    "false", "0", "no" and the empty string) is False.

    Args:
        key: Environment variable name
        default: Default value if the variable is not set

    Returns:
        bool: Parsed boolean value
    """
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def get_int_env(key: str, default: int) -> int:
    """
    Parse an integer environment variable, falling back to the default when the
    variable is unset or not a valid integer.
    """
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_str_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Return a non-empty environment variable or the default."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value
