"""Shared validation utilities"""

from typing import Any, Optional


def parse_id(value: Any) -> Optional[int]:
    """
    Normalize a record identifier coming off the wire.

    Chat payloads carry ids as strings or numbers; the database uses integers.

    Returns:
        The integer id, or None if the value is not a positive integer
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def normalize_message_body(message: Optional[str]) -> str:
    """Trim a chat message body; None becomes an empty string"""
    if not message:
        return ""
    return message.strip()
