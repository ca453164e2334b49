"""Message content rules shared by the client core and the chat service."""
from __future__ import annotations

from .errors import ValidationError

MAX_MESSAGE_LENGTH = 500


def utf16_length(text: str) -> int:
    """Length in UTF-16 code units, the unit browsers count characters in."""
    return len(text.encode("utf-16-le")) // 2


def validate_content(content: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Trim and check message content.

    Returns:
        The trimmed content.

    Raises:
        ValidationError: If the content is not a string, is empty after
            trimming, or exceeds ``max_length`` UTF-16 code units.
    """
    if not isinstance(content, str):
        raise ValidationError("Message content is required")

    trimmed = content.strip()
    if not trimmed:
        raise ValidationError("Message cannot be empty")

    length = utf16_length(trimmed)
    if length > max_length:
        raise ValidationError(
            f"Message cannot exceed {max_length} characters",
            {"length": length, "max_length": max_length},
        )
    return trimmed
