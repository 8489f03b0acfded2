import html
import re
from typing import Optional


def sanitize_string(value: Optional[str]) -> Optional[str]:
    """
    Escape HTML special characters so user-supplied values can be embedded
    in email templates. Returns None if input is None.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return html.escape(value, quote=True)


def sanitize_message_text(value: str, max_length: int) -> str:
    """
    Normalize chat text before it is stored.

    Raises:
        ValueError: If the text is blank or too long
    """
    if value is None or not str(value).strip():
        raise ValueError("Message cannot be empty")

    value = str(value).strip()
    if len(value) > max_length:
        raise ValueError(f"Message too long (max {max_length} characters)")

    return re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", value)
