"""Shared validation utilities"""

import re
from typing import Optional

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OTP_PATTERN = re.compile(r"^[0-9]{6}$")

# Common consumer providers; anything else is flagged for monitoring
COMMON_EMAIL_PROVIDERS = {
    "gmail.com",
    "yahoo.com",
    "outlook.com",
    "hotmail.com",
}

# Characters never allowed in a stored attachment name
DANGEROUS_FILENAME_CHARS = ["..", "/", "\\", "<", ">", ":", '"', "|", "?", "*"]


def is_valid_email(email: Optional[str]) -> bool:
    if not email or not isinstance(email, str):
        return False
    return EMAIL_PATTERN.match(email.strip()) is not None


def validate_email(email: Optional[str]) -> str:
    """
    Validate email format.

    Args:
        email: Email address string

    Returns:
        Stripped, lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not is_valid_email(email):
        raise ValueError("Invalid email format")
    return email.strip().lower()


def is_valid_otp(otp: Optional[str]) -> bool:
    """OTP must be exactly six ASCII digits"""
    if not isinstance(otp, str):
        return False
    return OTP_PATTERN.fullmatch(otp) is not None


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower()


def is_flagged_domain(email: str) -> bool:
    """True when the address is outside the common provider allow-list"""
    return email_domain(email) not in COMMON_EMAIL_PROVIDERS


def validate_conversation_id(conversation_id: Optional[str]) -> str:
    """
    Conversation ids become storage path segments, so they must be
    non-empty and free of separators.
    """
    if not conversation_id or not conversation_id.strip():
        raise ValueError("Conversation id is required")
    conversation_id = conversation_id.strip()
    if "/" in conversation_id or "\\" in conversation_id or ".." in conversation_id:
        raise ValueError("Invalid conversation id")
    return conversation_id


def validate_file_name(file_name: str, max_length: int = 255) -> str:
    """Reject names that could escape the conversation's storage folder"""
    if not file_name or not file_name.strip():
        raise ValueError("File name cannot be empty")
    file_name = file_name.strip()
    for char in DANGEROUS_FILENAME_CHARS:
        if char in file_name:
            raise ValueError(f"Invalid filename - contains dangerous character '{char}'")
    if re.search(r"[\x00-\x1F\x7F]", file_name):
        raise ValueError("Invalid filename - contains control characters")
    if len(file_name) > max_length:
        raise ValueError(f"Filename too long - maximum {max_length} characters")
    return file_name
