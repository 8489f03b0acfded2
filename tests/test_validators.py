"""Tests for shared validators and text sanitization."""

import pytest

from brightcare.shared.validators import (
    email_domain,
    is_flagged_domain,
    is_valid_email,
    is_valid_otp,
    validate_conversation_id,
    validate_email,
    validate_file_name,
)
from brightcare.utils.sanitization import sanitize_message_text, sanitize_string


class TestEmailValidation:
    @pytest.mark.parametrize("email", ["pat@gmail.com", "a.b+c@clinic.co.uk", "  x@y.io  "])
    def test_valid(self, email):
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", [None, "", "plain", "a@b", "a b@c.com", "@c.com"])
    def test_invalid(self, email):
        assert not is_valid_email(email)

    def test_validate_normalizes(self):
        assert validate_email("  Pat@Gmail.COM ") == "pat@gmail.com"

    def test_validate_raises(self):
        with pytest.raises(ValueError, match="Invalid email format"):
            validate_email("nope")

    def test_domain_flagging(self):
        assert email_domain("pat@Yahoo.com") == "yahoo.com"
        assert not is_flagged_domain("pat@hotmail.com")
        assert is_flagged_domain("pat@brightcare-clinic.org")


class TestOtpValidation:
    def test_six_digits(self):
        assert is_valid_otp("000123")

    @pytest.mark.parametrize(
        "otp", ["12345", "1234567", "12345a", "123456\n", "١٢٣٤٥٦", "１２３４５６", 123456, None]
    )
    def test_rejected(self, otp):
        assert not is_valid_otp(otp)


class TestPathSegments:
    def test_conversation_id_trimmed(self):
        assert validate_conversation_id(" conv-1 ") == "conv-1"

    @pytest.mark.parametrize("conversation_id", ["", "   ", None, "a/b", "a\\b", ".."])
    def test_conversation_id_rejected(self, conversation_id):
        with pytest.raises(ValueError):
            validate_conversation_id(conversation_id)

    def test_file_name_accepted(self):
        assert validate_file_name("lab results (1).pdf") == "lab results (1).pdf"

    @pytest.mark.parametrize("file_name", ["", "../x", "a/b.txt", "a:b", "bad\x00name"])
    def test_file_name_rejected(self, file_name):
        with pytest.raises(ValueError):
            validate_file_name(file_name)

    def test_file_name_too_long(self):
        with pytest.raises(ValueError, match="too long"):
            validate_file_name("a" * 256)


class TestSanitization:
    def test_sanitize_string_escapes_html(self):
        assert sanitize_string('<b>"hi"</b>') == "&lt;b&gt;&quot;hi&quot;&lt;/b&gt;"
        assert sanitize_string(None) is None

    def test_message_text_trimmed_and_control_chars_removed(self):
        assert sanitize_message_text("  hello\x07 world  ", 100) == "hello world"

    def test_message_text_keeps_newlines(self):
        assert sanitize_message_text("line one\nline two", 100) == "line one\nline two"

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_blank_rejected(self, text):
        with pytest.raises(ValueError, match="cannot be empty"):
            sanitize_message_text(text, 100)

    def test_too_long_rejected(self):
        with pytest.raises(ValueError, match="max 5"):
            sanitize_message_text("abcdef", 5)
