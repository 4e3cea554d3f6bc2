"""
tests/test_security.py -- Unit tests for core.security validators and sanitizer.

No app or database needed. Covers the fixed rule sets: email shape, password
strength (all violations reported together), username charset/edges/reserved
words, six-digit codes, and HTML escaping.
"""

from __future__ import annotations

import pytest

from core.security import (
    PASSWORD_NO_DIGIT,
    PASSWORD_NO_LOWER,
    PASSWORD_NO_SYMBOL,
    PASSWORD_NO_UPPER,
    PASSWORD_TOO_COMMON,
    PASSWORD_TOO_LONG,
    PASSWORD_TOO_SHORT,
    USERNAME_BAD_CHARSET,
    USERNAME_BAD_EDGES,
    USERNAME_RESERVED,
    USERNAME_TOO_LONG,
    USERNAME_TOO_SHORT,
    is_valid_email,
    is_valid_otp,
    sanitize_html,
    validate_password,
    validate_username,
)


class TestEmail:
    @pytest.mark.parametrize("email", ["a@b.co", "first.last+tag@example.org", "x_y-z@sub.domain.fr"])
    def test_valid(self, email: str) -> None:
        assert is_valid_email(email)

    @pytest.mark.parametrize(
        "email",
        ["", "plain", "@example.com", "a@", "a@-b.com", "a b@example.com", "a@exa mple.com", "a@@example.com"],
    )
    def test_invalid(self, email: str) -> None:
        assert not is_valid_email(email)

    def test_length_limit(self) -> None:
        local = "a" * 64
        domain = ("b" * 60 + ".") * 4 + "com"
        assert not is_valid_email(f"{local}@{domain}")


class TestPassword:
    def test_strong_password_has_no_violations(self) -> None:
        result = validate_password("Sup3r-Secret!")
        assert result.valid
        assert result.violations == []

    def test_every_violation_reported_at_once(self) -> None:
        result = validate_password("abc")
        assert not result.valid
        assert PASSWORD_TOO_SHORT in result.violations
        assert PASSWORD_NO_UPPER in result.violations
        assert PASSWORD_NO_DIGIT in result.violations
        assert PASSWORD_NO_SYMBOL in result.violations
        assert PASSWORD_NO_LOWER not in result.violations

    def test_too_long(self) -> None:
        result = validate_password("Aa1!" * 33)
        assert PASSWORD_TOO_LONG in result.violations

    def test_exactly_128_is_allowed(self) -> None:
        assert validate_password("Aa1!" * 32).valid

    @pytest.mark.parametrize("password", ["password", "123456", "admin", "password123", "qwerty"])
    def test_common_passwords_rejected(self, password: str) -> None:
        result = validate_password(password)
        assert not result.valid
        assert PASSWORD_TOO_COMMON in result.violations

    def test_common_check_is_case_insensitive(self) -> None:
        assert PASSWORD_TOO_COMMON in validate_password("PassWord123").violations


class TestUsername:
    @pytest.mark.parametrize("username", ["bob", "alice_42", "j-doe", "A1b2C3"])
    def test_valid(self, username: str) -> None:
        assert validate_username(username).valid

    def test_too_short_and_too_long(self) -> None:
        assert USERNAME_TOO_SHORT in validate_username("ab").violations
        assert USERNAME_TOO_LONG in validate_username("a" * 21).violations

    def test_charset(self) -> None:
        assert USERNAME_BAD_CHARSET in validate_username("bob smith").violations
        assert USERNAME_BAD_CHARSET in validate_username("bob.smith").violations

    @pytest.mark.parametrize("username", ["_bob", "bob_", "-bob", "bob-"])
    def test_edges(self, username: str) -> None:
        assert USERNAME_BAD_EDGES in validate_username(username).violations

    @pytest.mark.parametrize("username", ["admin", "Admin", "ROOT", "support"])
    def test_reserved_words(self, username: str) -> None:
        assert USERNAME_RESERVED in validate_username(username).violations


class TestOtpShape:
    def test_six_digits(self) -> None:
        assert is_valid_otp("012345")

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456", " 123456", "١٢٣٤٥٦"])
    def test_rejected(self, code: str) -> None:
        assert not is_valid_otp(code)


class TestSanitizeHtml:
    def test_escapes_all_five_characters(self) -> None:
        assert sanitize_html("<a href=\"x\">'&'</a>") == "&lt;a href=&quot;x&quot;&gt;&#039;&amp;&#039;&lt;/a&gt;"

    def test_plain_text_unchanged(self) -> None:
        assert sanitize_html("Bonjour Alice") == "Bonjour Alice"

    def test_not_idempotent(self) -> None:
        assert sanitize_html("&lt;") == "&amp;lt;"
