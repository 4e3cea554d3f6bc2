"""
tests/test_tokens.py -- Unit tests for auth.tokens password hashing.

bcrypt itself stops reading at 72 bytes; these tests pin down that the whole
password still decides the outcome.
"""

from __future__ import annotations

from auth.tokens import hash_password, verify_password


def test_round_trip_and_wrong_password() -> None:
    hashed = hash_password("Sup3r-Secret!")
    assert hashed.startswith("$2")
    assert verify_password("Sup3r-Secret!", hashed)
    assert not verify_password("Sup3r-Secret?", hashed)


def test_characters_past_72_bytes_count() -> None:
    prefix = "Aa1!" * 20  # 80 characters
    hashed = hash_password(prefix + "x" * 48)
    assert verify_password(prefix + "x" * 48, hashed)
    assert not verify_password(prefix + "y" * 48, hashed)
    assert not verify_password(prefix, hashed)


def test_multibyte_password() -> None:
    password = "Mot-de-passe-été-" + "é" * 60
    assert verify_password(password, hash_password(password))


def test_malformed_stored_hash_is_rejected() -> None:
    assert verify_password("Sup3r-Secret!", "not-a-bcrypt-hash") is False
