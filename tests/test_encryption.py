"""Tests for the token vault."""

from __future__ import annotations

import pytest

from calsync.encryption import (
    AuthenticationFailedError,
    EmptyInputError,
    InvalidFormatError,
    InvalidKeyLengthError,
    MissingKeyError,
    TokenVault,
    generate_encryption_key,
)


def _vault() -> TokenVault:
    return TokenVault(bytes.fromhex(generate_encryption_key()))


def test_round_trip_preserves_token():
    vault = _vault()
    token = "ya29.a0AfH6SMB-example-access-token"

    encrypted = vault.encrypt(token)

    assert encrypted != token
    assert vault.decrypt(encrypted) == token


def test_ciphertext_format_is_three_hex_parts():
    iv, tag, ciphertext = _vault().encrypt("refresh-token").split(":")

    assert len(bytes.fromhex(iv)) == 16
    assert len(bytes.fromhex(tag)) == 16
    assert bytes.fromhex(ciphertext)


def test_same_plaintext_encrypts_differently():
    vault = _vault()
    assert vault.encrypt("same") != vault.encrypt("same")


def test_wrong_key_fails_authentication():
    encrypted = _vault().encrypt("secret")

    with pytest.raises(AuthenticationFailedError):
        _vault().decrypt(encrypted)


def test_tampered_ciphertext_fails_authentication():
    vault = _vault()
    iv, tag, ciphertext = vault.encrypt("secret").split(":")
    flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]

    with pytest.raises(AuthenticationFailedError):
        vault.decrypt(f"{iv}:{tag}:{flipped}")


@pytest.mark.parametrize("token", ["no-colons", "a:b", "zz:yy:xx", "a:b:c:d"])
def test_malformed_ciphertext_is_rejected(token):
    with pytest.raises(InvalidFormatError):
        _vault().decrypt(token)


def test_empty_input_is_rejected():
    vault = _vault()
    with pytest.raises(EmptyInputError):
        vault.encrypt("")
    with pytest.raises(EmptyInputError):
        vault.decrypt("")


def test_short_key_is_rejected():
    with pytest.raises(InvalidKeyLengthError):
        TokenVault(b"\x00" * 16)


def test_get_encryption_key_validates_configuration(monkeypatch):
    from calsync.config import get_encryption_key, get_settings

    monkeypatch.delenv("CALENDAR_TOKEN_ENCRYPTION_KEY", raising=False)
    get_settings.cache_clear()
    try:
        with pytest.raises(MissingKeyError):
            get_encryption_key()

        monkeypatch.setenv("CALENDAR_TOKEN_ENCRYPTION_KEY", "abc123")
        get_settings.cache_clear()
        with pytest.raises(InvalidKeyLengthError):
            get_encryption_key()

        monkeypatch.setenv("CALENDAR_TOKEN_ENCRYPTION_KEY", "g" * 64)
        get_settings.cache_clear()
        with pytest.raises(InvalidKeyLengthError):
            get_encryption_key()

        key = generate_encryption_key()
        monkeypatch.setenv("CALENDAR_TOKEN_ENCRYPTION_KEY", key)
        get_settings.cache_clear()
        assert get_encryption_key() == bytes.fromhex(key)
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()


def test_module_helpers_use_configured_key():
    from calsync.encryption import decrypt_token, encrypt_token, reset_vault, validate_encryption_config

    reset_vault()
    assert validate_encryption_config() is True
    assert decrypt_token(encrypt_token("refresh")) == "refresh"
    reset_vault()
