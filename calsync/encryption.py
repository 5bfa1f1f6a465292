"""Credential vault for OAuth tokens stored at rest.

Tokens are encrypted with AES-256-GCM and serialized as
``"<iv hex>:<auth tag hex>:<ciphertext hex>"``.
"""

import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32


class VaultError(Exception):
    """Base error for credential vault failures."""


class EmptyInputError(VaultError):
    """Raised when asked to encrypt or decrypt an empty value."""


class InvalidFormatError(VaultError):
    """Raised when a ciphertext is not three colon-separated hex parts."""


class InvalidKeyLengthError(VaultError):
    """Raised when the configured key is not 32 bytes."""


class MissingKeyError(VaultError):
    """Raised when no encryption key is configured."""


class AuthenticationFailedError(VaultError):
    """Raised when the auth tag does not verify (wrong key or corrupted data)."""


class TokenVault:
    """Encrypts and decrypts tokens using AES-256-GCM."""

    def __init__(self, key: bytes):
        """Initialize with a 32-byte encryption key."""
        if len(key) != KEY_LENGTH:
            raise InvalidKeyLengthError(
                f"Invalid encryption key length: expected {KEY_LENGTH} bytes"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token.

        Args:
            plaintext: Token to encrypt

        Returns:
            ``iv:authTag:ciphertext`` with every part hex encoded
        """
        if not plaintext:
            raise EmptyInputError("Cannot encrypt empty token")

        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)

        # AESGCM appends the tag to the ciphertext
        ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{iv.hex()}:{auth_tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by ``encrypt``.

        Args:
            token: ``iv:authTag:ciphertext`` string

        Returns:
            Decrypted plaintext
        """
        if not token:
            raise EmptyInputError("Cannot decrypt empty ciphertext")

        parts = token.split(":")
        if len(parts) != 3:
            raise InvalidFormatError("Invalid encrypted token format")

        try:
            iv, auth_tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise InvalidFormatError("Invalid encrypted token format") from None

        if not iv or len(auth_tag) != AUTH_TAG_LENGTH:
            raise AuthenticationFailedError("Token decryption failed")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag:
            raise AuthenticationFailedError("Token decryption failed") from None

        return plaintext.decode("utf-8")


def generate_encryption_key() -> str:
    """Generate a new key as 64 hex characters."""
    return secrets.token_bytes(KEY_LENGTH).hex()


# Global vault instance (initialized after the key is loaded)
_vault: Optional[TokenVault] = None


def get_vault() -> TokenVault:
    """Get the global vault, loading the key from configuration if needed."""
    global _vault
    if _vault is None:
        from calsync.config import get_encryption_key
        _vault = TokenVault(get_encryption_key())
    return _vault


def reset_vault() -> None:
    """Drop the cached vault so the next call reloads the key."""
    global _vault
    _vault = None


def validate_encryption_config() -> bool:
    """Return True when a usable key is configured."""
    try:
        from calsync.config import get_encryption_key
        TokenVault(get_encryption_key())
        return True
    except VaultError:
        return False


def encrypt_token(value: str) -> str:
    """Convenience function to encrypt a token."""
    return get_vault().encrypt(value)


def decrypt_token(encrypted: str) -> str:
    """Convenience function to decrypt a token."""
    return get_vault().decrypt(encrypted)
