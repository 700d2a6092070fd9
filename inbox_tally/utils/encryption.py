"""
Encryption utilities for the token file.
Uses Fernet symmetric encryption to protect OAuth tokens at rest.
"""

from typing import Optional

from cryptography.fernet import Fernet

from inbox_tally.config import settings


def _get_cipher(key: Optional[str] = None) -> Fernet:
    """
    Get Fernet cipher instance.

    Args:
        key: Fernet key; defaults to ENCRYPTION_KEY from settings

    Returns:
        Fernet: Cipher instance for encryption/decryption

    Raises:
        ValueError: If no encryption key is configured
    """
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise ValueError(
            "ENCRYPTION_KEY not configured. "
            "Generate one using: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
        )

    # Ensure key is bytes
    if isinstance(key, str):
        key = key.encode()

    return Fernet(key)


def encrypt_token(token: str, key: Optional[str] = None) -> str:
    """
    Encrypt a token for secure storage.

    Args:
        token: Plain text token to encrypt
        key: Optional Fernet key overriding settings

    Returns:
        str: Encrypted token as base64 string

    Example:
        >>> encrypted = encrypt_token('{"token": "ya29..."}')
        >>> print(encrypted)
        'gAAAAABh...'
    """
    cipher = _get_cipher(key)
    return cipher.encrypt(token.encode()).decode()


def decrypt_token(encrypted: str, key: Optional[str] = None) -> str:
    """
    Decrypt a previously encrypted token.

    Raises:
        cryptography.fernet.InvalidToken: If token is invalid or was
            encrypted with another key
    """
    cipher = _get_cipher(key)
    return cipher.decrypt(encrypted.encode()).decode()
