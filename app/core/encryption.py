"""Encryption of caller-supplied tokens kept in session metadata."""

from cryptography.fernet import Fernet, InvalidToken

ENCRYPTED_PREFIX = "enc:"


def encrypt_token(token: str, key: str) -> str:
    """Encrypt a token with Fernet symmetric encryption.

    Args:
        token: The plaintext token
        key: Base64-encoded 32-byte encryption key

    Returns:
        The ciphertext, prefixed with ``enc:`` so it can be told apart from
        tokens stored before a key was configured

    Raises:
        ValueError: If the key is missing or malformed
    """
    if not key:
        raise ValueError("Encryption key is required")

    fernet = Fernet(key.encode())
    return ENCRYPTED_PREFIX + fernet.encrypt(token.encode()).decode()


def decrypt_token(value: str, key: str | None) -> str:
    """Decrypt a token produced by :func:`encrypt_token`.

    Values without the ``enc:`` prefix are returned unchanged.

    Raises:
        ValueError: If the value is encrypted and no key is given
        cryptography.fernet.InvalidToken: If decryption fails
    """
    if not value.startswith(ENCRYPTED_PREFIX):
        return value
    if not key:
        raise ValueError("Encryption key is required")

    fernet = Fernet(key.encode())
    return fernet.decrypt(value[len(ENCRYPTED_PREFIX) :].encode()).decode()


__all__ = ["ENCRYPTED_PREFIX", "InvalidToken", "decrypt_token", "encrypt_token"]
