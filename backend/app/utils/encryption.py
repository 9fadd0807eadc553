"""Encryption of stored credential references (Plaid access tokens)."""

from cryptography.fernet import Fernet, InvalidToken

from app.config import get_settings
from app.exceptions import CredentialsInvalidError


def get_cipher() -> Fernet:
    """Get Fernet cipher instance using the encryption key from settings."""
    settings = get_settings()
    return Fernet(settings.encryption_key.encode())


def encrypt_token(token: str) -> str:
    """Encrypt an access token into the opaque credential reference we store."""
    return get_cipher().encrypt(token.encode()).decode()


def decrypt_token(credential_ref: str) -> str:
    """Recover the access token from a stored credential reference.

    Raises:
        CredentialsInvalidError: The reference was not produced with the
            current key (rotated key, corrupted row). The user has to re-link.
    """
    try:
        return get_cipher().decrypt(credential_ref.encode()).decode()
    except InvalidToken:
        raise CredentialsInvalidError(
            "Stored credential reference cannot be decrypted",
            code="CREDENTIAL_DECRYPT_FAILED",
        ) from None
