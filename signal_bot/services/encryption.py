"""At-rest protection for strategy API keys and secrets.

Credentials are Fernet-encrypted when a strategy is created or updated
(API and CLI) and decrypted only when an exchange adapter is built.
"""

from cryptography.fernet import Fernet, InvalidToken

from signal_bot.config import settings

_cipher: Fernet | None = None


class CredentialError(ValueError):
    """Stored credentials cannot be read with the configured key."""


def _get_cipher() -> Fernet:
    global _cipher
    if _cipher is None:
        key = settings.encryption_key
        if not key:
            raise CredentialError(
                "SB_ENCRYPTION_KEY is not set; strategy credentials cannot be stored or used. "
                "Create a key with Fernet.generate_key() and keep it stable across restarts."
            )
        try:
            _cipher = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise CredentialError(f"SB_ENCRYPTION_KEY is not a valid Fernet key: {e}") from e
    return _cipher


def encrypt(plaintext: str) -> str:
    return _get_cipher().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    try:
        return _get_cipher().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        raise CredentialError(
            "Stored API credentials do not match SB_ENCRYPTION_KEY (key rotated?); re-enter them"
        ) from e


def reset_cipher():
    """Drop the cached cipher so a changed key takes effect."""
    global _cipher
    _cipher = None
