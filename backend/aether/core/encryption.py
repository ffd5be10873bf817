import base64
import hashlib
from cryptography.fernet import Fernet, InvalidToken
from aether.core.config import get_settings

settings = get_settings()


def _get_fernet() -> Fernet:
    """Derive a Fernet key from SECRET_KEY."""
    derived = hashlib.sha256(settings.secret_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(derived))


def encrypt_api_key(plaintext: str) -> str:
    """Encrypt a provider API key for storage."""
    if not plaintext:
        return ""
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_api_key(ciphertext: str) -> str:
    """Decrypt a stored provider API key. Returns "" when the token is unreadable."""
    if not ciphertext:
        return ""
    try:
        return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        return ""


def mask_api_key(key: str, visible_chars: int = 4) -> str:
    """Mask an API key, showing only the last N characters."""
    if not key or len(key) <= visible_chars:
        return "*" * 8
    return "*" * 8 + key[-visible_chars:]
