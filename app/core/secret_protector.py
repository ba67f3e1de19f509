"""
Symmetric encryption for secrets stored at rest (TOTP seeds).

Uses Fernet (AES-128-CBC + HMAC-SHA256). The key is derived from
MFA_ENCRYPTION_KEY, falling back to SECRET_KEY.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings


class SecretDecryptionError(Exception):
    """Stored ciphertext could not be decrypted with the current key."""


def _derive_fernet_key(material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(material.encode("utf-8")).digest())


class SecretProtector:
    def __init__(self, key_material: str | None = None) -> None:
        material = key_material or settings.MFA_ENCRYPTION_KEY or settings.SECRET_KEY
        self._fernet = Fernet(_derive_fernet_key(material))

    def protect(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def unprotect(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise SecretDecryptionError("Unable to decrypt stored secret") from e


_protector: SecretProtector | None = None


def get_secret_protector() -> SecretProtector:
    """Dependency returning the process-wide protector."""
    global _protector
    if _protector is None:
        _protector = SecretProtector()
    return _protector
