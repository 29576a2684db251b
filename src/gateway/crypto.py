"""Encryption of provider API keys at rest (Fernet)."""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

_DEV_KEY_MATERIAL = b"development-only-key-change-in-production"


class CredentialError(ValueError):
    """Raised when a stored credential cannot be decrypted."""


def _derive_key(secret: str | None) -> bytes:
    if secret:
        # already a urlsafe base64 Fernet key
        if len(secret) == 44:
            return secret.encode()
        return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
    logger.warning("GATEWAY_ENCRYPTION_KEY is not set; using the development key")
    return base64.urlsafe_b64encode(hashlib.sha256(_DEV_KEY_MATERIAL).digest())


class CredentialCipher:
    def __init__(self, secret: str | None) -> None:
        self._fernet = Fernet(_derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("cannot encrypt an empty credential")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        if not token:
            raise CredentialError("credential is empty")
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise CredentialError("credential could not be decrypted with the configured key") from exc
