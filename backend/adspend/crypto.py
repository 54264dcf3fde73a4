"""
Field-level encryption for integration access tokens.

Uses Fernet symmetric encryption from the `cryptography` package.
The key is sourced from the ENCRYPTION_KEY env var.

If no key is configured (development mode), encryption/decryption are
passthrough operations so local development works without extra setup.
"""

import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from adspend.config import Settings

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """An integration's stored credential could not be turned into an access token."""
    pass


class TokenCipher:
    """Encrypts/decrypts tokens with one Fernet key. Construct one per process or run."""

    def __init__(self, key: Optional[str], is_production: bool = False):
        self._fernet: Optional[Fernet] = None
        if not key:
            if is_production:
                raise RuntimeError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            logger.warning(
                "ENCRYPTION_KEY not set — integration tokens are handled in plaintext. "
                "This is acceptable for local development only."
            )
            return
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except Exception as exc:
            raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCipher":
        return cls(settings.encryption_key, is_production=settings.is_production)

    def encrypt(self, plaintext: str) -> str:
        if self._fernet is None:
            return plaintext  # no-op in dev without key
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> str:
        """Return the plaintext token or raise CredentialError."""
        if not ciphertext:
            raise CredentialError("No access token stored for integration")
        if self._fernet is None:
            return ciphertext  # no-op in dev without key
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise CredentialError("Failed to decrypt access token") from exc
