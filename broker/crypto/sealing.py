"""Fernet sealing of sensitive payloads stored at rest."""

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class SealingError(Exception):
    """A sealed payload could not be opened."""


class Sealer:
    """Encrypts and authenticates payloads with a Fernet key.

    Upstream tokens and PKCE verifiers never hit the database in clear.
    """

    def __init__(self, fernet_key: str) -> None:
        self._cipher = Fernet(fernet_key.encode())

    @classmethod
    def from_settings_key(cls, fernet_key: str) -> "Sealer":
        """Build a sealer, generating an ephemeral key when none is set."""
        if not fernet_key:
            logger.warning(
                "BROKER_SEALING_KEY is not set; using an ephemeral key, "
                "sealed data will not survive a restart"
            )
            fernet_key = Fernet.generate_key().decode()
        return cls(fernet_key)

    def seal(self, plaintext: str) -> str:
        """Encrypt a string for storage."""
        return self._cipher.encrypt(plaintext.encode()).decode()

    def unseal(self, sealed: str) -> str:
        """Decrypt a sealed string."""
        try:
            return self._cipher.decrypt(sealed.encode()).decode()
        except InvalidToken as exc:
            raise SealingError("sealed payload rejected") from exc
