"""Pass authentication token encryption using libsodium (PyNaCl)."""

import base64
import hmac
import logging

import nacl.exceptions
import nacl.secret
import nacl.utils

from walletpass.config import Settings

logger = logging.getLogger(__name__)


class CryptoService:
    """Symmetric encryption using NaCl SecretBox (XSalsa20-Poly1305).

    Pass authentication tokens are shared secrets handed to every device that
    installs the pass, so they are stored encrypted and compared in constant
    time.
    """

    def __init__(self, settings: Settings) -> None:
        key_b64 = settings.encryption_key.get_secret_value()
        if not key_b64:
            logger.warning("No encryption key configured; using a random process key. DO NOT use in production.")
            self._key = nacl.utils.random(nacl.secret.SecretBox.KEY_SIZE)
        else:
            self._key = base64.b64decode(key_b64)
        self._box = nacl.secret.SecretBox(self._key)

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt a string and return ciphertext bytes (nonce prepended)."""
        return self._box.encrypt(plaintext.encode("utf-8"))

    def decrypt(self, ciphertext: bytes) -> str:
        """Decrypt ciphertext bytes and return the original string."""
        return self._box.decrypt(ciphertext).decode("utf-8")

    def matches(self, ciphertext: bytes, candidate: str) -> bool:
        """Constant-time comparison of `candidate` against a stored secret."""
        try:
            stored = self.decrypt(ciphertext)
        except nacl.exceptions.CryptoError:
            logger.warning("Stored authentication token could not be decrypted")
            return False
        return hmac.compare_digest(stored.encode("utf-8"), candidate.encode("utf-8"))


_crypto_service: CryptoService | None = None


def get_crypto_service(settings: Settings) -> CryptoService:
    global _crypto_service
    if _crypto_service is None:
        _crypto_service = CryptoService(settings)
    return _crypto_service
