"""
Encryption helpers for source credentials at rest
"""
import base64
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .logger import get_logger

logger = get_logger('crypto')


class SecretCrypto:
    """
    Encrypt/decrypt source account secrets.

    Uses Fernet symmetric encryption when a key is configured, otherwise
    falls back to a reversible base64 marker (development only).
    """

    OBFUSCATION_PREFIX = 'OBF:'

    def __init__(self, key: Optional[str] = None):
        """
        Args:
            key: Fernet key; read from SECRET_ENCRYPTION_KEY when omitted
        """
        self._key = key or os.environ.get('SECRET_ENCRYPTION_KEY')
        self._fernet = None

        if self._key:
            try:
                self._fernet = Fernet(self._key.encode() if isinstance(self._key, str) else self._key)
            except (ValueError, TypeError) as e:
                logger.warning(f"Invalid Fernet key, secrets will only be obfuscated: {e}")
                self._fernet = None

    @property
    def is_secure(self) -> bool:
        """Whether real encryption is in use"""
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ''

        if self._fernet:
            return self._fernet.encrypt(plaintext.encode('utf-8')).decode('utf-8')
        return self.OBFUSCATION_PREFIX + base64.b64encode(plaintext.encode('utf-8')).decode('utf-8')

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ''

        if ciphertext.startswith(self.OBFUSCATION_PREFIX):
            encoded = ciphertext[len(self.OBFUSCATION_PREFIX):]
            return base64.b64decode(encoded.encode('utf-8')).decode('utf-8')

        if self._fernet:
            try:
                return self._fernet.decrypt(ciphertext.encode('utf-8')).decode('utf-8')
            except InvalidToken:
                # Legacy rows stored before a key was configured
                return ciphertext
        return ciphertext

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key"""
        return Fernet.generate_key().decode('utf-8')


_crypto_instance: Optional[SecretCrypto] = None


def get_crypto() -> SecretCrypto:
    """Global crypto instance"""
    global _crypto_instance
    if _crypto_instance is None:
        _crypto_instance = SecretCrypto()
    return _crypto_instance


def reset_crypto(key: Optional[str] = None) -> SecretCrypto:
    """Rebuild the global instance, e.g. after the app config is loaded"""
    global _crypto_instance
    _crypto_instance = SecretCrypto(key)
    return _crypto_instance
