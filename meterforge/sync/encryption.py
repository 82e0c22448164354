"""
Encryption Layer for MeterForge credentials.

Handles symmetric encryption using cryptography.fernet, with keys derived
from a passphrase via PBKDF2-HMAC-SHA256.
"""

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100_000


class EncryptionError(Exception):
    """Encryption/Decryption failure."""
    pass


class EncryptionLayer:
    """
    Encrypts and decrypts text.

    Uses Fernet (AES-128-CBC + HMAC-SHA256) which guarantees
    confidentiality and integrity.
    """

    def __init__(self, key: str):
        """
        Initialize encryption layer.

        Args:
            key: 32-byte URL-safe base64-encoded key
        """
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Invalid encryption key: {e}")

    def encrypt(self, data: str) -> str:
        """
        Encrypt string data.

        Args:
            data: Plaintext data

        Returns:
            Encrypted token (base64 string)
        """
        if not data:
            return ""

        encrypted_bytes = self._fernet.encrypt(data.encode("utf-8"))
        return encrypted_bytes.decode("utf-8")

    def decrypt(self, token: str) -> str:
        """
        Decrypt string data.

        Args:
            token: Encrypted token (base64 string)

        Returns:
            Decrypted plaintext string
        """
        if not token:
            return ""

        try:
            decrypted_bytes = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as e:
            raise EncryptionError("Decryption failed: invalid token or key") from e
        return decrypted_bytes.decode("utf-8")

    @staticmethod
    def generate_key() -> str:
        """Generate a new random Fernet key."""
        return Fernet.generate_key().decode("utf-8")

    @staticmethod
    def derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> str:
        """
        Derive a Fernet key from a passphrase.

        Args:
            passphrase: Secret the key is derived from
            salt: KDF salt
            iterations: PBKDF2 iteration count

        Returns:
            URL-safe base64-encoded 32-byte key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8"))).decode("utf-8")
