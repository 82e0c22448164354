"""
Credential Manager for MeterForge.

Encrypts WebDAV credentials and keeps them in the local database under a
fixed key, one credential set per installation.

Security note: unless a passphrase is supplied, the key is derived from a
built-in passphrase and salt. Anyone with the application and the database
file can decrypt the credentials, so this is obfuscation at rest, not
secrecy. Supply `credential_passphrase` (or a platform keystore secret) to
get real protection; doing so means the user must provide it on start.
"""

import json
import logging
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from meterforge.storage.sqlite_db import SQLiteKeyValueStore
from meterforge.sync.encryption import EncryptionError, EncryptionLayer

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "webdav_credentials"
STORE_TABLE = "credentials"
DEFAULT_FILE_PATH = "/MeterForge/meterforge-data.json"

_BUILTIN_PASSPHRASE = "meterforge-webdav-v1"
_BUILTIN_SALT = b"meterforge-salt-v1"


class CredentialError(Exception):
    """Credentials could not be stored or decrypted."""
    pass


class WebDAVCredentials(BaseModel):
    """Connection settings for a WebDAV server."""

    server_url: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    file_path: str = DEFAULT_FILE_PATH


class CredentialManager:
    """Stores and retrieves encrypted WebDAV credentials."""

    def __init__(
        self,
        store: SQLiteKeyValueStore,
        passphrase: Optional[str] = None,
        salt: bytes = _BUILTIN_SALT,
    ):
        """
        Initialize the credential manager.

        Args:
            store: Key-value store the encrypted blob is kept in
            passphrase: Secret the encryption key is derived from; the
                built-in passphrase is used when omitted
            salt: KDF salt
        """
        self.kv_store = store
        self._passphrase = passphrase
        self._salt = salt
        self._encryption: Optional[EncryptionLayer] = None

    @property
    def uses_builtin_passphrase(self) -> bool:
        return self._passphrase is None

    def _get_encryption(self) -> EncryptionLayer:
        """Derive the key once per manager."""
        if self._encryption is None:
            if self.uses_builtin_passphrase:
                logger.warning(
                    "Credentials are encrypted with the built-in passphrase; "
                    "set credential_passphrase for real protection"
                )
            key = EncryptionLayer.derive_key(self._passphrase or _BUILTIN_PASSPHRASE, self._salt)
            self._encryption = EncryptionLayer(key)
        return self._encryption

    def store(self, credentials: WebDAVCredentials) -> None:
        """Encrypt and persist credentials, replacing any stored set."""
        payload = credentials.model_dump_json()
        token = self._get_encryption().encrypt(payload)
        self.kv_store.put(CREDENTIAL_KEY, {"token": token})
        logger.info(f"Stored WebDAV credentials for {credentials.username}")

    def retrieve(self) -> Optional[WebDAVCredentials]:
        """
        Load stored credentials.

        Returns:
            The credentials, or None if none are stored

        Raises:
            CredentialError: If the stored blob cannot be decrypted
        """
        blob = self.kv_store.get(CREDENTIAL_KEY)
        if not blob:
            return None

        try:
            payload = self._get_encryption().decrypt(blob["token"])
            return WebDAVCredentials.model_validate(json.loads(payload))
        except (EncryptionError, KeyError, TypeError, ValueError, PydanticValidationError) as e:
            raise CredentialError(f"Could not decrypt stored credentials: {e}") from e

    def exists(self) -> bool:
        """Check if credentials are stored."""
        return self.kv_store.get(CREDENTIAL_KEY) is not None

    def clear(self) -> None:
        """Remove stored credentials."""
        self.kv_store.delete(CREDENTIAL_KEY)
        logger.info("Cleared stored WebDAV credentials")

    def update(self, **updates) -> WebDAVCredentials:
        """
        Update individual credential fields.

        Raises:
            CredentialError: If no credentials are stored
        """
        existing = self.retrieve()
        if existing is None:
            raise CredentialError("No stored credentials to update")

        updated = WebDAVCredentials.model_validate({**existing.model_dump(), **updates})
        self.store(updated)
        return updated

    def close(self) -> None:
        """Forget the derived key."""
        self._encryption = None
