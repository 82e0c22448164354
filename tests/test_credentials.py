"""
Tests for credential encryption and storage.
"""

import pytest

from meterforge.sync.credentials import (
    CREDENTIAL_KEY,
    CredentialError,
    CredentialManager,
    WebDAVCredentials,
)
from meterforge.sync.encryption import EncryptionError, EncryptionLayer

SALT = b"test-salt"


@pytest.fixture
def credentials():
    return WebDAVCredentials(
        server_url="https://cloud.example.com",
        username="alice",
        password="app-password",
        file_path="/MeterForge/data.json",
    )


class TestEncryptionLayer:
    """Tests for EncryptionLayer."""

    def test_encrypt_decrypt(self):
        layer = EncryptionLayer(EncryptionLayer.generate_key())
        token = layer.encrypt("my secret data")

        assert token != "my secret data"
        assert layer.decrypt(token) == "my secret data"

    def test_empty_string(self):
        layer = EncryptionLayer(EncryptionLayer.generate_key())
        assert layer.encrypt("") == ""
        assert layer.decrypt("") == ""

    def test_wrong_key(self):
        token = EncryptionLayer(EncryptionLayer.generate_key()).encrypt("secret")

        with pytest.raises(EncryptionError):
            EncryptionLayer(EncryptionLayer.generate_key()).decrypt(token)

    def test_invalid_key(self):
        with pytest.raises(EncryptionError):
            EncryptionLayer("not-a-key")

    def test_derived_key_is_stable(self):
        first = EncryptionLayer.derive_key("passphrase", SALT, iterations=1000)
        second = EncryptionLayer.derive_key("passphrase", SALT, iterations=1000)
        other = EncryptionLayer.derive_key("passphrase", b"other-salt", iterations=1000)

        assert first == second
        assert first != other
        assert EncryptionLayer(first).decrypt(EncryptionLayer(second).encrypt("x")) == "x"


class TestCredentialManager:
    """Tests for CredentialManager."""

    def test_nothing_stored(self, kv_store):
        manager = CredentialManager(kv_store, passphrase="pw", salt=SALT)

        assert manager.exists() is False
        assert manager.retrieve() is None

    def test_store_and_retrieve(self, kv_store, credentials):
        manager = CredentialManager(kv_store, passphrase="pw", salt=SALT)

        manager.store(credentials)

        assert manager.exists() is True
        assert manager.retrieve() == credentials
        assert "app-password" not in str(kv_store.get(CREDENTIAL_KEY))

    def test_new_manager_reads_stored_set(self, kv_store, credentials):
        CredentialManager(kv_store, passphrase="pw", salt=SALT).store(credentials)

        assert CredentialManager(kv_store, passphrase="pw", salt=SALT).retrieve() == credentials

    def test_wrong_passphrase(self, kv_store, credentials):
        CredentialManager(kv_store, passphrase="pw", salt=SALT).store(credentials)

        with pytest.raises(CredentialError):
            CredentialManager(kv_store, passphrase="other", salt=SALT).retrieve()

    def test_builtin_passphrase(self, kv_store, credentials):
        manager = CredentialManager(kv_store)

        manager.store(credentials)

        assert manager.uses_builtin_passphrase is True
        assert CredentialManager(kv_store).retrieve().username == "alice"

    def test_update(self, kv_store, credentials):
        manager = CredentialManager(kv_store, passphrase="pw", salt=SALT)
        manager.store(credentials)

        updated = manager.update(password="rotated")

        assert updated.password == "rotated"
        assert manager.retrieve().password == "rotated"
        assert manager.retrieve().username == "alice"

    def test_update_without_stored_set(self, kv_store):
        with pytest.raises(CredentialError):
            CredentialManager(kv_store, passphrase="pw", salt=SALT).update(password="x")

    def test_clear(self, kv_store, credentials):
        manager = CredentialManager(kv_store, passphrase="pw", salt=SALT)
        manager.store(credentials)

        manager.clear()

        assert manager.exists() is False
        assert manager.retrieve() is None

    def test_corrupt_blob(self, kv_store):
        kv_store.put(CREDENTIAL_KEY, {"unexpected": True})

        with pytest.raises(CredentialError):
            CredentialManager(kv_store, passphrase="pw", salt=SALT).retrieve()
