"""
Unit tests for credential encryption.
"""

import pytest

from memory_pipeline.core.exceptions import CredentialError
from memory_pipeline.security.credentials import (
    TOKEN_PREFIX,
    CredentialCipher,
    ProviderCredentials,
    get_credentials_key,
)


class TestCredentialCipher:

    def test_roundtrip(self, cipher):
        token = cipher.encrypt("sk-secret")

        assert token.startswith(TOKEN_PREFIX)
        assert "sk-secret" not in token
        assert cipher.decrypt(token) == "sk-secret"

    def test_nonce_differs_per_encryption(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_thirty_two_byte_key_is_used_directly(self):
        cipher = CredentialCipher(b"k" * 32)

        assert cipher.decrypt(cipher.encrypt("x")) == "x"

    def test_empty_key_rejected(self):
        with pytest.raises(CredentialError):
            CredentialCipher(b"")

    def test_wrong_key(self, cipher):
        token = cipher.encrypt("sk-secret")

        with pytest.raises(CredentialError):
            CredentialCipher(b"another-key").decrypt(token)

    def test_plaintext_is_not_a_token(self, cipher):
        with pytest.raises(CredentialError):
            cipher.decrypt("sk-secret")

    def test_is_encrypted(self, cipher):
        assert CredentialCipher.is_encrypted(cipher.encrypt("x"))
        assert not CredentialCipher.is_encrypted("sk-plain")
        assert not CredentialCipher.is_encrypted(None)


class TestProviderCredentials:

    def test_bare_key(self):
        creds = ProviderCredentials.parse("  sk-abc \n")

        assert creds.api_key == "sk-abc"
        assert creds.organization is None

    def test_json_credentials(self):
        creds = ProviderCredentials.parse('{"api_key": "sk-abc", "organization": "org-1"}')

        assert creds.api_key == "sk-abc"
        assert creds.organization == "org-1"

    def test_empty(self):
        assert ProviderCredentials.parse(None).api_key is None


class TestGetCredentialsKey:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_CREDENTIALS_KEY", "env-key")

        assert get_credentials_key() == b"env-key"

    def test_missing_env(self, monkeypatch):
        monkeypatch.delenv("PIPELINE_CREDENTIALS_KEY", raising=False)

        assert get_credentials_key() is None

    def test_from_file(self, tmp_path):
        key_file = tmp_path / "key"
        key_file.write_bytes(b"file-key\n")

        assert get_credentials_key("file", key_file_path=str(key_file)) == b"file-key"

    def test_missing_file(self, tmp_path):
        assert get_credentials_key("file", key_file_path=str(tmp_path / "none")) is None
