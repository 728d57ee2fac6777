"""
Embedder credential encryption.

Provider API keys are stored encrypted with AES-256-GCM. The stored token is
"v1:" followed by base64(nonce + ciphertext); the plaintext never reaches the
database. Keys that are not exactly 32 bytes are hashed with SHA-256 to get a
consistent AES-256 key.
"""

import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.exceptions import CredentialError


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "v1:"
NONCE_SIZE = 12
DEFAULT_KEY_ENV_VAR = "PIPELINE_CREDENTIALS_KEY"


@dataclass
class ProviderCredentials:
    """
    Decrypted credentials for a provider call.

    Credentials are stored either as a bare API key or as a JSON object
    with "api_key" and optional "organization".
    """
    api_key: Optional[str] = None
    organization: Optional[str] = None

    @classmethod
    def parse(cls, plaintext: Optional[str]) -> "ProviderCredentials":
        if not plaintext:
            return cls()
        text = plaintext.strip()
        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                return cls(api_key=text)
            return cls(
                api_key=data.get("api_key") or data.get("apiKey"),
                organization=data.get("organization"),
            )
        return cls(api_key=text)


class CredentialCipher:
    """
    Encrypts and decrypts embedder credentials.

    Example:
        >>> cipher = CredentialCipher(b"local-dev-key")
        >>> token = cipher.encrypt("sk-abc")
        >>> cipher.decrypt(token)
        'sk-abc'
    """

    def __init__(self, key: bytes):
        if not key:
            raise CredentialError("Encryption key is required for credential storage")
        if len(key) != 32:
            key = hashlib.sha256(key).digest()
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        encrypted = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return TOKEN_PREFIX + base64.b64encode(nonce + encrypted).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token.startswith(TOKEN_PREFIX):
            raise CredentialError("Stored credentials are not an encrypted token")
        try:
            data = base64.b64decode(token[len(TOKEN_PREFIX):])
        except ValueError as e:
            raise CredentialError(f"Malformed credential token: {e}") from e
        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8")
        except InvalidTag as e:
            raise CredentialError(
                "Credentials cannot be decrypted with the configured key"
            ) from e

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return bool(value) and value.startswith(TOKEN_PREFIX)


def get_credentials_key(
    key_source: str = "env",
    key_env_var: str = DEFAULT_KEY_ENV_VAR,
    key_file_path: Optional[str] = None,
) -> Optional[bytes]:
    """
    Get the credential encryption key from its configured source.

    Args:
        key_source: Source type ('env' or 'file')
        key_env_var: Environment variable name
        key_file_path: Path to key file

    Returns:
        Key as bytes, or None if not available
    """
    if key_source == "env":
        key_str = os.environ.get(key_env_var)
        if key_str:
            return key_str.encode("utf-8")

    elif key_source == "file" and key_file_path:
        key_path = Path(key_file_path)
        if key_path.exists():
            return key_path.read_bytes().strip()
        logger.warning(f"Credentials key file not found: {key_file_path}")

    return None
