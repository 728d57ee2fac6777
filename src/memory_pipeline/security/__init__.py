"""
Credential handling for embedder registrations.
"""

from .credentials import CredentialCipher, ProviderCredentials, get_credentials_key

__all__ = ["CredentialCipher", "ProviderCredentials", "get_credentials_key"]
