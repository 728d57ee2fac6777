"""
Embedding client selection.

The provider set is closed: each ProviderType maps to exactly one client
class, and an embedder with any other provider type is rejected.
"""

import logging
from typing import Dict, Optional, Type

import requests

from ..contracts.models import Embedder, ProviderType
from ..core.exceptions import CredentialError
from ..core.logging import LoggerLike
from ..core.status import Status, StatusOr
from ..security.credentials import CredentialCipher, ProviderCredentials
from .base import EmbeddingClient, ProviderSettings
from .openai_client import OpenAIEmbeddingClient
from .rate_limiter import LimiterRegistry
from .tei_client import TEIEmbeddingClient
from .vllm_client import VLLMEmbeddingClient


CLIENT_CLASSES: Dict[ProviderType, Type[EmbeddingClient]] = {
    ProviderType.OPENAI: OpenAIEmbeddingClient,
    ProviderType.VLLM: VLLMEmbeddingClient,
    ProviderType.TEI: TEIEmbeddingClient,
}


def decrypt_credentials(
    embedder: Embedder,
    cipher: Optional[CredentialCipher],
) -> StatusOr[ProviderCredentials]:
    """Decrypt an embedder's stored credentials."""
    if not embedder.credentials:
        return StatusOr.of_value(ProviderCredentials())
    if cipher is None:
        return StatusOr.of_status(Status.internal(
            f"embedder {embedder.embedder_id} has stored credentials "
            "but no credentials key is configured"
        ))
    try:
        return StatusOr.of_value(ProviderCredentials.parse(cipher.decrypt(embedder.credentials)))
    except CredentialError as e:
        return StatusOr.of_status(Status.internal(
            f"credentials of embedder {embedder.embedder_id}: {e}"
        ))


def create_embedding_client(
    embedder: Embedder,
    provider_settings: Optional[Dict[ProviderType, ProviderSettings]] = None,
    limiters: Optional[LimiterRegistry] = None,
    cipher: Optional[CredentialCipher] = None,
    session: Optional[requests.Session] = None,
    logger: Optional[LoggerLike] = None,
) -> StatusOr[EmbeddingClient]:
    """
    Build the client for an embedder.

    Args:
        embedder: Registered embedder
        provider_settings: Settings per provider type (defaults when missing)
        limiters: Shared limiter registry; clients of the same embedder
            share one limiter
        cipher: Decrypts stored credentials
        session: Optional requests session to reuse
        logger: Logger passed to the client

    Returns:
        StatusOr with the client, or INVALID_ARGUMENT for an unknown
        provider type
    """
    client_class = CLIENT_CLASSES.get(embedder.provider_type)
    if client_class is None:
        return StatusOr.of_status(Status.invalid_argument(
            f"unsupported provider type: {embedder.provider_type!r}"
        ))

    settings = (provider_settings or {}).get(embedder.provider_type) or ProviderSettings()
    credentials = decrypt_credentials(embedder, cipher)
    if not credentials.is_ok:
        return StatusOr.of_status(credentials.status)

    limiter = None
    if limiters is not None:
        limiter = limiters.get(
            embedder.embedder_id,
            max_concurrency=settings.max_concurrency,
            requests_per_second=settings.requests_per_second,
        )

    return StatusOr.of_value(client_class(
        embedder,
        credentials=credentials.value,
        settings=settings,
        limiter=limiter,
        session=session,
        logger=logger or logging.getLogger(client_class.__module__),
    ))
