"""
Embedder Registry - resolve a space's embedding model to an Embedder.

lookup() is a pure read used by the pipeline. register() and list() serve
the management surface: registration validates the definition, enforces the
(endpoint_url, api_path, model_identifier) uniqueness and encrypts
credentials before they are stored.
"""

import logging
from typing import List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from ..contracts.labels import matches_label_selectors, validate_string_map
from ..contracts.models import DEFAULT_API_PATH, Embedder, Modality, ProviderType
from ..core.logging import LoggerLike
from ..core.status import Status, StatusCode, StatusOr
from ..security.credentials import CredentialCipher
from ..storage.base import PipelineStore


def validate_usable(embedder: Embedder) -> Status:
    """Check that an embedder can embed text chunks."""
    if not isinstance(embedder.provider_type, ProviderType):
        return Status.invalid_argument(
            f"embedder {embedder.embedder_id} has no valid provider type"
        )
    if not isinstance(embedder.dimensionality, int) or embedder.dimensionality <= 0:
        return Status.invalid_argument(
            f"embedder {embedder.embedder_id} has invalid dimensionality "
            f"{embedder.dimensionality!r}"
        )
    if not embedder.supports(Modality.TEXT):
        return Status.invalid_argument(
            f"embedder {embedder.embedder_id} does not support TEXT"
        )
    return Status.success()


class EmbedderRegistry:
    """
    Read and register embedders.

    Example:
        >>> registry = EmbedderRegistry(store, cipher=cipher)
        >>> result = registry.lookup(space.embedding_model)
        >>> if result.is_ok:
        ...     embedder = result.value
    """

    def __init__(
        self,
        store: PipelineStore,
        cipher: Optional[CredentialCipher] = None,
        logger: Optional[LoggerLike] = None,
    ):
        self.store = store
        self.cipher = cipher
        self.logger = logger or logging.getLogger(__name__)

    def lookup(self, embedding_model: str) -> StatusOr[Embedder]:
        """
        Resolve an embedding model reference.

        The reference is tried as an embedder id first, then as a model
        identifier.

        Returns:
            The embedder, NOT_FOUND if nothing matches, or INVALID_ARGUMENT
            if the reference is ambiguous or the embedder is unusable
        """
        if not embedding_model:
            return StatusOr.of_status(Status.invalid_argument("embedding model is not set"))

        by_id = self.store.get_embedder(embedding_model)
        if by_id.is_ok:
            embedder = by_id.value
        elif by_id.status.code != StatusCode.NOT_FOUND:
            return by_id
        else:
            matches = self.store.find_embedders(model_identifier=embedding_model)
            if not matches.is_ok:
                return StatusOr.of_status(matches.status)
            if not matches.value:
                return StatusOr.of_status(Status.not_found(
                    f"no embedder registered for '{embedding_model}'"
                ))
            if len(matches.value) > 1:
                return StatusOr.of_status(Status.invalid_argument(
                    f"model identifier '{embedding_model}' matches "
                    f"{len(matches.value)} embedders; reference one by id"
                ))
            embedder = matches.value[0]

        status = validate_usable(embedder)
        if not status.is_ok:
            return StatusOr.of_status(status)
        return StatusOr.of_value(embedder)

    def get(self, embedder_id: str) -> StatusOr[Embedder]:
        return self.store.get_embedder(embedder_id)

    def list(
        self,
        provider_type: Optional[ProviderType] = None,
        label_selectors: Optional[Mapping[str, str]] = None,
        owner_id: Optional[str] = None,
    ) -> StatusOr[List[Embedder]]:
        """List embedders matching every given filter."""
        selectors = validate_string_map(label_selectors, "label_selectors")
        if not selectors.is_ok:
            return StatusOr.of_status(selectors.status)

        result = self.store.find_embedders(provider_type=provider_type)
        if not result.is_ok:
            return result
        return StatusOr.of_value([
            e for e in result.value
            if matches_label_selectors(e.labels, selectors.value)
            and (owner_id is None or e.owner_id == owner_id)
        ])

    def register(
        self,
        display_name: str,
        provider_type: ProviderType,
        endpoint_url: str,
        model_identifier: str,
        dimensionality: int,
        api_path: Optional[str] = None,
        credentials: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
        supported_modalities: Optional[Sequence[Modality]] = None,
        max_sequence_length: Optional[int] = None,
        description: Optional[str] = None,
        version: Optional[str] = None,
        owner_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StatusOr[Embedder]:
        """
        Validate and store a new embedder.

        Args:
            credentials: Plaintext API key or JSON credentials; encrypted
                before storage and required for OPENAI

        Returns:
            The stored embedder, INVALID_ARGUMENT for a bad definition or
            ALREADY_EXISTS for a duplicate endpoint/model
        """
        if not display_name or not display_name.strip():
            return StatusOr.of_status(Status.invalid_argument("display name is required"))
        try:
            provider_type = ProviderType(provider_type)
        except ValueError:
            return StatusOr.of_status(Status.invalid_argument(
                f"valid provider type is required, got {provider_type!r}"
            ))
        if not endpoint_url or not endpoint_url.strip():
            return StatusOr.of_status(Status.invalid_argument("endpoint URL is required"))
        parsed = urlparse(endpoint_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return StatusOr.of_status(Status.invalid_argument(
                f"endpoint URL must be an http(s) URL, got '{endpoint_url}'"
            ))
        if not model_identifier or not model_identifier.strip():
            return StatusOr.of_status(Status.invalid_argument("model identifier is required"))
        if not isinstance(dimensionality, int) or isinstance(dimensionality, bool) \
                or dimensionality <= 0:
            return StatusOr.of_status(Status.invalid_argument(
                "dimensionality must be a positive integer"
            ))
        if max_sequence_length is not None and max_sequence_length <= 0:
            return StatusOr.of_status(Status.invalid_argument(
                "max sequence length must be positive when set"
            ))
        if provider_type == ProviderType.OPENAI and not (credentials or "").strip():
            return StatusOr.of_status(Status.invalid_argument(
                "credentials are required for OPENAI embedders"
            ))

        checked_labels = validate_string_map(labels, "labels")
        if not checked_labels.is_ok:
            return StatusOr.of_status(checked_labels.status)

        try:
            modalities = [Modality(m) for m in (supported_modalities or [Modality.TEXT])]
        except ValueError as e:
            return StatusOr.of_status(Status.invalid_argument(f"unknown modality: {e}"))

        stored_credentials = None
        if credentials:
            if self.cipher is None:
                return StatusOr.of_status(Status.internal(
                    "no credentials key is configured; refusing to store credentials"
                ))
            stored_credentials = self.cipher.encrypt(credentials)

        api_path = api_path or DEFAULT_API_PATH
        if not api_path.startswith("/"):
            api_path = "/" + api_path

        embedder = Embedder.create_new(
            provider_type=provider_type,
            endpoint_url=endpoint_url.strip(),
            model_identifier=model_identifier.strip(),
            dimensionality=dimensionality,
            display_name=display_name.strip(),
            description=description,
            api_path=api_path,
            max_sequence_length=max_sequence_length,
            supported_modalities=list(dict.fromkeys(modalities)),
            credentials=stored_credentials,
            labels=checked_labels.value,
            version=version,
            owner_id=owner_id,
            created_by=created_by,
            updated_by=created_by,
        )
        result = self.store.insert_embedder(embedder)
        if result.is_ok:
            self.logger.info(
                f"Registered {provider_type.value} embedder {embedder.embedder_id} "
                f"({embedder.model_identifier}, {dimensionality} dims)"
            )
        return result
