"""
Pipeline Data Models

Data models for the pipeline tables:
- embedder: registered external vector-generation endpoints
- space: named containers of memories sharing one embedding model
- memory: submitted content and its derived processing status
- memory_chunk: offset-addressed slices of a memory and their vectors

Chunk and memory retry state (attempt counts, next-eligible time, leases)
lives on the rows themselves so a restarted coordinator resumes correctly.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.status import Status, StatusCode
from ..core.utils import from_timestamp, new_id, to_timestamp, utc_now


DEFAULT_API_PATH = "/v1/embeddings"


class ProviderType(str, Enum):
    """Closed set of supported embedding providers."""
    OPENAI = "OPENAI"
    VLLM = "VLLM"
    TEI = "TEI"


class Modality(str, Enum):
    """Content modalities an embedder may accept."""
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"


class ProcessingStatus(str, Enum):
    """Derived status of a memory."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


class VectorStatus(str, Enum):
    """Status of a single chunk's embedding."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    GENERATED = "GENERATED"
    FAILED = "FAILED"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_timestamp(value)


@dataclass
class ChunkingConfig:
    """
    Fixed-window chunking parameters, in bytes.

    Attributes:
        max_chunk_size: Window length
        overlap_size: Bytes shared by consecutive windows (< max_chunk_size)
    """
    max_chunk_size: int = 2000
    overlap_size: int = 200

    def validate(self) -> Status:
        if not isinstance(self.max_chunk_size, int) or self.max_chunk_size <= 0:
            return Status.invalid_argument(
                f"max_chunk_size must be a positive integer, got {self.max_chunk_size!r}"
            )
        if not isinstance(self.overlap_size, int) or self.overlap_size < 0:
            return Status.invalid_argument(
                f"overlap_size must be a non-negative integer, got {self.overlap_size!r}"
            )
        if self.overlap_size >= self.max_chunk_size:
            return Status.invalid_argument(
                f"overlap_size ({self.overlap_size}) must be less than "
                f"max_chunk_size ({self.max_chunk_size})"
            )
        return Status.success()

    def to_dict(self) -> Dict[str, Any]:
        return {"max_chunk_size": self.max_chunk_size, "overlap_size": self.overlap_size}


@dataclass
class Embedder:
    """
    A configured external embedding endpoint.

    Attributes:
        embedder_id: Unique identifier (GUID)
        display_name: Human-readable name
        provider_type: OPENAI, VLLM or TEI
        endpoint_url: Base URL of the provider
        model_identifier: Model name sent in each request
        dimensionality: Length of every vector the model returns
        api_path: Path appended to endpoint_url for embedding calls
        max_sequence_length: Optional max input length per text
        supported_modalities: Modalities the model accepts
        credentials: Encrypted credential token (never plaintext)
        labels: Free-form string labels
    """
    embedder_id: str
    display_name: str
    provider_type: ProviderType
    endpoint_url: str
    model_identifier: str
    dimensionality: int
    api_path: str = DEFAULT_API_PATH
    description: Optional[str] = None
    max_sequence_length: Optional[int] = None
    supported_modalities: List[Modality] = field(default_factory=lambda: [Modality.TEXT])
    credentials: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    version: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    @property
    def url(self) -> str:
        path = self.api_path or ""
        if path and not path.startswith("/"):
            path = "/" + path
        return self.endpoint_url.rstrip("/") + path

    def supports(self, modality: Modality) -> bool:
        return modality in self.supported_modalities

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (credentials are never included)."""
        return {
            "embedder_id": self.embedder_id,
            "display_name": self.display_name,
            "description": self.description,
            "provider_type": self.provider_type.value,
            "endpoint_url": self.endpoint_url,
            "api_path": self.api_path,
            "model_identifier": self.model_identifier,
            "dimensionality": self.dimensionality,
            "max_sequence_length": self.max_sequence_length,
            "supported_modalities": [m.value for m in self.supported_modalities],
            "labels": dict(self.labels),
            "version": self.version,
            "owner_id": self.owner_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Embedder":
        """Create from dictionary (e.g. a decoded database row)."""
        provider = data.get("provider_type")
        return cls(
            embedder_id=data["embedder_id"],
            display_name=data.get("display_name") or data["model_identifier"],
            description=data.get("description"),
            provider_type=ProviderType(provider) if provider else None,
            endpoint_url=data["endpoint_url"],
            api_path=data.get("api_path") or DEFAULT_API_PATH,
            model_identifier=data["model_identifier"],
            dimensionality=data["dimensionality"],
            max_sequence_length=data.get("max_sequence_length"),
            supported_modalities=[
                Modality(m) for m in (data.get("supported_modalities") or [])
            ],
            credentials=data.get("credentials"),
            labels=dict(data.get("labels") or {}),
            version=data.get("version"),
            owner_id=data.get("owner_id"),
            created_at=from_timestamp(data.get("created_at")) or utc_now(),
            updated_at=from_timestamp(data.get("updated_at")) or utc_now(),
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
        )

    @classmethod
    def create_new(
        cls,
        provider_type: ProviderType,
        endpoint_url: str,
        model_identifier: str,
        dimensionality: int,
        **kwargs
    ) -> "Embedder":
        """Create a new embedder with a generated ID."""
        kwargs.setdefault("display_name", model_identifier)
        return cls(
            embedder_id=new_id(),
            provider_type=provider_type,
            endpoint_url=endpoint_url,
            model_identifier=model_identifier,
            dimensionality=dimensionality,
            **kwargs
        )


@dataclass
class Space:
    """
    Named container of memories sharing one embedding model.

    Attributes:
        space_id: Unique identifier (GUID)
        name: Name, unique per owner
        embedding_model: Embedder id or model identifier
        owner_id: Owning principal
        labels: Free-form string labels
        public_read: Whether the space is readable by everyone
        max_chunk_size: Optional chunking override
        overlap_size: Optional chunking override
    """
    space_id: str
    name: str
    embedding_model: str
    owner_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    public_read: bool = False
    max_chunk_size: Optional[int] = None
    overlap_size: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def chunking_config(self, default: ChunkingConfig) -> ChunkingConfig:
        """Effective chunking configuration for memories in this space."""
        return ChunkingConfig(
            max_chunk_size=self.max_chunk_size or default.max_chunk_size,
            overlap_size=(
                self.overlap_size if self.overlap_size is not None
                else default.overlap_size
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "space_id": self.space_id,
            "name": self.name,
            "embedding_model": self.embedding_model,
            "owner_id": self.owner_id,
            "labels": dict(self.labels),
            "public_read": self.public_read,
            "max_chunk_size": self.max_chunk_size,
            "overlap_size": self.overlap_size,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Space":
        return cls(
            space_id=data["space_id"],
            name=data["name"],
            embedding_model=data["embedding_model"],
            owner_id=data.get("owner_id"),
            labels=dict(data.get("labels") or {}),
            public_read=bool(data.get("public_read", False)),
            max_chunk_size=data.get("max_chunk_size"),
            overlap_size=data.get("overlap_size"),
            created_at=from_timestamp(data.get("created_at")) or utc_now(),
            updated_at=from_timestamp(data.get("updated_at")) or utc_now(),
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
        )

    @classmethod
    def create_new(cls, name: str, embedding_model: str, **kwargs) -> "Space":
        return cls(space_id=new_id(), name=name, embedding_model=embedding_model, **kwargs)


@dataclass
class Memory:
    """
    A unit of submitted content within a space.

    processing_status is derived by the status aggregator and never set
    directly by callers. The prep_* fields track the preparation step
    (fetch, route, chunk) with the same claim/retry model as chunks.
    """
    memory_id: str
    space_id: str
    content_ref: str
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    chunked_at: Optional[datetime] = None
    prep_attempt_count: int = 0
    prep_next_attempt_at: Optional[datetime] = None
    prep_claimed_by: Optional[str] = None
    prep_claim_token: Optional[str] = None
    prep_lease_expires_at: Optional[datetime] = None
    failure_code: Optional[StatusCode] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    @property
    def is_chunked(self) -> bool:
        return self.chunked_at is not None

    @property
    def preparation_failed(self) -> bool:
        """True when preparation failed permanently (no retry scheduled, not claimed)."""
        return (
            not self.is_chunked
            and self.prep_claimed_by is None
            and self.failure_code is not None
            and self.prep_next_attempt_at is None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "space_id": self.space_id,
            "content_ref": self.content_ref,
            "content_type": self.content_type,
            "metadata": dict(self.metadata),
            "processing_status": self.processing_status.value,
            "chunked_at": _iso(self.chunked_at),
            "prep_attempt_count": self.prep_attempt_count,
            "prep_next_attempt_at": _iso(self.prep_next_attempt_at),
            "failure_code": self.failure_code.value if self.failure_code else None,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Memory":
        failure_code = data.get("failure_code")
        return cls(
            memory_id=data["memory_id"],
            space_id=data["space_id"],
            content_ref=data["content_ref"],
            content_type=data.get("content_type"),
            metadata=dict(data.get("metadata") or {}),
            processing_status=ProcessingStatus(
                data.get("processing_status") or ProcessingStatus.PENDING.value
            ),
            chunked_at=from_timestamp(data.get("chunked_at")),
            prep_attempt_count=data.get("prep_attempt_count") or 0,
            prep_next_attempt_at=from_timestamp(data.get("prep_next_attempt_at")),
            prep_claimed_by=data.get("prep_claimed_by"),
            prep_claim_token=data.get("prep_claim_token"),
            prep_lease_expires_at=from_timestamp(data.get("prep_lease_expires_at")),
            failure_code=StatusCode(failure_code) if failure_code else None,
            failure_reason=data.get("failure_reason"),
            created_at=from_timestamp(data.get("created_at")) or utc_now(),
            updated_at=from_timestamp(data.get("updated_at")) or utc_now(),
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
        )

    @classmethod
    def create_new(
        cls,
        space_id: str,
        content_ref: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        created_by: Optional[str] = None,
    ) -> "Memory":
        return cls(
            memory_id=new_id(),
            space_id=space_id,
            content_ref=content_ref,
            content_type=content_type,
            metadata=dict(metadata or {}),
            created_by=created_by,
            updated_by=created_by,
        )


@dataclass
class ChunkRecord:
    """
    Output of the chunker, before persistence.

    Attributes:
        sequence_number: Dense 0-based position within the memory
        start_offset: Inclusive byte offset into the original content
        end_offset: Exclusive byte offset
        text: Decoded chunk text
        oversized: True if the chunk could not be split below the
            embedder's input limit; it is stored as permanently FAILED
    """
    sequence_number: int
    start_offset: int
    end_offset: int
    text: str
    oversized: bool = False

    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset


@dataclass
class MemoryChunk:
    """
    Persisted chunk of a memory.

    Invariant: embedding_vector is present iff vector_status is GENERATED.
    A FAILED chunk with next_attempt_at set is eligible for retry; without
    it the failure is terminal.
    """
    chunk_id: str
    memory_id: str
    sequence_number: int
    start_offset: int
    end_offset: int
    chunk_text: str
    vector_status: VectorStatus = VectorStatus.PENDING
    embedding_vector: Optional[List[float]] = None
    attempt_count: int = 0
    next_attempt_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claim_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    failure_code: Optional[StatusCode] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    @property
    def is_terminal_failure(self) -> bool:
        return self.vector_status == VectorStatus.FAILED and self.next_attempt_at is None

    @property
    def is_terminal(self) -> bool:
        return self.vector_status == VectorStatus.GENERATED or self.is_terminal_failure

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "memory_id": self.memory_id,
            "sequence_number": self.sequence_number,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "chunk_text": self.chunk_text,
            "vector_status": self.vector_status.value,
            "embedding_vector": self.embedding_vector,
            "attempt_count": self.attempt_count,
            "next_attempt_at": _iso(self.next_attempt_at),
            "failure_code": self.failure_code.value if self.failure_code else None,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryChunk":
        failure_code = data.get("failure_code")
        return cls(
            chunk_id=data["chunk_id"],
            memory_id=data["memory_id"],
            sequence_number=data["sequence_number"],
            start_offset=data["start_offset"],
            end_offset=data["end_offset"],
            chunk_text=data.get("chunk_text") or "",
            vector_status=VectorStatus(data.get("vector_status") or VectorStatus.PENDING.value),
            embedding_vector=data.get("embedding_vector"),
            attempt_count=data.get("attempt_count") or 0,
            next_attempt_at=from_timestamp(data.get("next_attempt_at")),
            claimed_by=data.get("claimed_by"),
            claim_token=data.get("claim_token"),
            lease_expires_at=from_timestamp(data.get("lease_expires_at")),
            failure_code=StatusCode(failure_code) if failure_code else None,
            failure_reason=data.get("failure_reason"),
            created_at=from_timestamp(data.get("created_at")) or utc_now(),
            updated_at=from_timestamp(data.get("updated_at")) or utc_now(),
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
        )


@dataclass
class ChunkStatusCounts:
    """Per-status chunk counts for one memory."""
    pending: int = 0
    processing: int = 0
    generated: int = 0
    failed_retryable: int = 0
    failed_terminal: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending + self.processing + self.generated
            + self.failed_retryable + self.failed_terminal
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "generated": self.generated,
            "failed_retryable": self.failed_retryable,
            "failed_terminal": self.failed_terminal,
            "total": self.total,
        }


@dataclass
class ChunkStatusView:
    """Per-chunk detail returned by status queries."""
    chunk_id: str
    sequence_number: int
    start_offset: int
    end_offset: int
    vector_status: VectorStatus
    attempt_count: int
    next_attempt_at: Optional[datetime]
    failure_code: Optional[StatusCode]
    failure_reason: Optional[str]
    terminal: bool

    @classmethod
    def from_chunk(cls, chunk: MemoryChunk) -> "ChunkStatusView":
        return cls(
            chunk_id=chunk.chunk_id,
            sequence_number=chunk.sequence_number,
            start_offset=chunk.start_offset,
            end_offset=chunk.end_offset,
            vector_status=chunk.vector_status,
            attempt_count=chunk.attempt_count,
            next_attempt_at=chunk.next_attempt_at,
            failure_code=chunk.failure_code,
            failure_reason=chunk.failure_reason,
            terminal=chunk.is_terminal,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "sequence_number": self.sequence_number,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "vector_status": self.vector_status.value,
            "attempt_count": self.attempt_count,
            "next_attempt_at": _iso(self.next_attempt_at),
            "failure_code": self.failure_code.value if self.failure_code else None,
            "failure_reason": self.failure_reason,
            "terminal": self.terminal,
        }


@dataclass
class MemoryStatusReport:
    """
    Best-known aggregate status of a memory plus per-chunk detail.

    needs_reprocess is True when the memory or one of its chunks failed
    terminally and will not make further progress on its own.
    """
    memory_id: str
    space_id: str
    processing_status: ProcessingStatus
    counts: ChunkStatusCounts
    chunks: List[ChunkStatusView] = field(default_factory=list)
    chunked: bool = False
    failure_code: Optional[StatusCode] = None
    failure_reason: Optional[str] = None

    @property
    def needs_reprocess(self) -> bool:
        return self.counts.failed_terminal > 0 or (
            not self.chunked and self.processing_status == ProcessingStatus.FAILED
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "space_id": self.space_id,
            "processing_status": self.processing_status.value,
            "chunked": self.chunked,
            "counts": self.counts.to_dict(),
            "needs_reprocess": self.needs_reprocess,
            "failure_code": self.failure_code.value if self.failure_code else None,
            "failure_reason": self.failure_reason,
            "chunks": [c.to_dict() for c in self.chunks],
        }
