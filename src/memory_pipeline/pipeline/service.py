"""
Memory Service - inbound operations on spaces and memories.

Submission only records the memory; fetching, chunking and embedding happen
asynchronously in the coordinator's workers.
"""

import fnmatch
import logging
from typing import Dict, List, Mapping, Optional, Sequence

from ..contracts.labels import matches_label_selectors, validate_string_map
from ..contracts.models import (
    ChunkingConfig,
    ChunkStatusCounts,
    ChunkStatusView,
    Memory,
    MemoryStatusReport,
    ProcessingStatus,
    Space,
    VectorStatus,
)
from ..core.logging import LoggerLike
from ..core.status import Status, StatusOr
from ..registry.embedder_registry import EmbedderRegistry
from ..storage.base import PipelineStore
from .aggregator import StatusAggregator


def count_chunks(views: Sequence[ChunkStatusView]) -> ChunkStatusCounts:
    counts = ChunkStatusCounts()
    for view in views:
        if view.vector_status == VectorStatus.PENDING:
            counts.pending += 1
        elif view.vector_status == VectorStatus.PROCESSING:
            counts.processing += 1
        elif view.vector_status == VectorStatus.GENERATED:
            counts.generated += 1
        elif view.terminal:
            counts.failed_terminal += 1
        else:
            counts.failed_retryable += 1
    return counts


class MemoryService:
    """
    Entry point for clients of the pipeline.

    Example:
        >>> service = MemoryService(store, registry)
        >>> space = service.create_space("notes", "text-embedding-3-small").value
        >>> memory_id = service.submit(space.space_id, "file://notes/a.txt").value
        >>> service.get_status(memory_id).value.processing_status
        <ProcessingStatus.PENDING: 'PENDING'>
    """

    def __init__(
        self,
        store: PipelineStore,
        registry: EmbedderRegistry,
        aggregator: Optional[StatusAggregator] = None,
        logger: Optional[LoggerLike] = None,
    ):
        self.store = store
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.aggregator = aggregator or StatusAggregator(store, logger=self.logger)

    # =========================================================================
    # Spaces
    # =========================================================================

    def create_space(
        self,
        name: str,
        embedding_model: str,
        owner_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        public_read: bool = False,
        max_chunk_size: Optional[int] = None,
        overlap_size: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> StatusOr[Space]:
        """
        Create a space bound to an embedding model.

        The embedding model must resolve to exactly one registered embedder.
        Chunking overrides are validated against the default configuration.
        """
        if not name or not name.strip():
            return StatusOr.of_status(Status.invalid_argument("space name is required"))

        checked_labels = validate_string_map(labels, "labels")
        if not checked_labels.is_ok:
            return StatusOr.of_status(checked_labels.status)

        if max_chunk_size is not None or overlap_size is not None:
            chunking = ChunkingConfig(
                max_chunk_size=max_chunk_size if max_chunk_size is not None
                else ChunkingConfig().max_chunk_size,
                overlap_size=overlap_size if overlap_size is not None
                else ChunkingConfig().overlap_size,
            )
            status = chunking.validate()
            if not status.is_ok:
                return StatusOr.of_status(status)

        embedder = self.registry.lookup(embedding_model)
        if not embedder.is_ok:
            return StatusOr.of_status(embedder.status)

        space = Space.create_new(
            name=name.strip(),
            embedding_model=embedding_model,
            owner_id=owner_id,
            labels=checked_labels.value,
            public_read=public_read,
            max_chunk_size=max_chunk_size,
            overlap_size=overlap_size,
            created_by=created_by,
            updated_by=created_by,
        )
        result = self.store.insert_space(space)
        if result.is_ok:
            self.logger.info(
                f"Created space {space.space_id} ({space.name}) "
                f"using embedder {embedder.value.embedder_id}"
            )
        return result

    def get_space(self, space_id: str) -> StatusOr[Space]:
        return self.store.get_space(space_id)

    def list_spaces(
        self,
        owner_id: Optional[str] = None,
        label_selectors: Optional[Mapping[str, str]] = None,
        name_filter: Optional[str] = None,
        limit: int = 1000,
    ) -> StatusOr[List[Space]]:
        """
        List spaces matching every given filter.

        Args:
            owner_id: Only spaces of this owner
            label_selectors: Pairs that must all be present in the labels
            name_filter: Glob pattern ('*' and '?') on the space name
            limit: Maximum number of spaces to read
        """
        selectors = validate_string_map(label_selectors, "label_selectors")
        if not selectors.is_ok:
            return StatusOr.of_status(selectors.status)

        result = self.store.list_spaces(owner_id=owner_id, limit=limit)
        if not result.is_ok:
            return result
        return StatusOr.of_value([
            s for s in result.value
            if matches_label_selectors(s.labels, selectors.value)
            and (not name_filter or fnmatch.fnmatchcase(s.name, name_filter))
        ])

    def delete_space(self, space_id: str) -> StatusOr[bool]:
        """Delete a space and everything in it; in-flight results are discarded."""
        result = self.store.delete_space(space_id)
        if result.is_ok and not result.value:
            return StatusOr.of_status(Status.not_found(f"space '{space_id}' not found"))
        return result

    # =========================================================================
    # Memories
    # =========================================================================

    def submit(
        self,
        space_id: str,
        content_ref: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        created_by: Optional[str] = None,
    ) -> StatusOr[str]:
        """
        Record a new memory for asynchronous processing.

        Args:
            space_id: Target space (must exist)
            content_ref: Reference the fetcher can resolve
            content_type: MIME type; when omitted the fetched type is used
            metadata: String-to-string metadata
            created_by: Submitting principal

        Returns:
            The new memory id
        """
        if not content_ref or not content_ref.strip():
            return StatusOr.of_status(Status.invalid_argument("content reference is required"))

        checked = validate_string_map(metadata, "metadata")
        if not checked.is_ok:
            return StatusOr.of_status(checked.status)

        space = self.store.get_space(space_id)
        if not space.is_ok:
            return StatusOr.of_status(space.status)

        memory = Memory.create_new(
            space_id=space_id,
            content_ref=content_ref,
            content_type=content_type,
            metadata=checked.value,
            created_by=created_by,
        )
        result = self.store.insert_memory(memory)
        if not result.is_ok:
            return StatusOr.of_status(result.status)

        self.logger.info(f"Submitted memory {memory.memory_id} to space {space_id}")
        return StatusOr.of_value(memory.memory_id)

    def get_memory(self, memory_id: str) -> StatusOr[Memory]:
        return self.store.get_memory(memory_id)

    def list_memories(
        self,
        space_id: Optional[str] = None,
        statuses: Optional[Sequence[ProcessingStatus]] = None,
        limit: int = 1000,
    ) -> StatusOr[List[Memory]]:
        return self.store.list_memories(space_id=space_id, statuses=statuses, limit=limit)

    def get_status(self, memory_id: str) -> StatusOr[MemoryStatusReport]:
        """Aggregate status of a memory plus the state of each chunk."""
        memory = self.store.get_memory(memory_id)
        if not memory.is_ok:
            return StatusOr.of_status(memory.status)
        chunks = self.store.get_chunks(memory_id)
        if not chunks.is_ok:
            return StatusOr.of_status(chunks.status)

        views = [ChunkStatusView.from_chunk(c) for c in chunks.value]
        return StatusOr.of_value(MemoryStatusReport(
            memory_id=memory.value.memory_id,
            space_id=memory.value.space_id,
            processing_status=memory.value.processing_status,
            counts=count_chunks(views),
            chunks=views,
            chunked=memory.value.is_chunked,
            failure_code=memory.value.failure_code,
            failure_reason=memory.value.failure_reason,
        ))

    def reprocess(
        self,
        memory_id: str,
        chunk_ids: Optional[Sequence[str]] = None,
        updated_by: Optional[str] = None,
    ) -> StatusOr[int]:
        """
        Reset chunks to PENDING for re-embedding.

        A memory that was never chunked (or whose preparation failed) is
        re-queued for preparation instead; chunk_ids are rejected for it.

        Returns:
            Number of chunks reset (0 when preparation was re-queued)
        """
        memory = self.store.get_memory(memory_id)
        if not memory.is_ok:
            return StatusOr.of_status(memory.status)

        if not memory.value.is_chunked:
            if chunk_ids:
                return StatusOr.of_status(Status.invalid_argument(
                    f"memory '{memory_id}' has not been chunked yet"
                ))
            requeued = self.store.reset_preparation(memory_id, updated_by=updated_by)
            if not requeued.is_ok:
                return StatusOr.of_status(requeued.status)
            self.logger.info(f"Re-queued memory {memory_id} for preparation")
            count = 0
        else:
            reset = self.store.reset_chunks(memory_id, chunk_ids=chunk_ids, updated_by=updated_by)
            if not reset.is_ok:
                return reset
            self.logger.info(f"Reset {reset.value} chunks of memory {memory_id}")
            count = reset.value

        refreshed = self.aggregator.refresh(memory_id)
        if not refreshed.is_ok:
            return StatusOr.of_status(refreshed.status)
        return StatusOr.of_value(count)

    def delete_memory(self, memory_id: str) -> StatusOr[bool]:
        """Delete a memory and its chunks; in-flight results are discarded."""
        result = self.store.delete_memory(memory_id)
        if result.is_ok and not result.value:
            return StatusOr.of_status(Status.not_found(f"memory '{memory_id}' not found"))
        return result
