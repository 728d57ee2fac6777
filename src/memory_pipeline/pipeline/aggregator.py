"""
Status Aggregator - derive a memory's processing status from its chunks.

The status is never set directly. It is recomputed for one memory after
each of its chunk transitions, and for every unfinished memory on startup.
"""

import logging
from typing import Optional

from ..contracts.models import ChunkStatusCounts, Memory, ProcessingStatus
from ..core.logging import LoggerLike
from ..core.status import StatusOr
from ..storage.base import PipelineStore


def derive_processing_status(
    counts: ChunkStatusCounts,
    chunked: bool,
    preparation_failed: bool = False,
) -> ProcessingStatus:
    """
    Derive a memory status.

    Args:
        counts: Chunk counts of the memory
        chunked: Whether chunking has run
        preparation_failed: Whether fetching/chunking failed terminally

    Returns:
        FAILED if preparation or any chunk failed terminally, PENDING before
        chunking, COMPLETED when every chunk is GENERATED (or there are no
        chunks), otherwise PROCESSING
    """
    if preparation_failed:
        return ProcessingStatus.FAILED
    if not chunked:
        return ProcessingStatus.PENDING
    if counts.failed_terminal > 0:
        return ProcessingStatus.FAILED
    if counts.generated == counts.total:
        return ProcessingStatus.COMPLETED
    return ProcessingStatus.PROCESSING


def derive_for_memory(memory: Memory, counts: ChunkStatusCounts) -> ProcessingStatus:
    return derive_processing_status(
        counts,
        chunked=memory.is_chunked,
        preparation_failed=memory.preparation_failed,
    )


class StatusAggregator:
    """
    Keeps memory.processing_status in line with its chunks.

    Example:
        >>> aggregator = StatusAggregator(store)
        >>> aggregator.refresh(memory_id).value
        <ProcessingStatus.PROCESSING: 'PROCESSING'>
    """

    def __init__(self, store: PipelineStore, logger: Optional[LoggerLike] = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def refresh(self, memory_id: str) -> StatusOr[Optional[ProcessingStatus]]:
        """
        Recompute one memory's status.

        Returns:
            The new status, or None if the memory was deleted
        """
        result = self.store.update_memory_status(memory_id, derive_for_memory)
        if result.is_ok and result.value is not None and result.value.is_terminal:
            self.logger.debug(f"Memory {memory_id} is {result.value.value}")
        return result

    def rescan(self) -> StatusOr[int]:
        """
        Recompute every memory that is not yet COMPLETED or FAILED.

        Returns:
            Number of memories recomputed
        """
        ids = self.store.list_memory_ids(
            statuses=[ProcessingStatus.PENDING, ProcessingStatus.PROCESSING]
        )
        if not ids.is_ok:
            return StatusOr.of_status(ids.status)

        for memory_id in ids.value:
            result = self.refresh(memory_id)
            if not result.is_ok:
                return StatusOr.of_status(result.status)
        self.logger.info(f"Rescanned status of {len(ids.value)} memories")
        return StatusOr.of_value(len(ids.value))
