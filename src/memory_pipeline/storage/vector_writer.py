"""
Vector Writer - the single commit point of a chunk attempt.

Each write is one conditional UPDATE that sets the vector together with
GENERATED, or clears it together with FAILED, so no reader can observe a
stored vector with a non-GENERATED status or the reverse.
"""

import logging
import math
from datetime import datetime
from typing import List, Optional, Sequence

from ..contracts.models import MemoryChunk, VectorStatus
from ..core.logging import LoggerLike
from ..core.status import Status, StatusOr
from .base import PipelineStore


class VectorWriter:
    """
    Persists attempt outcomes for claimed chunks.

    Writes are conditioned on the chunk still existing, still PROCESSING and
    still holding the caller's claim token. A write that matches nothing is
    reported as discarded (False), which is how results for deleted or
    reprocessed chunks are dropped.
    """

    def __init__(self, store: PipelineStore, logger: Optional[LoggerLike] = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def write_generated(
        self,
        chunk: MemoryChunk,
        vector: Sequence[float],
        dimensionality: int,
        now: Optional[datetime] = None,
    ) -> StatusOr[bool]:
        """
        Store a generated vector.

        Args:
            chunk: The claimed chunk (its claim_token conditions the write)
            vector: Embedding returned by the provider
            dimensionality: Expected vector length for the chunk's embedder

        Returns:
            True if written, False if discarded, INVALID_ARGUMENT if the
            vector has the wrong length or non-finite values
        """
        values: List[float] = [float(v) for v in vector]
        if len(values) != dimensionality:
            return StatusOr.of_status(Status.invalid_argument(
                f"vector has {len(values)} dimensions, embedder declares {dimensionality}"
            ))
        if not all(math.isfinite(v) for v in values):
            return StatusOr.of_status(Status.invalid_argument(
                "vector contains non-finite values"
            ))

        result = self.store.write_chunk_result(
            chunk.chunk_id,
            chunk.claim_token,
            VectorStatus.GENERATED,
            embedding_vector=values,
            now=now,
        )
        if result.is_ok and not result.value:
            self.logger.info(
                f"Discarded vector for chunk {chunk.chunk_id}: "
                "chunk was deleted or reclaimed"
            )
        return result

    def write_failed(
        self,
        chunk: MemoryChunk,
        status: Status,
        next_attempt_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> StatusOr[bool]:
        """
        Record a failed attempt.

        Args:
            chunk: The claimed chunk
            status: Error that ended the attempt (code and message are stored)
            next_attempt_at: When a retry is due; None makes the failure terminal

        Returns:
            True if written, False if discarded
        """
        result = self.store.write_chunk_result(
            chunk.chunk_id,
            chunk.claim_token,
            VectorStatus.FAILED,
            failure_code=status.code,
            failure_reason=status.message,
            next_attempt_at=next_attempt_at,
            now=now,
        )
        if result.is_ok and not result.value:
            self.logger.info(
                f"Discarded failure for chunk {chunk.chunk_id}: "
                "chunk was deleted or reclaimed"
            )
        return result
