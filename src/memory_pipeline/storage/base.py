"""
Relational store for embedders, spaces, memories and chunks.

PipelineStore holds every query the pipeline runs; the SQLite and SQL Server
backends supply connections, table names, row limits and DDL. All statements
use '?' parameters, which both sqlite3 and pyodbc accept.

The only transactional boundaries are the atomic claims, the conditional
result writes, chunk insertion and the per-memory status recompute. Driver
errors are converted to INTERNAL at this boundary.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..contracts.models import (
    ChunkRecord,
    ChunkStatusCounts,
    Embedder,
    Memory,
    MemoryChunk,
    ProcessingStatus,
    ProviderType,
    Space,
    VectorStatus,
)
from ..core.logging import LoggerLike
from ..core.status import Status, StatusCode, StatusOr
from ..core.utils import new_id, to_timestamp, utc_now


EMBEDDER_COLUMNS = (
    "embedder_id", "display_name", "description", "provider_type",
    "endpoint_url", "api_path", "model_identifier", "dimensionality",
    "max_sequence_length", "supported_modalities", "credentials", "labels",
    "version", "owner_id", "created_at", "updated_at", "created_by", "updated_by",
)

SPACE_COLUMNS = (
    "space_id", "owner_id", "name", "labels", "embedding_model", "public_read",
    "max_chunk_size", "overlap_size", "created_at", "updated_at",
    "created_by", "updated_by",
)

MEMORY_COLUMNS = (
    "memory_id", "space_id", "content_ref", "content_type", "metadata",
    "processing_status", "chunked_at", "prep_attempt_count",
    "prep_next_attempt_at", "prep_claimed_by", "prep_claim_token",
    "prep_lease_expires_at", "failure_code", "failure_reason",
    "created_at", "updated_at", "created_by", "updated_by",
)

CHUNK_COLUMNS = (
    "chunk_id", "memory_id", "sequence_number", "start_offset", "end_offset",
    "chunk_text", "embedding_vector", "vector_status", "attempt_count",
    "next_attempt_at", "claimed_by", "claim_token", "lease_expires_at",
    "failure_code", "failure_reason", "created_at", "updated_at",
    "created_by", "updated_by",
)

_JSON_COLUMNS = {"labels", "metadata", "supported_modalities", "embedding_vector"}

# A chunk may be claimed when it has never been attempted or when a
# scheduled retry is due.
_CHUNK_CLAIMABLE = """(
    vector_status = 'PENDING'
    OR (vector_status = 'FAILED' AND next_attempt_at IS NOT NULL AND next_attempt_at <= ?)
)"""

_MEMORY_PREPARABLE = """(
    chunked_at IS NULL
    AND prep_claimed_by IS NULL
    AND (failure_code IS NULL
         OR (prep_next_attempt_at IS NOT NULL AND prep_next_attempt_at <= ?))
)"""


class PipelineStore(ABC):
    """
    Abstract base class for pipeline stores.

    Subclasses provide the connection handling and dialect hooks; the
    queries themselves are shared.
    """

    #: Driver exception types converted to INTERNAL
    driver_errors: Tuple[type, ...] = ()
    #: Driver exception types raised for unique/foreign key violations
    integrity_errors: Tuple[type, ...] = ()

    def __init__(self, logger: Optional[LoggerLike] = None):
        self.logger = logger or logging.getLogger(__name__)

    # =========================================================================
    # Backend hooks
    # =========================================================================

    @abstractmethod
    def _connection(self):
        """Return the DB-API connection for the calling thread."""
        pass

    @abstractmethod
    def _lock(self):
        """Return a context manager serializing access to the connection."""
        pass

    @abstractmethod
    def _table(self, name: str) -> str:
        """Return the qualified table name."""
        pass

    @abstractmethod
    def _select_limited(self, columns: str, rest: str, limit: int) -> str:
        """Build a SELECT returning at most limit rows."""
        pass

    @abstractmethod
    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close database connections."""
        pass

    # =========================================================================
    # Helpers
    # =========================================================================

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self._lock():
            conn = self._connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _internal(self, operation: str, error: Exception) -> StatusOr:
        self.logger.error(f"Store operation '{operation}' failed: {error}")
        return StatusOr.of_status(
            Status.internal(f"persistence error during {operation}: {error}", transient=True)
        )

    @staticmethod
    def _rows(cursor) -> List[Dict[str, Any]]:
        if not cursor.description:
            return []
        columns = [column[0] for column in cursor.description]
        rows = []
        for row in cursor.fetchall():
            data = dict(zip(columns, row))
            for key in _JSON_COLUMNS.intersection(data):
                if isinstance(data[key], str):
                    data[key] = json.loads(data[key])
            rows.append(data)
        return rows

    @staticmethod
    def _json(value: Any) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value)

    def _insert(self, cursor, table: str, columns: Sequence[str], values: Sequence[Any]) -> None:
        placeholders = ", ".join("?" for _ in columns)
        cursor.execute(
            f"INSERT INTO {self._table(table)} ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(values),
        )

    def _exists(self, cursor, sql: str, params: Sequence[Any]) -> bool:
        cursor.execute(sql, tuple(params))
        return cursor.fetchone() is not None

    # =========================================================================
    # Embedders
    # =========================================================================

    def insert_embedder(self, embedder: Embedder) -> StatusOr[Embedder]:
        """
        Persist a new embedder.

        Returns:
            The stored embedder, or ALREADY_EXISTS if another embedder
            uses the same (endpoint_url, api_path, model_identifier)
        """
        try:
            with self._transaction() as cursor:
                if self._exists(
                    cursor,
                    f"SELECT 1 FROM {self._table('embedder')} "
                    "WHERE endpoint_url = ? AND api_path = ? AND model_identifier = ?",
                    (embedder.endpoint_url, embedder.api_path, embedder.model_identifier),
                ):
                    return StatusOr.of_status(Status.already_exists(
                        f"embedder for {embedder.url} model "
                        f"'{embedder.model_identifier}' already exists"
                    ))
                self._insert(cursor, "embedder", EMBEDDER_COLUMNS, (
                    embedder.embedder_id,
                    embedder.display_name,
                    embedder.description,
                    embedder.provider_type.value,
                    embedder.endpoint_url,
                    embedder.api_path,
                    embedder.model_identifier,
                    embedder.dimensionality,
                    embedder.max_sequence_length,
                    self._json([m.value for m in embedder.supported_modalities]),
                    embedder.credentials,
                    self._json(embedder.labels),
                    embedder.version,
                    embedder.owner_id,
                    to_timestamp(embedder.created_at),
                    to_timestamp(embedder.updated_at),
                    embedder.created_by,
                    embedder.updated_by,
                ))
        except self.integrity_errors as e:
            return StatusOr.of_status(Status.already_exists(f"embedder conflicts: {e}"))
        except self.driver_errors as e:
            return self._internal("insert_embedder", e)
        return StatusOr.of_value(embedder)

    def get_embedder(self, embedder_id: str) -> StatusOr[Embedder]:
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"SELECT * FROM {self._table('embedder')} WHERE embedder_id = ?",
                    (embedder_id,),
                )
                rows = self._rows(cursor)
        except self.driver_errors as e:
            return self._internal("get_embedder", e)
        if not rows:
            return StatusOr.of_status(Status.not_found(f"embedder '{embedder_id}' not found"))
        return StatusOr.of_value(Embedder.from_dict(rows[0]))

    def find_embedders(
        self,
        model_identifier: Optional[str] = None,
        provider_type: Optional[ProviderType] = None,
    ) -> StatusOr[List[Embedder]]:
        """List embedders, optionally filtered by model identifier and provider."""
        clauses, params = [], []
        if model_identifier is not None:
            clauses.append("model_identifier = ?")
            params.append(model_identifier)
        if provider_type is not None:
            clauses.append("provider_type = ?")
            params.append(provider_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"SELECT * FROM {self._table('embedder')} {where} ORDER BY created_at",
                    tuple(params),
                )
                rows = self._rows(cursor)
        except self.driver_errors as e:
            return self._internal("find_embedders", e)
        return StatusOr.of_value([Embedder.from_dict(r) for r in rows])

    # =========================================================================
    # Spaces
    # =========================================================================

    def insert_space(self, space: Space) -> StatusOr[Space]:
        try:
            with self._transaction() as cursor:
                owner_clause = "owner_id = ?" if space.owner_id is not None else "owner_id IS NULL"
                params = [space.name] + ([space.owner_id] if space.owner_id is not None else [])
                if self._exists(
                    cursor,
                    f"SELECT 1 FROM {self._table('space')} WHERE name = ? AND {owner_clause}",
                    params,
                ):
                    return StatusOr.of_status(Status.already_exists(
                        f"space '{space.name}' already exists for this owner"
                    ))
                self._insert(cursor, "space", SPACE_COLUMNS, (
                    space.space_id,
                    space.owner_id,
                    space.name,
                    self._json(space.labels),
                    space.embedding_model,
                    1 if space.public_read else 0,
                    space.max_chunk_size,
                    space.overlap_size,
                    to_timestamp(space.created_at),
                    to_timestamp(space.updated_at),
                    space.created_by,
                    space.updated_by,
                ))
        except self.integrity_errors as e:
            return StatusOr.of_status(Status.already_exists(f"space conflicts: {e}"))
        except self.driver_errors as e:
            return self._internal("insert_space", e)
        return StatusOr.of_value(space)

    def get_space(self, space_id: str) -> StatusOr[Space]:
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"SELECT * FROM {self._table('space')} WHERE space_id = ?",
                    (space_id,),
                )
                rows = self._rows(cursor)
        except self.driver_errors as e:
            return self._internal("get_space", e)
        if not rows:
            return StatusOr.of_status(Status.not_found(f"space '{space_id}' not found"))
        return StatusOr.of_value(Space.from_dict(rows[0]))

    def list_spaces(self, owner_id: Optional[str] = None, limit: int = 1000) -> StatusOr[List[Space]]:
        where, params = "", ()
        if owner_id is not None:
            where, params = "WHERE owner_id = ?", (owner_id,)
        sql = self._select_limited(
            "*", f"FROM {self._table('space')} {where} ORDER BY created_at", limit
        )
        try:
            with self._transaction() as cursor:
                cursor.execute(sql, params)
                rows = self._rows(cursor)
        except self.driver_errors as e:
            return self._internal("list_spaces", e)
        return StatusOr.of_value([Space.from_dict(r) for r in rows])

    def delete_space(self, space_id: str) -> StatusOr[bool]:
        """
        Delete a space with all of its memories and chunks.

        Like delete_memory, results still in flight for these chunks are
        discarded by the conditional write.
        """
        try:
            with self._transaction() as cursor:
                cursor.execute(f"""
                    DELETE FROM {self._table('memory_chunk')}
                    WHERE memory_id IN (
                        SELECT memory_id FROM {self._table('memory')} WHERE space_id = ?
                    )
                """, (space_id,))
                chunk_count = cursor.rowcount
                cursor.execute(
                    f"DELETE FROM {self._table('memory')} WHERE space_id = ?",
                    (space_id,),
                )
                memory_count = cursor.rowcount
                cursor.execute(
                    f"DELETE FROM {self._table('space')} WHERE space_id = ?",
                    (space_id,),
                )
                deleted = cursor.rowcount > 0
        except self.driver_errors as e:
            return self._internal("delete_space", e)
        if deleted:
            self.logger.info(
                f"Deleted space {space_id} with {memory_count} memories "
                f"and {chunk_count} chunks"
            )
        return StatusOr.of_value(deleted)

    # =========================================================================
    # Memories
    # =========================================================================

    def insert_memory(self, memory: Memory) -> StatusOr[Memory]:
        try:
            with self._transaction() as cursor:
                self._insert(cursor, "memory", MEMORY_COLUMNS, (
                    memory.memory_id,
                    memory.space_id,
                    memory.content_ref,
                    memory.content_type,
                    self._json(memory.metadata),
                    memory.processing_status.value,
                    to_timestamp(memory.chunked_at),
                    memory.prep_attempt_count,
                    to_timestamp(memory.prep_next_attempt_at),
                    None,
                    None,
                    None,
                    None,
                    None,
                    to_timestamp(memory.created_at),
                    to_timestamp(memory.updated_at),
                    memory.created_by,
                    memory.updated_by,
                ))
        except self.integrity_errors as e:
            return StatusOr.of_status(Status.invalid_argument(
                f"memory '{memory.memory_id}' violates a constraint: {e}"
            ))
        except self.driver_errors as e:
            return self._internal("insert_memory", e)
        return StatusOr.of_value(memory)

    def get_memory(self, memory_id: str) -> StatusOr[Memory]:
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"SELECT * FROM {self._table('memory')} WHERE memory_id = ?",
                    (memory_id,),
                )
                rows = self._rows(cursor)
        except self.driver_errors as e:
            return self._internal("get_memory", e)
        if not rows:
            return StatusOr.of_status(Status.not_found(f"memory '{memory_id}' not found"))
        return StatusOr.of_value(Memory.from_dict(rows[0]))

    def list_memories(
        self,
        space_id: Optional[str] = None,
        statuses: Optional[Sequence[ProcessingStatus]] = None,
        limit: int = 1000,
    ) -> StatusOr[List[Memory]]:
        clauses, params = [], []
        if space_id is not None:
            clauses.append("space_id = ?")
            params.append(space_id)
        if statuses:
            clauses.append(f"processing_status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = self._select_limited(
            "*", f"FROM {self._table('memory')} {where} ORDER BY created_at", limit
        )
        try:
            with self._transaction() as cursor:
                cursor.execute(sql, tuple(params))
                rows = self._rows(cursor)
        except self.driver_errors as e:
            return self._internal("list_memories", e)
        return StatusOr.of_value([Memory.from_dict(r) for r in rows])

    def delete_memory(self, memory_id: str) -> StatusOr[bool]:
        """
        Delete a memory and its chunks.

        Outstanding claims vanish with the rows, so in-flight results for
        these chunks are discarded by the conditional write.
        """
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"DELETE FROM {self._table('memory_chunk')} WHERE memory_id = ?",
                    (memory_id,),
                )
                chunk_count = cursor.rowcount
                cursor.execute(
                    f"DELETE FROM {self._table('memory')} WHERE memory_id = ?",
                    (memory_id,),
                )
                deleted = cursor.rowcount > 0
        except self.driver_errors as e:
            return self._internal("delete_memory", e)
        if deleted:
            self.logger.info(f"Deleted memory {memory_id} with {chunk_count} chunks")
        return StatusOr.of_value(deleted)

    # =========================================================================
    # Preparation (fetch + chunk) claims
    # =========================================================================

    def claim_memory_for_preparation(
        self,
        worker_id: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> StatusOr[Optional[Memory]]:
        """
        Atomically claim one memory that still needs chunking.

        Returns:
            The claimed memory (with its new prep_claim_token), or None if
            nothing is waiting
        """
        now = now or utc_now()
        ts = to_timestamp(now)
        lease = to_timestamp(now + timedelta(seconds=lease_seconds))
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    self._select_limited(
                        "memory_id",
                        f"FROM {self._table('memory')} WHERE {_MEMORY_PREPARABLE} "
                        "ORDER BY created_at",
                        8,
                    ),
                    (ts,),
                )
                candidates = [row[0] for row in cursor.fetchall()]
                for memory_id in candidates:
                    token = new_id()
                    cursor.execute(f"""
                        UPDATE {self._table('memory')}
                        SET prep_claimed_by = ?,
                            prep_claim_token = ?,
                            prep_lease_expires_at = ?,
                            prep_attempt_count = prep_attempt_count + 1,
                            prep_next_attempt_at = NULL,
                            failure_code = NULL,
                            failure_reason = NULL,
                            processing_status = ?,
                            updated_at = ?
                        WHERE memory_id = ? AND {_MEMORY_PREPARABLE}
                    """, (
                        worker_id, token, lease, ProcessingStatus.PENDING.value,
                        ts, memory_id, ts,
                    ))
                    if cursor.rowcount == 1:
                        cursor.execute(
                            f"SELECT * FROM {self._table('memory')} WHERE memory_id = ?",
                            (memory_id,),
                        )
                        return StatusOr.of_value(Memory.from_dict(self._rows(cursor)[0]))
        except self.driver_errors as e:
            return self._internal("claim_memory_for_preparation", e)
        return StatusOr.of_value(None)

    def insert_chunks(
        self,
        memory_id: str,
        claim_token: str,
        records: Sequence[ChunkRecord],
        oversized_reason: str = "",
        now: Optional[datetime] = None,
    ) -> StatusOr[bool]:
        """
        Persist the chunker's output and mark the memory chunked.

        Conditioned on the memory still existing and still being claimed
        with claim_token. Oversized records are stored terminally FAILED.

        Returns:
            True if inserted, False if the claim was lost (deleted or
            re-queued meanwhile)
        """
        ts = to_timestamp(now or utc_now())
        try:
            with self._transaction() as cursor:
                cursor.execute(f"""
                    UPDATE {self._table('memory')}
                    SET chunked_at = ?,
                        prep_claimed_by = NULL,
                        prep_claim_token = NULL,
                        prep_lease_expires_at = NULL,
                        prep_next_attempt_at = NULL,
                        failure_code = NULL,
                        failure_reason = NULL,
                        updated_at = ?
                    WHERE memory_id = ? AND prep_claim_token = ? AND chunked_at IS NULL
                """, (ts, ts, memory_id, claim_token))
                if cursor.rowcount != 1:
                    return StatusOr.of_value(False)

                for record in records:
                    failed = record.oversized
                    self._insert(cursor, "memory_chunk", CHUNK_COLUMNS, (
                        new_id(),
                        memory_id,
                        record.sequence_number,
                        record.start_offset,
                        record.end_offset,
                        record.text,
                        None,
                        (VectorStatus.FAILED if failed else VectorStatus.PENDING).value,
                        0,
                        None,
                        None,
                        None,
                        None,
                        StatusCode.INVALID_ARGUMENT.value if failed else None,
                        oversized_reason if failed else None,
                        ts,
                        ts,
                        None,
                        None,
                    ))
        except self.driver_errors as e:
            return self._internal("insert_chunks", e)
        return StatusOr.of_value(True)

    def fail_preparation(
        self,
        memory_id: str,
        claim_token: str,
        status: Status,
        next_attempt_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> StatusOr[bool]:
        """
        Record a preparation failure and release the claim.

        With next_attempt_at the memory is retried once it is due;
        without it the failure is terminal.
        """
        ts = to_timestamp(now or utc_now())
        try:
            with self._transaction() as cursor:
                cursor.execute(f"""
                    UPDATE {self._table('memory')}
                    SET prep_claimed_by = NULL,
                        prep_claim_token = NULL,
                        prep_lease_expires_at = NULL,
                        prep_next_attempt_at = ?,
                        failure_code = ?,
                        failure_reason = ?,
                        updated_at = ?
                    WHERE memory_id = ? AND prep_claim_token = ?
                """, (
                    to_timestamp(next_attempt_at),
                    status.code.value,
                    status.message,
                    ts,
                    memory_id,
                    claim_token,
                ))
                updated = cursor.rowcount == 1
        except self.driver_errors as e:
            return self._internal("fail_preparation", e)
        return StatusOr.of_value(updated)

    def reset_preparation(
        self,
        memory_id: str,
        updated_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StatusOr[bool]:
        """Re-queue an un-chunked memory for preparation with a fresh budget."""
        ts = to_timestamp(now or utc_now())
        try:
            with self._transaction() as cursor:
                cursor.execute(f"""
                    UPDATE {self._table('memory')}
                    SET prep_claimed_by = NULL,
                        prep_claim_token = NULL,
                        prep_lease_expires_at = NULL,
                        prep_next_attempt_at = NULL,
                        prep_attempt_count = 0,
                        failure_code = NULL,
                        failure_reason = NULL,
                        processing_status = ?,
                        updated_at = ?,
                        updated_by = ?
                    WHERE memory_id = ? AND chunked_at IS NULL
                """, (ProcessingStatus.PENDING.value, ts, updated_by, memory_id))
                updated = cursor.rowcount == 1
        except self.driver_errors as e:
            return self._internal("reset_preparation", e)
        return StatusOr.of_value(updated)

    # =========================================================================
    # Chunk claims and results
    # =========================================================================

    def claim_chunks(
        self,
        worker_id: str,
        limit: int,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> StatusOr[List[MemoryChunk]]:
        """
        Atomically claim up to limit chunks for embedding.

        Each claim is a conditional UPDATE that only succeeds if the chunk
        is still PENDING or a due retry, so two workers can never hold the
        same chunk. A successful claim moves the chunk to PROCESSING,
        increments attempt_count and issues a fresh claim_token.

        Returns:
            The claimed chunks (possibly empty)
        """
        now = now or utc_now()
        ts = to_timestamp(now)
        lease = to_timestamp(now + timedelta(seconds=lease_seconds))
        claimed: List[MemoryChunk] = []
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    self._select_limited(
                        "chunk_id",
                        f"FROM {self._table('memory_chunk')} WHERE {_CHUNK_CLAIMABLE} "
                        "ORDER BY updated_at, sequence_number",
                        max(limit * 2, limit + 4),
                    ),
                    (ts,),
                )
                candidates = [row[0] for row in cursor.fetchall()]
                for chunk_id in candidates:
                    if len(claimed) >= limit:
                        break
                    token = new_id()
                    cursor.execute(f"""
                        UPDATE {self._table('memory_chunk')}
                        SET vector_status = ?,
                            claimed_by = ?,
                            claim_token = ?,
                            lease_expires_at = ?,
                            attempt_count = attempt_count + 1,
                            next_attempt_at = NULL,
                            updated_at = ?
                        WHERE chunk_id = ? AND {_CHUNK_CLAIMABLE}
                    """, (
                        VectorStatus.PROCESSING.value, worker_id, token, lease,
                        ts, chunk_id, ts,
                    ))
                    if cursor.rowcount != 1:
                        continue
                    cursor.execute(
                        f"SELECT * FROM {self._table('memory_chunk')} WHERE chunk_id = ?",
                        (chunk_id,),
                    )
                    claimed.append(MemoryChunk.from_dict(self._rows(cursor)[0]))
        except self.driver_errors as e:
            return self._internal("claim_chunks", e)
        return StatusOr.of_value(claimed)

    def write_chunk_result(
        self,
        chunk_id: str,
        claim_token: str,
        vector_status: VectorStatus,
        embedding_vector: Optional[List[float]] = None,
        failure_code: Optional[StatusCode] = None,
        failure_reason: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> StatusOr[bool]:
        """
        Commit the outcome of one attempt in a single conditional UPDATE.

        Returns:
            True if written, False if the chunk was deleted, reset or
            reclaimed since the claim (result discarded)
        """
        ts = to_timestamp(now or utc_now())
        try:
            with self._transaction() as cursor:
                cursor.execute(f"""
                    UPDATE {self._table('memory_chunk')}
                    SET vector_status = ?,
                        embedding_vector = ?,
                        failure_code = ?,
                        failure_reason = ?,
                        next_attempt_at = ?,
                        claimed_by = NULL,
                        claim_token = NULL,
                        lease_expires_at = NULL,
                        updated_at = ?
                    WHERE chunk_id = ? AND claim_token = ? AND vector_status = ?
                """, (
                    vector_status.value,
                    self._json(embedding_vector),
                    failure_code.value if failure_code else None,
                    failure_reason,
                    to_timestamp(next_attempt_at),
                    ts,
                    chunk_id,
                    claim_token,
                    VectorStatus.PROCESSING.value,
                ))
                written = cursor.rowcount == 1
        except self.driver_errors as e:
            return self._internal("write_chunk_result", e)
        return StatusOr.of_value(written)

    def recover_expired_leases(
        self,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> StatusOr[List[str]]:
        """
        Release claims whose lease expired (crashed or stalled workers).

        Chunks with attempts left become due retries; chunks that used up
        their budget fail terminally with DEADLINE_EXCEEDED. Expired
        preparation claims are handled the same way.

        Returns:
            IDs of the memories whose status may have changed
        """
        ts = to_timestamp(now or utc_now())
        reason = "lease expired before the attempt completed"
        try:
            with self._transaction() as cursor:
                cursor.execute(f"""
                    SELECT DISTINCT memory_id FROM {self._table('memory_chunk')}
                    WHERE vector_status = ? AND lease_expires_at < ?
                """, (VectorStatus.PROCESSING.value, ts))
                affected = {row[0] for row in cursor.fetchall()}
                cursor.execute(f"""
                    SELECT memory_id FROM {self._table('memory')}
                    WHERE prep_claimed_by IS NOT NULL AND prep_lease_expires_at < ?
                """, (ts,))
                affected.update(row[0] for row in cursor.fetchall())
                if not affected:
                    return StatusOr.of_value([])

                for retry_clause, next_at in (
                    ("attempt_count < ?", ts),
                    ("attempt_count >= ?", None),
                ):
                    cursor.execute(f"""
                        UPDATE {self._table('memory_chunk')}
                        SET vector_status = ?,
                            embedding_vector = NULL,
                            failure_code = ?,
                            failure_reason = ?,
                            next_attempt_at = ?,
                            claimed_by = NULL,
                            claim_token = NULL,
                            lease_expires_at = NULL,
                            updated_at = ?
                        WHERE vector_status = ? AND lease_expires_at < ? AND {retry_clause}
                    """, (
                        VectorStatus.FAILED.value,
                        StatusCode.DEADLINE_EXCEEDED.value,
                        reason,
                        next_at,
                        ts,
                        VectorStatus.PROCESSING.value,
                        ts,
                        max_attempts,
                    ))
                    cursor.execute(f"""
                        UPDATE {self._table('memory')}
                        SET prep_claimed_by = NULL,
                            prep_claim_token = NULL,
                            prep_lease_expires_at = NULL,
                            prep_next_attempt_at = ?,
                            failure_code = ?,
                            failure_reason = ?,
                            updated_at = ?
                        WHERE prep_claimed_by IS NOT NULL AND prep_lease_expires_at < ?
                          AND prep_{retry_clause}
                    """, (
                        next_at,
                        StatusCode.DEADLINE_EXCEEDED.value,
                        reason,
                        ts,
                        ts,
                        max_attempts,
                    ))
        except self.driver_errors as e:
            return self._internal("recover_expired_leases", e)
        self.logger.info(f"Recovered expired leases for {len(affected)} memories")
        return StatusOr.of_value(sorted(affected))

    def reset_chunks(
        self,
        memory_id: str,
        chunk_ids: Optional[Sequence[str]] = None,
        updated_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StatusOr[int]:
        """
        Reset chunks of a memory to PENDING for re-embedding.

        Clears vector, attempts, failure details and any claim, so a result
        still in flight for a reset chunk is discarded.

        Args:
            memory_id: Owning memory
            chunk_ids: Chunks to reset (all chunks of the memory if None)

        Returns:
            Number of chunks reset, or NOT_FOUND if a listed chunk does not
            belong to the memory
        """
        ts = to_timestamp(now or utc_now())
        params: List[Any] = [VectorStatus.PENDING.value, ts, updated_by, memory_id]
        chunk_clause = ""
        if chunk_ids is not None:
            chunk_ids = list(dict.fromkeys(chunk_ids))
            if not chunk_ids:
                return StatusOr.of_value(0)
            chunk_clause = f"AND chunk_id IN ({', '.join('?' for _ in chunk_ids)})"
            params.extend(chunk_ids)
        try:
            with self._transaction() as cursor:
                if chunk_ids is not None:
                    cursor.execute(
                        f"SELECT chunk_id FROM {self._table('memory_chunk')} "
                        f"WHERE memory_id = ? {chunk_clause}",
                        (memory_id, *chunk_ids),
                    )
                    found = {row[0] for row in cursor.fetchall()}
                    missing = [c for c in chunk_ids if c not in found]
                    if missing:
                        return StatusOr.of_status(Status.not_found(
                            f"chunks not found in memory '{memory_id}': {', '.join(missing)}"
                        ))
                cursor.execute(f"""
                    UPDATE {self._table('memory_chunk')}
                    SET vector_status = ?,
                        embedding_vector = NULL,
                        attempt_count = 0,
                        next_attempt_at = NULL,
                        claimed_by = NULL,
                        claim_token = NULL,
                        lease_expires_at = NULL,
                        failure_code = NULL,
                        failure_reason = NULL,
                        updated_at = ?,
                        updated_by = ?
                    WHERE memory_id = ? {chunk_clause}
                """, tuple(params))
                count = cursor.rowcount
        except self.driver_errors as e:
            return self._internal("reset_chunks", e)
        return StatusOr.of_value(count)

    def get_chunks(self, memory_id: str) -> StatusOr[List[MemoryChunk]]:
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"SELECT * FROM {self._table('memory_chunk')} "
                    "WHERE memory_id = ? ORDER BY sequence_number",
                    (memory_id,),
                )
                rows = self._rows(cursor)
        except self.driver_errors as e:
            return self._internal("get_chunks", e)
        return StatusOr.of_value([MemoryChunk.from_dict(r) for r in rows])

    # =========================================================================
    # Status aggregation
    # =========================================================================

    def _count_chunks(self, cursor, memory_id: str) -> ChunkStatusCounts:
        cursor.execute(f"""
            SELECT vector_status,
                   CASE WHEN next_attempt_at IS NULL THEN 1 ELSE 0 END AS terminal,
                   COUNT(*) AS n
            FROM {self._table('memory_chunk')}
            WHERE memory_id = ?
            GROUP BY vector_status, CASE WHEN next_attempt_at IS NULL THEN 1 ELSE 0 END
        """, (memory_id,))
        counts = ChunkStatusCounts()
        for status, terminal, n in cursor.fetchall():
            if status == VectorStatus.PENDING.value:
                counts.pending += n
            elif status == VectorStatus.PROCESSING.value:
                counts.processing += n
            elif status == VectorStatus.GENERATED.value:
                counts.generated += n
            elif terminal:
                counts.failed_terminal += n
            else:
                counts.failed_retryable += n
        return counts

    def count_chunks(self, memory_id: str) -> StatusOr[ChunkStatusCounts]:
        try:
            with self._transaction() as cursor:
                counts = self._count_chunks(cursor, memory_id)
        except self.driver_errors as e:
            return self._internal("count_chunks", e)
        return StatusOr.of_value(counts)

    def update_memory_status(
        self,
        memory_id: str,
        derive: Callable[[Memory, ChunkStatusCounts], ProcessingStatus],
        now: Optional[datetime] = None,
    ) -> StatusOr[Optional[ProcessingStatus]]:
        """
        Recompute and store a memory's processing status atomically.

        The memory row is write-locked first, so concurrent recomputes for
        the same memory serialize and the last writer always sees every
        committed chunk transition.

        Returns:
            The stored status, or None if the memory no longer exists
        """
        ts = to_timestamp(now or utc_now())
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"UPDATE {self._table('memory')} SET updated_at = updated_at "
                    "WHERE memory_id = ?",
                    (memory_id,),
                )
                if cursor.rowcount != 1:
                    return StatusOr.of_value(None)
                cursor.execute(
                    f"SELECT * FROM {self._table('memory')} WHERE memory_id = ?",
                    (memory_id,),
                )
                memory = Memory.from_dict(self._rows(cursor)[0])
                counts = self._count_chunks(cursor, memory_id)
                status = derive(memory, counts)
                if status != memory.processing_status:
                    cursor.execute(f"""
                        UPDATE {self._table('memory')}
                        SET processing_status = ?, updated_at = ?
                        WHERE memory_id = ?
                    """, (status.value, ts, memory_id))
        except self.driver_errors as e:
            return self._internal("update_memory_status", e)
        return StatusOr.of_value(status)

    def list_memory_ids(
        self,
        statuses: Optional[Sequence[ProcessingStatus]] = None,
    ) -> StatusOr[List[str]]:
        """IDs of all memories, optionally restricted to the given statuses."""
        params: List[Any] = []
        where = ""
        if statuses:
            where = f"WHERE processing_status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"SELECT memory_id FROM {self._table('memory')} {where} ORDER BY created_at",
                    tuple(params),
                )
                ids = [row[0] for row in cursor.fetchall()]
        except self.driver_errors as e:
            return self._internal("list_memory_ids", e)
        return StatusOr.of_value(ids)
