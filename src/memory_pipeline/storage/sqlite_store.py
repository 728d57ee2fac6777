"""
SQLite-based pipeline store.

Used for local development, single-host deployments and tests. One
connection is shared by all worker threads and guarded by a re-entrant lock.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

from ..core.logging import LoggerLike
from .base import PipelineStore


class SqlitePipelineStore(PipelineStore):
    """
    SQLite implementation of the pipeline store.

    Pass ":memory:" as db_path for an in-process database.
    """

    driver_errors = (sqlite3.Error,)
    integrity_errors = (sqlite3.IntegrityError,)

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        auto_init: bool = True,
        logger: Optional[LoggerLike] = None,
    ):
        """
        Initialize the SQLite store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
            auto_init: Whether to create tables automatically
            logger: Logger for store diagnostics
        """
        super().__init__(logger=logger)
        self.db_path = str(db_path)
        self._rlock = threading.RLock()
        self.conn = None
        self._connect()

        if auto_init:
            self.init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.logger.debug(f"Connected to SQLite pipeline store: {self.db_path}")

    def _connection(self):
        return self.conn

    def _lock(self):
        return self._rlock

    def _table(self, name: str) -> str:
        return name

    def _select_limited(self, columns: str, rest: str, limit: int) -> str:
        return f"SELECT {columns} {rest} LIMIT {int(limit)}"

    def init_schema(self) -> None:
        """Initialize database schema."""
        with self._transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS embedder (
                    embedder_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    description TEXT,
                    provider_type TEXT NOT NULL
                        CHECK (provider_type IN ('OPENAI', 'VLLM', 'TEI')),
                    endpoint_url TEXT NOT NULL,
                    api_path TEXT NOT NULL DEFAULT '/v1/embeddings',
                    model_identifier TEXT NOT NULL,
                    dimensionality INTEGER NOT NULL CHECK (dimensionality > 0),
                    max_sequence_length INTEGER,
                    supported_modalities TEXT NOT NULL DEFAULT '["TEXT"]',
                    credentials TEXT,
                    labels TEXT NOT NULL DEFAULT '{}',
                    version TEXT,
                    owner_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    created_by TEXT,
                    updated_by TEXT,
                    UNIQUE (endpoint_url, api_path, model_identifier)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS space (
                    space_id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    name TEXT NOT NULL,
                    labels TEXT NOT NULL DEFAULT '{}',
                    embedding_model TEXT NOT NULL,
                    public_read INTEGER NOT NULL DEFAULT 0,
                    max_chunk_size INTEGER,
                    overlap_size INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    created_by TEXT,
                    updated_by TEXT,
                    UNIQUE (owner_id, name)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memory (
                    memory_id TEXT PRIMARY KEY,
                    space_id TEXT NOT NULL
                        REFERENCES space (space_id) ON DELETE CASCADE,
                    content_ref TEXT NOT NULL,
                    content_type TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    processing_status TEXT NOT NULL DEFAULT 'PENDING',
                    chunked_at TEXT,
                    prep_attempt_count INTEGER NOT NULL DEFAULT 0,
                    prep_next_attempt_at TEXT,
                    prep_claimed_by TEXT,
                    prep_claim_token TEXT,
                    prep_lease_expires_at TEXT,
                    failure_code TEXT,
                    failure_reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    created_by TEXT,
                    updated_by TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memory_chunk (
                    chunk_id TEXT PRIMARY KEY,
                    memory_id TEXT NOT NULL
                        REFERENCES memory (memory_id) ON DELETE CASCADE,
                    sequence_number INTEGER NOT NULL,
                    start_offset INTEGER NOT NULL,
                    end_offset INTEGER NOT NULL,
                    chunk_text TEXT NOT NULL,
                    embedding_vector TEXT,
                    vector_status TEXT NOT NULL DEFAULT 'PENDING',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT,
                    claimed_by TEXT,
                    claim_token TEXT,
                    lease_expires_at TEXT,
                    failure_code TEXT,
                    failure_reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    created_by TEXT,
                    updated_by TEXT,
                    UNIQUE (memory_id, sequence_number),
                    CHECK ((embedding_vector IS NULL) = (vector_status <> 'GENERATED'))
                )
            """)

            # Indexes
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS ix_memory_chunk_claim
                ON memory_chunk (vector_status, next_attempt_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS ix_memory_prep
                ON memory (chunked_at, prep_claimed_by)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS ix_memory_space
                ON memory (space_id, created_at)
            """)
        self.logger.debug("Initialized pipeline store schema")

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            self.logger.debug("Closed SQLite pipeline store")
