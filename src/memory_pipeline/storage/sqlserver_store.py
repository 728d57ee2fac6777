"""
SQL Server-based pipeline store.

Production backend: every worker thread gets its own pyodbc connection, and
exclusivity comes from the conditional UPDATEs in PipelineStore rather than
from application locks.
"""

import re
import threading
from contextlib import nullcontext
from typing import Optional

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..core.logging import LoggerLike
from .base import PipelineStore


_RESERVED_WORDS = {
    'select', 'insert', 'update', 'delete', 'drop', 'create', 'alter',
    'exec', 'execute', 'union', 'where', 'from', 'table', 'database',
    'schema', 'index', 'grant', 'revoke', 'truncate', 'declare', 'set'
}


def is_valid_identifier(name: str) -> bool:
    """
    Validate that a name is a safe SQL identifier.

    Must start with a letter or underscore, contain only letters, digits
    and underscores, be at most 128 characters and not be a reserved word.
    """
    if not name or len(name) > 128:
        return False
    if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name):
        return False
    return name.lower() not in _RESERVED_WORDS


class SqlServerPipelineStore(PipelineStore):
    """
    SQL Server implementation of the pipeline store.

    Timestamps are stored as fixed-precision ISO-8601 UTC strings so the
    shared queries compare them the same way on both backends.
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "Memories",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "pipeline",
        auto_init: bool = True,
        trust_server_certificate: bool = True,
        logger: Optional[LoggerLike] = None,
    ):
        """
        Initialize the SQL Server store.

        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables (default: 'pipeline')
            auto_init: Whether to create schema and tables automatically
            trust_server_certificate: Whether to trust self-signed certificates
            logger: Logger for store diagnostics
        """
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for SqlServerPipelineStore. "
                "Install with: pip install pyodbc"
            )
        if not is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")

        super().__init__(logger=logger)
        self.driver_errors = (pyodbc.Error,)
        self.integrity_errors = (pyodbc.IntegrityError,)
        self.schema = schema

        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )

        self._thread_local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        self._connect()

        if auto_init:
            self.init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._connection()
            self.logger.debug(f"Connected to SQL Server pipeline store (schema: {self.schema})")
        except pyodbc.Error as e:
            self.logger.error(f"Failed to connect to SQL Server: {e}")
            raise

    def _connection(self):
        """Get (or create) a thread-local connection for safe concurrent use."""
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            conn = pyodbc.connect(self.connection_string, autocommit=False)
            self._thread_local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _lock(self):
        return nullcontext()

    def _table(self, name: str) -> str:
        return f"[{self.schema}].[{name}]"

    def _select_limited(self, columns: str, rest: str, limit: int) -> str:
        return f"SELECT TOP ({int(limit)}) {columns} {rest}"

    def _create_table(self, cursor, name: str, body: str) -> None:
        # Schema is validated by is_valid_identifier; table names are constants.
        cursor.execute(f"""
            IF NOT EXISTS (SELECT * FROM sys.tables t
                           JOIN sys.schemas s ON t.schema_id = s.schema_id
                           WHERE t.name = ? AND s.name = ?)
            BEGIN
                CREATE TABLE {self._table(name)} ({body})
            END
        """, (name, self.schema))

    def init_schema(self) -> None:
        """Initialize database schema and tables."""
        with self._transaction() as cursor:
            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
                BEGIN
                    EXEC('CREATE SCHEMA [{self.schema}]')
                END
            """, (self.schema,))

            self._create_table(cursor, "embedder", """
                embedder_id NVARCHAR(36) PRIMARY KEY,
                display_name NVARCHAR(255) NOT NULL,
                description NVARCHAR(MAX),
                provider_type NVARCHAR(16) NOT NULL
                    CHECK (provider_type IN ('OPENAI', 'VLLM', 'TEI')),
                endpoint_url NVARCHAR(400) NOT NULL,
                api_path NVARCHAR(200) NOT NULL DEFAULT '/v1/embeddings',
                model_identifier NVARCHAR(255) NOT NULL,
                dimensionality INT NOT NULL CHECK (dimensionality > 0),
                max_sequence_length INT,
                supported_modalities NVARCHAR(200) NOT NULL DEFAULT '["TEXT"]',
                credentials NVARCHAR(MAX),
                labels NVARCHAR(MAX) NOT NULL DEFAULT '{}',
                version NVARCHAR(64),
                owner_id NVARCHAR(128),
                created_at NVARCHAR(40) NOT NULL,
                updated_at NVARCHAR(40) NOT NULL,
                created_by NVARCHAR(128),
                updated_by NVARCHAR(128),
                CONSTRAINT uq_embedder_endpoint UNIQUE (endpoint_url, api_path, model_identifier)
            """)

            self._create_table(cursor, "space", """
                space_id NVARCHAR(36) PRIMARY KEY,
                owner_id NVARCHAR(128),
                name NVARCHAR(255) NOT NULL,
                labels NVARCHAR(MAX) NOT NULL DEFAULT '{}',
                embedding_model NVARCHAR(255) NOT NULL,
                public_read BIT NOT NULL DEFAULT 0,
                max_chunk_size INT,
                overlap_size INT,
                created_at NVARCHAR(40) NOT NULL,
                updated_at NVARCHAR(40) NOT NULL,
                created_by NVARCHAR(128),
                updated_by NVARCHAR(128),
                CONSTRAINT uq_space_owner_name UNIQUE (owner_id, name)
            """)

            # Tables created before the constraint existed
            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.key_constraints
                               WHERE name = 'uq_space_owner_name'
                               AND parent_object_id = OBJECT_ID(?))
                BEGIN
                    ALTER TABLE {self._table('space')}
                    ADD CONSTRAINT uq_space_owner_name UNIQUE (owner_id, name)
                END
            """, (f"{self.schema}.space",))

            self._create_table(cursor, "memory", f"""
                memory_id NVARCHAR(36) PRIMARY KEY,
                space_id NVARCHAR(36) NOT NULL
                    REFERENCES {self._table('space')} (space_id) ON DELETE CASCADE,
                content_ref NVARCHAR(2000) NOT NULL,
                content_type NVARCHAR(255),
                metadata NVARCHAR(MAX) NOT NULL DEFAULT '{{}}',
                processing_status NVARCHAR(16) NOT NULL DEFAULT 'PENDING',
                chunked_at NVARCHAR(40),
                prep_attempt_count INT NOT NULL DEFAULT 0,
                prep_next_attempt_at NVARCHAR(40),
                prep_claimed_by NVARCHAR(128),
                prep_claim_token NVARCHAR(36),
                prep_lease_expires_at NVARCHAR(40),
                failure_code NVARCHAR(32),
                failure_reason NVARCHAR(MAX),
                created_at NVARCHAR(40) NOT NULL,
                updated_at NVARCHAR(40) NOT NULL,
                created_by NVARCHAR(128),
                updated_by NVARCHAR(128)
            """)

            self._create_table(cursor, "memory_chunk", f"""
                chunk_id NVARCHAR(36) PRIMARY KEY,
                memory_id NVARCHAR(36) NOT NULL
                    REFERENCES {self._table('memory')} (memory_id) ON DELETE CASCADE,
                sequence_number INT NOT NULL,
                start_offset BIGINT NOT NULL,
                end_offset BIGINT NOT NULL,
                chunk_text NVARCHAR(MAX) NOT NULL,
                embedding_vector NVARCHAR(MAX),
                vector_status NVARCHAR(16) NOT NULL DEFAULT 'PENDING',
                attempt_count INT NOT NULL DEFAULT 0,
                next_attempt_at NVARCHAR(40),
                claimed_by NVARCHAR(128),
                claim_token NVARCHAR(36),
                lease_expires_at NVARCHAR(40),
                failure_code NVARCHAR(32),
                failure_reason NVARCHAR(MAX),
                created_at NVARCHAR(40) NOT NULL,
                updated_at NVARCHAR(40) NOT NULL,
                created_by NVARCHAR(128),
                updated_by NVARCHAR(128),
                CONSTRAINT uq_memory_chunk_sequence UNIQUE (memory_id, sequence_number),
                CONSTRAINT ck_memory_chunk_vector CHECK (
                    (embedding_vector IS NULL AND vector_status <> 'GENERATED')
                    OR (embedding_vector IS NOT NULL AND vector_status = 'GENERATED')
                )
            """)

            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.indexes
                               WHERE name = 'ix_memory_chunk_claim'
                               AND object_id = OBJECT_ID(?))
                BEGIN
                    CREATE INDEX ix_memory_chunk_claim
                    ON {self._table('memory_chunk')} (vector_status, next_attempt_at)
                END
            """, (f"{self.schema}.memory_chunk",))
        self.logger.debug("Initialized SQL Server pipeline store schema")

    def close(self) -> None:
        """Close the database connections."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except pyodbc.Error as e:
                    self.logger.debug(f"Ignoring error while closing connection: {e}")
            self._connections.clear()
        self.logger.debug("Closed SQL Server pipeline store connections")
