"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from memory_pipeline.contracts.models import ChunkRecord, ProviderType, Space
from memory_pipeline.core.status import Status, StatusOr
from memory_pipeline.pipeline.retry import RetryConfig
from memory_pipeline.registry.embedder_registry import EmbedderRegistry
from memory_pipeline.security.credentials import CredentialCipher
from memory_pipeline.storage.sqlite_store import SqlitePipelineStore


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def sqlserver_connection_string() -> Optional[str]:
    """Build the test connection string from PIPELINE_SQLSERVER_* variables."""
    conn_str = os.environ.get("PIPELINE_SQLSERVER_CONN_STR")
    if conn_str:
        return conn_str
    password = os.environ.get("PIPELINE_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
    if not password:
        return None

    host = os.environ.get("PIPELINE_SQLSERVER_HOST", "localhost")
    port = int(os.environ.get("PIPELINE_SQLSERVER_PORT", "1433"))
    database = os.environ.get("PIPELINE_SQLSERVER_DATABASE",
                              os.environ.get("MSSQL_DATABASE", "Memories"))
    username = os.environ.get("PIPELINE_SQLSERVER_USER", "sa")
    driver = os.environ.get("PIPELINE_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server")
    return (
        f"Driver={{{driver}}};"
        f"Server={host},{port};"
        f"Database={database};"
        f"UID={username};"
        f"PWD={password};"
        f"TrustServerCertificate=yes"
    )


def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    conn_str = sqlserver_connection_string()
    if not conn_str:
        return False

    try:
        import pyodbc

        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set MSSQL_SA_PASSWORD and ensure SQL Server is running)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Test doubles
# ============================================================================

class ScriptedEmbeddingClient:
    """
    Stand-in for an EmbeddingClient.

    Each embed() call consumes the next entry of the script: a Status makes
    the call fail, None makes it succeed. An exhausted script succeeds.
    fail_when(texts) may return a Status to fail a call based on its input.
    """

    def __init__(
        self,
        dimensionality: int,
        script: Optional[List[Optional[Status]]] = None,
        fail_when: Optional[Callable[[Sequence[str]], Optional[Status]]] = None,
    ):
        self.dimensionality = dimensionality
        self.script = list(script or [])
        self.fail_when = fail_when
        self.calls: List[List[str]] = []
        self.closed = False

    def embed(self, texts: Sequence[str]) -> StatusOr[List[List[float]]]:
        self.calls.append(list(texts))
        if self.script:
            outcome = self.script.pop(0)
            if outcome is not None:
                return StatusOr.of_status(outcome)
        if self.fail_when is not None:
            outcome = self.fail_when(texts)
            if outcome is not None:
                return StatusOr.of_status(outcome)
        return StatusOr.of_value([
            [float(len(text))] + [0.5] * (self.dimensionality - 1) for text in texts
        ])

    def close(self) -> None:
        self.closed = True


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def sqlserver_config() -> dict:
    """Session-scoped fixture providing SQL Server connection configuration."""
    return {
        "connection_string": sqlserver_connection_string(),
        "schema": os.environ.get("PIPELINE_SQLSERVER_SCHEMA", "test_pipeline"),
    }


@pytest.fixture
def store():
    """In-memory SQLite pipeline store."""
    store = SqlitePipelineStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(b"test-credentials-key")


@pytest.fixture
def registry(store, cipher) -> EmbedderRegistry:
    return EmbedderRegistry(store, cipher=cipher)


@pytest.fixture
def embedder(registry):
    """A registered 4-dimensional vLLM embedder."""
    result = registry.register(
        display_name="Test vLLM",
        provider_type=ProviderType.VLLM,
        endpoint_url="http://vllm.test:8000",
        model_identifier="test-embed-small",
        dimensionality=4,
    )
    assert result.is_ok, result.status
    return result.value


@pytest.fixture
def space(store, embedder) -> Space:
    """A space using the test embedder with small chunks."""
    result = store.insert_space(Space.create_new(
        name="test-space",
        embedding_model=embedder.embedder_id,
        max_chunk_size=10,
        overlap_size=0,
    ))
    assert result.is_ok, result.status
    return result.value


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy without delays so retries are due immediately."""
    return RetryConfig(max_attempts=3, initial_delay_ms=0, max_delay_ms=0, jitter=False)


@pytest.fixture
def chunked_memory(store, space):
    """
    Factory that stores a memory with the given chunk texts, bypassing
    fetching and chunking. Returns the memory id.
    """
    from memory_pipeline.contracts.models import Memory

    def _create(texts: Sequence[str]) -> str:
        memory = Memory.create_new(space_id=space.space_id, content_ref="inline:test")
        assert store.insert_memory(memory).is_ok
        claimed = store.claim_memory_for_preparation("fixture", lease_seconds=60).value
        assert claimed.memory_id == memory.memory_id

        records, offset = [], 0
        for i, text in enumerate(texts):
            size = len(text.encode("utf-8"))
            records.append(ChunkRecord(i, offset, offset + size, text))
            offset += size
        assert store.insert_chunks(memory.memory_id, claimed.prep_claim_token, records).value
        return memory.memory_id

    return _create


@pytest.fixture
def make_client():
    """Factory for ScriptedEmbeddingClient instances."""
    return ScriptedEmbeddingClient
