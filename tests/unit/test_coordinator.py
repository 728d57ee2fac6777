"""
Unit tests for the pipeline coordinator.

These run the full claim → embed → write → aggregate loop against an
in-memory SQLite store, with scripted embedding clients or a mocked HTTP
session standing in for the providers.
"""

import threading
import time
from unittest.mock import Mock

import pytest

from memory_pipeline.content.fetcher import FetchedContent, InlineFetcher, RoutingFetcher
from memory_pipeline.contracts.models import (
    ChunkingConfig,
    ProcessingStatus,
    Space,
    VectorStatus,
)
from memory_pipeline.core.status import Status, StatusCode, StatusOr
from memory_pipeline.pipeline.coordinator import (
    CoordinatorConfig,
    CoordinatorMetrics,
    PipelineCoordinator,
)
from memory_pipeline.pipeline.service import MemoryService
from memory_pipeline.providers.base import ProviderSettings
from memory_pipeline.providers.vllm_client import VLLMEmbeddingClient


def make_response(status_code, body=None, headers=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    response.json.return_value = body
    return response


def openai_body(*vectors):
    return {"data": [{"index": i, "embedding": v} for i, v in enumerate(vectors)]}


@pytest.fixture
def service(store, registry):
    return MemoryService(store, registry)


@pytest.fixture
def make_coordinator(store, registry, fast_retry):
    """Build a coordinator with a fixed client factory."""
    def _make(client=None, client_factory=None, fetcher=None, **overrides):
        config = CoordinatorConfig(
            max_workers=overrides.pop("max_workers", 2),
            poll_interval_seconds=0.01,
            claim_batch_size=overrides.pop("claim_batch_size", 8),
            retry=fast_retry,
            **overrides,
        )
        if client_factory is None:
            client_factory = Mock(return_value=StatusOr.of_value(client))
        return PipelineCoordinator(
            store,
            fetcher or RoutingFetcher(),
            registry,
            config=config,
            client_factory=client_factory,
        )
    return _make


class TestCoordinatorConfig:
    """Tests for CoordinatorConfig dataclass."""

    def test_default_values(self):
        config = CoordinatorConfig()

        assert config.max_workers == 4
        assert config.lease_seconds == 300
        assert config.claim_batch_size == 8
        assert config.chunking == ChunkingConfig(2000, 200)
        assert config.retry.max_attempts == 5

    def test_from_dict(self):
        config = CoordinatorConfig.from_dict({
            "max_workers": 8,
            "lease_seconds": 60,
            "chunking": {"max_chunk_size": 500, "overlap_size": 50},
            "retry": {"max_attempts": 2},
        })

        assert config.max_workers == 8
        assert config.lease_seconds == 60
        assert config.chunking.max_chunk_size == 500
        assert config.retry.max_attempts == 2


class TestCoordinatorMetrics:

    def test_initialization(self):
        metrics = CoordinatorMetrics()

        assert metrics.chunks_generated == 0
        assert metrics.chunks_failed == 0
        assert metrics.retries_scheduled == 0
        assert metrics.results_discarded == 0
        assert metrics.to_dict()["worker_metrics"] == {}


class TestPreparation:
    """Fetch, route and chunk."""

    def test_memory_is_chunked_and_embedded(self, store, space, service, make_coordinator, make_client):
        client = make_client(4)
        coordinator = make_coordinator(client)
        memory_id = service.submit(space.space_id, "inline:" + "abcdefghij" * 3).value

        units = coordinator.run_until_idle()

        chunks = store.get_chunks(memory_id).value
        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 10), (10, 20), (20, 30)]
        assert all(c.vector_status == VectorStatus.GENERATED for c in chunks)
        assert all(len(c.embedding_vector) == 4 for c in chunks)
        assert store.get_memory(memory_id).value.processing_status == ProcessingStatus.COMPLETED
        assert units == 2
        assert coordinator.metrics.memories_prepared == 1
        assert coordinator.metrics.chunks_generated == 3

    def test_empty_content_completes_without_provider_call(self, store, space, service, make_coordinator):
        factory = Mock()
        coordinator = make_coordinator(client_factory=factory)
        memory_id = service.submit(space.space_id, "inline:").value

        coordinator.run_until_idle()

        memory = store.get_memory(memory_id).value
        assert memory.is_chunked
        assert store.get_chunks(memory_id).value == []
        assert memory.processing_status == ProcessingStatus.COMPLETED
        factory.assert_not_called()

    def test_non_text_content_fails_permanently(self, store, space, service, make_coordinator, make_client):
        coordinator = make_coordinator(make_client(4))
        memory_id = service.submit(
            space.space_id, "inline;base64,iVBORw0KGgo=", content_type="image/png"
        ).value

        coordinator.run_until_idle()

        memory = store.get_memory(memory_id).value
        assert memory.processing_status == ProcessingStatus.FAILED
        assert memory.failure_code == StatusCode.INVALID_ARGUMENT
        assert "modality" in memory.failure_reason
        assert memory.prep_next_attempt_at is None
        assert service.get_status(memory_id).value.needs_reprocess

    def test_missing_content_fails_permanently(self, store, space, service, make_coordinator, make_client, tmp_path):
        coordinator = make_coordinator(make_client(4))
        memory_id = service.submit(space.space_id, str(tmp_path / "missing.txt")).value

        coordinator.run_until_idle()

        memory = store.get_memory(memory_id).value
        assert memory.processing_status == ProcessingStatus.FAILED
        assert memory.failure_code == StatusCode.NOT_FOUND

    def test_transient_fetch_failure_is_retried(self, store, space, service, make_coordinator, make_client):
        fetcher = Mock()
        fetcher.fetch.side_effect = [
            StatusOr.of_status(Status.deadline_exceeded("object store timed out")),
            StatusOr.of_value(FetchedContent(data=b"hello", content_type="text/plain")),
        ]
        coordinator = make_coordinator(make_client(4), fetcher=fetcher)
        memory_id = service.submit(space.space_id, "s3://bucket/key").value

        coordinator.run_until_idle()

        memory = store.get_memory(memory_id).value
        assert memory.prep_attempt_count == 2
        assert memory.processing_status == ProcessingStatus.COMPLETED
        assert fetcher.fetch.call_count == 2
        assert coordinator.metrics.retries_scheduled == 1

    def test_unknown_embedding_model_fails_memory(self, store, service, make_coordinator, make_client):
        orphan = store.insert_space(Space.create_new("orphan", "no-such-model")).value
        coordinator = make_coordinator(make_client(4))
        memory_id = service.submit(orphan.space_id, "inline:text").value

        coordinator.run_until_idle()

        memory = store.get_memory(memory_id).value
        assert memory.processing_status == ProcessingStatus.FAILED
        assert memory.failure_code == StatusCode.NOT_FOUND

    def test_oversized_chunks_fail_without_provider_call(self, store, registry, service, make_coordinator, make_client):
        small = registry.register(
            display_name="Tiny",
            provider_type="TEI",
            endpoint_url="http://tei.test",
            model_identifier="tiny",
            dimensionality=4,
            max_sequence_length=4,
        ).value
        space = store.insert_space(Space.create_new(
            "tiny-space", small.embedder_id, max_chunk_size=10, overlap_size=5,
        )).value
        client = make_client(4)
        coordinator = make_coordinator(client)
        memory_id = service.submit(space.space_id, "inline:abcdefghij").value

        coordinator.run_until_idle()

        chunks = store.get_chunks(memory_id).value
        assert len(chunks) == 1
        assert chunks[0].vector_status == VectorStatus.FAILED
        assert chunks[0].failure_code == StatusCode.INVALID_ARGUMENT
        assert chunks[0].attempt_count == 0
        assert client.calls == []
        assert store.get_memory(memory_id).value.processing_status == ProcessingStatus.FAILED


class TestRetries:
    """Transient and permanent provider failures."""

    def test_rate_limited_twice_then_generated(self, store, space, service, embedder, make_coordinator):
        session = Mock()
        session.post.side_effect = [
            make_response(429, text="slow down"),
            make_response(429, text="slow down"),
            make_response(200, openai_body([0.1, 0.2, 0.3, 0.4])),
        ]
        client = VLLMEmbeddingClient(embedder, settings=ProviderSettings(), session=session)
        coordinator = make_coordinator(client)
        memory_id = service.submit(space.space_id, "inline:hello").value

        coordinator.run_until_idle()

        chunk = store.get_chunks(memory_id).value[0]
        assert chunk.vector_status == VectorStatus.GENERATED
        assert chunk.attempt_count == 3
        assert chunk.embedding_vector == [0.1, 0.2, 0.3, 0.4]
        assert chunk.failure_code is None
        assert session.post.call_count == 3
        assert coordinator.metrics.retries_scheduled == 2
        assert store.get_memory(memory_id).value.processing_status == ProcessingStatus.COMPLETED

    def test_wrong_dimensionality_fails_immediately(self, store, space, service, embedder, make_coordinator):
        session = Mock()
        session.post.return_value = make_response(200, openai_body([0.1, 0.2, 0.3]))
        client = VLLMEmbeddingClient(embedder, session=session)
        coordinator = make_coordinator(client)
        memory_id = service.submit(space.space_id, "inline:hello").value

        coordinator.run_until_idle()

        chunk = store.get_chunks(memory_id).value[0]
        assert chunk.vector_status == VectorStatus.FAILED
        assert chunk.attempt_count == 1
        assert chunk.next_attempt_at is None
        assert chunk.failure_code == StatusCode.INVALID_ARGUMENT
        assert chunk.embedding_vector is None
        assert session.post.call_count == 1
        assert store.get_memory(memory_id).value.processing_status == ProcessingStatus.FAILED

    def test_retry_budget_exhausted(self, store, space, service, make_coordinator, make_client):
        unavailable = Status.internal("HTTP 503", transient=True)
        client = make_client(4, script=[unavailable] * 5)
        coordinator = make_coordinator(client)
        memory_id = service.submit(space.space_id, "inline:hello").value

        coordinator.run_until_idle()

        chunk = store.get_chunks(memory_id).value[0]
        assert chunk.vector_status == VectorStatus.FAILED
        assert chunk.attempt_count == 3
        assert chunk.is_terminal_failure
        assert chunk.failure_code == StatusCode.INTERNAL
        assert len(client.calls) == 3
        assert store.get_memory(memory_id).value.processing_status == ProcessingStatus.FAILED

    def test_retry_not_due_is_not_claimed(self, store, space, service, registry, make_client):
        from memory_pipeline.pipeline.retry import RetryConfig

        client = make_client(4, script=[Status.resource_exhausted("busy", retry_after_seconds=60)])
        coordinator = PipelineCoordinator(
            store,
            RoutingFetcher(),
            registry,
            config=CoordinatorConfig(retry=RetryConfig(jitter=False)),
            client_factory=lambda embedder: StatusOr.of_value(client),
        )
        memory_id = service.submit(space.space_id, "inline:hello").value

        coordinator.run_until_idle()

        chunk = store.get_chunks(memory_id).value[0]
        assert chunk.vector_status == VectorStatus.FAILED
        assert chunk.next_attempt_at is not None
        assert (chunk.next_attempt_at - chunk.updated_at).total_seconds() >= 59
        assert len(client.calls) == 1
        assert store.get_memory(memory_id).value.processing_status == ProcessingStatus.PROCESSING


class TestBatching:

    def test_permanent_batch_failure_isolates_bad_chunk(self, store, chunked_memory, make_coordinator, make_client):
        def reject_bad(texts):
            if any("BAD" in t for t in texts):
                return Status.invalid_argument("HTTP 400: input rejected")
            return None

        client = make_client(4, fail_when=reject_bad)
        coordinator = make_coordinator(client)
        memory_id = chunked_memory(["good one", "BAD input", "good two"])

        coordinator.run_until_idle()

        chunks = store.get_chunks(memory_id).value
        assert [c.vector_status for c in chunks] == [
            VectorStatus.GENERATED, VectorStatus.FAILED, VectorStatus.GENERATED,
        ]
        assert chunks[1].is_terminal_failure
        assert len(client.calls) == 4
        assert len(client.calls[0]) == 3
        assert store.get_memory(memory_id).value.processing_status == ProcessingStatus.FAILED

    def test_transient_batch_failure_retries_all(self, store, chunked_memory, make_coordinator, make_client):
        client = make_client(4, script=[Status.deadline_exceeded("timeout")])
        coordinator = make_coordinator(client)
        memory_id = chunked_memory(["one", "two"])

        coordinator.run_until_idle()

        chunks = store.get_chunks(memory_id).value
        assert all(c.vector_status == VectorStatus.GENERATED for c in chunks)
        assert all(c.attempt_count == 2 for c in chunks)
        assert len(client.calls) == 2

    def test_client_factory_failure_fails_chunks(self, store, chunked_memory, make_coordinator):
        factory = Mock(return_value=StatusOr.of_status(
            Status.internal("embedder has stored credentials but no credentials key is configured")
        ))
        coordinator = make_coordinator(client_factory=factory)
        memory_id = chunked_memory(["one"])

        coordinator.run_until_idle()

        chunk = store.get_chunks(memory_id).value[0]
        assert chunk.is_terminal_failure
        assert chunk.failure_code == StatusCode.INTERNAL


class TestCancellation:

    def test_delete_during_processing_discards_results(self, store, chunked_memory, service, make_coordinator):
        entered = threading.Event()
        release = threading.Event()

        class BlockingClient:
            def embed(self, texts):
                entered.set()
                release.wait(5)
                return StatusOr.of_value([[1.0, 2.0, 3.0, 4.0] for _ in texts])

            def close(self):
                pass

        coordinator = make_coordinator(BlockingClient())
        memory_id = chunked_memory(["first", "second"])

        worker = threading.Thread(target=coordinator.process_once, args=("worker-0",))
        worker.start()
        assert entered.wait(5)

        in_flight = store.get_chunks(memory_id).value
        assert [c.vector_status for c in in_flight] == [VectorStatus.PROCESSING] * 2

        assert service.delete_memory(memory_id).value is True
        release.set()
        worker.join(5)

        assert store.get_memory(memory_id).status.code == StatusCode.NOT_FOUND
        assert store.get_chunks(memory_id).value == []
        assert coordinator.metrics.results_discarded == 2
        assert coordinator.metrics.chunks_generated == 0

    def test_space_deleted_during_processing_discards_results(
        self, store, space, chunked_memory, service, make_coordinator
    ):
        entered = threading.Event()
        release = threading.Event()

        class BlockingClient:
            def embed(self, texts):
                entered.set()
                release.wait(5)
                return StatusOr.of_value([[1.0, 2.0, 3.0, 4.0] for _ in texts])

            def close(self):
                pass

        coordinator = make_coordinator(BlockingClient())
        memory_id = chunked_memory(["first", "second"])

        worker = threading.Thread(target=coordinator.process_once, args=("worker-0",))
        worker.start()
        assert entered.wait(5)

        assert service.delete_space(space.space_id).value is True
        release.set()
        worker.join(5)

        assert store.get_space(space.space_id).status.code == StatusCode.NOT_FOUND
        assert store.get_memory(memory_id).status.code == StatusCode.NOT_FOUND
        assert store.get_chunks(memory_id).value == []
        assert coordinator.metrics.results_discarded == 2
        assert coordinator.metrics.chunks_generated == 0


class TestLeaseRecovery:

    def test_expired_lease_is_retried(self, store, chunked_memory, make_coordinator, make_client):
        memory_id = chunked_memory(["abandoned"])
        claimed = store.claim_chunks("crashed-worker", limit=1, lease_seconds=0).value
        assert len(claimed) == 1
        time.sleep(0.01)

        client = make_client(4)
        coordinator = make_coordinator(client)
        coordinator.run_until_idle()

        chunk = store.get_chunks(memory_id).value[0]
        assert chunk.vector_status == VectorStatus.GENERATED
        assert chunk.attempt_count == 2
        assert coordinator.metrics.leases_recovered == 1


class TestWorkerPool:

    def test_start_and_stop(self, store, space, service, make_coordinator, make_client):
        client = make_client(4)
        coordinator = make_coordinator(client, max_workers=2)
        memory_ids = [
            service.submit(space.space_id, f"inline:memory number {i}").value
            for i in range(3)
        ]

        coordinator.start()
        try:
            assert coordinator.running
            deadline = time.time() + 10
            while time.time() < deadline:
                statuses = [store.get_memory(m).value.processing_status for m in memory_ids]
                if all(s == ProcessingStatus.COMPLETED for s in statuses):
                    break
                time.sleep(0.02)
        finally:
            coordinator.stop()

        assert all(
            store.get_memory(m).value.processing_status == ProcessingStatus.COMPLETED
            for m in memory_ids
        )
        assert not coordinator.running
        assert client.closed
        status = coordinator.get_status()
        assert status["running"] is False
        assert sum(status["metrics"]["worker_metrics"].values()) >= 4
