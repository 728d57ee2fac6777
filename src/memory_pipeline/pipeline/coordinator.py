"""
Pipeline Coordinator - drive memories and chunks through their state machines.

This module provides a ThreadPoolExecutor-based worker pool in which every
worker repeatedly:
- claims a memory that still needs preparation (fetch, route, chunk), or
- claims a small batch of embeddable chunks, embeds them per embedder and
  commits each result through the Vector Writer,
then refreshes the affected memories' derived status.

Chunk state machine:  PENDING → PROCESSING → {GENERATED, FAILED}
A FAILED chunk with a next_attempt_at is a scheduled retry; the claim query
picks it up once it is due. Exclusivity comes from the store's atomic claim,
crash recovery from lease expiry.
"""

import logging
import os
import signal
import socket
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..chunking.chunker import Chunker
from ..content.fetcher import ContentFetcher, modality_of
from ..contracts.models import (
    ChunkingConfig,
    ChunkRecord,
    Embedder,
    Memory,
    MemoryChunk,
    Modality,
    ProviderType,
)
from ..core.logging import LoggerLike, bind_logger
from ..core.status import Status, StatusOr
from ..core.utils import utc_now
from ..providers.base import EmbeddingClient, ProviderSettings
from ..providers.factory import create_embedding_client
from ..providers.rate_limiter import LimiterRegistry
from ..registry.embedder_registry import EmbedderRegistry
from ..security.credentials import CredentialCipher
from ..storage.base import PipelineStore
from ..storage.vector_writer import VectorWriter
from .aggregator import StatusAggregator
from .retry import RetryConfig, next_attempt_at


ClientFactory = Callable[[Embedder], StatusOr[EmbeddingClient]]


@dataclass
class CoordinatorConfig:
    """
    Configuration for the pipeline coordinator.

    Attributes:
        max_workers: Number of worker threads
        lease_seconds: How long a claim is valid before it may be recovered
        poll_interval_seconds: Idle wait between claim attempts
        claim_batch_size: Chunks a worker claims at once
        recovery_interval_seconds: Seconds between expired-lease sweeps
        chunking: Default chunking configuration (spaces may override)
        retry: Retry/backoff policy for transient failures
    """
    max_workers: int = 4
    lease_seconds: int = 300
    poll_interval_seconds: float = 1.0
    claim_batch_size: int = 8
    recovery_interval_seconds: float = 30.0
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CoordinatorConfig":
        defaults = cls()
        chunking = data.get("chunking") or {}
        return cls(
            max_workers=int(data.get("max_workers", defaults.max_workers)),
            lease_seconds=int(data.get("lease_seconds", defaults.lease_seconds)),
            poll_interval_seconds=float(
                data.get("poll_interval_seconds", defaults.poll_interval_seconds)
            ),
            claim_batch_size=int(data.get("claim_batch_size", defaults.claim_batch_size)),
            recovery_interval_seconds=float(
                data.get("recovery_interval_seconds", defaults.recovery_interval_seconds)
            ),
            chunking=ChunkingConfig(
                max_chunk_size=int(chunking.get("max_chunk_size", defaults.chunking.max_chunk_size)),
                overlap_size=int(chunking.get("overlap_size", defaults.chunking.overlap_size)),
            ),
            retry=RetryConfig.from_dict(data.get("retry") or {}),
        )


@dataclass
class CoordinatorMetrics:
    """Aggregate metrics since the coordinator started."""
    started_at: datetime = field(default_factory=utc_now)
    memories_prepared: int = 0
    preparation_failures: int = 0
    chunks_generated: int = 0
    chunks_failed: int = 0
    retries_scheduled: int = 0
    results_discarded: int = 0
    leases_recovered: int = 0

    # Per-worker units of work
    worker_metrics: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "memories_prepared": self.memories_prepared,
            "preparation_failures": self.preparation_failures,
            "chunks_generated": self.chunks_generated,
            "chunks_failed": self.chunks_failed,
            "retries_scheduled": self.retries_scheduled,
            "results_discarded": self.results_discarded,
            "leases_recovered": self.leases_recovered,
            "worker_metrics": dict(self.worker_metrics),
        }


class PipelineCoordinator:
    """
    Multi-worker coordinator for the ingestion/embedding pipeline.

    Example:
        >>> coordinator = PipelineCoordinator(store, RoutingFetcher(), registry)
        >>> coordinator.run_until_idle()      # synchronous, e.g. in tests
        >>> coordinator.start()               # background worker pool
        >>> coordinator.stop()
    """

    def __init__(
        self,
        store: PipelineStore,
        fetcher: ContentFetcher,
        registry: EmbedderRegistry,
        config: Optional[CoordinatorConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        provider_settings: Optional[Dict[ProviderType, ProviderSettings]] = None,
        limiters: Optional[LimiterRegistry] = None,
        cipher: Optional[CredentialCipher] = None,
        logger: Optional[LoggerLike] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Pipeline store
            fetcher: Resolves memory content references
            registry: Resolves a space's embedding model
            config: Coordinator configuration (defaults if not provided)
            client_factory: Builds the embedding client for an embedder;
                defaults to the provider factory
            provider_settings: Timeouts/batch sizes/limits per provider type
            limiters: Shared per-embedder limiters
            cipher: Decrypts embedder credentials
            logger: Base logger for the coordinator and its components
            clock: Source of the current time
        """
        self.store = store
        self.fetcher = fetcher
        self.registry = registry
        self.config = config or CoordinatorConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.provider_settings = provider_settings or {}
        self.limiters = limiters or LimiterRegistry()
        self.cipher = cipher
        self._client_factory = client_factory or self._default_client_factory

        self.writer = VectorWriter(store, logger=self.logger)
        self.aggregator = StatusAggregator(store, logger=self.logger)
        self.metrics = CoordinatorMetrics()

        # Runtime state
        self._clients: Dict[str, EmbeddingClient] = {}
        self._clients_lock = threading.Lock()
        self._metrics_lock = threading.Lock()
        self._recovery_lock = threading.Lock()
        self._last_recovery: Optional[float] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._workers: Dict[str, Future] = {}
        self._shutdown_event = threading.Event()
        self._hostname = socket.gethostname()
        self._pid = os.getpid()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Rescan memory statuses, recover leases and start the worker pool."""
        if self._executor is not None:
            return
        self.logger.info(
            f"Starting pipeline coordinator: max_workers={self.config.max_workers}, "
            f"lease_seconds={self.config.lease_seconds}"
        )
        self._shutdown_event.clear()
        self.metrics = CoordinatorMetrics()
        self.recover_expired_leases(force=True)
        rescan = self.aggregator.rescan()
        if not rescan.is_ok:
            self.logger.error(f"Startup status rescan failed: {rescan.status}")

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="pipeline-worker",
        )
        for i in range(self.config.max_workers):
            worker_id = f"{self._hostname}-{self._pid}-{i}"
            self._workers[worker_id] = self._executor.submit(self._worker_loop, worker_id)
            self.logger.info(f"Started worker: {worker_id}")

    def stop(self, wait: bool = True) -> None:
        """
        Initiate graceful shutdown.

        Workers finish their current unit of work and exit. Claims of an
        interrupted process are recovered when their leases expire.
        """
        self.logger.info("Stopping pipeline coordinator...")
        self._shutdown_event.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        for worker_id, future in self._workers.items():
            if future.done() and future.exception():
                self.logger.error(f"Worker {worker_id} failed with error: {future.exception()}")
        self._workers.clear()
        with self._clients_lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
        self.logger.info(
            f"Coordinator stopped: generated={self.metrics.chunks_generated}, "
            f"failed={self.metrics.chunks_failed}, retries={self.metrics.retries_scheduled}"
        )

    def run(self, install_signal_handlers: bool = True) -> CoordinatorMetrics:
        """
        Run the worker pool until SIGINT/SIGTERM or stop() is called.

        Returns:
            Metrics of the run
        """
        original_handlers = {}
        if install_signal_handlers:
            def _handle_shutdown_signal(signum, frame):
                self.logger.info(f"Received signal {signum}, initiating shutdown...")
                self._shutdown_event.set()

            for sig in (signal.SIGINT, signal.SIGTERM):
                original_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, _handle_shutdown_signal)

        try:
            self.start()
            while not self._shutdown_event.is_set():
                self._shutdown_event.wait(0.5)
        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt, initiating shutdown...")
        finally:
            for sig, handler in original_handlers.items():
                signal.signal(sig, handler)
            self.stop()
        return self.metrics

    @property
    def running(self) -> bool:
        return self._executor is not None and not self._shutdown_event.is_set()

    def _worker_loop(self, worker_id: str) -> None:
        self.logger.info(f"Worker {worker_id} starting")
        processed = 0
        try:
            while not self._shutdown_event.is_set():
                try:
                    did_work = self.process_once(worker_id)
                except Exception as e:
                    self.logger.exception(f"Worker {worker_id} error: {e}")
                    did_work = False
                if did_work:
                    processed += 1
                else:
                    self._shutdown_event.wait(self.config.poll_interval_seconds)
        finally:
            self.logger.info(f"Worker {worker_id} stopped. Processed: {processed}")

    def run_until_idle(self, worker_id: str = "sync-worker", max_units: Optional[int] = None) -> int:
        """
        Process work on the calling thread until nothing is claimable.

        Retries scheduled in the future are not waited for.

        Returns:
            Number of units of work processed
        """
        self.recover_expired_leases(force=True)
        units = 0
        while max_units is None or units < max_units:
            if not self.process_once(worker_id):
                break
            units += 1
        return units

    # =========================================================================
    # Units of work
    # =========================================================================

    def process_once(self, worker_id: str) -> bool:
        """
        Claim and process one unit of work.

        Returns:
            True if a memory was prepared or chunks were processed
        """
        self.recover_expired_leases()

        claimed = self.store.claim_memory_for_preparation(
            worker_id, self.config.lease_seconds, now=self.clock()
        )
        if not claimed.is_ok:
            self.logger.error(f"Worker {worker_id} failed to claim a memory: {claimed.status}")
            return False
        if claimed.value is not None:
            self._prepare(claimed.value, worker_id)
            self._count(worker_id)
            return True

        chunks = self.store.claim_chunks(
            worker_id,
            self.config.claim_batch_size,
            self.config.lease_seconds,
            now=self.clock(),
        )
        if not chunks.is_ok:
            self.logger.error(f"Worker {worker_id} failed to claim chunks: {chunks.status}")
            return False
        if not chunks.value:
            return False

        self._process_chunks(chunks.value, worker_id)
        self._count(worker_id)
        return True

    def _count(self, worker_id: str) -> None:
        with self._metrics_lock:
            self.metrics.worker_metrics[worker_id] = self.metrics.worker_metrics.get(worker_id, 0) + 1

    def recover_expired_leases(self, force: bool = False) -> int:
        """Release expired claims and refresh the affected memories."""
        with self._recovery_lock:
            now = time.monotonic()
            if not force and self._last_recovery is not None \
                    and now - self._last_recovery < self.config.recovery_interval_seconds:
                return 0
            self._last_recovery = now

        result = self.store.recover_expired_leases(
            self.config.retry.max_attempts, now=self.clock()
        )
        if not result.is_ok:
            self.logger.error(f"Failed to recover expired leases: {result.status}")
            return 0
        for memory_id in result.value:
            self.aggregator.refresh(memory_id)
        with self._metrics_lock:
            self.metrics.leases_recovered += len(result.value)
        return len(result.value)

    # -------------------------------------------------------------------------
    # Preparation: fetch → route → chunk → insert
    # -------------------------------------------------------------------------

    def _prepare(self, memory: Memory, worker_id: str) -> None:
        log = bind_logger(
            self.logger,
            worker_id=worker_id,
            memory_id=memory.memory_id,
            attempt=memory.prep_attempt_count,
        )

        built = self._build_chunks(memory)
        if not built.is_ok:
            self._fail_preparation(memory, built.status, log)
            return

        records, embedder = built.value
        oversized_reason = (
            f"chunk cannot be split below the input limit of "
            f"{embedder.max_sequence_length} of embedder {embedder.embedder_id}"
        )
        inserted = self.store.insert_chunks(
            memory.memory_id,
            memory.prep_claim_token,
            records,
            oversized_reason=oversized_reason,
            now=self.clock(),
        )
        if not inserted.is_ok:
            self._fail_preparation(memory, inserted.status, log)
            return
        if not inserted.value:
            log.info("Discarded chunks: memory was deleted or re-queued")
            with self._metrics_lock:
                self.metrics.results_discarded += 1
            return

        with self._metrics_lock:
            self.metrics.memories_prepared += 1
        log.info(f"Chunked memory into {len(records)} chunks")
        self.aggregator.refresh(memory.memory_id)

    def _build_chunks(self, memory: Memory) -> StatusOr[Tuple[List[ChunkRecord], Embedder]]:
        space = self.store.get_space(memory.space_id)
        if not space.is_ok:
            return StatusOr.of_status(space.status)

        embedder = self.registry.lookup(space.value.embedding_model)
        if not embedder.is_ok:
            return StatusOr.of_status(embedder.status.with_message(
                f"resolving embedding model of space {space.value.space_id}"
            ))

        fetched = self.fetcher.fetch(memory.content_ref)
        if not fetched.is_ok:
            return StatusOr.of_status(fetched.status)

        content_type = memory.content_type or fetched.value.content_type
        modality = modality_of(content_type)
        if modality != Modality.TEXT:
            kind = modality.value if modality else content_type
            return StatusOr.of_status(Status.invalid_argument(
                f"modality not supported for chunking: {kind}"
            ))

        chunker = Chunker(space.value.chunking_config(self.config.chunking), logger=self.logger)
        records = chunker.chunk(
            fetched.value.data,
            content_type=content_type,
            max_input_length=embedder.value.max_sequence_length,
        )
        if not records.is_ok:
            return StatusOr.of_status(records.status)
        return StatusOr.of_value((records.value, embedder.value))

    def _fail_preparation(self, memory: Memory, status: Status, log) -> None:
        next_at = next_attempt_at(
            status, memory.prep_attempt_count, self.config.retry, self.clock()
        )
        result = self.store.fail_preparation(
            memory.memory_id, memory.prep_claim_token, status, next_at, now=self.clock()
        )
        if not result.is_ok:
            log.error(f"Could not record preparation failure: {result.status}")
            return
        if not result.value:
            log.info("Discarded preparation failure: memory was deleted or re-queued")
            with self._metrics_lock:
                self.metrics.results_discarded += 1
            return
        with self._metrics_lock:
            if next_at is not None:
                self.metrics.retries_scheduled += 1
            else:
                self.metrics.preparation_failures += 1
        if next_at is not None:
            log.warning(f"Preparation failed, retry at {next_at.isoformat()}: {status}")
        else:
            log.error(f"Preparation failed permanently: {status}")
        self.aggregator.refresh(memory.memory_id)

    # -------------------------------------------------------------------------
    # Embedding: group by embedder → embed → write
    # -------------------------------------------------------------------------

    def _process_chunks(self, chunks: List[MemoryChunk], worker_id: str) -> None:
        groups: Dict[str, Tuple[Embedder, List[MemoryChunk]]] = {}
        resolved: Dict[str, StatusOr[Embedder]] = {}

        for chunk in chunks:
            if chunk.memory_id not in resolved:
                resolved[chunk.memory_id] = self._embedder_for_memory(chunk.memory_id)
            embedder = resolved[chunk.memory_id]
            if not embedder.is_ok:
                self._fail_chunk(chunk, embedder.status, worker_id)
                continue
            key = embedder.value.embedder_id
            groups.setdefault(key, (embedder.value, []))[1].append(chunk)

        for embedder, group in groups.values():
            self._embed_group(embedder, group, worker_id)

        for memory_id in dict.fromkeys(c.memory_id for c in chunks):
            self.aggregator.refresh(memory_id)

    def _embedder_for_memory(self, memory_id: str) -> StatusOr[Embedder]:
        memory = self.store.get_memory(memory_id)
        if not memory.is_ok:
            return StatusOr.of_status(memory.status)
        space = self.store.get_space(memory.value.space_id)
        if not space.is_ok:
            return StatusOr.of_status(space.status)
        return self.registry.lookup(space.value.embedding_model)

    def _client_for(self, embedder: Embedder) -> StatusOr[EmbeddingClient]:
        with self._clients_lock:
            client = self._clients.get(embedder.embedder_id)
            if client is not None:
                return StatusOr.of_value(client)
            result = self._client_factory(embedder)
            if result.is_ok:
                self._clients[embedder.embedder_id] = result.value
            return result

    def _default_client_factory(self, embedder: Embedder) -> StatusOr[EmbeddingClient]:
        return create_embedding_client(
            embedder,
            provider_settings=self.provider_settings,
            limiters=self.limiters,
            cipher=self.cipher,
            logger=self.logger,
        )

    def _embed_group(self, embedder: Embedder, chunks: List[MemoryChunk], worker_id: str) -> None:
        client = self._client_for(embedder)
        if not client.is_ok:
            for chunk in chunks:
                self._fail_chunk(chunk, client.status, worker_id)
            return

        result = client.value.embed([c.chunk_text for c in chunks])
        if result.is_ok:
            for chunk, vector in zip(chunks, result.value):
                self._complete_chunk(chunk, vector, embedder, worker_id)
            return

        if result.status.permanent and len(chunks) > 1:
            # Re-embed one by one so a single bad input fails alone.
            for chunk in chunks:
                single = client.value.embed([chunk.chunk_text])
                if single.is_ok:
                    self._complete_chunk(chunk, single.value[0], embedder, worker_id)
                else:
                    self._fail_chunk(chunk, single.status, worker_id)
            return

        for chunk in chunks:
            self._fail_chunk(chunk, result.status, worker_id)

    def _complete_chunk(
        self,
        chunk: MemoryChunk,
        vector: List[float],
        embedder: Embedder,
        worker_id: str,
    ) -> None:
        log = bind_logger(
            self.logger,
            worker_id=worker_id,
            memory_id=chunk.memory_id,
            chunk_id=chunk.chunk_id,
            embedder_id=embedder.embedder_id,
            attempt=chunk.attempt_count,
        )
        written = self.writer.write_generated(
            chunk, vector, embedder.dimensionality, now=self.clock()
        )
        if not written.is_ok:
            if written.status.permanent:
                self._fail_chunk(chunk, written.status, worker_id)
            else:
                # The lease expires and recovery schedules a retry.
                log.error(f"Could not store vector: {written.status}")
            return
        with self._metrics_lock:
            if written.value:
                self.metrics.chunks_generated += 1
            else:
                self.metrics.results_discarded += 1
        if written.value:
            log.debug("Chunk embedded")

    def _fail_chunk(self, chunk: MemoryChunk, status: Status, worker_id: str) -> None:
        log = bind_logger(
            self.logger,
            worker_id=worker_id,
            memory_id=chunk.memory_id,
            chunk_id=chunk.chunk_id,
            attempt=chunk.attempt_count,
        )
        next_at = next_attempt_at(status, chunk.attempt_count, self.config.retry, self.clock())
        written = self.writer.write_failed(chunk, status, next_at, now=self.clock())
        if not written.is_ok:
            log.error(f"Could not record failure: {written.status}")
            return
        if not written.value:
            with self._metrics_lock:
                self.metrics.results_discarded += 1
            return

        with self._metrics_lock:
            if next_at is not None:
                self.metrics.retries_scheduled += 1
            else:
                self.metrics.chunks_failed += 1
        if next_at is not None:
            log.warning(
                f"Attempt {chunk.attempt_count}/{self.config.retry.max_attempts} failed, "
                f"retry at {next_at.isoformat()}: {status}"
            )
        else:
            log.error(f"Chunk failed after {chunk.attempt_count} attempt(s): {status}")

    def get_status(self) -> Dict[str, Any]:
        """Current coordinator state and metrics."""
        with self._metrics_lock:
            metrics = self.metrics.to_dict()
        return {
            "running": self.running,
            "workers": list(self._workers),
            "metrics": metrics,
        }
