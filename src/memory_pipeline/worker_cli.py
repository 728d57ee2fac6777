#!/usr/bin/env python3
"""
CLI entry point for the memory pipeline worker.

Usage:
    memory-pipeline --config config/pipeline.yaml init-db
    memory-pipeline --config config/pipeline.yaml run [--workers 8]
    memory-pipeline --config config/pipeline.yaml run --until-idle
    memory-pipeline --config config/pipeline.yaml status <memory_id> [--json]
    memory-pipeline --config config/pipeline.yaml reprocess <memory_id> [--chunk <chunk_id> ...]
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import PipelineConfig
from .content.fetcher import HttpFetcher, InlineFetcher, LocalFileFetcher, RoutingFetcher
from .core.exceptions import PipelineError
from .core.logging import configure_logging
from .pipeline.coordinator import PipelineCoordinator
from .pipeline.service import MemoryService
from .providers.rate_limiter import LimiterRegistry
from .registry.embedder_registry import EmbedderRegistry
from .security.credentials import CredentialCipher, get_credentials_key
from .storage import PipelineStore, create_store


logger = logging.getLogger("memory_pipeline.worker_cli")


def setup_logging(config: PipelineConfig, verbose: bool = False) -> None:
    """Configure the package logger from the logging section."""
    settings = config.logging_config()
    configure_logging(
        level=logging.DEBUG if verbose else settings.level,
        structured=settings.structured,
        include_timestamp=settings.include_timestamp,
    )


def build_store(config: PipelineConfig, auto_init: bool = True) -> PipelineStore:
    """Build the pipeline store from configuration."""
    store_config = config.store()
    if store_config.backend == "sqlite":
        Path(store_config.db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_store(
        backend=store_config.backend,
        db_path=store_config.db_path,
        connection_string=store_config.connection_string,
        host=store_config.host,
        port=store_config.port,
        database=store_config.database,
        username=store_config.username,
        password=store_config.password,
        driver=store_config.driver,
        schema=store_config.schema,
        trust_server_certificate=store_config.trust_server_certificate,
        auto_init=auto_init,
    )


def build_cipher(config: PipelineConfig) -> Optional[CredentialCipher]:
    """Build the credential cipher, or None if no key is configured."""
    settings = config.credentials()
    key = get_credentials_key(
        key_source=settings.key_source,
        key_env_var=settings.key_env_var,
        key_file_path=settings.key_file_path,
    )
    if key is None:
        logger.warning(
            "No credentials key configured; embedders with credentials cannot be used"
        )
        return None
    return CredentialCipher(key)


def build_fetcher(config: PipelineConfig) -> RoutingFetcher:
    """Build the scheme-routing content fetcher."""
    content = config.content()
    http = HttpFetcher(timeout_seconds=content.http_timeout_seconds)
    local = LocalFileFetcher(root=Path(content.local_root) if content.local_root else None)
    return RoutingFetcher(
        fetchers={
            "http": http,
            "https": http,
            "file": local,
            "inline": InlineFetcher(),
        },
        default=local,
    )


def build_coordinator(
    config: PipelineConfig,
    store: PipelineStore,
    workers: Optional[int] = None,
) -> PipelineCoordinator:
    """Wire the coordinator and its collaborators from configuration."""
    coordinator_config = config.coordinator()
    if workers:
        coordinator_config.max_workers = workers
    cipher = build_cipher(config)
    return PipelineCoordinator(
        store=store,
        fetcher=build_fetcher(config),
        registry=EmbedderRegistry(store, cipher=cipher),
        config=coordinator_config,
        provider_settings=config.provider_settings(),
        limiters=LimiterRegistry(),
        cipher=cipher,
    )


def cmd_init_db(config: PipelineConfig, args) -> int:
    """Create the pipeline schema and tables."""
    store = build_store(config, auto_init=False)
    try:
        store.init_schema()
    finally:
        store.close()
    logger.info(f"Initialized {config.store().backend} pipeline store")
    return 0


def cmd_run(config: PipelineConfig, args) -> int:
    """Run the worker pool until interrupted (or until idle)."""
    store = build_store(config)
    try:
        coordinator = build_coordinator(config, store, workers=args.workers)
        if args.until_idle:
            try:
                units = coordinator.run_until_idle()
                logger.info(f"Processed {units} units of work")
                print(json.dumps(coordinator.get_status()["metrics"], indent=2))
            finally:
                coordinator.stop()
            return 0
        metrics = coordinator.run()
        logger.info(f"Worker pool finished: {json.dumps(metrics.to_dict())}")
        return 0
    finally:
        store.close()


def cmd_status(config: PipelineConfig, args) -> int:
    """Print the status of one memory."""
    store = build_store(config)
    try:
        service = MemoryService(store, EmbedderRegistry(store))
        result = service.get_status(args.memory_id)
        if not result.is_ok:
            logger.error(f"Failed to get status: {result.status}")
            return 1

        report = result.value
        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
            return 0

        counts = report.counts
        print(f"Memory:   {report.memory_id}")
        print(f"Space:    {report.space_id}")
        print(f"Status:   {report.processing_status.value}")
        print(
            f"Chunks:   {counts.total} total, {counts.generated} generated, "
            f"{counts.pending + counts.processing} in progress, "
            f"{counts.failed_retryable} retrying, {counts.failed_terminal} failed"
        )
        if report.failure_code:
            print(f"Failure:  {report.failure_code.value}: {report.failure_reason}")
        if report.needs_reprocess:
            print("Reprocessing is required to make further progress.")
        for chunk in report.chunks:
            if chunk.failure_code:
                print(
                    f"  #{chunk.sequence_number} {chunk.chunk_id} "
                    f"{chunk.vector_status.value} after {chunk.attempt_count} attempts: "
                    f"{chunk.failure_code.value}: {chunk.failure_reason}"
                )
        return 0
    finally:
        store.close()


def cmd_reprocess(config: PipelineConfig, args) -> int:
    """Reset chunks of a memory (or re-queue its preparation)."""
    store = build_store(config)
    try:
        service = MemoryService(store, EmbedderRegistry(store))
        result = service.reprocess(args.memory_id, chunk_ids=args.chunk or None)
        if not result.is_ok:
            logger.error(f"Failed to reprocess: {result.status}")
            return 1
        logger.info(f"Reset {result.value} chunks of memory {args.memory_id}")
        return 0
    finally:
        store.close()


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Memory pipeline worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create the pipeline schema and tables")

    run_parser = subparsers.add_parser("run", help="Run the worker pool")
    run_parser.add_argument("--workers", type=int, help="Override coordinator.max_workers")
    run_parser.add_argument(
        "--until-idle",
        action="store_true",
        help="Process on this thread until no work is claimable, then exit",
    )

    status_parser = subparsers.add_parser("status", help="Show the status of a memory")
    status_parser.add_argument("memory_id", help="Memory ID")
    status_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    reprocess_parser = subparsers.add_parser("reprocess", help="Re-embed a memory's chunks")
    reprocess_parser.add_argument("memory_id", help="Memory ID")
    reprocess_parser.add_argument(
        "--chunk",
        action="append",
        help="Chunk ID to reset (repeatable; all chunks when omitted)",
    )

    return parser.parse_args(argv)


COMMANDS = {
    "init-db": cmd_init_db,
    "run": cmd_run,
    "status": cmd_status,
    "reprocess": cmd_reprocess,
}


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command not in COMMANDS:
        print("No command specified. Use --help for usage.", file=sys.stderr)
        return 1

    try:
        config = PipelineConfig(args.config)
        setup_logging(config, verbose=args.verbose)
        return COMMANDS[args.command](config, args)
    except PipelineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
