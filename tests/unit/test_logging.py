"""
Unit tests for pipeline logging helpers.
"""

import json
import logging

import pytest

from memory_pipeline.core.logging import (
    PACKAGE_LOGGER,
    ContextAdapter,
    HumanReadableFormatter,
    StructuredFormatter,
    bind_logger,
    configure_logging,
)


def make_record(**extra):
    record = logging.LogRecord(
        name="memory_pipeline.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Chunk %s generated",
        args=("c-1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:

    def test_structured_includes_correlation_fields(self):
        line = StructuredFormatter().format(make_record(memory_id="m-1", attempt=2))

        entry = json.loads(line)
        assert entry["message"] == "Chunk c-1 generated"
        assert entry["level"] == "INFO"
        assert entry["memory_id"] == "m-1"
        assert entry["attempt"] == 2
        assert "timestamp" in entry
        assert "chunk_id" not in entry

    def test_structured_without_timestamp(self):
        entry = json.loads(StructuredFormatter(include_timestamp=False).format(make_record()))

        assert "timestamp" not in entry

    def test_human_readable_context_suffix(self):
        line = HumanReadableFormatter(include_timestamp=False).format(
            make_record(worker_id="w-1", chunk_id="c-1")
        )

        assert line == "memory_pipeline.test - INFO - Chunk c-1 generated [worker_id=w-1 chunk_id=c-1]"


class TestBindLogger:

    def test_fields_reach_records(self, caplog):
        log = bind_logger(logging.getLogger("memory_pipeline.bind"), worker_id="w-1", chunk_id=None)

        with caplog.at_level(logging.INFO, logger="memory_pipeline.bind"):
            log.info("claimed")

        record = caplog.records[-1]
        assert record.worker_id == "w-1"
        assert not hasattr(record, "chunk_id")

    def test_binding_accumulates(self):
        log = bind_logger(logging.getLogger("x"), worker_id="w-1")

        nested = bind_logger(log, memory_id="m-1")

        assert isinstance(nested, ContextAdapter)
        assert nested.extra == {"worker_id": "w-1", "memory_id": "m-1"}
        assert log.extra == {"worker_id": "w-1"}

    def test_default_logger(self):
        assert bind_logger(None, attempt=1).logger.name == PACKAGE_LOGGER


class TestConfigureLogging:

    @pytest.fixture(autouse=True)
    def reset_package_logger(self):
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        saved_handlers, saved_level = list(package_logger.handlers), package_logger.level
        package_logger.handlers = []
        yield
        package_logger.handlers = saved_handlers
        package_logger.setLevel(saved_level)

    def test_structured_handler(self):
        logger = configure_logging(level="debug", structured=True)

        assert logger.level == logging.DEBUG
        assert isinstance(logger.handlers[0].formatter, StructuredFormatter)

    def test_handler_added_once(self):
        configure_logging()
        configure_logging()

        assert len(logging.getLogger(PACKAGE_LOGGER).handlers) == 1

    def test_unknown_level_falls_back_to_info(self):
        assert configure_logging(level="chatty").level == logging.INFO
