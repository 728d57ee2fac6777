"""
Unit tests for Status and StatusOr.
"""

import pytest

from memory_pipeline.core.status import Status, StatusCode, StatusOr, StatusOrError


class TestStatus:

    def test_default_is_ok(self):
        status = Status()

        assert status.is_ok
        assert not status.permanent
        assert str(status) == "OK"

    @pytest.mark.parametrize("factory,code,transient", [
        (Status.invalid_argument, StatusCode.INVALID_ARGUMENT, False),
        (Status.not_found, StatusCode.NOT_FOUND, False),
        (Status.already_exists, StatusCode.ALREADY_EXISTS, False),
        (Status.resource_exhausted, StatusCode.RESOURCE_EXHAUSTED, True),
        (Status.deadline_exceeded, StatusCode.DEADLINE_EXCEEDED, True),
        (Status.internal, StatusCode.INTERNAL, False),
    ])
    def test_factories(self, factory, code, transient):
        status = factory("boom")

        assert status.code == code
        assert status.transient is transient
        assert status.permanent is not transient
        assert str(status) == f"{code.value}: boom"

    def test_transient_internal(self):
        assert Status.internal("db down", transient=True).transient

    def test_retry_after_hint(self):
        status = Status.resource_exhausted("slow down", retry_after_seconds=12)

        assert status.retry_after_seconds == 12

    def test_with_message_keeps_classification(self):
        status = Status.resource_exhausted("HTTP 429", retry_after_seconds=3)

        wrapped = status.with_message("embedder e1")

        assert wrapped.message == "embedder e1: HTTP 429"
        assert wrapped.code == StatusCode.RESOURCE_EXHAUSTED
        assert wrapped.transient
        assert wrapped.retry_after_seconds == 3

    @pytest.mark.parametrize("code,http", [
        (StatusCode.OK, 200),
        (StatusCode.INVALID_ARGUMENT, 400),
        (StatusCode.NOT_FOUND, 404),
        (StatusCode.ALREADY_EXISTS, 409),
        (StatusCode.RESOURCE_EXHAUSTED, 429),
        (StatusCode.DEADLINE_EXCEEDED, 504),
        (StatusCode.INTERNAL, 500),
    ])
    def test_http_status(self, code, http):
        assert code.http_status == http


class TestStatusOr:

    def test_value(self):
        result = StatusOr.of_value(42)

        assert result.is_ok
        assert result.value == 42

    def test_error_value_raises(self):
        result = StatusOr.of_status(Status.not_found("memory m1"))

        assert not result.is_ok
        with pytest.raises(StatusOrError) as excinfo:
            result.value
        assert excinfo.value.status.code == StatusCode.NOT_FOUND

    def test_of_status_rejects_ok(self):
        with pytest.raises(ValueError):
            StatusOr.of_status(Status.success())
