"""Tests for structured logging."""

import json
import logging
from collections.abc import Iterator

import pytest

from listenlog.infrastructure.observability.logging import (
    CompactExceptionFormatter,
    CorrelationIdFilter,
    CustomJsonFormatter,
    configure_logging,
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
)


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg: str = "hello", exc_info: object = None) -> logging.LogRecord:
    return logging.LogRecord(
        name="listenlog.test",
        level=logging.ERROR,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=exc_info,  # type: ignore[arg-type]
    )


class TestCorrelationId:
    """Test correlation ID functionality."""

    def test_set_and_get_correlation_id(self) -> None:
        result = set_correlation_id("test-123-abc")
        assert result == "test-123-abc"
        assert get_correlation_id() == "test-123-abc"

    def test_set_correlation_id_generates_uuid_when_none(self) -> None:
        result = set_correlation_id(None)
        assert len(result) == 36
        assert get_correlation_id() == result

    def test_scope_sets_prefixed_id_and_restores(self) -> None:
        set_correlation_id("outer")
        with correlation_scope("sync") as scoped:
            assert scoped.startswith("sync-")
            assert get_correlation_id() == scoped
        assert get_correlation_id() == "outer"

    def test_filter_attaches_current_id(self) -> None:
        set_correlation_id("req-42")
        record = _record()
        assert CorrelationIdFilter().filter(record)
        assert record.correlation_id == "req-42"  # type: ignore[attr-defined]


class TestFormatters:
    """Test JSON and compact text output."""

    def test_json_formatter_includes_correlation_id(self) -> None:
        formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
        record = _record("sync finished")
        record.correlation_id = "sync-abc"  # type: ignore[attr-defined]
        payload = json.loads(formatter.format(record))
        assert payload["message"] == "sync finished"
        assert payload["level"] == "ERROR"
        assert payload["logger"] == "listenlog.test"
        assert payload["correlation_id"] == "sync-abc"

    def test_compact_formatter_shows_root_cause_first(self) -> None:
        try:
            try:
                raise ConnectionError("socket closed")
            except ConnectionError as e:
                raise RuntimeError("sync failed") from e
        except RuntimeError as e:
            rendered = CompactExceptionFormatter().formatException(
                (type(e), e, e.__traceback__)
            )
        lines = [line for line in rendered.splitlines() if line.startswith("╰─►")]
        assert lines == [
            "╰─► ConnectionError: socket closed",
            "╰─► RuntimeError: sync failed",
        ]


@pytest.mark.usefixtures("restore_root_logger")
class TestLoggingConfiguration:
    """Test logging configuration."""

    def test_configure_logging_debug_level(self) -> None:
        configure_logging(log_level="DEBUG", json_format=False, app_name="test-app")
        assert logging.getLogger("test").getEffectiveLevel() <= logging.DEBUG

    def test_configure_logging_replaces_handlers(self) -> None:
        configure_logging(log_level="INFO", json_format=True, app_name="test-app")
        configure_logging(log_level="INFO", json_format=True, app_name="test-app")
        root_logger = logging.getLogger()
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, CustomJsonFormatter)

    def test_http_libraries_are_quieted(self) -> None:
        configure_logging(log_level="DEBUG", json_format=False, app_name="test-app")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING
