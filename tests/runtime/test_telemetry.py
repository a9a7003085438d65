import logging

import pytest

from solo_tutor.runtime.memory.telemetry import (
    LoggingTelemetryClient,
    NoOpTelemetryClient,
    TelemetryClient,
)


class CaptureTelemetryClient(TelemetryClient):
    def __init__(self) -> None:
        self.spans: list[tuple[str, dict]] = []

    def emit_span(self, name: str, attributes: dict) -> None:
        self.spans.append((name, attributes))


def test_span_records_duration_and_attributes():
    client = CaptureTelemetryClient()
    with client.span("tutor.embedding", attributes={"text_chars": 12}) as span:
        span.set_attribute("model", "text-embedding-3-large")

    name, attrs = client.spans[0]
    assert name == "tutor.embedding"
    assert attrs["text_chars"] == 12
    assert attrs["model"] == "text-embedding-3-large"
    assert attrs["success"] is True
    assert attrs["duration_ms"] >= 0


def test_span_marks_failure_and_does_not_swallow():
    client = CaptureTelemetryClient()
    with pytest.raises(KeyError):
        with client.span("tutor.retrieving"):
            raise KeyError("boom")

    _, attrs = client.spans[0]
    assert attrs["success"] is False
    assert attrs["error_type"] == "KeyError"


def test_noop_client_discards():
    with NoOpTelemetryClient().span("tutor.generating"):
        pass


def test_logging_client_writes_sorted_payload(caplog):
    caplog.set_level(logging.INFO, logger="solo_tutor.runtime.memory.telemetry")
    with LoggingTelemetryClient(logging.INFO).span("tutor.persisting", attributes={"b": 1, "a": 2}):
        pass
    assert "[telemetry] tutor.persisting" in caplog.text
    assert caplog.text.index("'a'") < caplog.text.index("'b'")


def test_base_client_requires_sink():
    with pytest.raises(NotImplementedError):
        with TelemetryClient().span("tutor.embedding"):
            pass


def test_logging_client_raises_failed_spans_to_warning(caplog):
    caplog.set_level(logging.DEBUG, logger="solo_tutor.runtime.memory.telemetry")
    with pytest.raises(RuntimeError):
        with LoggingTelemetryClient(logging.DEBUG).span("tutor.generating"):
            raise RuntimeError("down")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "RuntimeError" in record.getMessage()
