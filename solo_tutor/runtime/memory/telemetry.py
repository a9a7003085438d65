"""
Stage Telemetry - timing spans for the tutor turn pipeline

WHAT: One span per orchestration stage, handed to a pluggable sink
WHERE: solo_tutor/runtime/memory/telemetry.py - observability layer
WHO: ConversationOrchestrator (``tutor.embedding`` ... ``tutor.persisting``)
TIME: Sinks run synchronously when a stage finishes

Attributes are counts, identifiers, model names and durations. Turn text and
embeddings never go into a span.
"""

from __future__ import annotations

import logging
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class TelemetrySpan(AbstractContextManager["TelemetrySpan"]):
    """Times one stage; on exit adds ``success``, ``duration_ms`` and, on error, ``error_type``."""

    def __init__(
        self,
        client: "TelemetryClient",
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._client = client
        self.name = name
        self.attributes: Dict[str, Any] = dict(attributes or {})
        self._started: Optional[float] = None

    def __enter__(self) -> "TelemetrySpan":
        self._started = time.perf_counter()
        return self

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def __exit__(self, exc_type, exc, exc_tb) -> bool:
        started = self._started if self._started is not None else time.perf_counter()
        finished = dict(self.attributes)
        finished.setdefault("success", exc is None)
        if exc_type is not None:
            finished.setdefault("error_type", exc_type.__name__)
        finished["duration_ms"] = (time.perf_counter() - started) * 1000.0
        self.attributes = finished
        self._client.emit_span(self.name, finished)
        return False


class TelemetryClient:
    """Span factory; subclasses decide where finished spans go via ``emit_span``."""

    def span(
        self,
        name: str,
        *,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> TelemetrySpan:
        return TelemetrySpan(self, name, attributes)

    def emit_span(self, name: str, attributes: Dict[str, Any]) -> None:
        raise NotImplementedError


@dataclass(slots=True)
class NoOpTelemetryClient(TelemetryClient):
    """Default sink: spans are timed and dropped."""

    def emit_span(self, name: str, attributes: Dict[str, Any]) -> None:  # noqa: D401 - intentionally empty
        pass


class LoggingTelemetryClient(TelemetryClient):
    """Logs finished spans; failed stages are raised to WARNING."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    def emit_span(self, name: str, attributes: Dict[str, Any]) -> None:
        level = self.level if attributes.get("success", True) else max(self.level, logging.WARNING)
        payload = {k: attributes[k] for k in sorted(attributes)}
        logger.log(level, "[telemetry] %s: %s", name, payload)


__all__ = [
    "TelemetrySpan",
    "TelemetryClient",
    "NoOpTelemetryClient",
    "LoggingTelemetryClient",
]
