from datetime import datetime, timedelta, timezone

import pytest

from solo_tutor.runtime.memory.turn_store import InMemoryTurnStore

AXES = ("perspective", "color", "shading", "anatomy")


class KeywordEmbedder:
    """Deterministic 4-d embedder: one axis per art topic; text with no topic lands on the last axis."""

    dimensions = 4

    def __init__(self):
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        lowered = text.lower()
        vector = [float(lowered.count(axis)) for axis in AXES[:3]]
        vector.append(float(lowered.count(AXES[3])) or (0.0 if any(vector) else 1.0))
        return vector


class StepClock:
    """Monotonic fake clock advancing one second per reading."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(clock):
    return InMemoryTurnStore(dimensions=4, clock=clock)


@pytest.fixture
def embedder():
    return KeywordEmbedder()
