"""
Failure Taxonomy - Stage-tagged errors for the tutor pipeline

WHAT: Exception types raised by clients, store adapters, and the orchestrator
WHERE: solo_tutor/runtime/memory/errors.py - shared by every pipeline stage
WHO: Callers rendering stage-appropriate messages ("couldn't reach the tutor"
     vs. "couldn't save the reply")

Each pipeline failure carries the stage it originated from. Timeouts are not a
separate category: a timed-out generation call is a ``GenerationFailure``.
"""

from __future__ import annotations

from typing import Optional


class TurnFailure(RuntimeError):
    """Base class for failures that terminate an orchestration run."""

    stage: str = ""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EmbeddingFailure(TurnFailure):
    """Embedding upstream unavailable, rate-limited, timed out, or malformed."""

    stage = "Embedding"


class RetrievalFailure(TurnFailure):
    """Similarity search or recent-turn fetch failed."""

    stage = "Retrieving"


class GenerationFailure(TurnFailure):
    """Chat-completion upstream unavailable, rate-limited, timed out, or malformed."""

    stage = "Generating"


class PersistenceFailure(TurnFailure):
    """Writing a turn (or embedding the reply for writing) failed."""

    stage = "Persisting"


class ReplyNotSavedError(PersistenceFailure):
    """A reply was generated but could not be durably memorized.

    ``user_turn_id`` is set when the user turn was written before the failure.
    """

    def __init__(self, message: str, *, generated_text: str, user_turn_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.generated_text = generated_text
        self.user_turn_id = user_turn_id


class ConversationAccessError(LookupError):
    """The conversation does not exist or is not owned by the requesting user."""


class EmbeddingDimensionMismatch(ValueError):
    """A vector's length does not match the configured index dimensionality."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"expected embedding of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


__all__ = [
    "TurnFailure",
    "EmbeddingFailure",
    "RetrievalFailure",
    "GenerationFailure",
    "PersistenceFailure",
    "ReplyNotSavedError",
    "ConversationAccessError",
    "EmbeddingDimensionMismatch",
]
