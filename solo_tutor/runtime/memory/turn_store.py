"""
Turn Store - Vector Store Adapter interface and in-memory implementation

WHAT: Persistence and retrieval contract for conversations and embedded turns
WHERE: solo_tutor/runtime/memory/turn_store.py - storage boundary
WHO: Orchestrator, session boundary, and the backfill pass
TIME: In-memory operations O(n) in the owner's turn count

``TurnStore`` is the seam the orchestrator depends on. ``PostgresTurnStore``
(postgres_store.py) is the production adapter; ``InMemoryTurnStore`` keeps the
same contract for tests and local runs.

Retrieval contract:
- find_similar: owner-scoped, non-null embeddings only, similarity strictly
  above threshold, descending similarity with ties broken by ascending
  creation time, truncated to top_k.
- recent_turns: last ``limit`` turns of one conversation, oldest first.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np

from .errors import EmbeddingDimensionMismatch
from .models import Conversation, Role, SimilarityMatch, Turn, new_id, utcnow

logger = logging.getLogger(__name__)


class TurnStore(Protocol):
    """Abstract interface for tutor conversation persistence."""

    @property
    def dimensions(self) -> int:
        """Embedding dimensionality the index was built for."""

    def find_similar(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        threshold: float,
        top_k: int,
    ) -> List[SimilarityMatch]:
        """Owner-scoped cosine nearest neighbours above ``threshold``."""

    def recent_turns(self, conversation_id: str, limit: int) -> List[Turn]:
        """Most recent ``limit`` turns of a conversation in reading order."""

    def insert_turn(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        image_ref: Optional[str],
        embedding: Sequence[float],
    ) -> Turn:
        """Atomically write one embedded turn."""

    def create_conversation(self, owner_id: str, title: Optional[str] = None) -> Conversation:
        """Start a new conversation for ``owner_id``."""

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Return the conversation or ``None``."""

    def list_conversations(self, owner_id: str) -> List[Conversation]:
        """Owner's conversations, most recently updated first."""

    def rename_conversation(self, conversation_id: str, owner_id: str, title: Optional[str]) -> bool:
        """Set the display title; returns False when not found or not owned."""

    def delete_conversation(self, conversation_id: str, owner_id: str) -> bool:
        """Delete a conversation and its turns; returns False when not found or not owned."""

    def turns_missing_embeddings(self, owner_id: Optional[str] = None, limit: int = 100) -> List[Turn]:
        """Oldest-first turns whose embedding is still null."""

    def set_embedding(self, turn_id: str, embedding: Sequence[float]) -> bool:
        """Fill a null embedding; returns False when the turn is missing or already embedded."""


def check_dimensions(embedding: Sequence[float] | None, expected: int) -> List[float]:
    if embedding is None:
        raise ValueError("turn embedding is required before the turn can be written")
    vector = [float(v) for v in embedding]
    if len(vector) != expected:
        raise EmbeddingDimensionMismatch(expected, len(vector))
    return vector


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix`` (zero norm -> 0)."""

    q = np.asarray(query, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    if matrix.size == 0 or q_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * q_norm
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return np.clip(sims, -1.0, 1.0)


@dataclass(slots=True)
class _StoredTurn:
    turn: Turn
    seq: int


@dataclass(slots=True)
class InMemoryTurnStore:
    """Thread-safe in-process implementation of ``TurnStore``."""

    dimensions: int
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)
    _conversations: Dict[str, Conversation] = field(default_factory=dict, init=False, repr=False)
    _turns: Dict[str, _StoredTurn] = field(default_factory=dict, init=False, repr=False)
    _seq: "itertools.count[int]" = field(default_factory=itertools.count, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    # ------------------ retrieval ------------------
    def find_similar(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        threshold: float,
        top_k: int,
    ) -> List[SimilarityMatch]:
        check_dimensions(query_vector, self.dimensions)
        if top_k <= 0:
            return []
        with self._lock:
            owned = {cid for cid, c in self._conversations.items() if c.owner_id == owner_id}
            candidates = [
                s for s in self._turns.values()
                if s.turn.conversation_id in owned and s.turn.embedding is not None
            ]
        if not candidates:
            return []

        matrix = np.asarray([s.turn.embedding for s in candidates], dtype=np.float64)
        sims = cosine_similarities(query_vector, matrix)
        scored = [(float(sim), s) for sim, s in zip(sims, candidates) if sim > threshold]
        scored.sort(key=lambda item: (-item[0], item[1].turn.created_at, item[1].seq))
        return [SimilarityMatch(turn=s.turn, similarity=sim) for sim, s in scored[:top_k]]

    def recent_turns(self, conversation_id: str, limit: int) -> List[Turn]:
        if limit <= 0:
            return []
        with self._lock:
            rows = [s for s in self._turns.values() if s.turn.conversation_id == conversation_id]
        rows.sort(key=lambda s: (s.turn.created_at, s.seq))
        return [s.turn for s in rows[-limit:]]

    # ------------------ turns -------------------
    def insert_turn(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        image_ref: Optional[str],
        embedding: Sequence[float],
    ) -> Turn:
        vector = check_dimensions(embedding, self.dimensions)
        turn = Turn(
            conversation_id=conversation_id,
            role=role,
            content=content,
            image_ref=image_ref,
            embedding=vector,
            created_at=self.clock(),
        )
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise LookupError(f"conversation {conversation_id} does not exist")
            self._turns[turn.turn_id] = _StoredTurn(turn=turn, seq=next(self._seq))
            conversation.updated_at = turn.created_at
        return turn

    # ------------------ fixtures (not part of TurnStore) -----------
    def add_unembedded_turn(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        image_ref: Optional[str] = None,
    ) -> Turn:
        """Seed a turn with no embedding, as rows written before embeddings existed look.

        In-memory only and outside the ``TurnStore`` protocol: the orchestrator
        never writes such turns. Tests use it to set up backfill and
        null-embedding retrieval cases.
        """

        turn = Turn(conversation_id=conversation_id, role=role, content=content, image_ref=image_ref, created_at=self.clock())
        with self._lock:
            if conversation_id not in self._conversations:
                raise LookupError(f"conversation {conversation_id} does not exist")
            self._turns[turn.turn_id] = _StoredTurn(turn=turn, seq=next(self._seq))
        return turn

    # ------------------ conversations -----------
    def create_conversation(self, owner_id: str, title: Optional[str] = None) -> Conversation:
        now = self.clock()
        conversation = Conversation(conversation_id=new_id(), owner_id=owner_id, title=title, created_at=now, updated_at=now)
        with self._lock:
            self._conversations[conversation.conversation_id] = conversation
        return conversation.model_copy()

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy() if conversation else None

    def list_conversations(self, owner_id: str) -> List[Conversation]:
        with self._lock:
            owned = [c.model_copy() for c in self._conversations.values() if c.owner_id == owner_id]
        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return owned

    def rename_conversation(self, conversation_id: str, owner_id: str, title: Optional[str]) -> bool:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.owner_id != owner_id:
                return False
            updated = Conversation(
                conversation_id=conversation.conversation_id,
                owner_id=conversation.owner_id,
                title=title,
                created_at=conversation.created_at,
                updated_at=self.clock(),
            )
            self._conversations[conversation_id] = updated
        return True

    def delete_conversation(self, conversation_id: str, owner_id: str) -> bool:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.owner_id != owner_id:
                return False
            del self._conversations[conversation_id]
            doomed = [tid for tid, s in self._turns.items() if s.turn.conversation_id == conversation_id]
            for tid in doomed:
                del self._turns[tid]
        logger.info("Deleted conversation %s with %d turns", conversation_id, len(doomed))
        return True

    # ------------------ maintenance -------------
    def turns_missing_embeddings(self, owner_id: Optional[str] = None, limit: int = 100) -> List[Turn]:
        with self._lock:
            rows = [
                s for s in self._turns.values()
                if s.turn.embedding is None
                and (owner_id is None or self._conversations[s.turn.conversation_id].owner_id == owner_id)
            ]
        rows.sort(key=lambda s: (s.turn.created_at, s.seq))
        return [s.turn for s in rows[:limit]]

    def set_embedding(self, turn_id: str, embedding: Sequence[float]) -> bool:
        vector = check_dimensions(embedding, self.dimensions)
        with self._lock:
            stored = self._turns.get(turn_id)
            if stored is None or stored.turn.embedding is not None:
                return False
            stored.turn = stored.turn.model_copy(update={"embedding": vector})
        return True


__all__ = [
    "TurnStore",
    "InMemoryTurnStore",
    "check_dimensions",
    "cosine_similarities",
]
