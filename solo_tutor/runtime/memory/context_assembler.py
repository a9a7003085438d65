"""
Context Assembler - Long-term and short-term memory into one prompt context

WHAT: Structures similarity matches and recent turns into two labelled blocks
WHERE: solo_tutor/runtime/memory/context_assembler.py - pure transformation
WHO: Orchestrator (Assembling stage), Generation Client (rendering)
TIME: O(n) in the number of retrieved turns

The assembler structures, it does not trim: the store already bounded both
inputs with ``top_k`` and ``limit``. A turn present in both inputs is kept
only in the recent block. Output depends on the inputs alone, so assembling
twice yields byte-identical text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence

from .models import SimilarityMatch, Turn

DEFAULT_SPEAKERS: Mapping[str, str] = {"user": "Student", "assistant": "Canvas"}

RELEVANT_HEADER = "=== RELEVANT CONVERSATION HISTORY ==="
RELEVANT_PREAMBLE = (
    "These are semantically similar exchanges from earlier sessions with this student. "
    "Reference and build upon them when relevant:"
)
RECENT_HEADER = "=== RECENT CONVERSATION ==="
RECENT_PREAMBLE = "This is the immediate conversation flow. Maintain continuity with these exchanges:"


@dataclass(frozen=True, slots=True)
class ContextEntry:
    turn_id: str
    role: str
    content: str
    created_at: datetime
    image_ref: Optional[str] = None
    similarity: Optional[float] = None

    @classmethod
    def from_turn(cls, turn: Turn, similarity: float | None = None) -> "ContextEntry":
        return cls(
            turn_id=turn.turn_id,
            role=turn.role,
            content=turn.content,
            created_at=turn.created_at,
            image_ref=turn.image_ref,
            similarity=similarity,
        )


@dataclass(frozen=True, slots=True)
class AssembledContext:
    relevant_history: tuple[ContextEntry, ...] = ()
    recent_conversation: tuple[ContextEntry, ...] = ()
    speakers: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_SPEAKERS), compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.relevant_history and not self.recent_conversation

    @property
    def entry_count(self) -> int:
        return len(self.relevant_history) + len(self.recent_conversation)

    @property
    def context_type(self) -> str:
        if self.relevant_history and self.recent_conversation:
            return "history+recent"
        if self.relevant_history:
            return "history"
        if self.recent_conversation:
            return "recent"
        return "none"

    def _line(self, entry: ContextEntry, stamp: str) -> str:
        speaker = self.speakers.get(entry.role, entry.role)
        line = f"[{stamp}] {speaker}: {entry.content}"
        if entry.image_ref:
            line += f" [image: {entry.image_ref}]"
        return line

    def render(self) -> str:
        blocks: list[str] = []
        if self.relevant_history:
            lines = [RELEVANT_HEADER, RELEVANT_PREAMBLE]
            lines.extend(self._line(e, _utc(e.created_at).strftime("%Y-%m-%d")) for e in self.relevant_history)
            blocks.append("\n".join(lines))
        if self.recent_conversation:
            lines = [RECENT_HEADER, RECENT_PREAMBLE]
            lines.extend(
                self._line(e, _utc(e.created_at).strftime("%Y-%m-%d %H:%M:%S UTC")) for e in self.recent_conversation
            )
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ContextAssembler:
    """Combines long-term matches with the short-term window."""

    def __init__(self, *, speakers: Mapping[str, str] | None = None) -> None:
        self._speakers = dict(speakers or DEFAULT_SPEAKERS)

    def assemble(
        self,
        matches: Iterable[SimilarityMatch],
        recent: Sequence[Turn],
    ) -> AssembledContext:
        recent_entries = tuple(
            ContextEntry.from_turn(t) for t in sorted(recent, key=lambda t: t.created_at)
        )
        recent_ids = {e.turn_id for e in recent_entries}

        seen: set[str] = set()
        relevant: list[ContextEntry] = []
        ranked = sorted(matches, key=lambda m: (-m.similarity, m.turn.created_at, m.turn.turn_id))
        for match in ranked:
            tid = match.turn.turn_id
            if tid in recent_ids or tid in seen:
                continue
            seen.add(tid)
            relevant.append(ContextEntry.from_turn(match.turn, similarity=match.similarity))

        return AssembledContext(
            relevant_history=tuple(relevant),
            recent_conversation=recent_entries,
            speakers=dict(self._speakers),
        )


__all__ = [
    "DEFAULT_SPEAKERS",
    "ContextEntry",
    "AssembledContext",
    "ContextAssembler",
]
