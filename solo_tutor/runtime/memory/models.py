"""
Tutor Models - Type-safe data structures for conversational memory

WHAT: Pydantic models for conversations, turns, similarity matches, and turn I/O
WHERE: solo_tutor/runtime/memory/models.py - data layer
WHO: Store adapters, orchestrator, and the session boundary
TIME: Model validation <1ms

All timestamps are timezone-aware UTC. Turns are frozen once built: there is
no edit path for a written turn, and a turn is only visible to retrieval after
its embedding exists.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Role = Literal["user", "assistant"]
ContextType = Literal["history+recent", "history", "recent", "none"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("content must not be empty")
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Conversation(BaseModel):
    """Ownership-scoped thread of turns."""

    conversation_id: str = Field(default_factory=new_id)
    owner_id: str = Field(min_length=1)
    title: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("title")
    @classmethod
    def blank_title_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class Turn(BaseModel):
    """A single user or assistant message inside a conversation."""

    model_config = ConfigDict(frozen=True)

    turn_id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Role
    content: str
    image_ref: Optional[str] = None
    embedding: Optional[List[float]] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("content")
    @classmethod
    def check_content(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("created_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


class SimilarityMatch(BaseModel):
    """Ephemeral projection of a turn plus its cosine similarity to a query."""

    model_config = ConfigDict(frozen=True)

    turn: Turn
    similarity: float

    @field_validator("similarity")
    @classmethod
    def clamp_similarity(cls, value: float) -> float:
        if math.isnan(value):
            raise ValueError("similarity must be a number")
        return max(-1.0, min(1.0, float(value)))


class TurnRequest(BaseModel):
    """Inbound "submit turn" payload.

    ``image_ref`` must already be a resolvable http(s) URL; uploading local
    captures happens before the pipeline is invoked.
    """

    conversation_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    text: str
    image_ref: Optional[str] = None

    @field_validator("text")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return _require_text(value).strip()

    @field_validator("image_ref")
    @classmethod
    def require_resolved_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("image_ref must be an http(s) URL")
        return value


class RelevantTurnSummary(BaseModel):
    turn_id: str
    similarity: float
    created_at: datetime


class RetrievalSummary(BaseModel):
    """What the retrieval stage surfaced for a single run."""

    relevant_history_count: int = 0
    recent_conversation_count: int = 0
    similarity_threshold: float
    context_type: ContextType = "none"
    relevant_turns: List[RelevantTurnSummary] = Field(default_factory=list)


class TurnResult(BaseModel):
    """Successful completion of an orchestration run."""

    generated_text: str
    user_turn_id: str
    assistant_turn_id: str
    elapsed_ms: float
    retrieval: RetrievalSummary
    persona_version: Optional[str] = None


class TurnResponse(BaseModel):
    """Outbound envelope: success fields or a stage-tagged error, never both."""

    success: bool
    generated_text: Optional[str] = None
    user_turn_id: Optional[str] = None
    assistant_turn_id: Optional[str] = None
    elapsed_ms: Optional[float] = None
    retrieval: Optional[RetrievalSummary] = None
    persona_version: Optional[str] = None
    stage: Optional[str] = None
    error: Optional[str] = None
    unsaved_reply: Optional[str] = None

    @model_validator(mode="after")
    def check_exclusive_fields(self) -> "TurnResponse":
        if self.success:
            if self.stage or self.error or self.unsaved_reply:
                raise ValueError("successful response cannot carry error fields")
            if not (self.generated_text and self.user_turn_id and self.assistant_turn_id):
                raise ValueError("successful response requires reply and turn ids")
        else:
            if not (self.stage and self.error):
                raise ValueError("failed response requires stage and error")
            if self.user_turn_id or self.assistant_turn_id or self.generated_text:
                raise ValueError("failed response cannot carry success fields")
        return self

    @classmethod
    def from_result(cls, result: TurnResult) -> "TurnResponse":
        return cls(
            success=True,
            generated_text=result.generated_text,
            user_turn_id=result.user_turn_id,
            assistant_turn_id=result.assistant_turn_id,
            elapsed_ms=result.elapsed_ms,
            retrieval=result.retrieval,
            persona_version=result.persona_version,
        )

    @classmethod
    def failure(cls, stage: str, message: str, *, unsaved_reply: Optional[str] = None) -> "TurnResponse":
        return cls(success=False, stage=stage, error=message, unsaved_reply=unsaved_reply)


__all__ = [
    "Role",
    "ContextType",
    "Conversation",
    "Turn",
    "SimilarityMatch",
    "TurnRequest",
    "RelevantTurnSummary",
    "RetrievalSummary",
    "TurnResult",
    "TurnResponse",
    "utcnow",
    "new_id",
]
