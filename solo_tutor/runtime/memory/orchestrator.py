"""
Conversation Orchestrator - Central Coordination Point

WHAT: Per-turn state machine tying embedding, retrieval, generation, and persistence
WHERE: solo_tutor/runtime/memory/orchestrator.py - top of the runtime stack
WHO: Session boundary (``TutorSession.send``) and the chat CLI
TIME: Dominated by the two embedding calls and the generation call

Stages:
    Embedding -> Retrieving -> Assembling -> Generating -> Persisting -> Complete
Any stage may terminate in Failed(stage).

Write rules:
- Nothing is written before Persisting, so failures up to Generating leave
  the store untouched.
- The reply is embedded before either turn is written; if that fails both
  turns are dropped and the reply is surfaced unsaved.
- The user turn is written before the assistant turn, so a reader never sees
  an assistant turn without its prompting user turn.

Runs are synchronous and always run to a terminal state once started; there
is no mid-run cancellation.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator, List, Optional, Protocol, Sequence

from .context_assembler import AssembledContext, ContextAssembler
from .errors import (
    ConversationAccessError,
    EmbeddingDimensionMismatch,
    EmbeddingFailure,
    GenerationFailure,
    ReplyNotSavedError,
    RetrievalFailure,
    TurnFailure,
)
from .models import RelevantTurnSummary, RetrievalSummary, TurnRequest, TurnResult
from .prompting import CANVAS_PERSONA, PERSONA_VERSION
from .telemetry import NoOpTelemetryClient, TelemetryClient, TelemetrySpan
from .turn_store import TurnStore

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def embed(self, text: str) -> List[float]:
        ...


class ReplyGenerator(Protocol):
    def generate(
        self,
        persona: str,
        context: AssembledContext,
        user_text: str,
        image_ref: str | None = None,
    ) -> str:
        ...


class TurnStage(str, Enum):
    EMBEDDING = "Embedding"
    RETRIEVING = "Retrieving"
    ASSEMBLING = "Assembling"
    GENERATING = "Generating"
    PERSISTING = "Persisting"
    COMPLETE = "Complete"
    FAILED = "Failed"


TERMINAL_STAGES = frozenset({TurnStage.COMPLETE, TurnStage.FAILED})


@dataclass(slots=True)
class OrchestratorConfig:
    similarity_threshold: float = 0.6
    top_k: int = 5
    recent_limit: int = 6
    retrieval_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must lie in [-1, 1]")
        if self.top_k < 0 or self.recent_limit < 0:
            raise ValueError("top_k and recent_limit must be non-negative")
        if self.retrieval_timeout_seconds <= 0:
            raise ValueError("retrieval_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        return cls(
            similarity_threshold=float(os.getenv("TUTOR_SIMILARITY_THRESHOLD", "0.6")),
            top_k=int(os.getenv("TUTOR_TOP_K", "5")),
            recent_limit=int(os.getenv("TUTOR_RECENT_LIMIT", "6")),
            retrieval_timeout_seconds=float(os.getenv("TUTOR_RETRIEVAL_TIMEOUT", "10")),
        )

    def with_overrides(self, **overrides: object) -> "OrchestratorConfig":
        """Copy with the non-None ``overrides`` applied; the copy is validated again."""

        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(slots=True)
class TurnRun:
    """Transition log for one orchestration run."""

    conversation_id: str
    transitions: List[TurnStage] = field(default_factory=list)
    failed_stage: Optional[TurnStage] = None
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def stage(self) -> Optional[TurnStage]:
        return self.transitions[-1] if self.transitions else None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000.0

    def advance(self, stage: TurnStage) -> None:
        if self.is_terminal:
            raise RuntimeError(f"run already terminated in {self.stage.value}")
        self.transitions.append(stage)

    def fail(self, stage: TurnStage) -> None:
        if self.is_terminal:
            return
        self.failed_stage = stage
        self.transitions.append(TurnStage.FAILED)


class ConversationOrchestrator:
    """Drives one user turn from raw text to a persisted, memorized exchange."""

    def __init__(
        self,
        *,
        store: TurnStore,
        embedder: Embedder,
        generator: ReplyGenerator,
        config: OrchestratorConfig | None = None,
        telemetry: TelemetryClient | None = None,
        assembler: ContextAssembler | None = None,
        persona: str = CANVAS_PERSONA,
        persona_version: str = PERSONA_VERSION,
    ) -> None:
        embedder_dims = getattr(embedder, "dimensions", None)
        if embedder_dims is not None and embedder_dims != store.dimensions:
            raise EmbeddingDimensionMismatch(store.dimensions, embedder_dims)
        self._store = store
        self._embedder = embedder
        self._generator = generator
        self._config = config or OrchestratorConfig()
        self._telemetry = telemetry or NoOpTelemetryClient()
        self._assembler = assembler or ContextAssembler()
        self._persona = persona
        self._persona_version = persona_version

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def store(self) -> TurnStore:
        return self._store

    @property
    def telemetry(self) -> TelemetryClient:
        return self._telemetry

    @contextmanager
    def _stage(self, run: TurnRun, stage: TurnStage, **attributes: object) -> Iterator[TelemetrySpan]:
        run.advance(stage)
        logger.debug("conversation=%s stage=%s", run.conversation_id, stage.value)
        span_attributes = {"conversation_id": run.conversation_id, **attributes}
        with self._telemetry.span(f"tutor.{stage.value.lower()}", attributes=span_attributes) as span:
            try:
                yield span
            except BaseException:
                run.fail(stage)
                raise

    # ---------------------- pipeline ----------------------
    def submit_turn(self, request: TurnRequest, *, run: TurnRun | None = None) -> TurnResult:
        """Run the full pipeline for ``request``.

        The ownership check runs before the state machine starts: on
        ``ConversationAccessError`` (missing or foreign conversation) a passed
        ``run`` is left with no transitions. Every other failure is a
        ``TurnFailure`` subclass tagged with the failing stage, and ``run`` ends
        in ``Failed``. Pass ``run`` to observe the transitions.
        """

        run = run or TurnRun(conversation_id=request.conversation_id)
        try:
            self._check_access(request, run)
            vector = self._embed_user_text(request, run)
            matches, recent = self._retrieve(request, vector, run)

            with self._stage(run, TurnStage.ASSEMBLING):
                context = self._assembler.assemble(matches, recent)

            reply = self._generate(request, context, run)
            user_turn_id, assistant_turn_id = self._persist(request, vector, reply, run)
        except TurnFailure as exc:
            logger.warning(
                "Turn failed at %s for conversation %s: %s",
                exc.stage,
                request.conversation_id,
                exc.message,
            )
            raise

        run.advance(TurnStage.COMPLETE)
        result = TurnResult(
            generated_text=reply,
            user_turn_id=user_turn_id,
            assistant_turn_id=assistant_turn_id,
            elapsed_ms=run.elapsed_ms,
            retrieval=self._summarize(context),
            persona_version=self._persona_version,
        )
        logger.info(
            "Turn complete for conversation %s in %.1fms (context=%s)",
            request.conversation_id,
            result.elapsed_ms,
            result.retrieval.context_type,
        )
        return result

    def _check_access(self, request: TurnRequest, run: TurnRun) -> None:
        try:
            conversation = self._store.get_conversation(request.conversation_id)
        except Exception as exc:
            run.fail(TurnStage.RETRIEVING)
            raise RetrievalFailure(f"conversation lookup failed: {exc}") from exc
        if conversation is None or conversation.owner_id != request.user_id:
            raise ConversationAccessError(
                f"conversation {request.conversation_id} not found for user {request.user_id}"
            )

    def _embed_text(self, text: str) -> List[float]:
        vector = self._embedder.embed(text)
        if len(vector) != self._store.dimensions:
            raise EmbeddingFailure(
                f"embedding has {len(vector)} dimensions, index expects {self._store.dimensions}"
            )
        return vector

    def _embed_user_text(self, request: TurnRequest, run: TurnRun) -> List[float]:
        with self._stage(run, TurnStage.EMBEDDING, text_chars=len(request.text)):
            try:
                return self._embed_text(request.text)
            except TurnFailure:
                raise
            except Exception as exc:
                raise EmbeddingFailure(f"embedding failed: {exc}") from exc

    def _retrieve(self, request: TurnRequest, vector: Sequence[float], run: TurnRun):
        cfg = self._config
        with self._stage(run, TurnStage.RETRIEVING, top_k=cfg.top_k, recent_limit=cfg.recent_limit) as span:
            executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="tutor-retrieval")
            try:
                similar_future = executor.submit(
                    self._store.find_similar,
                    vector,
                    request.user_id,
                    cfg.similarity_threshold,
                    cfg.top_k,
                )
                recent_future = executor.submit(self._store.recent_turns, request.conversation_id, cfg.recent_limit)
                deadline = time.monotonic() + cfg.retrieval_timeout_seconds
                matches = similar_future.result(timeout=cfg.retrieval_timeout_seconds)
                recent = recent_future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FuturesTimeout as exc:
                raise RetrievalFailure(
                    f"retrieval timed out after {cfg.retrieval_timeout_seconds:g}s"
                ) from exc
            except Exception as exc:
                raise RetrievalFailure(f"retrieval failed: {exc}") from exc
            finally:
                executor.shutdown(wait=False, cancel_futures=True)
            span.set_attribute("relevant_count", len(matches))
            span.set_attribute("recent_count", len(recent))
        return matches, recent

    def _generate(self, request: TurnRequest, context: AssembledContext, run: TurnRun) -> str:
        with self._stage(
            run,
            TurnStage.GENERATING,
            context_type=context.context_type,
            multimodal=bool(request.image_ref),
            persona_version=self._persona_version,
        ) as span:
            try:
                reply = self._generator.generate(self._persona, context, request.text, request.image_ref)
            except TurnFailure:
                raise
            except Exception as exc:
                raise GenerationFailure(f"generation failed: {exc}") from exc
            if not reply or not reply.strip():
                raise GenerationFailure("tutor model returned an empty reply")
            span.set_attribute("response_chars", len(reply))
        return reply

    def _persist(self, request: TurnRequest, vector: Sequence[float], reply: str, run: TurnRun) -> tuple[str, str]:
        with self._stage(run, TurnStage.PERSISTING):
            try:
                reply_vector = self._embed_text(reply)
            except Exception as exc:
                raise ReplyNotSavedError(
                    f"reply could not be embedded for memory: {exc}",
                    generated_text=reply,
                ) from exc

            try:
                user_turn = self._store.insert_turn(
                    request.conversation_id, "user", request.text, request.image_ref, vector
                )
            except Exception as exc:
                raise ReplyNotSavedError(f"user turn could not be saved: {exc}", generated_text=reply) from exc

            try:
                assistant_turn = self._store.insert_turn(
                    request.conversation_id, "assistant", reply, None, reply_vector
                )
            except Exception as exc:
                raise ReplyNotSavedError(
                    f"reply could not be saved: {exc}",
                    generated_text=reply,
                    user_turn_id=user_turn.turn_id,
                ) from exc
        return user_turn.turn_id, assistant_turn.turn_id

    def _summarize(self, context: AssembledContext) -> RetrievalSummary:
        return RetrievalSummary(
            relevant_history_count=len(context.relevant_history),
            recent_conversation_count=len(context.recent_conversation),
            similarity_threshold=self._config.similarity_threshold,
            context_type=context.context_type,
            relevant_turns=[
                RelevantTurnSummary(turn_id=e.turn_id, similarity=e.similarity or 0.0, created_at=e.created_at)
                for e in context.relevant_history
            ],
        )


__all__ = [
    "Embedder",
    "ReplyGenerator",
    "TurnStage",
    "TurnRun",
    "OrchestratorConfig",
    "ConversationOrchestrator",
]
