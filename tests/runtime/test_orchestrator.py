import threading

import pytest

from solo_tutor.runtime.memory.errors import (
    ConversationAccessError,
    EmbeddingDimensionMismatch,
    EmbeddingFailure,
    GenerationFailure,
    ReplyNotSavedError,
    RetrievalFailure,
)
from solo_tutor.runtime.memory.models import TurnRequest
from solo_tutor.runtime.memory.orchestrator import (
    ConversationOrchestrator,
    OrchestratorConfig,
    TurnRun,
    TurnStage,
)
from solo_tutor.runtime.memory.prompting import PERSONA_VERSION
from solo_tutor.runtime.memory.telemetry import TelemetryClient
from solo_tutor.runtime.memory.turn_store import InMemoryTurnStore

HAPPY_PATH = [
    TurnStage.EMBEDDING,
    TurnStage.RETRIEVING,
    TurnStage.ASSEMBLING,
    TurnStage.GENERATING,
    TurnStage.PERSISTING,
    TurnStage.COMPLETE,
]


class CaptureTelemetryClient(TelemetryClient):
    def __init__(self) -> None:
        self.spans: list[tuple[str, dict]] = []

    def emit_span(self, name: str, attributes: dict) -> None:
        self.spans.append((name, attributes))


class ScriptedGenerator:
    def __init__(self, reply="Start with a horizon line.", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def generate(self, persona, context, user_text, image_ref=None):
        self.calls.append({"persona": persona, "context": context, "text": user_text, "image_ref": image_ref})
        if self.error is not None:
            raise self.error
        return self.reply


class FailingOnCallEmbedder:
    """Embeds normally until call number ``fail_on`` (1-based)."""

    dimensions = 4

    def __init__(self, fail_on):
        self.fail_on = fail_on
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        if self.calls == self.fail_on:
            raise EmbeddingFailure("embedding service returned HTTP 503")
        return [0.0, 0.0, 0.0, 1.0]


def _orchestrator(store, embedder, generator=None, **kwargs):
    return ConversationOrchestrator(
        store=store,
        embedder=embedder,
        generator=generator or ScriptedGenerator(),
        **kwargs,
    )


def _request(conversation, text="How do I draw perspective?", **kwargs):
    return TurnRequest(conversation_id=conversation.conversation_id, user_id=conversation.owner_id, text=text, **kwargs)


def test_first_turn_without_history_writes_both_turns(store, embedder):
    conv = store.create_conversation("alice")
    generator = ScriptedGenerator()
    run = TurnRun(conversation_id=conv.conversation_id)

    result = _orchestrator(store, embedder, generator).submit_turn(_request(conv), run=run)

    assert result.generated_text == "Start with a horizon line."
    assert result.retrieval.context_type == "none"
    assert result.retrieval.similarity_threshold == 0.6
    assert generator.calls[0]["context"].is_empty
    assert run.transitions == HAPPY_PATH
    assert run.failed_stage is None

    turns = store.recent_turns(conv.conversation_id, 10)
    assert [(t.role, t.turn_id) for t in turns] == [
        ("user", result.user_turn_id),
        ("assistant", result.assistant_turn_id),
    ]
    assert all(t.embedding is not None for t in turns)
    assert turns[0].embedding == [1.0, 0.0, 0.0, 0.0]


def test_cross_conversation_history_is_retrieved(store, embedder):
    earlier = store.create_conversation("alice")
    store.insert_turn(earlier.conversation_id, "user", "perspective boxes are hard", None, [1, 0, 0, 0])
    store.insert_turn(earlier.conversation_id, "assistant", "Try two-point grids.", None, [0, 0, 0, 1])
    today = store.create_conversation("alice")
    generator = ScriptedGenerator()

    result = _orchestrator(store, embedder, generator).submit_turn(_request(today, "perspective again?"))

    context = generator.calls[0]["context"]
    assert [e.content for e in context.relevant_history] == ["perspective boxes are hard"]
    assert context.recent_conversation == ()
    assert result.retrieval.context_type == "history"
    assert result.retrieval.relevant_history_count == 1
    assert result.retrieval.relevant_turns[0].similarity == pytest.approx(1.0)


def test_other_students_history_never_leaks(store, embedder):
    other = store.create_conversation("bob")
    store.insert_turn(other.conversation_id, "user", "perspective secrets", None, [1, 0, 0, 0])
    mine = store.create_conversation("alice")
    generator = ScriptedGenerator()

    result = _orchestrator(store, embedder, generator).submit_turn(_request(mine))

    assert result.retrieval.relevant_history_count == 0
    assert generator.calls[0]["context"].is_empty


def test_recent_turns_shadow_duplicate_matches(store, embedder):
    conv = store.create_conversation("alice")
    orch = _orchestrator(store, embedder)
    orch.submit_turn(_request(conv, "perspective lines"))
    generator = ScriptedGenerator("Keep the horizon level.")
    orch = _orchestrator(store, embedder, generator)

    result = orch.submit_turn(_request(conv, "more perspective"))

    context = generator.calls[0]["context"]
    assert context.relevant_history == ()
    assert [e.role for e in context.recent_conversation] == ["user", "assistant"]
    assert result.retrieval.context_type == "recent"


def test_recent_window_respects_limit(store, embedder):
    conv = store.create_conversation("alice")
    for i in range(5):
        store.insert_turn(conv.conversation_id, "user", f"note {i}", None, [0, 0, 0, 1])
    generator = ScriptedGenerator()

    _orchestrator(store, embedder, generator, config=OrchestratorConfig(recent_limit=3)).submit_turn(_request(conv))

    assert [e.content for e in generator.calls[0]["context"].recent_conversation] == ["note 2", "note 3", "note 4"]


class HandQuestionEmbedder:
    """The hand question sits near the stored hand turns; everything else is off-axis."""

    dimensions = 4

    def embed(self, text):
        if "hand" in text.lower():
            return [1.0, 0.3, 0.0, 0.0]
        return [0.0, 0.0, 1.0, 0.0]


def test_hand_question_surfaces_old_hand_turns_above_recent_chatter(store):
    conv = store.create_conversation("alice")
    for i in range(3):
        store.insert_turn(conv.conversation_id, "user", f"hand proportions {i}", None, [1, 0, 0, 0])
    for i in range(20):
        store.insert_turn(conv.conversation_id, "user", f"landscape sky {i}", None, [0.5, 1, 0, 0])
    generator = ScriptedGenerator()
    config = OrchestratorConfig(top_k=5, recent_limit=6)

    result = _orchestrator(store, HandQuestionEmbedder(), generator, config=config).submit_turn(
        _request(conv, "how do I fix my hand drawing")
    )

    context = generator.calls[0]["context"]
    relevant = [e.content for e in context.relevant_history]
    recent = [e.content for e in context.recent_conversation]
    assert relevant[:3] == ["hand proportions 0", "hand proportions 1", "hand proportions 2"]
    assert min(e.similarity for e in context.relevant_history[:3]) > max(
        e.similarity for e in context.relevant_history[3:]
    )
    assert recent == [f"landscape sky {i}" for i in range(14, 20)]
    assert [e.created_at for e in context.recent_conversation] == sorted(
        e.created_at for e in context.recent_conversation
    )
    assert not {e.turn_id for e in context.relevant_history} & {e.turn_id for e in context.recent_conversation}
    assert result.retrieval.context_type == "history+recent"


def test_image_ref_is_forwarded_and_stored_on_user_turn(store, embedder):
    conv = store.create_conversation("alice")
    generator = ScriptedGenerator()

    result = _orchestrator(store, embedder, generator).submit_turn(
        _request(conv, "What about the color here?", image_ref="https://cdn.example/sketch.png")
    )

    assert generator.calls[0]["image_ref"] == "https://cdn.example/sketch.png"
    user_turn, assistant_turn = store.recent_turns(conv.conversation_id, 2)
    assert user_turn.turn_id == result.user_turn_id
    assert user_turn.image_ref == "https://cdn.example/sketch.png"
    assert assistant_turn.image_ref is None


def test_unknown_or_foreign_conversation_is_rejected_before_embedding(store, embedder):
    conv = store.create_conversation("bob")
    orch = _orchestrator(store, embedder)

    with pytest.raises(ConversationAccessError):
        orch.submit_turn(TurnRequest(conversation_id=conv.conversation_id, user_id="alice", text="hi"))
    with pytest.raises(ConversationAccessError):
        orch.submit_turn(TurnRequest(conversation_id="missing", user_id="alice", text="hi"))
    assert embedder.calls == []


def test_rejected_request_leaves_run_untouched(store, embedder):
    conv = store.create_conversation("bob")
    run = TurnRun(conversation_id=conv.conversation_id)

    with pytest.raises(ConversationAccessError):
        _orchestrator(store, embedder).submit_turn(
            TurnRequest(conversation_id=conv.conversation_id, user_id="alice", text="hi"), run=run
        )

    assert run.transitions == []
    assert run.failed_stage is None
    assert not run.is_terminal


def test_embedding_failure_writes_nothing(store):
    conv = store.create_conversation("alice")
    generator = ScriptedGenerator()
    run = TurnRun(conversation_id=conv.conversation_id)

    with pytest.raises(EmbeddingFailure):
        _orchestrator(store, FailingOnCallEmbedder(fail_on=1), generator).submit_turn(_request(conv), run=run)

    assert run.failed_stage is TurnStage.EMBEDDING
    assert run.transitions == [TurnStage.EMBEDDING, TurnStage.FAILED]
    assert generator.calls == []
    assert store.recent_turns(conv.conversation_id, 10) == []


def test_retrieval_error_is_tagged_and_writes_nothing(store, embedder, monkeypatch):
    conv = store.create_conversation("alice")

    def broken(self, *args, **kwargs):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(InMemoryTurnStore, "find_similar", broken)
    generator = ScriptedGenerator()

    with pytest.raises(RetrievalFailure) as info:
        _orchestrator(store, embedder, generator).submit_turn(_request(conv))

    assert info.value.stage == "Retrieving"
    assert generator.calls == []
    assert store.recent_turns(conv.conversation_id, 10) == []


def test_retrieval_timeout_fails_the_run(store, embedder, monkeypatch):
    conv = store.create_conversation("alice")
    release = threading.Event()

    def stuck(self, *args, **kwargs):
        release.wait(5)
        return []

    monkeypatch.setattr(InMemoryTurnStore, "recent_turns", stuck)
    orch = _orchestrator(store, embedder, config=OrchestratorConfig(retrieval_timeout_seconds=0.05))

    try:
        with pytest.raises(RetrievalFailure, match="timed out"):
            orch.submit_turn(_request(conv))
    finally:
        release.set()


def test_generation_failure_writes_nothing(store, embedder):
    conv = store.create_conversation("alice")
    run = TurnRun(conversation_id=conv.conversation_id)
    generator = ScriptedGenerator(error=GenerationFailure("tutor model returned HTTP 500"))

    with pytest.raises(GenerationFailure):
        _orchestrator(store, embedder, generator).submit_turn(_request(conv), run=run)

    assert run.failed_stage is TurnStage.GENERATING
    assert store.recent_turns(conv.conversation_id, 10) == []


def test_unexpected_generator_error_is_wrapped(store, embedder):
    conv = store.create_conversation("alice")
    generator = ScriptedGenerator(error=ConnectionResetError("peer reset"))

    with pytest.raises(GenerationFailure):
        _orchestrator(store, embedder, generator).submit_turn(_request(conv))


def test_reply_embedding_failure_drops_both_turns(store):
    conv = store.create_conversation("alice")
    run = TurnRun(conversation_id=conv.conversation_id)

    with pytest.raises(ReplyNotSavedError) as info:
        _orchestrator(store, FailingOnCallEmbedder(fail_on=2)).submit_turn(_request(conv), run=run)

    assert info.value.stage == "Persisting"
    assert info.value.generated_text == "Start with a horizon line."
    assert info.value.user_turn_id is None
    assert run.failed_stage is TurnStage.PERSISTING
    assert store.recent_turns(conv.conversation_id, 10) == []


def test_assistant_insert_failure_keeps_user_turn(store, embedder, monkeypatch):
    conv = store.create_conversation("alice")
    original = InMemoryTurnStore.insert_turn

    def no_assistant(self, conversation_id, role, *args):
        if role == "assistant":
            raise RuntimeError("disk full")
        return original(self, conversation_id, role, *args)

    monkeypatch.setattr(InMemoryTurnStore, "insert_turn", no_assistant)

    with pytest.raises(ReplyNotSavedError) as info:
        _orchestrator(store, embedder).submit_turn(_request(conv))

    turns = store.recent_turns(conv.conversation_id, 10)
    assert [t.role for t in turns] == ["user"]
    assert info.value.user_turn_id == turns[0].turn_id
    assert info.value.generated_text == "Start with a horizon line."


def test_embedder_dimension_must_match_store(store):
    class WideEmbedder:
        dimensions = 8

        def embed(self, text):
            return [1.0] * 8

    with pytest.raises(EmbeddingDimensionMismatch):
        _orchestrator(store, WideEmbedder())


def test_emits_one_span_per_stage(store, embedder):
    conv = store.create_conversation("alice")
    telemetry = CaptureTelemetryClient()

    _orchestrator(store, embedder, telemetry=telemetry).submit_turn(_request(conv))

    assert [name for name, _ in telemetry.spans] == [
        "tutor.embedding",
        "tutor.retrieving",
        "tutor.assembling",
        "tutor.generating",
        "tutor.persisting",
    ]
    retrieving = dict(telemetry.spans)["tutor.retrieving"]
    assert retrieving["relevant_count"] == 0
    assert retrieving["success"] is True


def test_failed_stage_span_is_marked_unsuccessful(store, embedder):
    conv = store.create_conversation("alice")
    telemetry = CaptureTelemetryClient()
    generator = ScriptedGenerator(error=GenerationFailure("down"))

    with pytest.raises(GenerationFailure):
        _orchestrator(store, embedder, generator, telemetry=telemetry).submit_turn(_request(conv))

    name, attrs = telemetry.spans[-1]
    assert name == "tutor.generating"
    assert attrs["success"] is False
    assert attrs["error_type"] == "GenerationFailure"


def test_persona_version_is_recorded_on_result_and_generating_span(store, embedder):
    conv = store.create_conversation("alice")
    telemetry = CaptureTelemetryClient()

    result = _orchestrator(store, embedder, telemetry=telemetry).submit_turn(_request(conv))

    assert result.persona_version == PERSONA_VERSION
    assert dict(telemetry.spans)["tutor.generating"]["persona_version"] == PERSONA_VERSION


def test_custom_persona_version_passes_through(store, embedder):
    conv = store.create_conversation("alice")
    telemetry = CaptureTelemetryClient()
    orch = _orchestrator(store, embedder, telemetry=telemetry, persona="Be brief.", persona_version="brief-1")

    result = orch.submit_turn(_request(conv))

    assert result.persona_version == "brief-1"
    assert dict(telemetry.spans)["tutor.generating"]["persona_version"] == "brief-1"


def test_config_rejects_out_of_range_values():
    with pytest.raises(ValueError):
        OrchestratorConfig(similarity_threshold=1.5)
    with pytest.raises(ValueError):
        OrchestratorConfig(retrieval_timeout_seconds=0)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("TUTOR_SIMILARITY_THRESHOLD", "0.7")
    monkeypatch.setenv("TUTOR_TOP_K", "3")
    cfg = OrchestratorConfig.from_env()
    assert cfg.similarity_threshold == 0.7
    assert cfg.top_k == 3
    assert cfg.recent_limit == 6


def test_config_overrides_are_validated():
    base = OrchestratorConfig()

    with pytest.raises(ValueError):
        base.with_overrides(similarity_threshold=2.0)
    with pytest.raises(ValueError):
        base.with_overrides(top_k=-1)
    with pytest.raises(ValueError):
        base.with_overrides(recent_limit=-3)

    cfg = base.with_overrides(similarity_threshold=0.75, top_k=None, recent_limit=None)
    assert cfg.similarity_threshold == 0.75
    assert cfg.top_k == base.top_k
    assert cfg.recent_limit == base.recent_limit
    assert base.similarity_threshold == 0.6
