"""
Conversational Memory Pipeline - Embedding, Retrieval & Tutor Replies

WHAT: Retrieval-augmented tutor turns over a per-student vector memory
WHERE: solo_tutor/runtime/memory/ - runtime orchestration subsystem
WHO: TutorSession callers (chat CLI, host applications)
TIME: One embedding + one retrieval round + one generation + one reply embedding per turn

Memory layers:
- long-term: cosine-similar turns from any conversation the student owns
- short-term: the last few turns of the active conversation

Infrastructure:
- OpenAI-compatible embeddings and chat completions over httpx
- PostgreSQL + pgvector (``PostgresTurnStore``), or ``InMemoryTurnStore`` locally

Pipeline (``ConversationOrchestrator``):
    Embedding -> Retrieving -> Assembling -> Generating -> Persisting -> Complete
"""

from .backfill import BackfillReport, EmbeddingBackfill  # noqa: F401
from .context_assembler import AssembledContext, ContextAssembler, ContextEntry  # noqa: F401
from .embedding_client import EmbeddingClient, EmbeddingConfig  # noqa: F401
from .errors import (  # noqa: F401
    ConversationAccessError,
    EmbeddingDimensionMismatch,
    EmbeddingFailure,
    GenerationFailure,
    PersistenceFailure,
    ReplyNotSavedError,
    RetrievalFailure,
    TurnFailure,
)
from .generation_client import GenerationClient, GenerationConfig  # noqa: F401
from .models import (  # noqa: F401
    Conversation,
    RetrievalSummary,
    SimilarityMatch,
    Turn,
    TurnRequest,
    TurnResponse,
    TurnResult,
)
from .orchestrator import (  # noqa: F401
    ConversationOrchestrator,
    OrchestratorConfig,
    TurnRun,
    TurnStage,
)
from .postgres_store import PostgresTurnStore  # noqa: F401
from .prompting import CANVAS_PERSONA, compose_system_prompt  # noqa: F401
from .retry import RetriesExhausted, RetryPolicy  # noqa: F401
from .session import TutorSession  # noqa: F401
from .telemetry import (  # noqa: F401
    LoggingTelemetryClient,
    NoOpTelemetryClient,
    TelemetryClient,
    TelemetrySpan,
)
from .turn_store import InMemoryTurnStore, TurnStore  # noqa: F401
