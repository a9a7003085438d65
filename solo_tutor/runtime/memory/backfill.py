"""
Embedding Backfill - Re-embed turns stored without a vector

WHAT: Batch pass filling null embeddings with the configured embedding model
WHERE: solo_tutor/runtime/memory/backfill.py - maintenance path, not per-turn
WHO: scripts/backfill_embeddings.py after a dimension change or legacy import
TIME: One embedding call per turn; ``pause_seconds`` between batches

Per-turn failures are logged and counted, never fatal; a turn that fails
stays null and is skipped for the rest of the pass.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .errors import EmbeddingDimensionMismatch, TurnFailure
from .orchestrator import Embedder
from .turn_store import TurnStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackfillReport:
    scanned: int = 0
    embedded: int = 0
    skipped: int = 0
    failed_turn_ids: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> int:
        return len(self.failed_turn_ids)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "embedded": self.embedded,
            "skipped": self.skipped,
            "failed": self.failed,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class EmbeddingBackfill:
    def __init__(
        self,
        store: TurnStore,
        embedder: Embedder,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._sleep = sleep

    def run(
        self,
        owner_id: Optional[str] = None,
        batch_size: int = 50,
        pause_seconds: float = 0.0,
        max_turns: Optional[int] = None,
    ) -> BackfillReport:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        report = BackfillReport()
        failed: set[str] = set()
        started = time.perf_counter()

        while max_turns is None or report.scanned < max_turns:
            batch = [
                t
                for t in self._store.turns_missing_embeddings(owner_id, limit=batch_size + len(failed))
                if t.turn_id not in failed
            ][:batch_size]
            if not batch:
                break
            if max_turns is not None:
                batch = batch[: max_turns - report.scanned]

            for turn in batch:
                report.scanned += 1
                try:
                    vector = self._embedder.embed(turn.content)
                    written = self._store.set_embedding(turn.turn_id, vector)
                except (TurnFailure, EmbeddingDimensionMismatch, ValueError) as exc:
                    logger.warning("Backfill failed for turn %s: %s", turn.turn_id, exc)
                    failed.add(turn.turn_id)
                    report.failed_turn_ids.append(turn.turn_id)
                    continue
                if written:
                    report.embedded += 1
                else:
                    report.skipped += 1

            logger.info(
                "Backfill progress: scanned=%d embedded=%d failed=%d",
                report.scanned,
                report.embedded,
                report.failed,
            )
            if pause_seconds > 0:
                self._sleep(pause_seconds)

        report.elapsed_seconds = time.perf_counter() - started
        logger.info("Backfill finished: %s", report.as_dict())
        return report


__all__ = [
    "BackfillReport",
    "EmbeddingBackfill",
]
