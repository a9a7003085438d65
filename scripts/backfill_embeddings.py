#!/usr/bin/env python3
"""
Module: scripts/backfill_embeddings.py
Summary: Fill null turn embeddings, optionally after rebuilding the vector column at a new dimension.
Inputs: TUTOR_EMBEDDING_*, OPENAI_API_KEY, TUTOR_DATABASE_URL; CLI flags
Outputs: tutor_turns.embedding populated; JSON report on stdout

Usage:
  python scripts/backfill_embeddings.py --dry-run
  python scripts/backfill_embeddings.py --owner alice --batch-size 25 --pause 0.5
  python scripts/backfill_embeddings.py --rebuild-dimensions 3072 --yes
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from solo_tutor.runtime.memory import (
    EmbeddingBackfill,
    EmbeddingClient,
    EmbeddingConfig,
    PostgresTurnStore,
)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Embed stored turns that have no embedding yet")
    p.add_argument("--owner", default=None, help="Restrict to one owner's conversations")
    p.add_argument("--batch-size", type=int, default=50)
    p.add_argument("--pause", type=float, default=0.0, help="Seconds to wait between batches")
    p.add_argument("--max-turns", type=int, default=None)
    p.add_argument(
        "--rebuild-dimensions",
        type=int,
        default=None,
        help="Rebuild the embedding column at this dimension first (clears ALL embeddings)",
    )
    p.add_argument("--yes", action="store_true", help="Confirm the destructive --rebuild-dimensions step")
    p.add_argument("--dry-run", action="store_true", help="Count pending turns and exit")
    p.add_argument("--log-level", default="INFO")
    return p.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = EmbeddingConfig.from_env()
    store = PostgresTurnStore.from_env(dimensions=args.rebuild_dimensions or config.dimensions)

    if args.rebuild_dimensions is not None:
        if args.rebuild_dimensions != config.dimensions:
            print(f"[error] --rebuild-dimensions {args.rebuild_dimensions} does not match TUTOR_EMBEDDING_DIMENSIONS={config.dimensions}")
            return 1
        if not args.yes:
            print("[error] --rebuild-dimensions clears every stored embedding; pass --yes to confirm")
            return 1
        store.rebuild_embedding_column(args.rebuild_dimensions)
    else:
        store.ensure_schema()

    if args.dry_run:
        pending = store.turns_missing_embeddings(args.owner, limit=10_000)
        print(json.dumps({"pending": len(pending), "dimensions": store.dimensions}))
        return 0

    with EmbeddingClient(config) as embedder:
        report = EmbeddingBackfill(store, embedder).run(
            owner_id=args.owner,
            batch_size=args.batch_size,
            pause_seconds=args.pause,
            max_turns=args.max_turns,
        )
    print(json.dumps(report.as_dict()))
    return 0 if report.failed == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
