#!/usr/bin/env python3
"""
Module: scripts/tutor_chat.py
Summary: Interactive Solo Tutor chat with long-term (similarity) and short-term (recent) memory.
Inputs: TUTOR_* env (embedding/generation/orchestrator), OPENAI_API_KEY, TUTOR_DATABASE_URL; CLI flags
Outputs: Tutor replies on stdout; turns persisted to Postgres (or kept in memory with --in-memory)
Data-Contracts: tutor_conversations / tutor_turns (via PostgresTurnStore)
Related: solo_tutor/runtime/memory/*

Usage:
  python scripts/tutor_chat.py --user alice --dry-run
  python scripts/tutor_chat.py --user alice
  python scripts/tutor_chat.py --user alice --in-memory --telemetry

In-chat commands:
  /image <url>     attach an image to the next message
  /history         show the recent turns of this conversation
  /list            list your conversations
  /new [title]     start a new conversation
  /rename <title>  rename the current conversation
  /exit            quit (Ctrl-D also works)
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from solo_tutor.runtime.memory import (
    ConversationAccessError,
    ConversationOrchestrator,
    EmbeddingClient,
    EmbeddingConfig,
    GenerationClient,
    GenerationConfig,
    InMemoryTurnStore,
    LoggingTelemetryClient,
    OrchestratorConfig,
    PostgresTurnStore,
    TutorSession,
)

logger = logging.getLogger("tutor_chat")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run an interactive Solo Tutor chat session")
    p.add_argument("--user", required=True, help="Owner id of the student")
    p.add_argument("--conversation", default="", help="Conversation id (defaults to most recent)")
    p.add_argument("--new", action="store_true", help="Start a new conversation")
    p.add_argument("--title", default=None, help="Title for a new conversation")
    p.add_argument("--in-memory", action="store_true", help="Keep turns in process memory instead of Postgres")
    p.add_argument("--no-schema", action="store_true", help="Skip ensure_schema (use when DB is already provisioned)")
    p.add_argument("--dry-run", action="store_true", help="Print plan and exit without calling any model")
    p.add_argument("--telemetry", action="store_true", help="Log per-stage telemetry spans")
    p.add_argument("--threshold", type=float, default=None, help="Similarity threshold override")
    p.add_argument("--top-k", type=int, default=None, help="Relevant history matches override")
    p.add_argument("--recent", type=int, default=None, help="Recent turn window override")
    p.add_argument("--log-level", default="WARNING")
    return p.parse_args()


def build_config(args: argparse.Namespace) -> OrchestratorConfig:
    return OrchestratorConfig.from_env().with_overrides(
        similarity_threshold=args.threshold,
        top_k=args.top_k,
        recent_limit=args.recent,
    )


def print_history(session: TutorSession, conversation_id: str) -> None:
    for turn in session.history(conversation_id, limit=20):
        who = "you" if turn.role == "user" else "tutor"
        suffix = f" [image: {turn.image_ref}]" if turn.image_ref else ""
        print(f"  {turn.created_at:%Y-%m-%d %H:%M} {who}> {turn.content}{suffix}")


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    embedding_config = EmbeddingConfig.from_env()
    generation_config = GenerationConfig.from_env()
    config = build_config(args)

    if args.in_memory:
        store = InMemoryTurnStore(dimensions=embedding_config.dimensions)
    else:
        store = PostgresTurnStore.from_env(dimensions=embedding_config.dimensions)

    if args.dry_run:
        print("[plan] Ready to chat with:")
        print(f"  user={args.user} store={'memory' if args.in_memory else 'postgres'}")
        print(f"  embedding={embedding_config.model} dims={embedding_config.dimensions}")
        print(f"  generation={generation_config.model} max_tokens={generation_config.max_tokens} temp={generation_config.temperature}")
        print(f"  threshold={config.similarity_threshold} top_k={config.top_k} recent={config.recent_limit}")
        return 0

    if not args.in_memory and not args.no_schema:
        try:
            store.ensure_schema()
        except Exception as exc:
            print(f"[error] ensure_schema failed: {exc}")
            print("Hint: use --no-schema if tables already exist, or check TUTOR_DATABASE_URL.")
            return 1

    embedder = EmbeddingClient(embedding_config)
    generator = GenerationClient(generation_config)
    orchestrator = ConversationOrchestrator(
        store=store,
        embedder=embedder,
        generator=generator,
        config=config,
        telemetry=LoggingTelemetryClient(logging.INFO) if args.telemetry else None,
    )
    session = TutorSession(orchestrator=orchestrator, store=store, user_id=args.user)

    try:
        if args.new:
            conversation = session.start_conversation(args.title)
        elif args.conversation:
            conversation = next(
                (c for c in session.conversations() if c.conversation_id == args.conversation), None
            )
            if conversation is None:
                print(f"[error] conversation {args.conversation} not found for {args.user}")
                return 1
        else:
            conversation = session.default_conversation()
    except Exception as exc:
        print(f"[error] could not open a conversation: {exc}")
        return 1

    print(f"[chat] conversation={conversation.conversation_id} title={conversation.title or '(untitled)'}")
    print("Type your message. Ctrl-D or /exit to quit.")
    pending_image = None
    try:
        while True:
            try:
                line = input("you> ").strip()
            except EOFError:
                print()
                break
            if not line:
                continue
            if line in {"/exit", ":q"}:
                break
            if line.startswith("/image "):
                pending_image = line.split(" ", 1)[1].strip() or None
                print(f"[chat] image attached: {pending_image}")
                continue
            if line == "/history":
                print_history(session, conversation.conversation_id)
                continue
            if line == "/list":
                for c in session.conversations():
                    marker = "*" if c.conversation_id == conversation.conversation_id else " "
                    print(f" {marker} {c.conversation_id} {c.title or '(untitled)'} updated={c.updated_at:%Y-%m-%d %H:%M}")
                continue
            if line.startswith("/new"):
                conversation = session.start_conversation(line[4:].strip() or None)
                print(f"[chat] conversation={conversation.conversation_id}")
                continue
            if line.startswith("/rename "):
                try:
                    session.rename(conversation.conversation_id, line.split(" ", 1)[1])
                except ConversationAccessError as exc:
                    print(f"[error] {exc}")
                continue

            response = session.send(conversation.conversation_id, line, image_ref=pending_image)
            pending_image = None
            if response.success:
                summary = response.retrieval
                print(
                    f"[memory] {summary.context_type}: {summary.relevant_history_count} relevant, "
                    f"{summary.recent_conversation_count} recent ({response.elapsed_ms:.0f}ms)"
                )
                print(f"tutor> {response.generated_text}\n")
            elif response.unsaved_reply:
                print(f"tutor> {response.unsaved_reply}\n")
                print(f"[warn] this reply was not saved to memory ({response.error})")
            else:
                print(f"[error] {response.stage}: {response.error}")
    finally:
        embedder.close()
        generator.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
