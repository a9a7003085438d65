"""
Tutor Session - Outbound boundary for one signed-in student

WHAT: User-scoped facade over the orchestrator and the conversation store
WHERE: solo_tutor/runtime/memory/session.py - bridges callers and the runtime
WHO: Chat CLI and any host application embedding the tutor
TIME: Conversation helpers are single store calls; ``send`` is one full run

``send`` never raises for pipeline failures: every ``TurnFailure`` becomes a
stage-tagged ``TurnResponse`` so callers can say "couldn't reach the tutor"
or "couldn't save the reply". Invalid input and ownership problems are tagged
with the ``Request`` stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from pydantic import ValidationError

from .errors import ConversationAccessError, ReplyNotSavedError, TurnFailure
from .models import Conversation, Turn, TurnRequest, TurnResponse
from .orchestrator import ConversationOrchestrator, TurnRun
from .turn_store import TurnStore

logger = logging.getLogger(__name__)

REQUEST_STAGE = "Request"


@dataclass(slots=True)
class TutorSession:
    orchestrator: ConversationOrchestrator
    store: TurnStore
    user_id: str

    # ---------------------- conversations ----------------------
    def start_conversation(self, title: Optional[str] = None) -> Conversation:
        conversation = self.store.create_conversation(self.user_id, title)
        logger.info("Started conversation %s for %s", conversation.conversation_id, self.user_id)
        return conversation

    def conversations(self) -> List[Conversation]:
        return self.store.list_conversations(self.user_id)

    def default_conversation(self) -> Conversation:
        """Most recently active conversation, creating one when the user has none."""

        existing = self.conversations()
        if existing:
            return existing[0]
        return self.start_conversation()

    def _owned(self, conversation_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or conversation.owner_id != self.user_id:
            raise ConversationAccessError(f"conversation {conversation_id} not found")
        return conversation

    def history(self, conversation_id: str, *, limit: int = 50) -> List[Turn]:
        """Last ``limit`` turns in reading order."""

        self._owned(conversation_id)
        return self.store.recent_turns(conversation_id, limit)

    def rename(self, conversation_id: str, title: Optional[str]) -> None:
        if not self.store.rename_conversation(conversation_id, self.user_id, title):
            raise ConversationAccessError(f"conversation {conversation_id} not found")

    def delete(self, conversation_id: str) -> None:
        if not self.store.delete_conversation(conversation_id, self.user_id):
            raise ConversationAccessError(f"conversation {conversation_id} not found")

    # ---------------------- messaging ----------------------
    def send(
        self,
        conversation_id: str,
        text: str,
        *,
        image_ref: Optional[str] = None,
        run: TurnRun | None = None,
    ) -> TurnResponse:
        try:
            request = TurnRequest(
                conversation_id=conversation_id,
                user_id=self.user_id,
                text=text,
                image_ref=image_ref,
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            field_name = ".".join(str(p) for p in first.get("loc", ())) or "request"
            return TurnResponse.failure(REQUEST_STAGE, f"invalid {field_name}: {first.get('msg', 'invalid value')}")

        try:
            result = self.orchestrator.submit_turn(request, run=run)
        except ConversationAccessError as exc:
            logger.info("Rejected turn for %s: %s", self.user_id, exc)
            return TurnResponse.failure(REQUEST_STAGE, str(exc))
        except ReplyNotSavedError as exc:
            return TurnResponse.failure(exc.stage, exc.message, unsaved_reply=exc.generated_text)
        except TurnFailure as exc:
            return TurnResponse.failure(exc.stage, exc.message)
        return TurnResponse.from_result(result)


__all__ = [
    "REQUEST_STAGE",
    "TutorSession",
]
