"""
Generation Client - Multimodal chat completion for tutor replies

WHAT: Wraps an OpenAI-compatible /chat/completions endpoint behind a typed contract
WHERE: solo_tutor/runtime/memory/generation_client.py - leaf client
WHO: Orchestrator (Generating stage)
TIME: Bounded by ``timeout_seconds`` per attempt and the retry policy

Images are passed by reference: when ``image_ref`` is set the user message
becomes a two-part content list (text + image_url) and the URL is forwarded
as-is, never downloaded or re-uploaded.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from .context_assembler import AssembledContext
from .errors import GenerationFailure
from .prompting import compose_system_prompt
from .retry import RetriesExhausted, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.openai.com/v1"


class ImageURL(BaseModel):
    url: str


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Union[TextPart, ImagePart]]]


class ChatCompletionRequest(BaseModel):
    model: str
    messages: List[ChatMessage] = Field(min_length=1)
    max_tokens: int
    temperature: float


class ChoiceMessage(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None


class Choice(BaseModel):
    index: int = 0
    message: ChoiceMessage
    finish_reason: Optional[str] = None


class ChatCompletionResponse(BaseModel):
    choices: List[Choice] = Field(min_length=1)
    model: Optional[str] = None


@dataclass(slots=True)
class GenerationConfig:
    api_key: str = ""
    api_base: str = DEFAULT_API_BASE
    model: str = "gpt-4o"
    max_tokens: int = 500
    temperature: float = 0.8
    timeout_seconds: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls) -> "GenerationConfig":
        return cls(
            api_key=os.getenv("TUTOR_GENERATION_API_KEY", os.getenv("OPENAI_API_KEY", "")),
            api_base=os.getenv("TUTOR_GENERATION_API_BASE", DEFAULT_API_BASE),
            model=os.getenv("TUTOR_GENERATION_MODEL", "gpt-4o"),
            max_tokens=int(os.getenv("TUTOR_GENERATION_MAX_TOKENS", "500")),
            temperature=float(os.getenv("TUTOR_GENERATION_TEMPERATURE", "0.8")),
            timeout_seconds=float(os.getenv("TUTOR_GENERATION_TIMEOUT", "60")),
            retry=RetryPolicy(
                max_attempts=int(os.getenv("TUTOR_GENERATION_RETRIES", "2")),
                backoff_seconds=float(os.getenv("TUTOR_GENERATION_BACKOFF", "1.0")),
            ),
        )


def build_messages(
    persona: str,
    context: AssembledContext,
    user_text: str,
    image_ref: str | None = None,
) -> List[ChatMessage]:
    system = ChatMessage(role="system", content=compose_system_prompt(persona=persona, context=context))
    if image_ref:
        user = ChatMessage(
            role="user",
            content=[TextPart(text=user_text), ImagePart(image_url=ImageURL(url=image_ref))],
        )
    else:
        user = ChatMessage(role="user", content=user_text)
    return [system, user]


class GenerationClient:
    """Produces the tutor's reply text for a persona, context, and user input."""

    def __init__(
        self,
        config: GenerationConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config or GenerationConfig()
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        self._http = httpx.Client(
            base_url=self.config.api_base.rstrip("/"),
            headers=headers,
            timeout=self.config.timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GenerationClient":
        return self

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()

    def generate(
        self,
        persona: str,
        context: AssembledContext,
        user_text: str,
        image_ref: str | None = None,
    ) -> str:
        request = ChatCompletionRequest(
            model=self.config.model,
            messages=build_messages(persona, context, user_text, image_ref),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        logger.debug(
            "Requesting completion from %s (multimodal=%s, context_entries=%d)",
            self.config.model,
            bool(image_ref),
            context.entry_count,
        )

        try:
            body = self.config.retry.call(lambda: self._post(request), label="generation")
        except RetriesExhausted as exc:
            raise GenerationFailure(f"tutor model unavailable: {exc.last_error}") from exc
        except httpx.HTTPStatusError as exc:
            raise GenerationFailure(f"tutor model returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise GenerationFailure(f"tutor model request failed: {exc}") from exc
        except ValueError as exc:
            raise GenerationFailure("tutor model returned a non-JSON payload") from exc

        return self._parse(body)

    def _post(self, request: ChatCompletionRequest) -> Any:
        response = self._http.post("/chat/completions", json=request.model_dump(exclude_none=True))
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _parse(body: Any) -> str:
        try:
            parsed = ChatCompletionResponse.model_validate(body)
        except ValidationError as exc:
            raise GenerationFailure(f"malformed completion payload: {exc.error_count()} validation error(s)") from exc

        text = (parsed.choices[0].message.content or "").strip()
        if not text:
            raise GenerationFailure("tutor model returned an empty reply")
        return text


__all__ = [
    "ChatMessage",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "GenerationConfig",
    "GenerationClient",
    "build_messages",
]
