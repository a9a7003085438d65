"""
Embedding Client - Text to fixed-length vectors via an external service

WHAT: Wraps an OpenAI-compatible /embeddings endpoint behind a typed contract
WHERE: solo_tutor/runtime/memory/embedding_client.py - leaf client
WHO: Orchestrator (query + reply embeddings) and the backfill pass
TIME: Bounded by ``timeout_seconds`` per attempt and the retry policy

The dimensionality D is fixed for the lifetime of the deployed index. Changing
it invalidates every stored vector and needs a full re-embedding pass, so a
response of any other length is treated as malformed rather than accepted.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import EmbeddingFailure
from .retry import RetriesExhausted, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.openai.com/v1"
SUPPORTED_DIMENSIONS = {
    1536: "text-embedding-3-small",
    3072: "text-embedding-3-large",
}
DEFAULT_DIMENSIONS = 3072


class EmbeddingRequest(BaseModel):
    model: str
    input: str
    encoding_format: Literal["float"] = "float"
    dimensions: Optional[int] = None


class EmbeddingDatum(BaseModel):
    embedding: List[float] = Field(min_length=1)
    index: int = 0


class EmbeddingResponse(BaseModel):
    data: List[EmbeddingDatum] = Field(min_length=1)
    model: Optional[str] = None


@dataclass(slots=True)
class EmbeddingConfig:
    api_key: str = ""
    api_base: str = DEFAULT_API_BASE
    dimensions: int = DEFAULT_DIMENSIONS
    model: str = ""
    request_dimensions: bool = True
    timeout_seconds: float = 15.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.dimensions not in SUPPORTED_DIMENSIONS:
            supported = ", ".join(str(d) for d in sorted(SUPPORTED_DIMENSIONS))
            raise ValueError(f"unsupported embedding dimensions {self.dimensions}; expected one of {supported}")
        if not self.model:
            self.model = SUPPORTED_DIMENSIONS[self.dimensions]

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            api_key=os.getenv("TUTOR_EMBEDDING_API_KEY", os.getenv("OPENAI_API_KEY", "")),
            api_base=os.getenv("TUTOR_EMBEDDING_API_BASE", DEFAULT_API_BASE),
            dimensions=int(os.getenv("TUTOR_EMBEDDING_DIMENSIONS", str(DEFAULT_DIMENSIONS))),
            model=os.getenv("TUTOR_EMBEDDING_MODEL", ""),
            timeout_seconds=float(os.getenv("TUTOR_EMBEDDING_TIMEOUT", "15")),
            retry=RetryPolicy(
                max_attempts=int(os.getenv("TUTOR_EMBEDDING_RETRIES", "3")),
                backoff_seconds=float(os.getenv("TUTOR_EMBEDDING_BACKOFF", "0.5")),
            ),
        )


class EmbeddingClient:
    """Turns a non-empty string into a vector of exactly ``dimensions`` floats."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        self._http = httpx.Client(
            base_url=self.config.api_base.rstrip("/"),
            headers=headers,
            timeout=self.config.timeout_seconds,
            transport=transport,
        )

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "EmbeddingClient":
        return self

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()

    def embed(self, text: str) -> List[float]:
        """Embed ``text``; empty or whitespace-only input is a caller error."""

        if text is None or not str(text).strip():
            raise ValueError("cannot embed empty text")

        request = EmbeddingRequest(
            model=self.config.model,
            input=text,
            dimensions=self.config.dimensions if self.config.request_dimensions else None,
        )
        logger.debug("Embedding %d chars with %s", len(text), self.config.model)

        try:
            body = self.config.retry.call(lambda: self._post(request), label="embedding")
        except RetriesExhausted as exc:
            raise EmbeddingFailure(f"embedding service unavailable: {exc.last_error}") from exc
        except httpx.HTTPStatusError as exc:
            raise EmbeddingFailure(f"embedding service returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise EmbeddingFailure(f"embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingFailure("embedding service returned a non-JSON payload") from exc

        return self._parse(body)

    def _post(self, request: EmbeddingRequest) -> Any:
        response = self._http.post("/embeddings", json=request.model_dump(exclude_none=True))
        response.raise_for_status()
        return response.json()

    def _parse(self, body: Any) -> List[float]:
        try:
            parsed = EmbeddingResponse.model_validate(body)
        except ValidationError as exc:
            raise EmbeddingFailure(f"malformed embedding payload: {exc.error_count()} validation error(s)") from exc

        vector = sorted(parsed.data, key=lambda item: item.index)[0].embedding
        if len(vector) != self.config.dimensions:
            raise EmbeddingFailure(
                f"embedding has dimension {len(vector)}, index expects {self.config.dimensions}"
            )
        if not all(math.isfinite(v) for v in vector):
            raise EmbeddingFailure("embedding contains non-finite values")
        if not any(vector):
            raise EmbeddingFailure("embedding service returned a zero vector")
        return vector


__all__ = [
    "SUPPORTED_DIMENSIONS",
    "DEFAULT_DIMENSIONS",
    "EmbeddingRequest",
    "EmbeddingResponse",
    "EmbeddingConfig",
    "EmbeddingClient",
]
