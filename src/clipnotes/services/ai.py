"""
AI Service

Client for the external LLM provider: text embeddings and chat completions
over the OpenAI-compatible HTTP API.

Design:
    - One AsyncOpenAI client on a shared httpx connection pool; safe for
      concurrent callers.
    - SDK retries are disabled; every failure is mapped once into the
      domain taxonomy (Transport, RateLimited, Upstream, Decode).
    - End-to-end deadline per call (30s embed, 60s completion by default).
    - Mock mode for local development without API costs: deterministic
      vectors and a canned completion when PROVIDER_API_KEY is unset or
      set to 'mock'.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import random
from collections.abc import Sequence

import httpx
import openai
from openai import AsyncOpenAI

from clipnotes.core.config import is_mock_key, settings
from clipnotes.core.errors import (
    DecodeError,
    InvalidInputError,
    RateLimitedError,
    TransportError,
    UpstreamError,
)

logger = logging.getLogger(__name__)


def compose_for_embedding(title: str, body: str, tag_names: Sequence[str]) -> str:
    """
    Build the canonical text indexed for a note.

    Each non-empty field goes on its own line::

        Title: <title>
        Note: <body>
        Tags: <tag1>, <tag2>

    Returns an empty string when all fields are empty; callers must skip
    embedding in that case.
    """
    parts: list[str] = []
    if title and title.strip():
        parts.append(f"Title: {title}")
    if body and body.strip():
        parts.append(f"Note: {body}")
    names = [name for name in tag_names if name and name.strip()]
    if names:
        parts.append("Tags: " + ", ".join(names))
    return "\n".join(parts)


class EmbeddingClient:
    """
    Async provider client exposing ``embed`` and ``complete``.

    Usage::

        client = EmbeddingClient()
        vector = await client.embed("Title: intro\\nNote: hello")
        answer = await client.complete("Summarize ...")
        await client.aclose()
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        embedding_model: str | None = None,
        completion_model: str | None = None,
        dimension: int | None = None,
        embedding_timeout: float | None = None,
        completion_timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if api_key is None:
            key = settings.PROVIDER_API_KEY
            self.is_mock = settings.mock_provider
        else:
            key = api_key
            self.is_mock = is_mock_key(api_key)

        self._embedding_model = embedding_model or settings.EMBEDDING_MODEL
        self._completion_model = completion_model or settings.COMPLETION_MODEL
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self._embedding_timeout = embedding_timeout or settings.EMBEDDING_TIMEOUT
        self._completion_timeout = completion_timeout or settings.COMPLETION_TIMEOUT
        self._max_tokens = max_tokens or settings.COMPLETION_MAX_TOKENS
        self._temperature = (
            settings.COMPLETION_TEMPERATURE if temperature is None else temperature
        )

        self._client: AsyncOpenAI | None = None
        if not self.is_mock:
            self._client = AsyncOpenAI(
                api_key=key,
                base_url=base_url or settings.PROVIDER_BASE_URL,
                max_retries=0,
                http_client=http_client
                or httpx.AsyncClient(
                    limits=httpx.Limits(max_connections=20, max_keepalive_connections=10)
                ),
            )
        else:
            logger.info("Provider client running in mock mode (no API key)")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """
        Embed a text into a D-dimensional vector.

        Raises:
            InvalidInputError: Empty text (no network call is made).
            TransportError: Connection failure or deadline exceeded.
            RateLimitedError: Provider answered 429.
            UpstreamError: Provider answered a non-success status.
            DecodeError: Body missing data or vector of the wrong size.
        """
        if not text or not text.strip():
            raise InvalidInputError("Cannot embed empty text")

        if self._client is None:
            return self._mock_embedding(text)

        response = await self._call(
            "embeddings",
            self._embedding_timeout,
            self._client.embeddings.create(
                input=[text],
                model=self._embedding_model,
                encoding_format="float",
            ),
        )

        data = getattr(response, "data", None)
        if not data:
            raise DecodeError("No embedding data received")
        vector = getattr(data[0], "embedding", None)
        if not isinstance(vector, list) or len(vector) != self.dimension:
            size = len(vector) if isinstance(vector, list) else None
            raise DecodeError(
                f"Expected a {self.dimension}-dim embedding",
                {"received_dimension": size},
            )
        return [float(v) for v in vector]

    async def complete(self, prompt: str) -> str:
        """
        Run a single-turn chat completion and return the first choice.

        Raises:
            Same taxonomy as ``embed``.
        """
        if not prompt or not prompt.strip():
            raise InvalidInputError("Cannot complete an empty prompt")

        if self._client is None:
            return self._mock_completion(prompt)

        response = await self._call(
            "chat/completions",
            self._completion_timeout,
            self._client.chat.completions.create(
                model=self._completion_model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            ),
        )

        choices = getattr(response, "choices", None)
        if not choices:
            raise DecodeError("No response from AI")
        content = getattr(getattr(choices[0], "message", None), "content", None)
        if content is None:
            raise DecodeError("Completion choice has no message content")

        logger.info(
            "Completion generated (model=%s, length=%d)",
            self._completion_model,
            len(content),
        )
        return content

    async def aclose(self) -> None:
        """Release the HTTP connection pool."""
        if self._client is not None:
            await self._client.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call(self, endpoint: str, timeout: float, request):
        """Await a provider request under a deadline and map its failures."""
        try:
            async with asyncio.timeout(timeout):
                return await request
        except TimeoutError as e:
            raise TransportError(f"Provider {endpoint} timed out after {timeout}s") from e
        except openai.RateLimitError as e:
            raise RateLimitedError(f"Provider {endpoint} rate limited", _body(e)) from e
        except openai.APIConnectionError as e:
            # Includes APITimeoutError
            raise TransportError(f"Provider {endpoint} unreachable: {e}") from e
        except openai.APIStatusError as e:
            raise UpstreamError(
                f"Provider {endpoint} returned status {e.status_code}",
                _body(e),
            ) from e
        except openai.APIResponseValidationError as e:
            raise DecodeError(f"Provider {endpoint} returned a malformed body") from e
        except openai.APIError as e:
            raise UpstreamError(f"Provider {endpoint} error: {e}") from e
        except ValueError as e:
            raise DecodeError(f"Provider {endpoint} returned invalid JSON") from e

    def _mock_embedding(self, text: str) -> list[float]:
        """Deterministic unit vector seeded by the text hash."""
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rng = random.Random(seed)
        raw = [rng.gauss(0.0, 1.0) for _ in range(self.dimension)]
        norm = math.sqrt(sum(v * v for v in raw)) or 1.0
        return [v / norm for v in raw]

    @staticmethod
    def _mock_completion(prompt: str) -> str:
        logger.warning("Returning mocked completion (provider not configured)")
        return (
            "**Note: AI service not configured (mock mode).**\n\n"
            f"Prompt received ({len(prompt)} chars)."
        )


def _body(error: openai.APIStatusError) -> object:
    body = getattr(error, "body", None)
    return body if body is not None else getattr(error, "message", None)
