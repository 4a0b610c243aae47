"""
Google GenAI adapters for the language-model and embedding collaborators.

Both adapters use the asynchronous surface of ``google.genai.Client``
(``client.aio.models``). Every failure, including timeouts, surfaces as
``ExternalServiceError`` so callers can take their heuristic fallback.
"""

import asyncio
from typing import List, Optional, Sequence

from google import genai
from google.genai import types

from shared.base.services import EmbeddingService, ExternalServiceError, LanguageModelService
from shared.config.logging_config import configure_logger_for_component
from shared.config.settings import GenAIConfig, get_settings
from shared.utils.metrics import get_metrics_collector


def create_genai_client(config: Optional[GenAIConfig] = None) -> Optional[genai.Client]:
    """Build a client from configuration, or ``None`` when no API key is set."""
    config = config or get_settings().genai
    if not config.is_configured:
        return None
    return genai.Client(api_key=config.api_key.get_secret_value())


class GeminiLanguageModel(LanguageModelService):
    """Text completion through Gemini."""

    def __init__(self, client: Optional[genai.Client] = None, config: Optional[GenAIConfig] = None):
        self.config = config or get_settings().genai
        self.client = client or create_genai_client(self.config)
        if self.client is None:
            raise ExternalServiceError("gemini", "GOOGLE_GENAI_API_KEY is not configured")
        self.logger = configure_logger_for_component("integration.gemini")
        self.request_timer = get_metrics_collector().timer("gemini_completion_duration")

    async def complete(self, prompt: str, timeout: float) -> str:
        generation_config = types.GenerateContentConfig(
            temperature=self.config.default_temperature,
            max_output_tokens=self.config.default_max_tokens,
        )
        try:
            async with self.request_timer.time_async_context():
                response = await asyncio.wait_for(
                    self.client.aio.models.generate_content(
                        model=self.config.default_model,
                        contents=prompt,
                        config=generation_config,
                    ),
                    timeout=timeout,
                )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("gemini", f"completion timed out after {timeout}s") from e
        except Exception as e:
            self.logger.debug(f"Gemini completion failed: {e}")
            raise ExternalServiceError("gemini", str(e)) from e

        text = getattr(response, 'text', None)
        if not text:
            raise ExternalServiceError("gemini", "empty completion")
        return text


class GeminiEmbeddingService(EmbeddingService):
    """Text embeddings through Gemini."""

    def __init__(self, client: Optional[genai.Client] = None, config: Optional[GenAIConfig] = None):
        self.config = config or get_settings().genai
        self.client = client or create_genai_client(self.config)
        if self.client is None:
            raise ExternalServiceError("gemini-embedding", "GOOGLE_GENAI_API_KEY is not configured")
        self.logger = configure_logger_for_component("integration.gemini_embedding")

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            response = await asyncio.wait_for(
                self.client.aio.models.embed_content(
                    model=self.config.embedding_model,
                    contents=list(texts),
                ),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("gemini-embedding", "embedding request timed out") from e
        except Exception as e:
            raise ExternalServiceError("gemini-embedding", str(e)) from e

        embeddings = getattr(response, 'embeddings', None) or []
        if len(embeddings) != len(texts):
            raise ExternalServiceError(
                "gemini-embedding", f"expected {len(texts)} embeddings, got {len(embeddings)}"
            )
        return [list(embedding.values) for embedding in embeddings]
