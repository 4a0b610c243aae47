import asyncio
from types import SimpleNamespace

import pytest

from agents.business_context.integration.gemini_client import (
    GeminiEmbeddingService,
    GeminiLanguageModel,
    create_genai_client,
)
from shared.base.services import ExternalServiceError
from shared.config.settings import GenAIConfig


class DummyModels:
    def __init__(self, text="Aggregation|0.9", delay=0.0, error=None, vectors=None):
        self.text = text
        self.delay = delay
        self.error = error
        self.vectors = vectors
        self.requests = []

    async def generate_content(self, model, contents, config):
        self.requests.append({'model': model, 'contents': contents, 'config': config})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return SimpleNamespace(text=self.text)

    async def embed_content(self, model, contents):
        self.requests.append({'model': model, 'contents': contents})
        if self.error:
            raise self.error
        vectors = self.vectors if self.vectors is not None else [[float(len(c)), 1.0] for c in contents]
        return SimpleNamespace(embeddings=[SimpleNamespace(values=v) for v in vectors])


def _client(models):
    return SimpleNamespace(aio=SimpleNamespace(models=models))


@pytest.mark.asyncio
async def test_completion_returns_response_text():
    models = DummyModels(text="Aggregation|0.9")
    model = GeminiLanguageModel(_client(models), GenAIConfig(default_model="gemini-test"))

    assert await model.complete("Classify the business intent", timeout=1.0) == "Aggregation|0.9"
    assert models.requests[0]['model'] == "gemini-test"
    assert models.requests[0]['config'].temperature == pytest.approx(0.1)


@pytest.mark.asyncio
@pytest.mark.parametrize("models", [
    DummyModels(error=RuntimeError("quota exceeded")),
    DummyModels(text=""),
    DummyModels(delay=1.0),
])
async def test_completion_failures_surface_as_external_service_errors(models):
    model = GeminiLanguageModel(_client(models), GenAIConfig())

    with pytest.raises(ExternalServiceError):
        await model.complete("prompt", timeout=0.05)


@pytest.mark.asyncio
async def test_embeddings_preserve_input_order():
    models = DummyModels()
    service = GeminiEmbeddingService(_client(models), GenAIConfig(embedding_model="embedding-test"))

    vectors = await service.embed_batch(["ab", "abcd"])

    assert vectors == [[2.0, 1.0], [4.0, 1.0]]
    assert await service.embed("abc") == [3.0, 1.0]
    assert await service.embed_batch([]) == []
    assert models.requests[0]['model'] == "embedding-test"


@pytest.mark.asyncio
@pytest.mark.parametrize("models", [
    DummyModels(error=RuntimeError("unavailable")),
    DummyModels(vectors=[[1.0, 0.0]]),
])
async def test_embedding_failures_surface_as_external_service_errors(models):
    service = GeminiEmbeddingService(_client(models), GenAIConfig())

    with pytest.raises(ExternalServiceError):
        await service.embed_batch(["deposit", "withdrawal"])


def test_no_client_without_api_key():
    assert create_genai_client(GenAIConfig()) is None

    with pytest.raises(ExternalServiceError):
        GeminiLanguageModel(config=GenAIConfig())
    with pytest.raises(ExternalServiceError):
        GeminiEmbeddingService(config=GenAIConfig())


def test_client_is_built_from_api_key():
    from google import genai

    client = create_genai_client(GenAIConfig(api_key="test-key"))

    assert isinstance(client, genai.Client)
