import asyncio
from datetime import datetime

import pytest

from agents.business_context.analysis.semantic_matching import SemanticBusinessMetadataService
from agents.business_context.analysis.term_extractor import KeywordBusinessTermExtractor
from agents.business_context.analysis.time_context import TimeContextAnalyzer
from agents.business_context.orchestrator import ContextAnalysisOrchestrator, create_orchestrator
from shared.base.in_memory import (
    InMemoryBusinessMetadataService,
    InMemoryFeedbackRepository,
    InMemoryUserPatternProvider,
)
from shared.config.settings import Settings
from shared.schemas.business_context import (
    Domain,
    Entity,
    EntityType,
    ExtractionMethod,
    Intent,
    IntentPattern,
    IntentType,
    TimeGranularity,
    UserAnalysisPatterns,
    UserFeedback,
    FeedbackType,
    UserTokenPreferences,
)

from conftest import (
    INTENT_MARKER,
    UK_QUESTION,
    DummyEmbeddingService,
    DummyLanguageModel,
    FailingLanguageModel,
    SlowLanguageModel,
)


class DummySlowEntityExtractor:
    def __init__(self, delay=5.0):
        self.delay = delay
        self.started = asyncio.Event()
        self.cancelled = False

    async def extract_entities(self, question):
        self.started.set()
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return []


class DummyBrokenEntityExtractor:
    async def extract_entities(self, question):
        raise RuntimeError("extractor crashed")


class DummyBrokenTermExtractor(KeywordBusinessTermExtractor):
    async def extract_terms(self, question):
        raise RuntimeError("term extraction crashed")


@pytest.fixture
def orchestrator_factory(config, fixed_today, catalog):
    def make(language_model=None, **overrides):
        options = dict(
            language_model=language_model,
            metadata_service=InMemoryBusinessMetadataService(catalog),
            feedback_repository=InMemoryFeedbackRepository(),
            time_extractor=TimeContextAnalyzer(language_model, config, today=fixed_today),
            config=config,
        )
        options.update(overrides)
        return ContextAnalysisOrchestrator(**options)

    return make


@pytest.mark.asyncio
async def test_uk_deposit_question_profile(orchestrator_factory):
    orchestrator = orchestrator_factory(DummyLanguageModel({INTENT_MARKER: "Aggregation|0.95"}))

    profile, metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION, "analyst-1")

    assert profile.intent.type == IntentType.AGGREGATION
    assert profile.domain.name == "Banking"
    entity_keys = {(e.name, e.type) for e in profile.entities}
    assert ("deposit", EntityType.METRIC) in entity_keys
    assert ("UK", EntityType.DIMENSION) in entity_keys
    assert profile.time_range.start == datetime(2024, 2, 1)
    assert profile.time_range.granularity == TimeGranularity.MONTH
    assert "deposit" in profile.business_terms
    assert "deposit" in profile.metadata['identified_metrics']
    assert "UK" in profile.metadata['identified_dimensions']
    assert profile.analysis_id == metrics.analysis_id
    assert 0.0 < profile.confidence <= 0.98
    assert not metrics.failed_branches
    assert not metrics.cancelled_branches
    assert set(metrics.branch_durations_ms) == {"entities", "intent", "domain", "terms", "time_range"}


@pytest.mark.asyncio
async def test_empty_question_returns_fallback_profile(orchestrator_factory):
    orchestrator = orchestrator_factory()

    profile = await orchestrator.analyze_question("   ")

    assert profile.domain.name == "General"
    assert profile.entities == []
    assert 0.3 <= profile.confidence <= 0.4
    assert profile.metadata['fallback_analysis'] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("language_model", [None, FailingLanguageModel(), SlowLanguageModel(delay=1.0)])
async def test_unavailable_language_model_degrades_gracefully(language_model, orchestrator_factory):
    orchestrator = orchestrator_factory(language_model)

    profile, metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION)

    assert profile.intent.type == IntentType.AGGREGATION
    assert profile.domain.name == "Banking"
    assert any(e.name == "deposit" for e in profile.entities)
    assert not profile.metadata.get('fallback_analysis')
    assert not metrics.failed_branches


@pytest.mark.asyncio
async def test_failing_branch_uses_its_fallback(orchestrator_factory):
    orchestrator = orchestrator_factory(entity_extractor=DummyBrokenEntityExtractor())

    profile, metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION)

    assert metrics.failed_branches == ["entities"]
    assert profile.entities == []
    assert profile.intent.type == IntentType.AGGREGATION
    assert orchestrator.branch_failure_counter.get_value() == 1


@pytest.mark.asyncio
async def test_branches_past_the_deadline_are_cancelled(orchestrator_factory, config):
    extractor = DummySlowEntityExtractor(delay=5.0)
    orchestrator = orchestrator_factory(
        entity_extractor=extractor,
        config=config.model_copy(update={'analysis_timeout_seconds': 0.2}),
    )

    profile, metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION)

    assert metrics.cancelled_branches == ["entities"]
    assert extractor.cancelled
    assert profile.entities == []
    assert profile.domain.name == "Banking"


@pytest.mark.asyncio
async def test_caller_cancellation_propagates(orchestrator_factory):
    extractor = DummySlowEntityExtractor(delay=5.0)
    orchestrator = orchestrator_factory(entity_extractor=extractor)

    task = asyncio.ensure_future(orchestrator.analyze_question(UK_QUESTION))
    await asyncio.wait_for(extractor.started.wait(), timeout=1.0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert extractor.cancelled


@pytest.mark.asyncio
async def test_profiles_are_cached_per_question_and_user(orchestrator_factory):
    orchestrator = orchestrator_factory()

    first, first_metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION, "u1")
    second, second_metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION.upper(), "u1")
    other_user, other_metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION, "u2")

    assert not first_metrics.cache_hit
    assert second_metrics.cache_hit
    assert second.analysis_id == first.analysis_id
    assert not other_metrics.cache_hit
    assert other_user.analysis_id != first.analysis_id
    assert orchestrator.cache_hit_counter.get_value() == 1


@pytest.mark.asyncio
async def test_user_patterns_personalize_the_profile(orchestrator_factory):
    patterns = UserAnalysisPatterns(
        user_id="u1",
        intent_patterns={IntentType.AGGREGATION: IntentPattern(frequency=12, success_rate=0.9)},
        entity_frequency={"deposit": 10},
        domain_preferences={"Banking": 0.9},
    )
    plain = orchestrator_factory()
    personalized = orchestrator_factory(pattern_provider=InMemoryUserPatternProvider({"u1": patterns}))

    base = await plain.analyze_question(UK_QUESTION)
    profile = await personalized.analyze_question(UK_QUESTION, "u1")

    assert profile.intent.metadata['personalized'] is True
    assert profile.intent.confidence == pytest.approx(min(base.intent.confidence + 0.1, 0.98))
    assert profile.domain.relevance_score == pytest.approx(min(base.domain.relevance_score + 0.1, 0.98))


def test_personalization_penalises_poor_history():
    intent = Intent(type=IntentType.TREND, confidence=0.7)
    domain = Domain(name="Gaming", relevance_score=0.6)
    entity = Entity(name="bets", type=EntityType.METRIC, confidence=0.9, extraction_method=ExtractionMethod.PATTERN)
    patterns = UserAnalysisPatterns(
        user_id="u1",
        intent_patterns={IntentType.TREND: IntentPattern(frequency=3, success_rate=0.4)},
        entity_frequency={"BETS": 20},
        domain_preferences={"Gaming": 0.2},
    )

    new_intent, new_domain, new_entities = ContextAnalysisOrchestrator.apply_personalization(
        patterns, intent, domain, [entity]
    )

    assert new_intent.confidence == pytest.approx(0.65)
    assert new_domain.relevance_score == pytest.approx(0.55)
    assert new_entities[0].confidence == pytest.approx(0.98)
    assert intent.confidence == 0.7


def test_overall_confidence():
    intent = Intent(type=IntentType.AGGREGATION, confidence=0.95)
    domain = Domain(name="Banking", relevance_score=0.95)
    entities = [
        Entity(name=n, type=EntityType.METRIC, confidence=0.95, extraction_method=ExtractionMethod.PATTERN)
        for n in ("deposit", "revenue")
    ]

    assert ContextAnalysisOrchestrator.calculate_overall_confidence(intent, domain, entities) == pytest.approx(0.98)

    low = ContextAnalysisOrchestrator.calculate_overall_confidence(
        Intent(type=IntentType.DETAIL, confidence=0.5), Domain(name="General", relevance_score=0.5), []
    )
    assert low == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_build_prompt_uses_user_preferences(orchestrator_factory, catalog):
    provider = InMemoryUserPatternProvider(preferences={"u1": UserTokenPreferences(prefer_more_examples=True)})
    orchestrator = orchestrator_factory(pattern_provider=provider)
    profile = await orchestrator.analyze_question(UK_QUESTION, "u1")

    prompt, token_count, result = await orchestrator.build_prompt(UK_QUESTION, profile, catalog)

    assert prompt == result.prompt
    assert token_count == result.token_count
    assert result.success
    assert UK_QUESTION in prompt

    adaptation = await orchestrator.adapt_prompt(
        result, UserFeedback(feedback_type=FeedbackType.TOO_MUCH_CONTEXT), profile
    )
    assert adaptation.original_build_id == result.build_id


def test_create_orchestrator_without_api_key(monkeypatch):
    monkeypatch.delenv("GOOGLE_GENAI_API_KEY", raising=False)
    settings = Settings(_env_file=None)

    orchestrator = create_orchestrator(settings)

    assert isinstance(orchestrator, ContextAnalysisOrchestrator)
    assert orchestrator.entity_extractor.language_model is None


def test_create_orchestrator_with_api_key_wires_gemini(monkeypatch):
    from agents.business_context.integration.gemini_client import GeminiLanguageModel

    monkeypatch.setenv("GOOGLE_GENAI_API_KEY", "test-key")
    settings = Settings(_env_file=None)

    orchestrator = create_orchestrator(settings)

    assert isinstance(orchestrator.entity_extractor.language_model, GeminiLanguageModel)


def test_create_orchestrator_searches_catalog(monkeypatch, catalog):
    monkeypatch.delenv("GOOGLE_GENAI_API_KEY", raising=False)
    settings = Settings(_env_file=None)

    keyword = create_orchestrator(settings, catalog=catalog)
    semantic = create_orchestrator(settings, catalog=catalog, embedding_service=DummyEmbeddingService())

    assert isinstance(keyword.entity_extractor.entity_linker.metadata_service, InMemoryBusinessMetadataService)
    metadata_service = semantic.entity_extractor.entity_linker.metadata_service
    assert isinstance(metadata_service, SemanticBusinessMetadataService)
    assert metadata_service.threshold_provider is semantic.threshold_optimizer
    assert semantic.entity_extractor.threshold_provider is semantic.threshold_optimizer


@pytest.mark.asyncio
async def test_rated_feedback_tunes_catalog_search_thresholds(monkeypatch, catalog, profile_factory):
    monkeypatch.delenv("GOOGLE_GENAI_API_KEY", raising=False)
    repository = InMemoryFeedbackRepository()
    orchestrator = create_orchestrator(Settings(_env_file=None), feedback_repository=repository, catalog=catalog)
    profile = profile_factory(intent_type=IntentType.AGGREGATION, domain_name="Banking")
    _, _, result = await orchestrator.build_prompt(UK_QUESTION, profile, catalog)
    optimizer = orchestrator.threshold_optimizer

    await orchestrator.adapt_prompt(result, UserFeedback(feedback_type=FeedbackType.TOO_MUCH_CONTEXT), profile)
    assert await repository.get_threshold_feedback_score("Aggregation:Banking:table_search") is None

    await orchestrator.adapt_prompt(
        result, UserFeedback(feedback_type=FeedbackType.TOO_MUCH_CONTEXT, rating=5), profile
    )

    assert await repository.get_threshold_feedback_score("Aggregation:Banking:table_search") == 1.0
    assert await repository.get_threshold_feedback_score("Aggregation:Banking:column_search") == 1.0
    assert await optimizer.get_optimal_threshold(
        IntentType.AGGREGATION, "Banking", "table_search"
    ) == pytest.approx(0.40)


@pytest.mark.asyncio
async def test_degraded_profiles_are_not_cached(orchestrator_factory):
    orchestrator = orchestrator_factory(entity_extractor=DummyBrokenEntityExtractor())

    _, first_metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION, "u1")
    _, second_metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION, "u1")

    assert first_metrics.failed_branches == ["entities"]
    assert not second_metrics.cache_hit
    assert second_metrics.failed_branches == ["entities"]
    assert orchestrator.cache.keys() == []


@pytest.mark.asyncio
async def test_failed_terms_branch_falls_back_to_question_keywords(orchestrator_factory):
    orchestrator = orchestrator_factory(term_extractor=DummyBrokenTermExtractor())

    profile, metrics = await orchestrator.analyze_question_with_metrics(UK_QUESTION)

    assert set(metrics.failed_branches) == {"terms", "domain"}
    assert "total" in profile.business_terms
    assert profile.domain.name == "General"
