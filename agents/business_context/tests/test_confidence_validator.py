import pytest

from agents.business_context.analysis.confidence_validator import ConfidenceValidator
from shared.base.in_memory import InMemoryFeedbackRepository
from shared.schemas.business_context import (
    Domain,
    Entity,
    EntityType,
    ExtractionMethod,
    Intent,
    IntentType,
    ValidationCheckType,
)

from conftest import UK_QUESTION


def _entity(name, entity_type, confidence):
    return Entity(name=name, type=entity_type, confidence=confidence, extraction_method=ExtractionMethod.PATTERN)


@pytest.mark.asyncio
async def test_confident_intent_passes_with_adjusted_confidence(config):
    validator = ConfidenceValidator(config=config)
    intent = Intent(type=IntentType.AGGREGATION, confidence=0.7207)

    validated, result = await validator.validate_intent(intent, UK_QUESTION)

    assert result.is_valid
    assert result.validation_score == pytest.approx(0.935)
    assert validated.type == IntentType.AGGREGATION
    assert validated.confidence == pytest.approx(0.634, abs=0.005)
    assert {c.check_type for c in result.checks} == set(ValidationCheckType)


@pytest.mark.asyncio
@pytest.mark.parametrize("question,original,expected", [
    ("compare revenue", IntentType.DETAIL, IntentType.ANALYTICAL),
    ("total revenue by region", IntentType.TREND, IntentType.AGGREGATION),
])
async def test_weak_intent_is_replaced_by_rule_fallback(question, original, expected, config):
    validator = ConfidenceValidator(config=config)

    validated, result = await validator.validate_intent(Intent(type=original, confidence=0.1), question)

    assert not result.is_valid
    assert validated.type == expected
    assert validated.confidence == pytest.approx(0.6)
    assert validated.metadata['fallback_applied'] is True
    assert validated.metadata['original_intent'] == original.value


@pytest.mark.asyncio
async def test_adjusted_confidence_is_capped(config):
    validator = ConfidenceValidator(config=config)

    _, result = await validator.validate_intent(Intent(type=IntentType.AGGREGATION, confidence=1.0), UK_QUESTION)

    assert result.adjusted_confidence <= 0.98


@pytest.mark.asyncio
async def test_failed_domain_falls_back_to_general(config):
    repository = InMemoryFeedbackRepository()
    await repository.record_threshold_feedback("Domain:Gaming", 0.0)
    validator = ConfidenceValidator(feedback_repository=repository, config=config)

    domain, result = await validator.validate_domain(Domain(name="Gaming", relevance_score=0.1), "quarterly numbers")

    assert not result.is_valid
    assert domain.name == "General"
    assert domain.relevance_score == pytest.approx(0.5)
    assert domain.metadata['original_domain'] == "Gaming"


@pytest.mark.asyncio
async def test_failed_entities_are_penalised_or_dropped(config):
    repository = InMemoryFeedbackRepository()
    await repository.record_threshold_feedback("Entity:Dimension:bar", 0.0)
    await repository.record_threshold_feedback("Entity:Metric:foo", 0.0)
    validator = ConfidenceValidator(feedback_repository=repository, config=config)

    kept, results = await validator.validate_entities([
        _entity("bar", EntityType.DIMENSION, 0.575),
        _entity("foo", EntityType.METRIC, 0.3),
    ], "foo and bar for the players table")

    assert len(results) == 2
    assert not any(r.is_valid for r in results)
    assert [e.name for e in kept] == ["bar"]
    assert kept[0].confidence == pytest.approx(0.575 * 0.7)
    assert kept[0].metadata['cross_validation_warning'] == 'failed confidence validation'


def test_metrics_without_a_table_are_cross_validated(config):
    validator = ConfidenceValidator(config=config)

    validated = validator.cross_validate_entities([
        _entity("revenue", EntityType.METRIC, 0.8),
        _entity("country", EntityType.DIMENSION, 0.9),
        _entity("clicks", EntityType.METRIC, 0.5),
    ])
    by_name = {e.name: e for e in validated}

    assert by_name["revenue"].confidence == pytest.approx(0.56)
    assert by_name["country"].confidence == pytest.approx(0.9)
    assert "clicks" not in by_name


def test_cross_validation_keeps_entities_when_a_table_is_present(config):
    validator = ConfidenceValidator(config=config)
    entities = [_entity("players", EntityType.TABLE, 0.9), _entity("revenue", EntityType.METRIC, 0.5)]
    assert validator.cross_validate_entities(entities) == entities


@pytest.mark.asyncio
async def test_historical_accuracy_uses_recent_window(config):
    validator = ConfidenceValidator(config=config)

    assert await validator.get_historical_accuracy("Intent:Trend") == pytest.approx(0.75)

    for _ in range(25):
        await validator.record_validation("Intent:Trend", 0.0)
    for _ in range(20):
        await validator.record_validation("Intent:Trend", 1.0)

    assert await validator.get_historical_accuracy("Intent:Trend") == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_history_is_trimmed(config):
    validator = ConfidenceValidator(config=config)

    for index in range(51):
        await validator.record_validation("Intent:Detail", float(index % 2))

    assert len(validator._history["Intent:Detail"]) == 30


@pytest.mark.asyncio
async def test_feedback_repository_seeds_history_and_records_scores(config):
    repository = InMemoryFeedbackRepository()
    await repository.record_threshold_feedback("Intent:Comparison", 0.4)
    validator = ConfidenceValidator(feedback_repository=repository, config=config)

    assert await validator.get_historical_accuracy("Intent:Comparison") == pytest.approx(0.4)

    await validator.validate_intent(Intent(type=IntentType.COMPARISON, confidence=0.9), "compare revenue vs cost")

    assert len(repository._scores["Intent:Comparison"]) == 2
