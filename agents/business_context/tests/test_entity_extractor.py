import json

import pytest

from agents.business_context.analysis.entity_extractor import (
    EntityExtractionPipeline,
    calculate_length_score,
    calculate_position_score,
    merge_entities,
    rescore_entity,
)
from agents.business_context.analysis.schema_linker import SchemaEntityLinker
from agents.business_context.analysis.threshold_optimizer import FUZZY_TERM_MATCH
from shared.base.in_memory import InMemoryBusinessMetadataService
from shared.base.services import SimilarityThresholdProvider
from shared.schemas.business_context import (
    ContextualBusinessSchema,
    Entity,
    EntityType,
    ExtractionMethod,
    GlossaryTerm,
    TableInfo,
)

from conftest import ENTITY_MARKER, UK_QUESTION, DummyLanguageModel, FailingLanguageModel


def _entity(name, entity_type=EntityType.METRIC, confidence=0.8, method=ExtractionMethod.PATTERN, position=0):
    return Entity(
        name=name,
        type=entity_type,
        original_text=name,
        position=position,
        confidence=confidence,
        extraction_method=method,
    )


def test_merge_boosts_entities_confirmed_by_several_strategies():
    merged = merge_entities([
        _entity("Revenue", confidence=0.8, method=ExtractionMethod.PATTERN),
        _entity("revenue", confidence=0.7, method=ExtractionMethod.CONTEXTUAL),
    ])

    assert len(merged) == 1
    assert merged[0].confidence == pytest.approx(0.88)
    assert merged[0].metadata['confirmation_count'] == 2
    assert merged[0].metadata['extraction_methods'] == ["PatternMatching", "Contextual"]


def test_merge_does_not_boost_repeats_of_one_strategy():
    merged = merge_entities([_entity("revenue", confidence=0.8), _entity("revenue", confidence=0.6)])
    assert merged[0].confidence == pytest.approx(0.8)


def test_merge_boost_is_capped():
    merged = merge_entities([
        _entity("deposit", confidence=0.95, method=ExtractionMethod.PATTERN),
        _entity("deposit", confidence=0.9, method=ExtractionMethod.BUSINESS_TERM),
        _entity("deposit", confidence=0.9, method=ExtractionMethod.CONTEXTUAL),
    ])
    assert merged[0].confidence == pytest.approx(0.98)


def test_merge_is_idempotent():
    once = merge_entities([
        _entity("revenue", method=ExtractionMethod.PATTERN),
        _entity("revenue", method=ExtractionMethod.BUSINESS_TERM),
        _entity("country", EntityType.DIMENSION),
    ])
    twice = merge_entities(once)
    assert [(e.name, e.type, e.confidence) for e in twice] == [(e.name, e.type, e.confidence) for e in once]


def test_same_name_with_different_types_is_not_merged():
    merged = merge_entities([_entity("total", EntityType.METRIC), _entity("total", EntityType.COLUMN)])
    assert {e.type for e in merged} == {EntityType.METRIC, EntityType.COLUMN}


def test_length_and_position_scores():
    assert calculate_length_score("a") == 0.3
    assert calculate_length_score("deposit") == 1.0
    assert calculate_length_score("x" * 20) == pytest.approx(0.75)
    assert calculate_length_score("x" * 40) == 0.5

    assert calculate_position_score(0, 50) == 1.0
    assert calculate_position_score(50, 50) == pytest.approx(0.7)


def test_rescore_stays_within_bounds():
    entity = _entity("revenue", confidence=1.0, method=ExtractionMethod.BUSINESS_TERM)
    rescored = rescore_entity(entity, question_length=30)
    assert 0.0 <= rescored.confidence <= 1.0
    assert rescored.metadata['pre_rescore_confidence'] == 1.0


@pytest.mark.asyncio
async def test_uk_deposit_question_extracts_and_links_entities(config):
    extractor = EntityExtractionPipeline(entity_linker=SchemaEntityLinker(), config=config)

    entities = await extractor.extract_entities(UK_QUESTION)
    by_key = {(e.name, e.type): e for e in entities}

    assert ("deposit", EntityType.METRIC) in by_key
    assert ("UK", EntityType.DIMENSION) in by_key

    deposit = by_key[("deposit", EntityType.METRIC)]
    assert deposit.mapped_table == "tbl_Daily_actions"
    assert deposit.mapped_column == "Deposits"
    assert by_key[("UK", EntityType.DIMENSION)].metadata['mapped_value'] == "UK"

    for entity in entities:
        assert config.min_entity_confidence <= entity.confidence <= 1.0

    ordering = [(-e.confidence, e.position, e.name.lower()) for e in entities]
    assert ordering == sorted(ordering)


@pytest.mark.asyncio
async def test_language_model_entities_are_capped_and_cached(config):
    response = json.dumps([
        {"name": "deposit", "type": "Metric", "originalText": "deposit", "confidence": 0.99},
        {"name": "nonsense", "type": "NotAType", "originalText": "x", "confidence": 0.9},
    ])
    model = DummyLanguageModel({ENTITY_MARKER: response})
    extractor = EntityExtractionPipeline(language_model=model, config=config)

    first = await extractor.extract_entities(UK_QUESTION)
    second = await extractor.extract_entities(UK_QUESTION)

    assert model.calls_for(ENTITY_MARKER) == 1
    assert [(e.name, e.type, e.confidence) for e in first] == [(e.name, e.type, e.confidence) for e in second]

    deposit = next(e for e in first if e.name == "deposit" and e.type == EntityType.METRIC)
    assert "AIModel" in deposit.metadata['extraction_methods']
    assert not any(e.name == "nonsense" for e in first)


@pytest.mark.asyncio
async def test_language_model_entities_use_their_own_cache_lifetime(config):
    model = DummyLanguageModel({ENTITY_MARKER: '[{"name": "deposit", "type": "Metric", "confidence": 0.9}]'})
    tuned = config.model_copy(update={'entity_cache_ttl_seconds': 42, 'intent_cache_ttl_seconds': 7})
    extractor = EntityExtractionPipeline(language_model=model, config=tuned)

    await extractor.extract_entities(UK_QUESTION)

    assert [entry.ttl_seconds for entry in extractor.cache._cache.values()] == [42]


@pytest.mark.asyncio
async def test_unparseable_or_failing_language_model_falls_back_to_heuristics(config):
    for model in (DummyLanguageModel({ENTITY_MARKER: "no json here"}), FailingLanguageModel()):
        extractor = EntityExtractionPipeline(language_model=model, config=config)
        entities = await extractor.extract_entities(UK_QUESTION)
        assert any(e.name == "deposit" for e in entities)


@pytest.mark.asyncio
async def test_empty_question_has_no_entities(config):
    extractor = EntityExtractionPipeline(config=config)
    assert await extractor.extract_entities("   ") == []


@pytest.mark.asyncio
async def test_fuzzy_match_recognises_misspelled_terms(config):
    extractor = EntityExtractionPipeline(config=config)

    entities = await extractor.extract_entities("What were the withdrawls in March?")

    withdrawal = next(e for e in entities if e.name == "withdrawal")
    assert ExtractionMethod.FUZZY in withdrawal.confirmed_by


class FixedThresholdProvider(SimilarityThresholdProvider):
    def __init__(self, threshold):
        self.threshold = threshold
        self.requests = []

    async def get_optimal_threshold(self, intent_type, domain_name, search_type):
        self.requests.append((intent_type, domain_name, search_type))
        return self.threshold


@pytest.mark.asyncio
@pytest.mark.parametrize("tuned,fuzzy_matched", [(0.5, True), (0.97, False)])
async def test_fuzzy_threshold_follows_provider_above_floor(config, tuned, fuzzy_matched):
    provider = FixedThresholdProvider(tuned)
    extractor = EntityExtractionPipeline(config=config, threshold_provider=provider)

    assert await extractor.fuzzy_threshold() == max(0.8, tuned)
    entities = await extractor.extract_entities("What were the withdrawls in March?")

    assert any(ExtractionMethod.FUZZY in e.confirmed_by for e in entities) is fuzzy_matched
    assert (None, "", FUZZY_TERM_MATCH) in provider.requests


@pytest.mark.asyncio
async def test_linker_uses_catalog_when_no_direct_mapping(catalog):
    catalog = catalog.model_copy(update={
        'glossary_terms': catalog.glossary_terms + [
            GlossaryTerm(term="bonus cost", domain="Banking",
                         mapped_tables=["tbl_Bonuses"], mapped_columns=["BonusCost"]),
        ],
    })
    linker = SchemaEntityLinker(InMemoryBusinessMetadataService(catalog))

    linked = await linker.link_entities([
        _entity("bonus cost", confidence=0.6),
        _entity("daily_actions", EntityType.TABLE, confidence=0.6),
        _entity("countryname", EntityType.COLUMN, confidence=0.6),
        _entity("mystery", EntityType.DIMENSION, confidence=0.6),
    ], "bonus cost and countryname per country from daily_actions")
    by_name = {e.name: e for e in linked}

    assert by_name["bonus cost"].metadata['mapping_method'] == 'business_glossary_match'
    assert by_name["bonus cost"].mapped_table == "tbl_Bonuses"
    assert by_name["daily_actions"].metadata['mapping_method'] == 'business_table_match'
    assert by_name["daily_actions"].mapped_table == "tbl_Daily_actions"
    assert by_name["countryname"].metadata['mapping_method'] == 'business_column_match'
    assert by_name["countryname"].mapped_table == "tbl_Countries"
    assert by_name["mystery"].metadata['link_status'] == 'unmapped'
    assert by_name["mystery"].confidence == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_linker_failure_keeps_entities_unlinked(config):
    class BrokenLinker:
        async def link_entities(self, entities, question):
            raise RuntimeError("catalog offline")

    extractor = EntityExtractionPipeline(entity_linker=BrokenLinker(), config=config)
    entities = await extractor.extract_entities(UK_QUESTION)

    assert entities
    assert all(e.mapped_table == "" for e in entities)


def test_catalog_table_defaults():
    schema = ContextualBusinessSchema(tables=[TableInfo(table_name="tbl_Countries")])
    assert schema.tables[0].schema_name == "dbo"
