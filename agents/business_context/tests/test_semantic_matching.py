import pytest

from agents.business_context.analysis.semantic_matching import (
    EmbeddingSemanticMatcher,
    LexicalSemanticMatcher,
    SemanticBusinessMetadataService,
    column_search_text,
    table_search_text,
)
from agents.business_context.analysis.threshold_optimizer import DynamicThresholdOptimizer
from shared.schemas.business_context import IntentType

from conftest import UK_QUESTION, DummyEmbeddingService


@pytest.mark.asyncio
async def test_lexical_matcher_tolerates_typos():
    matches = await LexicalSemanticMatcher().find_similar_terms("withdrawls", ["deposit", "withdrawals", "bonus"])

    assert [name for name, _ in matches] == ["withdrawals"]
    assert matches[0][1] == pytest.approx(20 / 21)


@pytest.mark.asyncio
async def test_embedding_matcher_ranks_by_cosine_similarity():
    service = DummyEmbeddingService()
    matcher = EmbeddingSemanticMatcher(service)

    matches = await matcher.find_similar_terms("deposits", ["bonus", "deposit"])

    assert [name for name, _ in matches] == ["deposit"]
    assert matches[0][1] == pytest.approx(8 / (7 ** 0.5 * 10 ** 0.5))


@pytest.mark.asyncio
async def test_candidate_embeddings_are_computed_once():
    service = DummyEmbeddingService()
    matcher = EmbeddingSemanticMatcher(service)
    candidates = ["bonus", "deposit", "deposit"]

    await matcher.find_similar_terms("deposits", candidates)
    await matcher.find_similar_terms("bonuses", candidates)

    # two distinct candidates plus one query per lookup
    assert service.calls == 4


@pytest.mark.asyncio
async def test_embedding_failure_falls_back_to_lexical_matching():
    matcher = EmbeddingSemanticMatcher(DummyEmbeddingService(fail=True))

    matches = await matcher.find_similar_terms("withdrawls", ["withdrawals", "bonus"])

    assert [name for name, _ in matches] == ["withdrawals"]


@pytest.mark.asyncio
async def test_empty_inputs_match_nothing():
    matcher = EmbeddingSemanticMatcher(DummyEmbeddingService())

    assert await matcher.find_similar_terms("", ["deposit"]) == []
    assert await matcher.find_similar_terms("deposit", []) == []


@pytest.fixture
def semantic_catalog(catalog, config):
    daily, players, countries = catalog.tables
    deposits, activity_date, _ = catalog.columns
    service = DummyEmbeddingService(vectors={
        UK_QUESTION: [1.0, 0.0],
        table_search_text(daily): [1.0, 0.0],
        table_search_text(players): [3.0, 4.0],
        table_search_text(countries): [1.0, 2.0],
        column_search_text(deposits): [1.0, 0.0],
        column_search_text(activity_date): [0.0, 1.0],
    })
    optimizer = DynamicThresholdOptimizer(config=config)
    return SemanticBusinessMetadataService(catalog, EmbeddingSemanticMatcher(service), optimizer)


@pytest.mark.asyncio
@pytest.mark.parametrize("intent_type,domain_name,expected", [
    (IntentType.DETAIL, "General", ["tbl_Daily_actions", "tbl_Daily_actions_players", "tbl_Countries"]),
    (IntentType.AGGREGATION, "Banking", ["tbl_Daily_actions", "tbl_Daily_actions_players", "tbl_Countries"]),
    (IntentType.EXPLORATORY, "Gaming", ["tbl_Daily_actions", "tbl_Daily_actions_players"]),
])
async def test_table_search_threshold_follows_intent_and_domain(
    semantic_catalog, profile_factory, intent_type, domain_name, expected
):
    profile = profile_factory(intent_type=intent_type, domain_name=domain_name)

    tables = await semantic_catalog.find_relevant_tables(profile)

    assert [t.table_name for t in tables] == expected


@pytest.mark.asyncio
async def test_table_search_respects_top_k(semantic_catalog, profile_factory):
    tables = await semantic_catalog.find_relevant_tables(profile_factory(), top_k=1)

    assert [t.table_name for t in tables] == ["tbl_Daily_actions"]


@pytest.mark.asyncio
async def test_column_search_is_limited_to_requested_tables(semantic_catalog, profile_factory):
    columns = await semantic_catalog.find_relevant_columns(["TBL_DAILY_ACTIONS"], profile_factory())

    assert [c.column_name for c in columns] == ["Deposits"]
    assert await semantic_catalog.find_relevant_columns(["tbl_Missing"], profile_factory()) == []


@pytest.mark.asyncio
async def test_glossary_search_adds_similar_terms_to_exact_matches(semantic_catalog):
    terms = await semantic_catalog.find_relevant_glossary_terms(["Deposit", "stakes", "", "zzz"])

    assert [g.term for g in terms] == ["deposit", "stake"]
