import asyncio
from datetime import date
from typing import Dict, List, Optional, Sequence

import pytest

from shared.base.services import EmbeddingService, ExternalServiceError, LanguageModelService
from shared.config.settings import BusinessContextConfig
from shared.schemas.business_context import (
    BusinessContextProfile,
    BusinessRule,
    ColumnInfo,
    ContextualBusinessSchema,
    Domain,
    Entity,
    GlossaryTerm,
    Intent,
    IntentType,
    QueryExample,
    TableInfo,
    TableRelationship,
)
from shared.utils.caching import reset_cache_manager
from shared.utils.metrics import get_metrics_collector

INTENT_MARKER = "Classify the business intent"
ENTITY_MARKER = "Extract business entities"
TIME_MARKER = "Identify the time period"

UK_QUESTION = "What is the total deposit amount for UK players last month?"


class DummyLanguageModel(LanguageModelService):
    """Answers by prompt marker and records every prompt it receives."""

    def __init__(self, responses: Optional[Dict[str, str]] = None, default: str = ""):
        self.responses = responses or {}
        self.default = default
        self.prompts: List[str] = []

    async def complete(self, prompt: str, timeout: float) -> str:
        self.prompts.append(prompt)
        for marker, response in self.responses.items():
            if marker in prompt:
                return response
        return self.default

    def calls_for(self, marker: str) -> int:
        return sum(1 for p in self.prompts if marker in p)


class FailingLanguageModel(LanguageModelService):
    def __init__(self):
        self.calls = 0

    async def complete(self, prompt: str, timeout: float) -> str:
        self.calls += 1
        raise ExternalServiceError("dummy", "service unavailable")


class SlowLanguageModel(LanguageModelService):
    def __init__(self, delay: float = 1.0, response: str = "Aggregation|0.95"):
        self.delay = delay
        self.response = response

    async def complete(self, prompt: str, timeout: float) -> str:
        await asyncio.sleep(self.delay)
        return self.response


class DummyEmbeddingService(EmbeddingService):
    """Deterministic letter-frequency embeddings unless a vector is given."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, fail: bool = False):
        self.vectors = vectors or {}
        self.fail = fail
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.fail:
            raise ExternalServiceError("dummy-embedding", "service unavailable")
        if text in self.vectors:
            return list(self.vectors[text])
        lowered = text.lower()
        return [float(lowered.count(letter)) for letter in "abcdefghijklmnopqrstuvwxyz"]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


@pytest.fixture(autouse=True)
def fresh_state():
    reset_cache_manager()
    get_metrics_collector().reset_all()
    yield
    reset_cache_manager()


@pytest.fixture
def config():
    return BusinessContextConfig(llm_timeout_seconds=0.05, analysis_timeout_seconds=2.0)


@pytest.fixture
def fixed_today():
    return lambda: date(2024, 3, 15)


@pytest.fixture
def catalog():
    return ContextualBusinessSchema(
        tables=[
            TableInfo(
                table_name="tbl_Daily_actions",
                business_purpose="Daily player activity including deposit and withdrawal totals",
                business_context="Core fact table for banking and gaming KPIs",
                primary_use_case="Deposit and revenue reporting",
                relevance_score=0.9,
            ),
            TableInfo(
                table_name="tbl_Daily_actions_players",
                business_purpose="Player registrations and profile attributes",
                business_context="Player dimension keyed by player id",
                primary_use_case="Player segmentation",
                relevance_score=0.8,
            ),
            TableInfo(
                table_name="tbl_Countries",
                business_purpose="Country reference data",
                business_context="Maps country ids to names and regions",
                primary_use_case="Geographic breakdowns",
                relevance_score=0.6,
            ),
        ],
        columns=[
            ColumnInfo(
                table_name="tbl_Daily_actions",
                column_name="Deposits",
                data_type="decimal",
                business_meaning="Total deposit amount for the day",
                business_context="Summed for deposit KPIs",
                relevance_score=0.9,
            ),
            ColumnInfo(
                table_name="tbl_Daily_actions",
                column_name="Date",
                data_type="date",
                business_meaning="Activity date",
                relevance_score=0.7,
            ),
            ColumnInfo(
                table_name="tbl_Countries",
                column_name="CountryName",
                data_type="nvarchar",
                business_meaning="Country name",
                relevance_score=0.6,
            ),
        ],
        business_rules=[
            BusinessRule(
                rule_name="exclude_test_players",
                description="Exclude internal test accounts from all player KPIs",
                rule_type="filter",
                sql_expression="IsTestAccount = 0",
                relevance_score=0.8,
            ),
        ],
        examples=[
            QueryExample(
                title="Deposits by country",
                natural_language_query="Total deposits by country last week",
                sql="SELECT c.CountryName, SUM(a.Deposits) FROM tbl_Daily_actions a "
                    "JOIN tbl_Countries c ON a.CountryID = c.CountryID GROUP BY c.CountryName",
                relevance_score=0.85,
            ),
            QueryExample(
                title="Daily deposits",
                natural_language_query="Daily deposit totals",
                sql="SELECT Date, SUM(Deposits) FROM tbl_Daily_actions GROUP BY Date",
                relevance_score=0.75,
            ),
            QueryExample(
                title="Active players",
                natural_language_query="How many players were active yesterday",
                sql="SELECT COUNT(DISTINCT PlayerID) FROM tbl_Daily_actions WHERE Date = @yesterday",
                relevance_score=0.5,
            ),
        ],
        relationships=[
            TableRelationship(
                from_table="tbl_Daily_actions",
                to_table="tbl_Daily_actions_players",
                from_column="PlayerID",
                to_column="PlayerID",
                business_meaning="Activity belongs to a player",
            ),
        ],
        glossary_terms=[
            GlossaryTerm(
                term="deposit",
                definition="Money paid into a player account",
                business_context="Banking",
                domain="Banking",
                mapped_tables=["tbl_Daily_actions"],
                mapped_columns=["Deposits"],
                relevance_score=0.8,
            ),
            GlossaryTerm(
                term="stake",
                definition="Amount wagered on a single bet",
                business_context="Gaming",
                domain="Gaming",
                relevance_score=0.6,
            ),
        ],
    )


@pytest.fixture
def profile_factory():
    def make(
        question: str = UK_QUESTION,
        intent_type: IntentType = IntentType.AGGREGATION,
        domain_name: str = "Banking",
        entities: Sequence[Entity] = (),
        user_id: str = "",
        confidence: float = 0.8,
    ) -> BusinessContextProfile:
        return BusinessContextProfile(
            question=question,
            user_id=user_id,
            intent=Intent(type=intent_type, confidence=0.8),
            domain=Domain(name=domain_name, relevance_score=0.7),
            entities=list(entities),
            confidence=confidence,
        )

    return make
