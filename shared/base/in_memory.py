"""
In-memory collaborator implementations.

Used for offline runs, local development and tests. The metadata service
ranks catalog entries by plain keyword overlap with the question profile.
"""

import asyncio
import re
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set

from shared.schemas.business_context import (
    BusinessContextProfile,
    ColumnInfo,
    ContextualBusinessSchema,
    GlossaryTerm,
    TableInfo,
    UserAnalysisPatterns,
    UserTokenPreferences,
)
from .services import BusinessMetadataService, UserFeedbackRepository, UserPatternProvider

_WORD_RE = re.compile(r"[a-z0-9]+")


def _words(text: str) -> Set[str]:
    return set(_WORD_RE.findall((text or "").lower().replace("_", " ")))


def _profile_words(profile: BusinessContextProfile) -> Set[str]:
    words = _words(profile.question)
    for entity in profile.entities:
        words |= _words(entity.name)
    for term in profile.business_terms:
        words |= _words(term)
    return words


class InMemoryBusinessMetadataService(BusinessMetadataService):
    """Business catalog backed by a ``ContextualBusinessSchema``."""

    def __init__(self, catalog: Optional[ContextualBusinessSchema] = None):
        self.catalog = catalog or ContextualBusinessSchema()

    async def find_relevant_tables(self, profile: BusinessContextProfile, top_k: int = 5) -> List[TableInfo]:
        query_words = _profile_words(profile)
        scored = []
        for table in self.catalog.tables:
            table_words = _words(table.table_name) | _words(table.business_purpose) | _words(table.business_context)
            overlap = len(query_words & table_words)
            if overlap or table.table_name in profile.domain.related_tables:
                scored.append((overlap, table.relevance_score, table))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [table for _, _, table in scored[:top_k]]

    async def find_relevant_columns(
        self, table_names: Sequence[str], profile: BusinessContextProfile
    ) -> List[ColumnInfo]:
        wanted = {name.lower() for name in table_names}
        query_words = _profile_words(profile)
        columns = [c for c in self.catalog.columns if c.table_name.lower() in wanted]
        columns.sort(
            key=lambda c: (len(query_words & (_words(c.column_name) | _words(c.business_meaning))), c.relevance_score),
            reverse=True,
        )
        return columns

    async def find_relevant_glossary_terms(self, terms: Sequence[str]) -> List[GlossaryTerm]:
        wanted = {term.lower() for term in terms if term}
        if not wanted:
            return []
        return [g for g in self.catalog.glossary_terms if g.term.lower() in wanted]


class InMemoryFeedbackRepository(UserFeedbackRepository):
    """Keeps every recorded score and reports their mean."""

    def __init__(self):
        self._scores: Dict[str, List[float]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def get_threshold_feedback_score(self, key: str) -> Optional[float]:
        scores = self._scores.get(key)
        if not scores:
            return None
        return sum(scores) / len(scores)

    async def record_threshold_feedback(self, key: str, score: float) -> None:
        async with self._lock:
            self._scores[key].append(float(score))


class InMemoryUserPatternProvider(UserPatternProvider):
    def __init__(
        self,
        patterns: Optional[Dict[str, UserAnalysisPatterns]] = None,
        preferences: Optional[Dict[str, UserTokenPreferences]] = None,
    ):
        self._patterns = patterns or {}
        self._preferences = preferences or {}

    async def get_user_patterns(self, user_id: str) -> Optional[UserAnalysisPatterns]:
        return self._patterns.get(user_id)

    async def get_token_preferences(self, user_id: str) -> UserTokenPreferences:
        return self._preferences.get(user_id, UserTokenPreferences())
