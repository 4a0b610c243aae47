"""
Term similarity services.

``LexicalSemanticMatcher`` works offline on edit similarity.
``EmbeddingSemanticMatcher`` embeds the vocabulary once through an
``EmbeddingService`` and compares by cosine similarity.
``SemanticBusinessMetadataService`` searches a business catalog with
either matcher, cutting results at dynamically optimised thresholds.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from shared.base.services import (
    BusinessMetadataService,
    EmbeddingService,
    ExternalServiceError,
    SemanticMatchingService,
    SimilarityThresholdProvider,
)
from shared.config.logging_config import configure_logger_for_component
from shared.schemas.business_context import (
    BusinessContextProfile,
    ColumnInfo,
    ContextualBusinessSchema,
    GlossaryTerm,
    TableInfo,
)
from shared.utils.text import text_similarity

from .threshold_optimizer import BUSINESS_TERM_SEARCH, COLUMN_SEARCH, TABLE_SEARCH, DynamicThresholdOptimizer


class LexicalSemanticMatcher(SemanticMatchingService):
    """Edit-similarity matcher."""

    async def find_similar_terms(
        self,
        term: str,
        candidates: Sequence[str],
        threshold: float = 0.8,
    ) -> List[Tuple[str, float]]:
        matches = []
        for candidate in candidates:
            similarity = text_similarity(term, candidate)
            if similarity > threshold:
                matches.append((candidate, similarity))
        matches.sort(key=lambda item: (-item[1], item[0]))
        return matches


class EmbeddingSemanticMatcher(SemanticMatchingService):
    """
    Embedding-backed matcher.

    Candidate embeddings are cached per term for the lifetime of the
    matcher. When the embedding service fails the lexical matcher answers
    instead, so a flaky embedding backend only degrades match quality.
    """

    def __init__(self, embedding_service: EmbeddingService, fallback: Optional[SemanticMatchingService] = None):
        self.embedding_service = embedding_service
        self.fallback = fallback or LexicalSemanticMatcher()
        self.logger = configure_logger_for_component("analysis.semantic_matching")
        self._vectors: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    async def _ensure_vectors(self, candidates: Sequence[str]) -> None:
        missing = [c for c in dict.fromkeys(candidates) if c not in self._vectors]
        if not missing:
            return
        vectors = await self.embedding_service.embed_batch(missing)
        async with self._lock:
            for candidate, vector in zip(missing, vectors):
                self._vectors[candidate] = vector

    async def find_similar_terms(
        self,
        term: str,
        candidates: Sequence[str],
        threshold: float = 0.8,
    ) -> List[Tuple[str, float]]:
        if not term or not candidates:
            return []
        try:
            await self._ensure_vectors(candidates)
            query = await self.embedding_service.embed(term)
        except ExternalServiceError as e:
            self.logger.warning(f"Embedding lookup failed, using lexical similarity: {e}")
            return await self.fallback.find_similar_terms(term, candidates, threshold)

        matches = []
        for candidate in candidates:
            similarity = self.embedding_service.cosine_similarity(query, self._vectors[candidate])
            if similarity > threshold:
                matches.append((candidate, similarity))
        matches.sort(key=lambda item: (-item[1], item[0]))
        return matches


def table_search_text(table: TableInfo) -> str:
    return " ".join(filter(None, [table.table_name, table.business_purpose, table.business_context]))


def column_search_text(column: ColumnInfo) -> str:
    return " ".join(filter(None, [column.column_name, column.business_meaning, column.business_context]))


class SemanticBusinessMetadataService(BusinessMetadataService):
    """
    Business catalog searched by similarity to the question.

    Tables and columns are compared with the question text; a result is
    kept only above the threshold the provider returns for the profile's
    intent and domain.
    """

    def __init__(
        self,
        catalog: ContextualBusinessSchema,
        matcher: SemanticMatchingService,
        threshold_provider: Optional[SimilarityThresholdProvider] = None,
    ):
        self.catalog = catalog
        self.matcher = matcher
        self.threshold_provider = threshold_provider or DynamicThresholdOptimizer()
        self.logger = configure_logger_for_component("analysis.semantic_metadata")

    async def find_relevant_tables(self, profile: BusinessContextProfile, top_k: int = 5) -> List[TableInfo]:
        by_text: Dict[str, TableInfo] = {}
        for table in self.catalog.tables:
            by_text.setdefault(table_search_text(table), table)

        threshold = await self.threshold_provider.get_optimal_threshold(
            profile.intent.type, profile.domain.name, TABLE_SEARCH
        )
        matches = await self.matcher.find_similar_terms(profile.question, list(by_text), threshold)
        tables = [by_text[text] for text, _ in matches[:top_k]]
        self.logger.debug(f"Table search kept {len(tables)} of {len(by_text)} tables above {threshold:.3f}")
        return tables

    async def find_relevant_columns(
        self, table_names: Sequence[str], profile: BusinessContextProfile
    ) -> List[ColumnInfo]:
        wanted = {name.lower() for name in table_names}
        by_text: Dict[str, ColumnInfo] = {}
        for column in self.catalog.columns:
            if column.table_name.lower() in wanted:
                by_text.setdefault(column_search_text(column), column)
        if not by_text:
            return []

        threshold = await self.threshold_provider.get_optimal_threshold(
            profile.intent.type, profile.domain.name, COLUMN_SEARCH
        )
        matches = await self.matcher.find_similar_terms(profile.question, list(by_text), threshold)
        return [by_text[text] for text, _ in matches]

    async def find_relevant_glossary_terms(self, terms: Sequence[str]) -> List[GlossaryTerm]:
        """Exact term matches plus glossary entries similar to the remaining terms."""
        glossary = {g.term.lower(): g for g in self.catalog.glossary_terms}
        found: Dict[str, GlossaryTerm] = {}
        unmatched = []
        for term in terms:
            lowered = (term or "").lower()
            if not lowered:
                continue
            if lowered in glossary:
                found.setdefault(lowered, glossary[lowered])
            else:
                unmatched.append(lowered)

        if unmatched and glossary:
            threshold = await self.threshold_provider.get_optimal_threshold(None, "", BUSINESS_TERM_SEARCH)
            for term in unmatched:
                matches = await self.matcher.find_similar_terms(term, list(glossary), threshold)
                if matches:
                    name = matches[0][0]
                    found.setdefault(name, glossary[name])
        return list(found.values())
