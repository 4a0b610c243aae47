"""
Collaborator interfaces consumed by the business-context pipeline.

The pipeline talks to language models, embedding models, the business
metadata catalog, the feedback store and the user-pattern store only
through the abstract classes in this module. In-memory implementations
live in ``shared.base.in_memory``; Gemini adapters live in
``agents.business_context.integration``.
"""

import math
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from shared.schemas.business_context import (
    BusinessContextProfile,
    ColumnInfo,
    GlossaryTerm,
    IntentType,
    TableInfo,
    UserAnalysisPatterns,
    UserTokenPreferences,
)


class BusinessContextError(Exception):
    """Base error of the business-context pipeline."""


class ExternalServiceError(BusinessContextError):
    """A language-model or embedding call failed or timed out."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class ContractViolationError(BusinessContextError, ValueError):
    """The caller broke an interface contract (a bug, not a data condition)."""


class LanguageModelService(ABC):
    """Text-in/text-out language model."""

    @abstractmethod
    async def complete(self, prompt: str, timeout: float) -> str:
        """
        Complete ``prompt`` within ``timeout`` seconds.

        Raises:
            ExternalServiceError: on any failure, including timeouts
        """


class EmbeddingService(ABC):
    """Text embedding model."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed a single text."""

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts; implementations may override with a batched call."""
        return [await self.embed(text) for text in texts]

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """
        Cosine similarity of two vectors mapped into ``[0, 1]``.

        Raises:
            ContractViolationError: if the vectors differ in length
        """
        if len(a) != len(b):
            raise ContractViolationError(
                f"Vector length mismatch: {len(a)} != {len(b)}"
            )
        dot = sum(x * y for x, y in zip(a, b))
        norm_a = math.sqrt(sum(x * x for x in a))
        norm_b = math.sqrt(sum(y * y for y in b))
        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0
        similarity = dot / (norm_a * norm_b)
        # Negative correlation carries no evidence of relatedness
        return max(0.0, min(1.0, similarity))


class SemanticMatchingService(ABC):
    """Finds vocabulary terms similar to a word."""

    @abstractmethod
    async def find_similar_terms(
        self,
        term: str,
        candidates: Sequence[str],
        threshold: float = 0.8,
    ) -> List[Tuple[str, float]]:
        """Candidates with similarity above ``threshold``, best first."""


class SimilarityThresholdProvider(ABC):
    """Supplies the similarity cut-off for a semantic search."""

    @abstractmethod
    async def get_optimal_threshold(
        self,
        intent_type: Optional[IntentType],
        domain_name: str,
        search_type: str,
    ) -> float:
        """
        Threshold in ``[0, 1]`` for ``search_type``.

        ``intent_type`` is ``None`` and ``domain_name`` empty when the search
        runs before the question has been classified.
        """


class BusinessMetadataService(ABC):
    """Read-only lookups against the business catalog."""

    @abstractmethod
    async def find_relevant_tables(self, profile: BusinessContextProfile, top_k: int = 5) -> List[TableInfo]:
        ...

    @abstractmethod
    async def find_relevant_columns(
        self, table_names: Sequence[str], profile: BusinessContextProfile
    ) -> List[ColumnInfo]:
        ...

    @abstractmethod
    async def find_relevant_glossary_terms(self, terms: Sequence[str]) -> List[GlossaryTerm]:
        ...


class UserFeedbackRepository(ABC):
    """Read/append store of validation feedback scores."""

    @abstractmethod
    async def get_threshold_feedback_score(self, key: str) -> Optional[float]:
        """Average feedback score for ``key``, or ``None`` when never recorded."""

    @abstractmethod
    async def record_threshold_feedback(self, key: str, score: float) -> None:
        ...


class UserPatternProvider(ABC):
    """Per-user history used for personalisation."""

    @abstractmethod
    async def get_user_patterns(self, user_id: str) -> Optional[UserAnalysisPatterns]:
        ...

    async def get_token_preferences(self, user_id: str) -> UserTokenPreferences:
        return UserTokenPreferences()
