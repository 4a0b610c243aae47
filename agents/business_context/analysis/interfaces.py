"""
Capability interfaces composed by the context analysis orchestrator.

Each analysis concern is its own small contract so the orchestrator can
swap, fake or time each branch independently.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from shared.schemas.business_context import Domain, Entity, Intent, TimeRange


class EntityExtractor(ABC):
    @abstractmethod
    async def extract_entities(self, question: str) -> List[Entity]:
        """Merged, linked and re-scored entities, best first."""


class IntentClassifier(ABC):
    @abstractmethod
    async def classify_intent(self, question: str) -> Intent:
        """Resolved intent; never raises for data conditions."""


class DomainDetector(ABC):
    @abstractmethod
    async def detect_domain(self, question: str, business_terms: Sequence[str] = ()) -> Domain:
        """Single best domain for the question."""


class TimeRangeExtractor(ABC):
    @abstractmethod
    async def extract_time_range(self, question: str) -> Optional[TimeRange]:
        """Temporal window, or ``None`` when the question carries no time signal."""


class BusinessTermExtractor(ABC):
    @abstractmethod
    async def extract_terms(self, question: str) -> List[str]:
        ...

    @abstractmethod
    def calculate_term_relevance(
        self,
        terms: Sequence[str],
        entities: Sequence[Entity],
        intent: Intent,
        domain: Domain,
    ) -> Dict[str, float]:
        ...


class EntityLinker(ABC):
    @abstractmethod
    async def link_entities(self, entities: Sequence[Entity], question: str) -> List[Entity]:
        """Entities with ``mapped_table``/``mapped_column`` attached where known."""
