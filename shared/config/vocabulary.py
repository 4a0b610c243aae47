"""
Declarative vocabulary loading.

Keyword profiles, entity patterns and intent vocabularies are kept in
YAML next to this module and loaded once into validated pydantic models,
so the scoring code stays generic over the data.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from shared.schemas.business_context import EntityType, IntentType
from .settings import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# Domain profiles
# =============================================================================

class DomainBonus(BaseModel):
    terms: List[str]
    bonus: float = Field(..., ge=0.0, le=1.0)


class DomainProfile(BaseModel):
    name: str = ""
    description: str = ""
    key_concepts: List[str] = Field(default_factory=list)
    high_priority: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    related_tables: List[str] = Field(default_factory=list)
    bonuses: List[DomainBonus] = Field(default_factory=list)

    @property
    def all_keywords(self) -> List[str]:
        """High-priority terms first, without duplicates."""
        seen = set()
        ordered = []
        for keyword in self.high_priority + self.keywords:
            lowered = keyword.lower()
            if lowered not in seen:
                seen.add(lowered)
                ordered.append(lowered)
        return ordered


class DisambiguationRule(BaseModel):
    domain: str
    any_of: List[str] = Field(default_factory=list)
    all_of: List[str] = Field(default_factory=list)
    boost: float = Field(..., ge=0.0, le=1.0)
    floor: float = Field(default=0.0, ge=0.0, le=1.0)


class DomainScoring(BaseModel):
    high_priority_weight: float = 3.0
    long_term_weight: float = 2.0
    default_weight: float = 1.0
    long_term_min_length: int = 7
    bonus_cap: float = 0.3
    extra_keyword_bonus: float = 0.05
    extra_keyword_threshold: int = 2
    ambiguity_margin: float = 0.1
    low_confidence_threshold: float = 0.3
    glossary_relevance: float = 0.8


class FallbackDomain(BaseModel):
    name: str = "General"
    description: str = "General business analysis"
    key_concepts: List[str] = Field(default_factory=lambda: ["business", "data", "analysis"])


class DomainProfiles(BaseModel):
    scoring: DomainScoring = Field(default_factory=DomainScoring)
    domains: Dict[str, DomainProfile] = Field(default_factory=dict)
    disambiguation: List[DisambiguationRule] = Field(default_factory=list)
    fallback: FallbackDomain = Field(default_factory=FallbackDomain)

    def model_post_init(self, __context) -> None:
        for name, profile in self.domains.items():
            if not profile.name:
                profile.name = name


# =============================================================================
# Business vocabulary
# =============================================================================

class TermEntry(BaseModel):
    name: str
    type: EntityType


class ContextualRule(BaseModel):
    type: EntityType
    before: List[str] = Field(default_factory=list)
    after: List[str] = Field(default_factory=list)
    word_contains: List[str] = Field(default_factory=list)


class ContextualHeuristics(BaseModel):
    window: int = 1
    base_confidence: float = 0.6
    indicator_boost: float = 0.15
    max_confidence: float = 0.95
    rules: List[ContextualRule] = Field(default_factory=list)
    indicators: Dict[EntityType, List[str]] = Field(default_factory=dict)


class IntentVocabulary(BaseModel):
    description: str = ""
    patterns: List[str] = Field(default_factory=list)
    semantic_keywords: List[str] = Field(default_factory=list)


class StructuralRule(BaseModel):
    intent: IntentType
    confidence: float = Field(..., ge=0.0, le=1.0)
    any_of: List[str]


class SchemaMapping(BaseModel):
    table: str
    column: str
    value: Optional[str] = None


class BusinessVocabulary(BaseModel):
    entity_patterns: Dict[EntityType, List[str]] = Field(default_factory=dict)
    business_terms: Dict[str, TermEntry] = Field(default_factory=dict)
    contextual: ContextualHeuristics = Field(default_factory=ContextualHeuristics)
    intents: Dict[IntentType, IntentVocabulary] = Field(default_factory=dict)
    structural_rules: List[StructuralRule] = Field(default_factory=list)
    intent_consistency_cues: Dict[IntentType, List[str]] = Field(default_factory=dict)
    domain_consistency_cues: Dict[str, List[str]] = Field(default_factory=dict)
    comparison_keywords: List[str] = Field(default_factory=list)
    common_business_terms: List[str] = Field(default_factory=list)
    stop_words: List[str] = Field(default_factory=list)
    schema_mappings: Dict[str, SchemaMapping] = Field(default_factory=dict)

    def intent_description(self, intent_type: IntentType) -> str:
        vocabulary = self.intents.get(intent_type)
        return vocabulary.description if vocabulary else ""


# =============================================================================
# Similarity thresholds
# =============================================================================

class PerformanceAdjustmentRules(BaseModel):
    min_searches: int = Field(default=10, ge=1)
    low_satisfaction: float = 0.5
    many_results: float = 10
    few_results: float = 3
    step: float = 0.05
    good_satisfaction: float = 0.7
    poor_satisfaction: float = 0.4
    window: int = Field(default=1000, ge=2)


class FeedbackAdjustmentRules(BaseModel):
    high_score: float = 0.8
    high_adjustment: float = 0.02
    low_score: float = 0.4
    low_adjustment: float = -0.03


class SimilarityThresholds(BaseModel):
    min_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    max_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    fallback_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    base_thresholds: Dict[str, Dict[IntentType, float]] = Field(default_factory=dict)
    default_thresholds: Dict[str, float] = Field(default_factory=dict)
    domain_adjustments: Dict[str, float] = Field(default_factory=dict)
    performance: PerformanceAdjustmentRules = Field(default_factory=PerformanceAdjustmentRules)
    feedback: FeedbackAdjustmentRules = Field(default_factory=FeedbackAdjustmentRules)

    def base_threshold(self, intent_type: Optional[IntentType], search_type: str) -> float:
        """Per-intent base, else the search type's default, else the global fallback."""
        if intent_type is not None:
            threshold = self.base_thresholds.get(search_type, {}).get(intent_type)
            if threshold is not None:
                return threshold
        return self.default_thresholds.get(search_type, self.fallback_threshold)

    def domain_adjustment(self, domain_name: str) -> float:
        return self.domain_adjustments.get(domain_name, 0.0)


def _read_yaml(path: Path) -> dict:
    with open(path, 'r', encoding='utf-8') as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Vocabulary file {path} must contain a mapping at top level")
    return data


def load_domain_profiles_from(path: Path) -> DomainProfiles:
    profiles = DomainProfiles(**_read_yaml(path))
    logger.debug(f"Loaded {len(profiles.domains)} domain profiles from {path}")
    return profiles


def load_business_vocabulary_from(path: Path) -> BusinessVocabulary:
    vocabulary = BusinessVocabulary(**_read_yaml(path))
    logger.debug(
        f"Loaded business vocabulary from {path}",
        extra={"business_terms": len(vocabulary.business_terms), "intents": len(vocabulary.intents)}
    )
    return vocabulary


@lru_cache()
def load_domain_profiles() -> DomainProfiles:
    """Domain profiles from the configured YAML file (cached)."""
    return load_domain_profiles_from(get_settings().business_context.domain_profiles_path)


@lru_cache()
def load_business_vocabulary() -> BusinessVocabulary:
    """Business vocabulary from the configured YAML file (cached)."""
    return load_business_vocabulary_from(get_settings().business_context.business_vocabulary_path)


def load_similarity_thresholds_from(path: Path) -> SimilarityThresholds:
    thresholds = SimilarityThresholds(**_read_yaml(path))
    logger.debug(f"Loaded similarity thresholds for {len(thresholds.default_thresholds)} search types from {path}")
    return thresholds


@lru_cache()
def load_similarity_thresholds() -> SimilarityThresholds:
    """Similarity thresholds from the configured YAML file (cached)."""
    return load_similarity_thresholds_from(get_settings().business_context.similarity_thresholds_path)
