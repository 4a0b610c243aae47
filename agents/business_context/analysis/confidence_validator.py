"""
Confidence Validator

Re-checks classifier output against per-type thresholds, historical
accuracy, lexical consistency and question complexity, then adjusts the
confidence or substitutes a rule-based fallback.

Validation never raises for data conditions: a failed check only lowers
scores, and a failed validation swaps in a fallback value tagged
``fallback_applied``.
"""

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from shared.base.services import UserFeedbackRepository
from shared.config.logging_config import configure_logger_for_component
from shared.config.settings import BusinessContextConfig, get_settings
from shared.config.vocabulary import BusinessVocabulary, DomainProfiles, load_business_vocabulary, load_domain_profiles
from shared.schemas.business_context import (
    Domain,
    Entity,
    EntityType,
    Intent,
    IntentType,
    ValidationCheck,
    ValidationCheckType,
    ValidationResult,
    ValidationType,
    clamp_score,
)
from shared.utils.metrics import get_metrics_collector, track_performance
from shared.utils.text import contains_keyword, normalize_text, words

CONFIDENCE_THRESHOLDS = {
    ValidationType.INTENT: 0.7,
    ValidationType.ENTITY: 0.6,
    ValidationType.DOMAIN: 0.65,
    ValidationType.BUSINESS_TERM: 0.75,
}

HISTORICAL_MINIMUMS = {
    ValidationType.INTENT: 0.75,
    ValidationType.ENTITY: 0.65,
    ValidationType.DOMAIN: 0.70,
    ValidationType.BUSINESS_TERM: 0.80,
}

CHECK_WEIGHTS = {
    ValidationCheckType.CONFIDENCE_THRESHOLD: 0.30,
    ValidationCheckType.HISTORICAL_ACCURACY: 0.25,
    ValidationCheckType.CONSISTENCY: 0.25,
    ValidationCheckType.CONTEXTUAL: 0.20,
}

VALID_SCORE_THRESHOLD = 0.6
CONSISTENCY_PASS = 0.6
CONTEXTUAL_PASS = 0.5
DEFAULT_HISTORICAL_ACCURACY = 0.75
MIN_ADJUSTED_CONFIDENCE = 0.1
MAX_ADJUSTED_CONFIDENCE = 0.98

FALLBACK_INTENT_CONFIDENCE = 0.6
FALLBACK_DOMAIN_CONFIDENCE = 0.5
ENTITY_FAILURE_PENALTY = 0.7
ENTITY_DROP_THRESHOLD = 0.4

HISTORY_TRIM_TRIGGER = 50
HISTORY_TRIM_TO = 30

_METRIC_CUES = ("revenue", "profit", "count", "total")
_DIMENSION_CUES = ("country", "region", "category", "type")


class ConfidenceValidator:
    """
    Validates intents, entities and domains.

    Historical accuracy is a rolling average of recent validation scores
    per ``(type, value)`` key, seeded from the feedback repository when one
    is configured.
    """

    def __init__(
        self,
        feedback_repository: Optional[UserFeedbackRepository] = None,
        vocabulary: Optional[BusinessVocabulary] = None,
        profiles: Optional[DomainProfiles] = None,
        config: Optional[BusinessContextConfig] = None,
    ):
        self.logger = configure_logger_for_component("analysis.confidence_validator")
        self.metrics = get_metrics_collector()
        self.feedback_repository = feedback_repository
        self.vocabulary = vocabulary or load_business_vocabulary()
        self.profiles = profiles or load_domain_profiles()
        self.config = config or get_settings().business_context

        self._history: Dict[str, List[float]] = defaultdict(list)
        self._history_lock = asyncio.Lock()

        self.validation_counter = self.metrics.counter("confidence_validation_total")
        self.fallback_counter = self.metrics.counter("confidence_validation_fallbacks")
        self.score_histogram = self.metrics.histogram("confidence_validation_score")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @track_performance(tags={"operation": "validate_intent"})
    async def validate_intent(self, intent: Intent, question: str) -> Tuple[Intent, ValidationResult]:
        """Validated intent (possibly a fallback) and its validation record."""
        key = f"{ValidationType.INTENT.value}:{intent.type.value}"
        result = await self._validate(
            ValidationType.INTENT,
            key,
            intent.confidence,
            self._intent_consistency(intent, question),
            self._contextual_fit(intent.type, question),
        )

        if result.is_valid:
            validated = intent.model_copy(update={
                'confidence': result.adjusted_confidence,
                'metadata': {**intent.metadata, 'validation_score': result.validation_score},
            })
            return validated, result

        self.fallback_counter.increment()
        fallback = self.fallback_intent(question, intent)
        self.logger.warning(
            f"Intent {intent.type.value} failed validation, falling back to {fallback.type.value}",
            extra={"validation_score": result.validation_score}
        )
        return fallback, result

    @track_performance(tags={"operation": "validate_domain"})
    async def validate_domain(self, domain: Domain, question: str) -> Tuple[Domain, ValidationResult]:
        key = f"{ValidationType.DOMAIN.value}:{domain.name}"
        result = await self._validate(
            ValidationType.DOMAIN,
            key,
            domain.relevance_score,
            self._domain_consistency(domain, question),
            self._contextual_fit(None, question),
        )

        if result.is_valid:
            validated = domain.model_copy(update={
                'relevance_score': result.adjusted_confidence,
                'metadata': {**domain.metadata, 'validation_score': result.validation_score},
            })
            return validated, result

        self.fallback_counter.increment()
        self.logger.warning(
            f"Domain {domain.name} failed validation, falling back to general domain",
            extra={"validation_score": result.validation_score}
        )
        return self.fallback_domain(domain), result

    @track_performance(tags={"operation": "validate_entities"})
    async def validate_entities(
        self, entities: Sequence[Entity], question: str
    ) -> Tuple[List[Entity], List[ValidationResult]]:
        """
        Validate every entity concurrently, then cross-validate the set.

        Failed entities are penalised by 30%; those that end below 0.4
        are dropped, the rest are kept with a warning.
        """
        outcomes = await asyncio.gather(*(self._validate_entity(e, question) for e in entities))

        kept: List[Entity] = []
        results: List[ValidationResult] = []
        for entity, result in outcomes:
            results.append(result)
            if entity is not None:
                kept.append(entity)

        return self.cross_validate_entities(kept), results

    def cross_validate_entities(self, entities: Sequence[Entity]) -> List[Entity]:
        """Metrics and columns without any co-occurring table lose 30%."""
        has_table = any(e.type == EntityType.TABLE for e in entities)
        if has_table:
            return list(entities)

        validated = []
        for entity in entities:
            if entity.type not in (EntityType.METRIC, EntityType.COLUMN):
                validated.append(entity)
                continue
            penalised = entity.confidence * ENTITY_FAILURE_PENALTY
            if penalised > ENTITY_DROP_THRESHOLD:
                validated.append(entity.model_copy(update={
                    'confidence': clamp_score(penalised),
                    'metadata': {**entity.metadata, 'cross_validation_warning': 'no table entity in question'},
                }))
            else:
                self.logger.debug(f"Dropped {entity.type.value} entity {entity.name} without table context")
        return validated

    def fallback_intent(self, question: str, original: Optional[Intent] = None) -> Intent:
        """Rule-derived intent used when the classified one fails validation."""
        lowered = normalize_text(question)
        if any(contains_keyword(lowered, cue) for cue in ("total", "sum", "count")):
            intent_type = IntentType.AGGREGATION
        elif any(contains_keyword(lowered, cue) for cue in ("list", "show", "display")):
            intent_type = IntentType.DETAIL
        else:
            intent_type = IntentType.ANALYTICAL

        metadata = {'fallback_applied': True}
        if original is not None:
            metadata['original_intent'] = original.type.value
            metadata['original_confidence'] = original.confidence
        return Intent(
            type=intent_type,
            confidence=FALLBACK_INTENT_CONFIDENCE,
            keywords=list(original.keywords) if original else [],
            description=self.vocabulary.intent_description(intent_type),
            metadata=metadata,
        )

    def fallback_domain(self, original: Optional[Domain] = None) -> Domain:
        fallback = self.profiles.fallback
        metadata = {'fallback_applied': True}
        if original is not None:
            metadata['original_domain'] = original.name
        return Domain(
            name=fallback.name,
            description=fallback.description,
            key_concepts=list(fallback.key_concepts),
            relevance_score=FALLBACK_DOMAIN_CONFIDENCE,
            metadata=metadata,
        )

    async def get_historical_accuracy(self, key: str) -> float:
        history = self._history.get(key)
        if history:
            window = history[-self.config.history_window:]
            return sum(window) / len(window)
        if self.feedback_repository is not None:
            try:
                score = await self.feedback_repository.get_threshold_feedback_score(key)
            except Exception as e:
                self.logger.warning(f"Feedback lookup failed for {key}: {e}")
                score = None
            if score is not None:
                return clamp_score(score)
        return DEFAULT_HISTORICAL_ACCURACY

    async def record_validation(self, key: str, score: float) -> None:
        async with self._history_lock:
            history = self._history[key]
            history.append(score)
            if len(history) > HISTORY_TRIM_TRIGGER:
                del history[:-HISTORY_TRIM_TO]

        if self.feedback_repository is not None:
            try:
                await self.feedback_repository.record_threshold_feedback(key, score)
            except Exception as e:
                self.logger.warning(f"Recording validation feedback for {key} failed: {e}")

    # ------------------------------------------------------------------
    # Validation core
    # ------------------------------------------------------------------

    async def _validate_entity(self, entity: Entity, question: str) -> Tuple[Optional[Entity], ValidationResult]:
        key = f"{ValidationType.ENTITY.value}:{entity.type.value}:{entity.name.lower()}"
        result = await self._validate(
            ValidationType.ENTITY,
            key,
            entity.confidence,
            self._entity_consistency(entity, question),
            self._contextual_fit(None, question),
        )

        if result.is_valid:
            return entity.model_copy(update={'confidence': result.adjusted_confidence}), result

        penalised = entity.confidence * ENTITY_FAILURE_PENALTY
        if penalised < ENTITY_DROP_THRESHOLD:
            self.logger.debug(f"Dropped entity {entity.name} after failed validation")
            return None, result
        return entity.model_copy(update={
            'confidence': clamp_score(penalised),
            'metadata': {**entity.metadata, 'cross_validation_warning': 'failed confidence validation'},
        }), result

    async def _validate(
        self,
        validation_type: ValidationType,
        key: str,
        confidence: float,
        consistency: float,
        contextual: float,
    ) -> ValidationResult:
        self.validation_counter.increment()

        threshold = CONFIDENCE_THRESHOLDS[validation_type]
        threshold_passed = confidence >= threshold
        threshold_score = 1.0 if threshold_passed else confidence / threshold

        historical = await self.get_historical_accuracy(key)
        minimum = HISTORICAL_MINIMUMS[validation_type]

        checks = [
            ValidationCheck(
                check_type=ValidationCheckType.CONFIDENCE_THRESHOLD,
                passed=threshold_passed,
                score=clamp_score(threshold_score),
                details=f"confidence {confidence:.2f} vs threshold {threshold:.2f}",
            ),
            ValidationCheck(
                check_type=ValidationCheckType.HISTORICAL_ACCURACY,
                passed=historical >= minimum,
                score=clamp_score(min(historical / minimum, 1.0)),
                details=f"historical accuracy {historical:.2f} vs minimum {minimum:.2f}",
            ),
            ValidationCheck(
                check_type=ValidationCheckType.CONSISTENCY,
                passed=consistency > CONSISTENCY_PASS,
                score=clamp_score(consistency),
            ),
            ValidationCheck(
                check_type=ValidationCheckType.CONTEXTUAL,
                passed=contextual > CONTEXTUAL_PASS,
                score=clamp_score(contextual),
            ),
        ]

        validation_score = clamp_score(sum(CHECK_WEIGHTS[c.check_type] * c.score for c in checks))
        adjusted = confidence * (0.7 * validation_score + 0.3 * historical)
        adjusted = clamp_score(adjusted, MIN_ADJUSTED_CONFIDENCE, MAX_ADJUSTED_CONFIDENCE)

        self.score_histogram.observe(validation_score)
        await self.record_validation(key, validation_score)

        return ValidationResult(
            validation_type=validation_type,
            original_confidence=clamp_score(confidence),
            adjusted_confidence=adjusted,
            validation_score=validation_score,
            is_valid=validation_score > VALID_SCORE_THRESHOLD,
            checks=checks,
            metadata={'key': key, 'historical_accuracy': historical},
        )

    # ------------------------------------------------------------------
    # Consistency heuristics
    # ------------------------------------------------------------------

    def _intent_consistency(self, intent: Intent, question: str) -> float:
        cues = self.vocabulary.intent_consistency_cues.get(intent.type)
        if not cues:
            return 0.7
        question_words = set(words(question))
        return 0.9 if any(cue in question_words for cue in cues) else 0.5

    def _entity_consistency(self, entity: Entity, question: str) -> float:
        name = entity.name.lower()
        if entity.type == EntityType.TABLE and name in question.lower():
            return 0.9
        if entity.type == EntityType.METRIC and any(cue in name for cue in _METRIC_CUES):
            return 0.9
        if entity.type == EntityType.DIMENSION and any(cue in name for cue in _DIMENSION_CUES):
            return 0.9
        return 0.6

    def _domain_consistency(self, domain: Domain, question: str) -> float:
        cues = self.vocabulary.domain_consistency_cues.get(domain.name)
        if not cues:
            return 0.6
        normalized = normalize_text(question)
        return 0.9 if any(contains_keyword(normalized, cue) for cue in cues) else 0.4

    def _contextual_fit(self, intent_type: Optional[IntentType], question: str) -> float:
        word_count = len(question.split())
        if word_count < 5 and intent_type == IntentType.ANALYTICAL:
            return 0.4
        if word_count > 15 and intent_type == IntentType.DETAIL:
            return 0.4
        return 0.8
