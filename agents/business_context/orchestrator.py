"""
Context Analysis Orchestrator

Entry point of the business-context pipeline:

    question -> [entities | intent | domain | terms | time range]   (concurrent)
             -> validation                                         (concurrent)
             -> personalisation -> BusinessContextProfile
             -> token budget -> prioritisation -> progressive prompt

``analyze_question`` never raises for data or collaborator failures; a
degraded analysis is only distinguishable by lower confidence and the
``fallback_applied`` / ``fallback_analysis`` metadata markers.
"""

import asyncio
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from shared.base.services import (
    BusinessMetadataService,
    EmbeddingService,
    ExternalServiceError,
    LanguageModelService,
    UserFeedbackRepository,
    UserPatternProvider,
)
from shared.base.in_memory import InMemoryBusinessMetadataService
from shared.config.logging_config import configure_logger_for_component, reset_trace_id, set_trace_id
from shared.config.settings import BusinessContextConfig, Settings, get_settings
from shared.config.vocabulary import BusinessVocabulary, load_business_vocabulary
from shared.schemas.business_context import (
    AnalysisMetrics,
    BusinessContextProfile,
    ContextAdaptationResult,
    ContextualBusinessSchema,
    Domain,
    Entity,
    EntityType,
    Intent,
    IntentType,
    ProgressiveBuildResult,
    TimeRange,
    UserAnalysisPatterns,
    UserFeedback,
    clamp_score,
)
from shared.utils.caching import BaseCache, generate_cache_key, get_cache_manager, hash_question
from shared.utils.metrics import get_metrics_collector, track_performance
from shared.utils.text import matched_keywords

from .analysis.confidence_validator import ConfidenceValidator
from .analysis.domain_detector import BusinessDomainDetector
from .analysis.entity_extractor import EntityExtractionPipeline
from .analysis.intent_ensemble import IntentClassificationEnsemble, get_intent_description
from .analysis.interfaces import (
    BusinessTermExtractor,
    DomainDetector,
    EntityExtractor,
    IntentClassifier,
    TimeRangeExtractor,
)
from .analysis.schema_linker import SchemaEntityLinker
from .analysis.semantic_matching import (
    EmbeddingSemanticMatcher,
    LexicalSemanticMatcher,
    SemanticBusinessMetadataService,
)
from .analysis.term_extractor import KeywordBusinessTermExtractor
from .analysis.threshold_optimizer import COLUMN_SEARCH, TABLE_SEARCH, DynamicThresholdOptimizer
from .analysis.time_context import TimeContextAnalyzer
from .prompting.progressive_builder import ProgressiveContextBuilder

ANALYSIS_VERSION = "2.0"
FALLBACK_PROFILE_CONFIDENCE = 0.4
BRANCH_FALLBACK_INTENT_CONFIDENCE = 0.5
OVERALL_CONFIDENCE_CAP = 0.98
HIGH_CONFIDENCE = 0.9

BRANCHES = ("entities", "intent", "domain", "terms", "time_range")


class ContextAnalysisOrchestrator:
    """
    Composes the analysis components into one profile per question.

    Every collaborator is optional; missing ones are replaced by the
    default heuristic implementation so the orchestrator works fully
    offline.
    """

    def __init__(
        self,
        entity_extractor: Optional[EntityExtractor] = None,
        intent_classifier: Optional[IntentClassifier] = None,
        domain_detector: Optional[DomainDetector] = None,
        term_extractor: Optional[BusinessTermExtractor] = None,
        time_extractor: Optional[TimeRangeExtractor] = None,
        validator: Optional[ConfidenceValidator] = None,
        builder: Optional[ProgressiveContextBuilder] = None,
        pattern_provider: Optional[UserPatternProvider] = None,
        language_model: Optional[LanguageModelService] = None,
        metadata_service: Optional[BusinessMetadataService] = None,
        feedback_repository: Optional[UserFeedbackRepository] = None,
        vocabulary: Optional[BusinessVocabulary] = None,
        config: Optional[BusinessContextConfig] = None,
        cache: Optional[BaseCache] = None,
        threshold_optimizer: Optional[DynamicThresholdOptimizer] = None,
    ):
        self.logger = configure_logger_for_component("orchestrator")
        self.metrics = get_metrics_collector()
        self.config = config or get_settings().business_context
        self.vocabulary = vocabulary or load_business_vocabulary()
        self.cache = cache or get_cache_manager().get_cache('profiles')
        self.pattern_provider = pattern_provider
        self.threshold_optimizer = threshold_optimizer

        self.entity_extractor = entity_extractor or EntityExtractionPipeline(
            language_model=language_model,
            entity_linker=SchemaEntityLinker(metadata_service, self.vocabulary),
            vocabulary=self.vocabulary,
            config=self.config,
        )
        self.intent_classifier = intent_classifier or IntentClassificationEnsemble(
            language_model=language_model, vocabulary=self.vocabulary, config=self.config
        )
        self.domain_detector = domain_detector or BusinessDomainDetector(metadata_service=metadata_service)
        self.term_extractor = term_extractor or KeywordBusinessTermExtractor(self.vocabulary)
        self.time_extractor = time_extractor or TimeContextAnalyzer(language_model, self.config)
        self.validator = validator or ConfidenceValidator(
            feedback_repository=feedback_repository, vocabulary=self.vocabulary, config=self.config
        )
        self.builder = builder or ProgressiveContextBuilder()

        self.analysis_counter = self.metrics.counter("business_context_analyses_total")
        self.fallback_counter = self.metrics.counter("business_context_fallback_profiles")
        self.branch_failure_counter = self.metrics.counter("business_context_branch_failures")
        self.cache_hit_counter = self.metrics.counter("business_context_cache_hits")

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze_question(self, question: str, user_id: str = "") -> BusinessContextProfile:
        """Analyse ``question`` for ``user_id``; never raises for data conditions."""
        profile, _ = await self.analyze_question_with_metrics(question, user_id)
        return profile

    @track_performance(tags={"operation": "analyze_question"})
    async def analyze_question_with_metrics(
        self, question: str, user_id: str = ""
    ) -> Tuple[BusinessContextProfile, AnalysisMetrics]:
        """Profile plus per-branch timings, failures and the cache-hit flag."""
        self.analysis_counter.increment()
        analysis_id = str(uuid.uuid4())
        metrics = AnalysisMetrics(analysis_id=analysis_id)
        started = time.perf_counter()
        token = set_trace_id(analysis_id)

        try:
            question = question or ""
            if not question.strip():
                self.logger.warning("Empty question, returning fallback profile")
                return self.create_fallback_profile(question, user_id, analysis_id), metrics

            cache_key = generate_cache_key("business_context_profile", hash_question(question), user_id=user_id)
            cached, found = await self.cache.lookup(cache_key)
            if found:
                self.cache_hit_counter.increment()
                metrics.cache_hit = True
                return cached, metrics

            try:
                profile = await self._analyze(question, user_id, analysis_id, metrics)
            except Exception as e:
                self.logger.error(f"Analysis failed, returning fallback profile: {e}", exc_info=True)
                return self.create_fallback_profile(question, user_id, analysis_id), metrics

            if metrics.failed_branches or metrics.cancelled_branches:
                self.logger.info("Degraded profile not cached", extra={
                    "failed_branches": metrics.failed_branches,
                    "cancelled_branches": metrics.cancelled_branches,
                })
            else:
                await self.cache.set(cache_key, profile, ttl=self.config.profile_cache_ttl_seconds)
            return profile, metrics
        finally:
            metrics.total_duration_ms = (time.perf_counter() - started) * 1000
            reset_trace_id(token)

    async def _analyze(
        self, question: str, user_id: str, analysis_id: str, metrics: AnalysisMetrics
    ) -> BusinessContextProfile:
        results = await self._run_branches(question, metrics)

        entities: List[Entity] = results["entities"]
        intent: Intent = results["intent"]
        domain: Domain = results["domain"]
        terms: List[str] = results["terms"]
        time_range: Optional[TimeRange] = results["time_range"]

        intent, domain, entities, validation = await self._validate(intent, domain, entities, question)

        if self.pattern_provider is not None and user_id:
            intent, domain, entities = await self._personalize(user_id, intent, domain, entities)

        term_relevance = self.term_extractor.calculate_term_relevance(terms, entities, intent, domain)
        confidence = self.calculate_overall_confidence(intent, domain, entities)

        profile = BusinessContextProfile(
            question=question,
            user_id=user_id,
            intent=intent,
            domain=domain,
            entities=entities,
            business_terms=terms,
            time_range=time_range,
            term_relevance=term_relevance,
            confidence=confidence,
            analysis_id=analysis_id,
            metadata={
                'analysis_version': ANALYSIS_VERSION,
                'identified_metrics': [e.name for e in entities if e.type == EntityType.METRIC],
                'identified_dimensions': [e.name for e in entities if e.type == EntityType.DIMENSION],
                'comparison_terms': matched_keywords(question, self.vocabulary.comparison_keywords),
                'failed_branches': list(metrics.failed_branches),
                'cancelled_branches': list(metrics.cancelled_branches),
                'validation': validation,
            },
        )
        self.logger.info(
            f"Analysed question: {intent.type.value} / {domain.name} ({confidence:.2f})",
            extra={"entities": len(entities), "confidence": confidence}
        )
        return profile

    async def _run_branches(self, question: str, metrics: AnalysisMetrics) -> Dict[str, Any]:
        coroutines: Dict[str, Awaitable[Any]] = {
            "entities": self.entity_extractor.extract_entities(question),
            "intent": self.intent_classifier.classify_intent(question),
            "domain": self._detect_domain(question),
            "terms": self.term_extractor.extract_terms(question),
            "time_range": self.time_extractor.extract_time_range(question),
        }
        tasks = {
            name: asyncio.ensure_future(self._timed(name, coroutine, question, metrics))
            for name, coroutine in coroutines.items()
        }

        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self.config.analysis_timeout_seconds)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, Any] = {}
        for name, task in tasks.items():
            if task in pending:
                metrics.cancelled_branches.append(name)
                self.logger.warning(f"Analysis branch {name} exceeded the analysis deadline")
                results[name] = self._branch_fallback(name, question)
            else:
                results[name] = task.result()
        return results

    async def _timed(
        self, name: str, coroutine: Awaitable[Any], question: str, metrics: AnalysisMetrics
    ) -> Any:
        started = time.perf_counter()
        try:
            return await coroutine
        except Exception as e:
            self.branch_failure_counter.increment()
            metrics.failed_branches.append(name)
            self.logger.warning(f"Analysis branch {name} failed: {e}", extra={"branch": name})
            return self._branch_fallback(name, question)
        finally:
            metrics.branch_durations_ms[name] = (time.perf_counter() - started) * 1000

    async def _detect_domain(self, question: str) -> Domain:
        terms = await self.term_extractor.extract_terms(question)
        return await self.domain_detector.detect_domain(question, terms)

    def _branch_fallback(self, name: str, question: str) -> Any:
        if name == "entities":
            return []
        if name == "intent":
            return Intent(
                type=IntentType.ANALYTICAL,
                confidence=BRANCH_FALLBACK_INTENT_CONFIDENCE,
                description=get_intent_description(IntentType.ANALYTICAL, self.vocabulary),
                metadata={'fallback_applied': True},
            )
        if name == "domain":
            return self.validator.fallback_domain()
        if name == "terms":
            return matched_keywords(question, self.vocabulary.common_business_terms)
        return None

    async def _validate(
        self, intent: Intent, domain: Domain, entities: List[Entity], question: str
    ) -> Tuple[Intent, Domain, List[Entity], Dict[str, Any]]:
        outcomes = await asyncio.gather(
            self.validator.validate_intent(intent, question),
            self.validator.validate_domain(domain, question),
            self.validator.validate_entities(entities, question),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        summary: Dict[str, Any] = {}
        intent_outcome, domain_outcome, entity_outcome = outcomes

        if isinstance(intent_outcome, Exception):
            self.logger.warning(f"Intent validation failed: {intent_outcome}")
        else:
            intent, result = intent_outcome
            summary['intent'] = {'score': result.validation_score, 'valid': result.is_valid}

        if isinstance(domain_outcome, Exception):
            self.logger.warning(f"Domain validation failed: {domain_outcome}")
        else:
            domain, result = domain_outcome
            summary['domain'] = {'score': result.validation_score, 'valid': result.is_valid}

        if isinstance(entity_outcome, Exception):
            self.logger.warning(f"Entity validation failed: {entity_outcome}")
        else:
            entities, results = entity_outcome
            summary['entities'] = {'validated': len(results), 'kept': len(entities)}

        return intent, domain, entities, summary

    async def _personalize(
        self, user_id: str, intent: Intent, domain: Domain, entities: List[Entity]
    ) -> Tuple[Intent, Domain, List[Entity]]:
        try:
            patterns = await self.pattern_provider.get_user_patterns(user_id)
        except Exception as e:
            self.logger.warning(f"User pattern lookup failed for {user_id}: {e}")
            return intent, domain, entities
        if patterns is None:
            return intent, domain, entities
        return self.apply_personalization(patterns, intent, domain, entities)

    @staticmethod
    def apply_personalization(
        patterns: UserAnalysisPatterns, intent: Intent, domain: Domain, entities: List[Entity]
    ) -> Tuple[Intent, Domain, List[Entity]]:
        """Nudge confidences towards the user's historical behaviour."""
        intent_pattern = patterns.intent_patterns.get(intent.type)
        if intent_pattern is not None:
            delta = 0.1 if intent_pattern.success_rate > 0.8 else -0.05
            intent = intent.model_copy(update={
                'confidence': clamp_score(intent.confidence + delta, 0.0, OVERALL_CONFIDENCE_CAP),
                'metadata': {**intent.metadata, 'personalized': True},
            })

        frequency = {name.lower(): count for name, count in patterns.entity_frequency.items()}
        personalized_entities = []
        for entity in entities:
            count = frequency.get(entity.name.lower(), 0)
            if count > 0:
                boost = min(count * 0.02, 0.1)
                entity = entity.model_copy(update={
                    'confidence': clamp_score(entity.confidence + boost, 0.0, OVERALL_CONFIDENCE_CAP),
                    'metadata': {**entity.metadata, 'personalized': True},
                })
            personalized_entities.append(entity)

        preference = patterns.domain_preferences.get(domain.name)
        if preference is not None:
            delta = 0.1 if preference > 0.7 else -0.05
            domain = domain.model_copy(update={
                'relevance_score': clamp_score(domain.relevance_score + delta, 0.0, OVERALL_CONFIDENCE_CAP),
                'metadata': {**domain.metadata, 'personalized': True},
            })

        return intent, domain, personalized_entities

    @staticmethod
    def calculate_overall_confidence(intent: Intent, domain: Domain, entities: List[Entity]) -> float:
        entity_confidence = sum(e.confidence for e in entities) / len(entities) if entities else 0.5
        confidence = intent.confidence * 0.4 + domain.relevance_score * 0.3 + entity_confidence * 0.3

        if intent.confidence > HIGH_CONFIDENCE:
            confidence += 0.05
        if domain.relevance_score > HIGH_CONFIDENCE:
            confidence += 0.05
        if sum(1 for e in entities if e.confidence > HIGH_CONFIDENCE) >= 2:
            confidence += 0.05
        return clamp_score(min(confidence, OVERALL_CONFIDENCE_CAP))

    def create_fallback_profile(self, question: str, user_id: str, analysis_id: str) -> BusinessContextProfile:
        self.fallback_counter.increment()
        fallback_domain = self.validator.fallback_domain()
        return BusinessContextProfile(
            question=question,
            user_id=user_id,
            intent=Intent(
                type=IntentType.ANALYTICAL,
                confidence=BRANCH_FALLBACK_INTENT_CONFIDENCE,
                description=get_intent_description(IntentType.ANALYTICAL, self.vocabulary),
                metadata={'fallback_applied': True},
            ),
            domain=fallback_domain.model_copy(update={'relevance_score': 0.5}),
            entities=[],
            business_terms=matched_keywords(question, self.vocabulary.common_business_terms),
            confidence=FALLBACK_PROFILE_CONFIDENCE,
            created_at=datetime.utcnow(),
            analysis_id=analysis_id,
            metadata={
                'fallback_analysis': True,
                'analysis_version': ANALYSIS_VERSION,
            },
        )

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------

    async def build_prompt(
        self,
        question: str,
        profile: BusinessContextProfile,
        schema: Optional[ContextualBusinessSchema] = None,
        max_tokens: Optional[int] = None,
        reserved_response_tokens: Optional[int] = None,
    ) -> Tuple[str, int, ProgressiveBuildResult]:
        """
        Budgeted prompt for an analysed question.

        Returns:
            (prompt, token count, build trace)
        """
        preferences = None
        if self.pattern_provider is not None and profile.user_id:
            try:
                preferences = await self.pattern_provider.get_token_preferences(profile.user_id)
            except Exception as e:
                self.logger.warning(f"Token preference lookup failed for {profile.user_id}: {e}")

        result = await self.builder.build_progressive_context(
            question, profile, schema, max_tokens, reserved_response_tokens, preferences
        )
        return result.prompt, result.token_count, result

    async def adapt_prompt(
        self, build: ProgressiveBuildResult, feedback: UserFeedback, profile: BusinessContextProfile
    ) -> ContextAdaptationResult:
        if self.threshold_optimizer is not None and feedback.rating > 0:
            score = feedback.rating / 5
            for search_type in (TABLE_SEARCH, COLUMN_SEARCH):
                await self.threshold_optimizer.record_feedback(
                    profile.intent.type, profile.domain.name, search_type, score
                )
        return await self.builder.adapt_context_for_feedback(build, feedback, profile)


def create_orchestrator(
    settings: Optional[Settings] = None,
    metadata_service: Optional[BusinessMetadataService] = None,
    feedback_repository: Optional[UserFeedbackRepository] = None,
    pattern_provider: Optional[UserPatternProvider] = None,
    language_model: Optional[LanguageModelService] = None,
    embedding_service: Optional[EmbeddingService] = None,
    catalog: Optional[ContextualBusinessSchema] = None,
) -> ContextAnalysisOrchestrator:
    """
    Wire an orchestrator from settings.

    Gemini adapters are used when an API key is configured and no explicit
    services are passed; otherwise the heuristic paths run alone. A
    ``catalog`` without a ``metadata_service`` is searched semantically
    when embeddings are available, by keyword otherwise.
    """
    settings = settings or get_settings()
    logger = configure_logger_for_component("orchestrator.factory")

    if settings.genai.is_configured and (language_model is None or embedding_service is None):
        from .integration.gemini_client import GeminiEmbeddingService, GeminiLanguageModel, create_genai_client

        try:
            client = create_genai_client(settings.genai)
            language_model = language_model or GeminiLanguageModel(client, settings.genai)
            embedding_service = embedding_service or GeminiEmbeddingService(client, settings.genai)
        except ExternalServiceError as e:
            logger.warning(f"Gemini unavailable, using heuristic analysis only: {e}")

    vocabulary = load_business_vocabulary()
    config = settings.business_context
    matcher = (
        EmbeddingSemanticMatcher(embedding_service) if embedding_service is not None
        else LexicalSemanticMatcher()
    )
    threshold_optimizer = DynamicThresholdOptimizer(feedback_repository, config=config)
    if metadata_service is None and catalog is not None:
        if embedding_service is not None:
            metadata_service = SemanticBusinessMetadataService(catalog, matcher, threshold_optimizer)
        else:
            metadata_service = InMemoryBusinessMetadataService(catalog)

    entity_extractor = EntityExtractionPipeline(
        language_model=language_model,
        semantic_matcher=matcher,
        entity_linker=SchemaEntityLinker(metadata_service, vocabulary),
        vocabulary=vocabulary,
        config=config,
        threshold_provider=threshold_optimizer,
    )
    return ContextAnalysisOrchestrator(
        entity_extractor=entity_extractor,
        pattern_provider=pattern_provider,
        language_model=language_model,
        metadata_service=metadata_service,
        feedback_repository=feedback_repository,
        vocabulary=vocabulary,
        config=config,
        threshold_optimizer=threshold_optimizer,
    )
