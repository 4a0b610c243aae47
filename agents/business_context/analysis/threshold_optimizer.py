"""
Dynamic Threshold Optimizer

Similarity cut-offs for semantic search over the business catalog. The
threshold for a search starts from a per-intent base and moves with the
domain, with recorded search outcomes and with user feedback:

    threshold = base + domain + performance + feedback

bounded to the configured range. Tables live in
``similarity_thresholds.yaml``.
"""

from datetime import datetime
from typing import Dict, Optional

from shared.base.services import SimilarityThresholdProvider, UserFeedbackRepository
from shared.config.logging_config import configure_logger_for_component
from shared.config.settings import BusinessContextConfig, get_settings
from shared.config.vocabulary import SimilarityThresholds, load_similarity_thresholds
from shared.schemas.business_context import (
    IntentType,
    ThresholdAnalytics,
    ThresholdOptimizationReport,
    ThresholdPerformance,
    clamp_score,
)
from shared.utils.caching import BaseCache, generate_cache_key, get_cache_manager
from shared.utils.metrics import get_metrics_collector

TABLE_SEARCH = "table_search"
COLUMN_SEARCH = "column_search"
BUSINESS_TERM_SEARCH = "business_term_search"
FUZZY_TERM_MATCH = "fuzzy_term_match"

ANY = "Any"
DEFAULT_RECOMMENDATION = 0.4
GOOD_RESULTS_WEIGHT = 0.7


def threshold_key(intent_type: Optional[IntentType], domain_name: str, search_type: str) -> str:
    """Feedback and performance key, ``intent:domain:search_type``."""
    intent = intent_type.value if intent_type is not None else ANY
    return f"{intent}:{domain_name or ANY}:{search_type}"


class DynamicThresholdOptimizer(SimilarityThresholdProvider):
    """
    Adapts similarity thresholds per ``(intent, domain, search type)``.

    Computed thresholds are cached; recording an outcome or a feedback
    score for a key drops its cached value so the next lookup sees it.
    """

    def __init__(
        self,
        feedback_repository: Optional[UserFeedbackRepository] = None,
        thresholds: Optional[SimilarityThresholds] = None,
        config: Optional[BusinessContextConfig] = None,
        cache: Optional[BaseCache] = None,
    ):
        self.logger = configure_logger_for_component("analysis.threshold_optimizer")
        self.feedback_repository = feedback_repository
        self.thresholds = thresholds or load_similarity_thresholds()
        self.config = config or get_settings().business_context
        self.cache = cache or get_cache_manager().get_cache('memory')

        self._performance: Dict[str, ThresholdPerformance] = {}

        metrics = get_metrics_collector()
        self.lookup_counter = metrics.counter("similarity_threshold_lookups")
        self.threshold_histogram = metrics.histogram("similarity_threshold_value")

    async def get_optimal_threshold(
        self,
        intent_type: Optional[IntentType],
        domain_name: str,
        search_type: str,
    ) -> float:
        key = threshold_key(intent_type, domain_name, search_type)
        cache_key = generate_cache_key("optimal_threshold", key=key)
        cached, found = await self.cache.lookup(cache_key)
        if found:
            return cached

        self.lookup_counter.increment()
        base = self.thresholds.base_threshold(intent_type, search_type)
        domain_adjustment = self.thresholds.domain_adjustment(domain_name)
        performance_adjustment = self.performance_adjustment(key)
        feedback_adjustment = await self.feedback_adjustment(key)

        threshold = clamp_score(
            base + domain_adjustment + performance_adjustment + feedback_adjustment,
            self.thresholds.min_threshold,
            self.thresholds.max_threshold,
        )
        await self.cache.set(cache_key, threshold, ttl=self.config.threshold_cache_ttl_seconds)
        self.threshold_histogram.observe(threshold)

        self.logger.debug(
            f"Threshold for {key}: {threshold:.3f} (base {base:.3f}, domain {domain_adjustment:+.3f}, "
            f"performance {performance_adjustment:+.3f}, feedback {feedback_adjustment:+.3f})"
        )
        return threshold

    def performance_adjustment(self, key: str) -> float:
        """Nudge the threshold when recorded searches were unsatisfying."""
        rules = self.thresholds.performance
        data = self._performance.get(key)
        if data is None or data.total_searches < rules.min_searches:
            return 0.0

        if data.average_satisfaction < rules.low_satisfaction:
            if data.average_results > rules.many_results:
                return rules.step
            if data.average_results < rules.few_results:
                return -rules.step
        return 0.0

    async def feedback_adjustment(self, key: str) -> float:
        if self.feedback_repository is None:
            return 0.0
        try:
            score = await self.feedback_repository.get_threshold_feedback_score(key)
        except Exception as e:
            self.logger.warning(f"Threshold feedback lookup failed for {key}: {e}")
            return 0.0
        if score is None:
            return 0.0

        rules = self.thresholds.feedback
        if score > rules.high_score:
            return rules.high_adjustment
        if score < rules.low_score:
            return rules.low_adjustment
        return 0.0

    async def record_search_performance(
        self,
        intent_type: Optional[IntentType],
        domain_name: str,
        search_type: str,
        threshold: float,
        results_count: int,
        satisfaction: float,
    ) -> None:
        """Add one search outcome to the running sums for its key."""
        rules = self.thresholds.performance
        key = threshold_key(intent_type, domain_name, search_type)
        data = self._performance.setdefault(key, ThresholdPerformance())

        data.total_searches += 1
        data.threshold_sum += threshold
        data.results_count_sum += results_count
        data.satisfaction_sum += satisfaction
        if satisfaction > rules.good_satisfaction:
            data.good_results += 1
            data.good_threshold_sum += threshold
        elif satisfaction < rules.poor_satisfaction:
            data.poor_results += 1
            data.poor_threshold_sum += threshold

        # Halve everything past the window so recent searches dominate
        if data.total_searches > rules.window:
            data.total_searches = rules.window // 2
            data.good_results //= 2
            data.poor_results //= 2
            data.threshold_sum *= 0.5
            data.results_count_sum *= 0.5
            data.satisfaction_sum *= 0.5
            data.good_threshold_sum *= 0.5
            data.poor_threshold_sum *= 0.5
        data.last_updated = datetime.utcnow()

        await self.cache.delete(generate_cache_key("optimal_threshold", key=key))

    async def record_feedback(
        self,
        intent_type: Optional[IntentType],
        domain_name: str,
        search_type: str,
        score: float,
    ) -> None:
        """Store a user feedback score in ``[0, 1]`` for a search key."""
        key = threshold_key(intent_type, domain_name, search_type)
        if self.feedback_repository is not None:
            try:
                await self.feedback_repository.record_threshold_feedback(key, clamp_score(score))
            except Exception as e:
                self.logger.warning(f"Recording threshold feedback for {key} failed: {e}")
        await self.cache.delete(generate_cache_key("optimal_threshold", key=key))

    def generate_report(
        self,
        intent_type: Optional[IntentType] = None,
        domain_name: Optional[str] = None,
    ) -> ThresholdOptimizationReport:
        analytics = []
        for key, data in sorted(self._performance.items()):
            intent_value, key_domain, search_type = key.split(":", 2)
            key_intent = None if intent_value == ANY else IntentType(intent_value)
            if intent_type is not None and key_intent != intent_type:
                continue
            if domain_name is not None and key_domain.lower() != domain_name.lower():
                continue

            searches = data.total_searches
            analytics.append(ThresholdAnalytics(
                intent_type=key_intent,
                domain_name="" if key_domain == ANY else key_domain,
                search_type=search_type,
                total_searches=searches,
                average_threshold=data.threshold_sum / searches if searches else 0.0,
                average_results_count=data.average_results,
                average_satisfaction=data.average_satisfaction,
                good_results_threshold=data.good_threshold_sum / data.good_results if data.good_results else 0.0,
                poor_results_threshold=data.poor_threshold_sum / data.poor_results if data.poor_results else 0.0,
                recommended_threshold=self.recommend_threshold(data),
                last_updated=data.last_updated,
            ))

        return ThresholdOptimizationReport(
            intent_filter=intent_type,
            domain_filter=domain_name,
            analytics=analytics,
        )

    @staticmethod
    def recommend_threshold(data: ThresholdPerformance) -> float:
        """Lean towards thresholds that produced good results."""
        if data.good_results and data.poor_results:
            good = data.good_threshold_sum / data.good_results
            poor = data.poor_threshold_sum / data.poor_results
            return good * GOOD_RESULTS_WEIGHT + poor * (1 - GOOD_RESULTS_WEIGHT)
        if data.good_results:
            return data.good_threshold_sum / data.good_results
        if data.total_searches:
            return data.threshold_sum / data.total_searches
        return DEFAULT_RECOMMENDATION
