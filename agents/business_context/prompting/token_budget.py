"""
Token Budget Manager

Splits a model context window into per-category budgets for the prompt.

Token counts are a deterministic word/punctuation estimate, not the
output of a real tokenizer:

    tokens = ceil((words + punctuation / 2) x content-type multiplier)

Budgets computed here are therefore stable across runs and platforms.
"""

import math
import re
from typing import Dict, List, Optional, Sequence

from shared.config.logging_config import configure_logger_for_component
from shared.config.settings import BusinessContextConfig, get_settings
from shared.schemas.business_context import (
    BUDGET_CATEGORIES,
    CATEGORY_BUDGET_POOL,
    AllocationResult,
    BusinessContextProfile,
    ContextCategory,
    ContextSection,
    IntentType,
    TokenBudget,
    UserTokenPreferences,
)
from shared.utils.metrics import get_metrics_collector, track_performance

_WORD_RE = re.compile(r"\b\w+\b")
_PUNCT_RE = re.compile(r"[^\w\s]")

CONTENT_TYPE_MULTIPLIERS = {
    'sql': 1.3,
    'json': 1.2,
    'schema': 1.1,
    'business_context': 1.0,
    'business': 1.0,
    'examples': 1.15,
    'rules': 1.05,
    'glossary': 1.0,
}

SYSTEM_PROMPT_TOKENS = 150
TEMPLATE_TOKENS = 100

MINIMAL_BUDGET = {
    ContextCategory.SCHEMA: 200,
    ContextCategory.BUSINESS: 150,
    ContextCategory.EXAMPLES: 100,
    ContextCategory.RULES: 30,
    ContextCategory.GLOSSARY: 20,
}
MINIMAL_MAX_TOKENS = 1000
MINIMAL_BASE_TOKENS = 300
MINIMAL_RESERVED_TOKENS = 200
MINIMAL_AVAILABLE_TOKENS = 500

# schema, business, examples, rules, glossary
INTENT_ALLOCATIONS: Dict[IntentType, Dict[ContextCategory, float]] = {
    IntentType.AGGREGATION: dict(zip(BUDGET_CATEGORIES, (0.40, 0.25, 0.20, 0.10, 0.05))),
    IntentType.TREND: dict(zip(BUDGET_CATEGORIES, (0.35, 0.30, 0.20, 0.10, 0.05))),
    IntentType.COMPARISON: dict(zip(BUDGET_CATEGORIES, (0.45, 0.25, 0.15, 0.10, 0.05))),
    IntentType.DETAIL: dict(zip(BUDGET_CATEGORIES, (0.50, 0.20, 0.15, 0.10, 0.05))),
    IntentType.EXPLORATORY: dict(zip(BUDGET_CATEGORIES, (0.30, 0.35, 0.20, 0.10, 0.05))),
    IntentType.OPERATIONAL: dict(zip(BUDGET_CATEGORIES, (0.40, 0.30, 0.15, 0.10, 0.05))),
    IntentType.ANALYTICAL: dict(zip(BUDGET_CATEGORIES, (0.35, 0.30, 0.20, 0.10, 0.05))),
}

DOMAIN_ADJUSTMENTS = {
    'gaming': {ContextCategory.EXAMPLES: 1.2, ContextCategory.BUSINESS: 0.9},
    'financial': {ContextCategory.RULES: 1.5, ContextCategory.EXAMPLES: 0.8},
    'banking': {ContextCategory.RULES: 1.5, ContextCategory.EXAMPLES: 0.8},
}


def count_tokens(text: str, content_type: str = 'business_context') -> int:
    """Approximate token count of ``text`` for a content type."""
    if not text:
        return 0
    word_count = len(_WORD_RE.findall(text))
    punctuation_count = len(_PUNCT_RE.findall(text))
    multiplier = CONTENT_TYPE_MULTIPLIERS.get(content_type, 1.0)
    # punctuation often merges with neighbouring tokens
    base_tokens = word_count + punctuation_count // 2
    return int(math.ceil(base_tokens * multiplier))


class TokenBudgetManager:
    """Creates token budgets and packs context sections into them."""

    def __init__(self, config: Optional[BusinessContextConfig] = None):
        self.logger = configure_logger_for_component("prompting.token_budget")
        self.metrics = get_metrics_collector()
        self.config = config or get_settings().business_context
        self.minimal_budget_counter = self.metrics.counter("token_budget_minimal_total")
        self.utilization_gauge = self.metrics.gauge("token_budget_last_utilization")

    def count_tokens(self, text: str, content_type: str = 'business_context') -> int:
        return count_tokens(text, content_type)

    @track_performance(tags={"operation": "create_budget"})
    def create_budget(
        self,
        profile: BusinessContextProfile,
        max_tokens: Optional[int] = None,
        reserved_response_tokens: Optional[int] = None,
        preferences: Optional[UserTokenPreferences] = None,
    ) -> TokenBudget:
        """
        Compute the per-category budget for a profile.

        Args:
            profile: Analysed question
            max_tokens: Model context window (defaults from configuration)
            reserved_response_tokens: Tokens kept free for the answer
            preferences: Optional per-user allocation preferences

        Returns:
            TokenBudget whose category budgets never exceed the available tokens
        """
        max_tokens = self.config.default_max_tokens if max_tokens is None else max_tokens
        if reserved_response_tokens is None:
            reserved_response_tokens = self.config.default_reserved_response_tokens

        base_prompt_tokens = SYSTEM_PROMPT_TOKENS + count_tokens(profile.question) + TEMPLATE_TOKENS
        available = max_tokens - base_prompt_tokens - reserved_response_tokens

        if available <= 0:
            self.minimal_budget_counter.increment()
            self.logger.warning(
                f"No context tokens available ({available}); using minimal budget",
                extra={"max_tokens": max_tokens, "reserved": reserved_response_tokens}
            )
            return self.create_minimal_budget(profile.intent.type)

        percentages = dict(INTENT_ALLOCATIONS.get(profile.intent.type, INTENT_ALLOCATIONS[IntentType.ANALYTICAL]))
        self._apply_multipliers(percentages, DOMAIN_ADJUSTMENTS.get(profile.domain.name.lower(), {}))
        if preferences is not None:
            self._apply_multipliers(percentages, self._preference_multipliers(preferences))

        category_budgets: Dict[ContextCategory, int] = {}
        remaining = available
        for category in BUDGET_CATEGORIES:
            allocation = max(0, min(int(available * percentages[category]), remaining))
            category_budgets[category] = allocation
            remaining -= allocation

        budget = TokenBudget(
            intent_type=profile.intent.type,
            max_total_tokens=max_tokens,
            base_prompt_tokens=base_prompt_tokens,
            reserved_response_tokens=reserved_response_tokens,
            available_context_tokens=available,
            category_budgets=category_budgets,
        )
        self.logger.debug(
            f"Created token budget for {profile.intent.type.value}",
            extra={"available": available, "allocated": budget.total_allocated}
        )
        return budget

    def create_minimal_budget(self, intent_type: IntentType = IntentType.ANALYTICAL) -> TokenBudget:
        return TokenBudget(
            intent_type=intent_type,
            max_total_tokens=MINIMAL_MAX_TOKENS,
            base_prompt_tokens=MINIMAL_BASE_TOKENS,
            reserved_response_tokens=MINIMAL_RESERVED_TOKENS,
            available_context_tokens=MINIMAL_AVAILABLE_TOKENS,
            category_budgets=dict(MINIMAL_BUDGET),
            is_minimal=True,
        )

    @staticmethod
    def _apply_multipliers(percentages: Dict[ContextCategory, float], multipliers: Dict[ContextCategory, float]) -> None:
        for category, factor in multipliers.items():
            percentages[category] = percentages.get(category, 0.0) * factor

    @staticmethod
    def _preference_multipliers(preferences: UserTokenPreferences) -> Dict[ContextCategory, float]:
        multipliers: Dict[ContextCategory, float] = {}

        def combine(category: ContextCategory, factor: float) -> None:
            multipliers[category] = multipliers.get(category, 1.0) * factor

        if preferences.prefer_more_examples:
            combine(ContextCategory.EXAMPLES, 1.3)
            combine(ContextCategory.SCHEMA, 0.9)
        if preferences.prefer_detailed_schema:
            combine(ContextCategory.SCHEMA, 1.2)
            combine(ContextCategory.BUSINESS, 0.9)
        return multipliers

    def optimize_allocation(self, budget: TokenBudget, sections: Sequence[ContextSection]) -> AllocationResult:
        """
        Greedy per-category packing.

        Sections are grouped by their budget pool and accepted in
        descending relevance while they fit the pool's budget.
        """
        by_pool: Dict[ContextCategory, List[ContextSection]] = {}
        for section in sections:
            pool = self._pool_of(section.category)
            by_pool.setdefault(pool, []).append(section)

        selected: Dict[ContextCategory, List[ContextSection]] = {}
        tokens_used: Dict[ContextCategory, int] = {}
        rejected: List[ContextSection] = []

        for pool in BUDGET_CATEGORIES:
            candidates = sorted(by_pool.get(pool, []), key=lambda s: (-s.relevance_score, s.token_count))
            limit = budget.budget_for(pool)
            used = 0
            accepted = []
            for section in candidates:
                if used + section.token_count <= limit:
                    accepted.append(section)
                    used += section.token_count
                else:
                    rejected.append(section)
            selected[pool] = accepted
            tokens_used[pool] = used

        result = AllocationResult(budget=budget, selected=selected, tokens_used=tokens_used, rejected=rejected)
        self.utilization_gauge.set(result.utilization)
        return result

    @staticmethod
    def _pool_of(category: ContextCategory) -> ContextCategory:
        return CATEGORY_BUDGET_POOL.get(category, category)
