"""
Progressive Context Builder

Assembles the final prompt for a question in five traced steps:

1. TokenBudgetCreation: per-category budget from the profile
2. ContextPrioritization: render and rank candidate sections
3. ProgressiveAssembly: pack sections category by category, in template order
4. FinalPromptAssembly: render headers, sections, question and instructions
5. PromptOptimization: top up an under-used prompt or trim an overfull one

Feedback adaptation derives a new build from an earlier one; build
results are immutable and never modified in place.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from shared.config.logging_config import configure_logger_for_component
from shared.schemas.business_context import (
    CATEGORY_BUDGET_POOL,
    AdaptationStrategy,
    BuildStep,
    BusinessContextProfile,
    ContextAdaptationResult,
    ContextCategory,
    ContextSection,
    ContextualBusinessSchema,
    FeedbackType,
    IntentType,
    OptimizationStrategy,
    ProgressiveBuildResult,
    SectionType,
    TokenBudget,
    UserFeedback,
    UserTokenPreferences,
)
from shared.utils.metrics import get_metrics_collector, track_performance

from .context_prioritizer import ContextPrioritizer, order_sections
from .token_budget import TokenBudgetManager, count_tokens

LOW_UTILIZATION = 0.7
HIGH_UTILIZATION = 0.95
TOP_UP_SECTIONS = 3
TRIM_SECTIONS = 2
REFINE_RELEVANCE = 0.7
IMPROVED_EXAMPLE_COUNT = 2


@dataclass(frozen=True)
class PromptTemplate:
    system_prompt: str
    categories: Tuple[ContextCategory, ...]
    closing_instructions: str


PROMPT_TEMPLATES: Dict[IntentType, PromptTemplate] = {
    IntentType.AGGREGATION: PromptTemplate(
        "You are an expert SQL analyst specializing in aggregation queries and business metrics.",
        (ContextCategory.SCHEMA, ContextCategory.BUSINESS, ContextCategory.EXAMPLES, ContextCategory.RULES),
        "Generate a SQL query that calculates the requested aggregations accurately.",
    ),
    IntentType.TREND: PromptTemplate(
        "You are an expert SQL analyst specializing in time-series analysis and trend identification.",
        (ContextCategory.SCHEMA, ContextCategory.BUSINESS, ContextCategory.EXAMPLES, ContextCategory.TEMPORAL),
        "Generate a SQL query that analyzes trends over time with appropriate time groupings.",
    ),
    IntentType.COMPARISON: PromptTemplate(
        "You are an expert SQL analyst specializing in comparative analysis and benchmarking.",
        (ContextCategory.SCHEMA, ContextCategory.BUSINESS, ContextCategory.EXAMPLES, ContextCategory.RELATIONSHIPS),
        "Generate a SQL query that compares entities or metrics as requested.",
    ),
    IntentType.DETAIL: PromptTemplate(
        "You are an expert SQL analyst specializing in detailed data retrieval and record-level queries.",
        (ContextCategory.SCHEMA, ContextCategory.BUSINESS, ContextCategory.EXAMPLES),
        "Generate a SQL query that retrieves the specific details requested.",
    ),
    IntentType.EXPLORATORY: PromptTemplate(
        "You are an expert SQL analyst specializing in data exploration and discovery.",
        (ContextCategory.BUSINESS, ContextCategory.SCHEMA, ContextCategory.EXAMPLES, ContextCategory.GLOSSARY),
        "Generate a SQL query that explores the data to find insights and patterns.",
    ),
    IntentType.OPERATIONAL: PromptTemplate(
        "You are an expert SQL analyst specializing in operational queries and real-time data.",
        (ContextCategory.SCHEMA, ContextCategory.BUSINESS, ContextCategory.RULES, ContextCategory.PERFORMANCE),
        "Generate an efficient SQL query for operational use with appropriate performance considerations.",
    ),
    IntentType.ANALYTICAL: PromptTemplate(
        "You are an expert SQL analyst specializing in complex analytical queries and business intelligence.",
        (ContextCategory.SCHEMA, ContextCategory.BUSINESS, ContextCategory.EXAMPLES,
         ContextCategory.RULES, ContextCategory.RELATIONSHIPS),
        "Generate a comprehensive SQL query that addresses the analytical requirements.",
    ),
}

FEEDBACK_STRATEGIES = {
    FeedbackType.TOO_MUCH_CONTEXT: AdaptationStrategy.REDUCE,
    FeedbackType.TOO_LITTLE_CONTEXT: AdaptationStrategy.EXPAND,
    FeedbackType.IRRELEVANT_CONTEXT: AdaptationStrategy.REFINE,
    FeedbackType.MISSING_INFORMATION: AdaptationStrategy.ADD_SPECIFIC,
    FeedbackType.INCORRECT_SQL: AdaptationStrategy.IMPROVE_EXAMPLES,
    FeedbackType.PERFECT_CONTEXT: AdaptationStrategy.BALANCED,
}


def get_prompt_template(intent_type: IntentType) -> PromptTemplate:
    return PROMPT_TEMPLATES.get(intent_type, PROMPT_TEMPLATES[IntentType.ANALYTICAL])


def new_build_id() -> str:
    return uuid.uuid4().hex[:8]


def _pool(category: ContextCategory) -> ContextCategory:
    return CATEGORY_BUDGET_POOL.get(category, category)


def render_prompt(template: PromptTemplate, question: str, sections: Sequence[ContextSection]) -> str:
    """Concatenate the template's categories, the question and the closing instructions."""
    lines = [template.system_prompt, ""]
    for category in template.categories:
        category_sections = [s for s in sections if s.category == category]
        if not category_sections:
            continue
        lines.append(f"## {category.value.upper()} CONTEXT")
        for section in category_sections:
            lines.append(section.content)
            lines.append("")
    lines.extend(["## USER QUESTION", question, "", "## INSTRUCTIONS", template.closing_instructions])
    return "\n".join(lines)


class ProgressiveContextBuilder:
    """Budgeted prompt assembly with feedback-driven re-packing."""

    def __init__(
        self,
        budget_manager: Optional[TokenBudgetManager] = None,
        prioritizer: Optional[ContextPrioritizer] = None,
        strategy: OptimizationStrategy = OptimizationStrategy.BALANCED,
    ):
        self.logger = configure_logger_for_component("prompting.progressive_builder")
        self.metrics = get_metrics_collector()
        self.budget_manager = budget_manager or TokenBudgetManager()
        self.prioritizer = prioritizer or ContextPrioritizer()
        self.strategy = strategy

        self.build_counter = self.metrics.counter("progressive_builds_total")
        self.fallback_counter = self.metrics.counter("progressive_build_fallbacks")
        self.adaptation_counter = self.metrics.counter("context_adaptations_total")
        self.utilization_histogram = self.metrics.histogram("progressive_build_utilization")

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    @track_performance(tags={"operation": "build_progressive_context"})
    async def build_progressive_context(
        self,
        question: str,
        profile: BusinessContextProfile,
        schema: Optional[ContextualBusinessSchema] = None,
        max_tokens: Optional[int] = None,
        reserved_response_tokens: Optional[int] = None,
        preferences: Optional[UserTokenPreferences] = None,
    ) -> ProgressiveBuildResult:
        """
        Build the prompt for ``question``.

        Never raises for data conditions: any failure during assembly
        yields a fallback result whose prompt is a bare instruction.
        """
        self.build_counter.increment()
        build_id = new_build_id()
        try:
            return self._build(build_id, question, profile, schema or ContextualBusinessSchema(),
                               max_tokens, reserved_response_tokens, preferences)
        except Exception as e:
            self.fallback_counter.increment()
            self.logger.warning(f"Progressive build {build_id} failed, using fallback prompt: {e}")
            return self.fallback_result(build_id, question, str(e))

    def _build(
        self,
        build_id: str,
        question: str,
        profile: BusinessContextProfile,
        schema: ContextualBusinessSchema,
        max_tokens: Optional[int],
        reserved_response_tokens: Optional[int],
        preferences: Optional[UserTokenPreferences],
    ) -> ProgressiveBuildResult:
        template = get_prompt_template(profile.intent.type)
        steps: List[BuildStep] = []

        started = time.perf_counter()
        budget = self.budget_manager.create_budget(profile, max_tokens, reserved_response_tokens, preferences)
        steps.append(BuildStep(
            name="TokenBudgetCreation",
            duration_ms=(time.perf_counter() - started) * 1000,
            tokens=budget.available_context_tokens,
            details={'is_minimal': budget.is_minimal, 'category_budgets': {
                k.value: v for k, v in budget.category_budgets.items()
            }},
        ))

        started = time.perf_counter()
        candidates = self.prioritizer.generate_sections(schema) + self.profile_sections(profile)
        candidates = [s for s in candidates if s.category in template.categories]
        prioritized, filtered_out = self.prioritizer.prioritize(
            candidates, profile, budget.available_context_tokens, self.strategy
        )
        steps.append(BuildStep(
            name="ContextPrioritization",
            duration_ms=(time.perf_counter() - started) * 1000,
            tokens=sum(s.token_count for s in prioritized),
            sections=len(prioritized),
            details={'strategy': self.strategy.value, 'candidates': len(candidates)},
        ))

        started = time.perf_counter()
        selected, rejected = self.assemble(template, budget, prioritized)
        rejected = rejected + filtered_out
        steps.append(BuildStep(
            name="ProgressiveAssembly",
            duration_ms=(time.perf_counter() - started) * 1000,
            tokens=sum(s.token_count for s in selected),
            sections=len(selected),
            details={'rejected': len(rejected)},
        ))

        started = time.perf_counter()
        prompt = render_prompt(template, question, selected)
        token_count = count_tokens(prompt)
        steps.append(BuildStep(
            name="FinalPromptAssembly",
            duration_ms=(time.perf_counter() - started) * 1000,
            tokens=token_count,
            sections=len(selected),
        ))

        started = time.perf_counter()
        selected, rejected, changes = self.optimize(template, budget, token_count, selected, rejected)
        if changes:
            prompt = render_prompt(template, question, selected)
            token_count = count_tokens(prompt)
        utilization = token_count / budget.max_total_tokens if budget.max_total_tokens else 0.0
        steps.append(BuildStep(
            name="PromptOptimization",
            duration_ms=(time.perf_counter() - started) * 1000,
            tokens=token_count,
            sections=len(selected),
            details={'changes': changes, 'utilization': round(utilization, 4)},
        ))

        self.utilization_histogram.observe(utilization)
        self.logger.info(
            f"Built prompt {build_id} with {len(selected)} sections ({token_count} tokens)",
            extra={"build_id": build_id, "utilization": utilization, "intent": profile.intent.type.value}
        )
        return ProgressiveBuildResult(
            build_id=build_id,
            question=question,
            prompt=prompt,
            token_count=token_count,
            budget=budget,
            selected_sections=selected,
            rejected_sections=rejected,
            steps=steps,
            token_utilization=utilization,
            metadata={
                'intent_type': profile.intent.type.value,
                'domain': profile.domain.name,
                'analysis_id': profile.analysis_id,
                'template_categories': [c.value for c in template.categories],
            },
        )

    def assemble(
        self,
        template: PromptTemplate,
        budget: TokenBudget,
        sections: Sequence[ContextSection],
    ) -> Tuple[List[ContextSection], List[ContextSection]]:
        """
        Greedy packing in template category order.

        Within a category sections are taken by descending relevance while
        the category's budget pool still has room; the rest are rejected.
        """
        pool_used: Dict[ContextCategory, int] = {}
        selected: List[ContextSection] = []
        rejected: List[ContextSection] = []

        for category in template.categories:
            pool = _pool(category)
            limit = budget.budget_for(category)
            candidates = sorted(
                (s for s in sections if s.category == category),
                key=lambda s: (-s.relevance_score, s.token_count),
            )
            for section in candidates:
                used = pool_used.get(pool, 0)
                if used + section.token_count <= limit:
                    selected.append(section)
                    pool_used[pool] = used + section.token_count
                else:
                    rejected.append(section)

        return order_sections(selected), rejected

    def optimize(
        self,
        template: PromptTemplate,
        budget: TokenBudget,
        token_count: int,
        selected: List[ContextSection],
        rejected: List[ContextSection],
    ) -> Tuple[List[ContextSection], List[ContextSection], List[str]]:
        """Top up below 70% utilisation, trim above 95%."""
        if budget.max_total_tokens <= 0:
            return selected, rejected, []

        utilization = token_count / budget.max_total_tokens
        changes: List[str] = []

        if utilization < LOW_UTILIZATION and rejected:
            headroom = budget.max_total_tokens - budget.reserved_response_tokens - token_count
            additions = []
            for section in sorted(rejected, key=lambda s: -s.relevance_score):
                if len(additions) >= TOP_UP_SECTIONS:
                    break
                if section.category in template.categories and section.token_count <= headroom:
                    additions.append(section)
                    headroom -= section.token_count
            if additions:
                added = {id(s) for s in additions}
                selected = order_sections(selected + additions)
                rejected = [s for s in rejected if id(s) not in added]
                changes.append(f"added {len(additions)} high-relevance sections")

        elif utilization > HIGH_UTILIZATION and selected:
            removals = sorted(selected, key=lambda s: s.relevance_score)[:TRIM_SECTIONS]
            removed = {id(s) for s in removals}
            selected = [s for s in selected if id(s) not in removed]
            rejected = rejected + removals
            changes.append(f"removed {len(removals)} low-relevance sections")

        return selected, rejected, changes

    def profile_sections(self, profile: BusinessContextProfile) -> List[ContextSection]:
        """Sections derived from the analysis itself rather than the catalog."""
        sections = []
        domain = profile.domain
        if domain.name:
            content = (
                f"Domain: {domain.name}\n"
                f"Description: {domain.description}\n"
                f"Key Concepts: {', '.join(domain.key_concepts)}"
            )
            sections.append(self._derived(SectionType.BUSINESS_CONTEXT, content, domain.relevance_score,
                                          f"domain:{domain.name}"))

        mappings = [
            f"{e.name} -> {e.mapped_table}" + (f".{e.mapped_column}" if e.mapped_column else "")
            for e in profile.entities if e.mapped_table
        ]
        if mappings:
            content = "Entity Mappings:\n" + "\n".join(mappings)
            sections.append(self._derived(SectionType.BUSINESS_CONTEXT, content, 0.85, "entity_mappings"))

        if profile.time_range is not None:
            time_range = profile.time_range
            content = (
                f"Time Range: {time_range.start:%Y-%m-%d} to {time_range.end:%Y-%m-%d}\n"
                f"Expression: {time_range.relative_expression}\n"
                f"Granularity: {time_range.granularity.value}"
            )
            sections.append(self._derived(SectionType.TEMPORAL_CONTEXT, content, 0.9, "time_range"))
        return sections

    @staticmethod
    def _derived(section_type: SectionType, content: str, relevance: float, source_id: str) -> ContextSection:
        return ContextSection(
            section_type=section_type,
            content=content,
            token_count=count_tokens(content),
            relevance_score=relevance,
            source_id=source_id,
        )

    def fallback_result(self, build_id: str, question: str, error_message: str) -> ProgressiveBuildResult:
        prompt = f"Generate SQL for: {question}"
        return ProgressiveBuildResult(
            build_id=build_id,
            question=question,
            prompt=prompt,
            token_count=count_tokens(prompt),
            success=False,
            error_message=error_message,
            metadata={'fallback_build': True},
        )

    # ------------------------------------------------------------------
    # Feedback adaptation
    # ------------------------------------------------------------------

    @track_performance(tags={"operation": "adapt_context_for_feedback"})
    async def adapt_context_for_feedback(
        self,
        original: ProgressiveBuildResult,
        feedback: UserFeedback,
        profile: BusinessContextProfile,
    ) -> ContextAdaptationResult:
        """
        Derive a new build from ``original`` according to ``feedback``.

        The original result is left untouched; the returned adaptation
        carries a fresh build with its own id.
        """
        self.adaptation_counter.increment()
        strategy = FEEDBACK_STRATEGIES[feedback.feedback_type]
        template = get_prompt_template(profile.intent.type)
        current = list(original.selected_sections)
        spare = [s for s in original.rejected_sections if s.category in template.categories]
        budget = original.budget or self.budget_manager.create_budget(profile)
        token_room = max(budget.available_context_tokens - sum(s.token_count for s in current), 0)

        if strategy == AdaptationStrategy.REDUCE:
            keep = max(len(current) // 2, 1) if current else 0
            adapted = sorted(current, key=lambda s: -s.relevance_score)[:keep]
        elif strategy == AdaptationStrategy.EXPAND:
            adapted = current + self._fit(sorted(spare, key=lambda s: -s.relevance_score), token_room)
        elif strategy == AdaptationStrategy.REFINE:
            adapted = [s for s in current if s.relevance_score > REFINE_RELEVANCE]
        elif strategy == AdaptationStrategy.ADD_SPECIFIC:
            issues = [issue.lower() for issue in feedback.issues if issue]
            matching = [s for s in spare if any(issue in s.content.lower() for issue in issues)]
            adapted = current + self._fit(sorted(matching, key=lambda s: -s.relevance_score), token_room)
        elif strategy == AdaptationStrategy.IMPROVE_EXAMPLES:
            examples = sorted(
                (s for s in current + spare if s.section_type == SectionType.EXAMPLE),
                key=lambda s: -s.relevance_score,
            )[:IMPROVED_EXAMPLE_COUNT]
            adapted = [s for s in current if s.section_type != SectionType.EXAMPLE] + examples
        else:
            adapted, _ = self.prioritizer.prioritize(
                current + spare, profile, budget.available_context_tokens, OptimizationStrategy.BALANCED
            )

        adapted = order_sections(adapted)
        kept = {s.section_key for s in adapted}
        rejected = [s for s in current + list(original.rejected_sections) if s.section_key not in kept]

        started = time.perf_counter()
        prompt = render_prompt(template, original.question, adapted)
        token_count = count_tokens(prompt)
        utilization = token_count / budget.max_total_tokens if budget.max_total_tokens else 0.0

        before = {s.section_key for s in current}
        changes = []
        added = len(kept - before)
        removed = len(before - kept)
        if added:
            changes.append(f"added {added} sections")
        if removed:
            changes.append(f"removed {removed} sections")

        adapted_result = ProgressiveBuildResult(
            build_id=new_build_id(),
            question=original.question,
            prompt=prompt,
            token_count=token_count,
            budget=budget,
            selected_sections=adapted,
            rejected_sections=rejected,
            steps=[BuildStep(
                name="FeedbackAdaptation",
                duration_ms=(time.perf_counter() - started) * 1000,
                tokens=token_count,
                sections=len(adapted),
                details={'strategy': strategy.value},
            )],
            token_utilization=utilization,
            metadata={
                **original.metadata,
                'adapted_from': original.build_id,
                'feedback_type': feedback.feedback_type.value,
            },
        )
        self.logger.info(
            f"Adapted build {original.build_id} with {strategy.value}",
            extra={"feedback_type": feedback.feedback_type.value, "sections": len(adapted)}
        )
        return ContextAdaptationResult(
            original_build_id=original.build_id,
            feedback=feedback,
            strategy=strategy,
            adapted_result=adapted_result,
            changes=changes,
        )

    @staticmethod
    def _fit(candidates: Sequence[ContextSection], token_room: int) -> List[ContextSection]:
        chosen = []
        for section in candidates:
            if section.token_count <= token_room:
                chosen.append(section)
                token_room -= section.token_count
        return chosen
