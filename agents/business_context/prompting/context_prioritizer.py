"""
Context Prioritizer

Renders catalog entries into context sections, scores them against the
resolved intent and selects a subset within a token limit using one of
several strategies.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from shared.config.logging_config import configure_logger_for_component
from shared.schemas.business_context import (
    BusinessContextProfile,
    ContextSection,
    ContextualBusinessSchema,
    IntentType,
    OptimizationStrategy,
    SectionType,
    clamp_score,
)
from shared.utils.metrics import get_metrics_collector

from .token_budget import count_tokens

# table, column, rules, examples, relationships, glossary, performance
_IMPORTANCE_KEYS = ('table', 'column', 'rules', 'examples', 'relationships', 'glossary', 'performance')

INTENT_IMPORTANCE: Dict[IntentType, Dict[str, float]] = {
    IntentType.AGGREGATION: dict(zip(_IMPORTANCE_KEYS, (0.9, 0.8, 0.7, 0.8, 0.6, 0.4, 0.3))),
    IntentType.TREND: dict(zip(_IMPORTANCE_KEYS, (0.8, 0.9, 0.6, 0.8, 0.7, 0.4, 0.3))),
    IntentType.COMPARISON: dict(zip(_IMPORTANCE_KEYS, (0.9, 0.8, 0.8, 0.7, 0.8, 0.5, 0.4))),
    IntentType.DETAIL: dict(zip(_IMPORTANCE_KEYS, (0.9, 0.9, 0.6, 0.6, 0.7, 0.5, 0.3))),
    IntentType.EXPLORATORY: dict(zip(_IMPORTANCE_KEYS, (0.7, 0.7, 0.8, 0.9, 0.8, 0.7, 0.4))),
    IntentType.OPERATIONAL: dict(zip(_IMPORTANCE_KEYS, (0.8, 0.8, 0.9, 0.6, 0.6, 0.4, 0.7))),
    IntentType.ANALYTICAL: dict(zip(_IMPORTANCE_KEYS, (0.8, 0.8, 0.7, 0.8, 0.7, 0.5, 0.4))),
}

SECTION_IMPORTANCE_KEY = {
    SectionType.TABLE_DEFINITION: 'table',
    SectionType.COLUMN_DEFINITION: 'column',
    SectionType.BUSINESS_RULE: 'rules',
    SectionType.EXAMPLE: 'examples',
    SectionType.RELATIONSHIP: 'relationships',
    SectionType.GLOSSARY: 'glossary',
    SectionType.PERFORMANCE_HINT: 'performance',
}
DEFAULT_IMPORTANCE = 0.6

SECTION_ORDER = [
    SectionType.TABLE_DEFINITION,
    SectionType.COLUMN_DEFINITION,
    SectionType.RELATIONSHIP,
    SectionType.BUSINESS_RULE,
    SectionType.EXAMPLE,
    SectionType.GLOSSARY,
    SectionType.BUSINESS_CONTEXT,
    SectionType.TEMPORAL_CONTEXT,
    SectionType.PERFORMANCE_HINT,
]

_CONTENT_TYPES = {
    SectionType.TABLE_DEFINITION: 'schema',
    SectionType.COLUMN_DEFINITION: 'schema',
    SectionType.RELATIONSHIP: 'schema',
    SectionType.BUSINESS_RULE: 'rules',
    SectionType.EXAMPLE: 'examples',
    SectionType.GLOSSARY: 'glossary',
}

KNAPSACK_SCALE = 1000


def calculate_priority(section: ContextSection, intent_type: IntentType) -> float:
    """relevance x 0.4 + intent importance x 0.4 + token efficiency x 0.2"""
    weights = INTENT_IMPORTANCE.get(intent_type, INTENT_IMPORTANCE[IntentType.ANALYTICAL])
    key = SECTION_IMPORTANCE_KEY.get(section.section_type)
    importance = weights.get(key, DEFAULT_IMPORTANCE) if key else DEFAULT_IMPORTANCE
    if section.token_count > 0:
        efficiency = min(section.relevance_score / section.token_count * 100, 1.0)
    else:
        efficiency = 1.0
    return clamp_score(section.relevance_score * 0.4 + importance * 0.4 + efficiency * 0.2)


def order_sections(sections: Sequence[ContextSection]) -> List[ContextSection]:
    rank = {section_type: index for index, section_type in enumerate(SECTION_ORDER)}
    return sorted(sections, key=lambda s: (rank.get(s.section_type, len(rank)), -s.priority_score))


class ContextPrioritizer:
    """Section generation, scoring and strategy-based selection."""

    def __init__(self):
        self.logger = configure_logger_for_component("prompting.context_prioritizer")
        self.selection_histogram = get_metrics_collector().histogram("context_sections_selected")

    def _section(self, section_type: SectionType, content: str, relevance: float, source_id: str) -> ContextSection:
        return ContextSection(
            section_type=section_type,
            content=content,
            token_count=count_tokens(content, _CONTENT_TYPES.get(section_type, 'business_context')),
            relevance_score=clamp_score(relevance),
            source_id=source_id,
        )

    def generate_sections(self, schema: ContextualBusinessSchema) -> List[ContextSection]:
        """Render every catalog entry of ``schema`` as a context section."""
        sections = []

        for table in schema.tables:
            content = (
                f"Table: {table.schema_name}.{table.table_name}\n"
                f"Purpose: {table.business_purpose}\n"
                f"Context: {table.business_context}\n"
                f"Use Case: {table.primary_use_case}"
            )
            sections.append(self._section(
                SectionType.TABLE_DEFINITION, content, table.relevance_score,
                f"{table.schema_name}.{table.table_name}",
            ))

        for column in schema.columns:
            content = (
                f"Column: {column.column_name} ({column.data_type})\n"
                f"Meaning: {column.business_meaning}\n"
                f"Context: {column.business_context}"
            )
            sections.append(self._section(
                SectionType.COLUMN_DEFINITION, content, column.relevance_score,
                f"{column.table_name}.{column.column_name}",
            ))

        for rule in schema.business_rules:
            content = f"Rule: {rule.description}\nType: {rule.rule_type}\nSQL: {rule.sql_expression}"
            sections.append(self._section(
                SectionType.BUSINESS_RULE, content, rule.relevance_score, rule.rule_name or rule.description[:40],
            ))

        for example in schema.examples:
            content = (
                f"Example: {example.title}\n"
                f"Query: {example.natural_language_query}\n"
                f"SQL: {example.sql}"
            )
            sections.append(self._section(
                SectionType.EXAMPLE, content, example.relevance_score,
                example.title or example.natural_language_query[:40],
            ))

        for relationship in schema.relationships:
            content = (
                f"Relationship: {relationship.from_table} → {relationship.to_table}\n"
                f"Type: {relationship.relationship_type}\n"
                f"Keys: {relationship.from_column} = {relationship.to_column}\n"
                f"Business Meaning: {relationship.business_meaning}"
            )
            sections.append(self._section(
                SectionType.RELATIONSHIP, content, relationship.relevance_score,
                f"{relationship.from_table}->{relationship.to_table}",
            ))

        for term in schema.glossary_terms:
            content = f"Term: {term.term}\nDefinition: {term.definition}\nContext: {term.business_context}"
            sections.append(self._section(SectionType.GLOSSARY, content, term.relevance_score, term.term))

        sections.extend(schema.extra_sections)
        return sections

    def score_sections(self, sections: Sequence[ContextSection], intent_type: IntentType) -> List[ContextSection]:
        return [
            s.model_copy(update={'priority_score': calculate_priority(s, intent_type)})
            for s in sections
        ]

    def prioritize(
        self,
        sections: Sequence[ContextSection],
        profile: BusinessContextProfile,
        token_limit: int,
        strategy: OptimizationStrategy = OptimizationStrategy.BALANCED,
    ) -> Tuple[List[ContextSection], List[ContextSection]]:
        """
        Select sections within ``token_limit``.

        Returns:
            (selected sections in presentation order, rejected sections)
        """
        scored = self.score_sections(sections, profile.intent.type)
        if token_limit <= 0 or not scored:
            return [], scored

        if strategy == OptimizationStrategy.BALANCED:
            selected = self._select_knapsack(scored, token_limit)
        elif strategy == OptimizationStrategy.MAX_RELEVANCE:
            selected = self._select_greedy(
                sorted(scored, key=lambda s: (-s.relevance_score, s.token_count)), token_limit
            )
        elif strategy == OptimizationStrategy.MAX_COVERAGE:
            selected = self._select_coverage(scored, token_limit)
        else:
            selected = self._select_greedy(
                sorted(scored, key=lambda s: (s.token_count, -s.priority_score)), token_limit
            )

        chosen = {id(s) for s in selected}
        rejected = [s for s in scored if id(s) not in chosen]
        self.selection_histogram.observe(len(selected))
        self.logger.debug(
            f"Prioritized {len(selected)}/{len(scored)} sections with {strategy.value}",
            extra={"token_limit": token_limit}
        )
        return order_sections(selected), rejected

    @staticmethod
    def _select_greedy(candidates: Sequence[ContextSection], token_limit: int) -> List[ContextSection]:
        selected, used = [], 0
        for section in candidates:
            if used + section.token_count <= token_limit:
                selected.append(section)
                used += section.token_count
        return selected

    @staticmethod
    def _select_knapsack(candidates: Sequence[ContextSection], token_limit: int) -> List[ContextSection]:
        """0/1 knapsack maximising summed priority under the token limit."""
        items = [s for s in candidates if s.token_count <= token_limit]
        best = [0] * (token_limit + 1)
        keep = [[False] * (token_limit + 1) for _ in items]

        for index, section in enumerate(items):
            weight = section.token_count
            value = int(section.priority_score * KNAPSACK_SCALE)
            for capacity in range(token_limit, weight - 1, -1):
                candidate = best[capacity - weight] + value
                if candidate > best[capacity]:
                    best[capacity] = candidate
                    keep[index][capacity] = True

        selected = []
        capacity = token_limit
        for index in range(len(items) - 1, -1, -1):
            if keep[index][capacity]:
                selected.append(items[index])
                capacity -= items[index].token_count
        selected.reverse()
        return selected

    def _select_coverage(self, candidates: Sequence[ContextSection], token_limit: int) -> List[ContextSection]:
        by_priority = sorted(candidates, key=lambda s: -s.priority_score)
        selected, used, covered = [], 0, set()

        for section in by_priority:
            if section.section_type in covered:
                continue
            if used + section.token_count <= token_limit:
                selected.append(section)
                used += section.token_count
                covered.add(section.section_type)

        chosen = {id(s) for s in selected}
        for section in by_priority:
            if id(section) in chosen:
                continue
            if used + section.token_count <= token_limit:
                selected.append(section)
                used += section.token_count
        return selected
