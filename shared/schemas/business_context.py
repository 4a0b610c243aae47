"""
Business Context Schema
=======================

Pydantic models shared by the business-context analysis pipeline and the
progressive prompt builder.

These models provide:
- The immutable question profile handed to downstream consumers
- Token budget and context section types used during prompt assembly
- Validation, build trace and feedback records
- The contextual business schema the prioritizer renders into sections

Missing values are represented as empty strings, lists or dicts rather
than ``None`` wherever a consumer would otherwise need to guard them.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enumerations
# =============================================================================

class IntentType(str, Enum):
    """Coarse analytical purpose of a question. Declaration order breaks ties."""
    AGGREGATION = "Aggregation"
    TREND = "Trend"
    COMPARISON = "Comparison"
    DETAIL = "Detail"
    EXPLORATORY = "Exploratory"
    OPERATIONAL = "Operational"
    ANALYTICAL = "Analytical"


class EntityType(str, Enum):
    """Types of business entities found in a question."""
    TABLE = "Table"
    COLUMN = "Column"
    METRIC = "Metric"
    DIMENSION = "Dimension"
    TIME_REFERENCE = "TimeReference"
    COMPARISON_VALUE = "ComparisonValue"


class ExtractionMethod(str, Enum):
    """Strategy that produced an entity."""
    PATTERN = "PatternMatching"
    BUSINESS_TERM = "BusinessTerm"
    FUZZY = "FuzzyMatch"
    AI_MODEL = "AIModel"
    CONTEXTUAL = "Contextual"


class TimeGranularity(str, Enum):
    HOUR = "Hour"
    DAY = "Day"
    WEEK = "Week"
    MONTH = "Month"
    QUARTER = "Quarter"
    YEAR = "Year"
    UNKNOWN = "Unknown"


class ContextCategory(str, Enum):
    """Prompt categories. The first five own a token budget."""
    SCHEMA = "schema"
    BUSINESS = "business"
    EXAMPLES = "examples"
    RULES = "rules"
    GLOSSARY = "glossary"
    RELATIONSHIPS = "relationships"
    TEMPORAL = "temporal"
    PERFORMANCE = "performance"


BUDGET_CATEGORIES = [
    ContextCategory.SCHEMA,
    ContextCategory.BUSINESS,
    ContextCategory.EXAMPLES,
    ContextCategory.RULES,
    ContextCategory.GLOSSARY,
]

# Template-only categories draw on the budget of a primary category
CATEGORY_BUDGET_POOL = {
    ContextCategory.RELATIONSHIPS: ContextCategory.SCHEMA,
    ContextCategory.TEMPORAL: ContextCategory.BUSINESS,
    ContextCategory.PERFORMANCE: ContextCategory.RULES,
}


class SectionType(str, Enum):
    """Kind of rendered context fragment."""
    TABLE_DEFINITION = "table_definition"
    COLUMN_DEFINITION = "column_definition"
    RELATIONSHIP = "relationship"
    BUSINESS_RULE = "business_rule"
    EXAMPLE = "example"
    GLOSSARY = "glossary"
    BUSINESS_CONTEXT = "business_context"
    TEMPORAL_CONTEXT = "temporal_context"
    PERFORMANCE_HINT = "performance_hint"


SECTION_CATEGORY = {
    SectionType.TABLE_DEFINITION: ContextCategory.SCHEMA,
    SectionType.COLUMN_DEFINITION: ContextCategory.SCHEMA,
    SectionType.RELATIONSHIP: ContextCategory.RELATIONSHIPS,
    SectionType.BUSINESS_RULE: ContextCategory.RULES,
    SectionType.EXAMPLE: ContextCategory.EXAMPLES,
    SectionType.GLOSSARY: ContextCategory.GLOSSARY,
    SectionType.BUSINESS_CONTEXT: ContextCategory.BUSINESS,
    SectionType.TEMPORAL_CONTEXT: ContextCategory.TEMPORAL,
    SectionType.PERFORMANCE_HINT: ContextCategory.PERFORMANCE,
}


class ValidationType(str, Enum):
    INTENT = "Intent"
    ENTITY = "Entity"
    DOMAIN = "Domain"
    BUSINESS_TERM = "BusinessTerm"


class ValidationCheckType(str, Enum):
    CONFIDENCE_THRESHOLD = "ConfidenceThreshold"
    HISTORICAL_ACCURACY = "HistoricalAccuracy"
    CONSISTENCY = "Consistency"
    CONTEXTUAL = "Contextual"


class FeedbackType(str, Enum):
    TOO_MUCH_CONTEXT = "TooMuchContext"
    TOO_LITTLE_CONTEXT = "TooLittleContext"
    IRRELEVANT_CONTEXT = "IrrelevantContext"
    MISSING_INFORMATION = "MissingInformation"
    INCORRECT_SQL = "IncorrectSQL"
    PERFECT_CONTEXT = "PerfectContext"


class AdaptationStrategy(str, Enum):
    REDUCE = "Reduce"
    EXPAND = "Expand"
    REFINE = "Refine"
    ADD_SPECIFIC = "AddSpecific"
    IMPROVE_EXAMPLES = "ImproveExamples"
    BALANCED = "Balanced"


class OptimizationStrategy(str, Enum):
    """Section selection strategies of the context prioritizer."""
    BALANCED = "Balanced"
    MAX_RELEVANCE = "MaxRelevance"
    MAX_COVERAGE = "MaxCoverage"
    MIN_TOKENS = "MinTokens"


def clamp_score(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp a score into ``[low, high]``; NaN collapses to ``low``."""
    if value is None or math.isnan(value):
        return low
    return max(low, min(high, float(value)))


# =============================================================================
# Analysis Models
# =============================================================================

class FrozenModel(BaseModel):
    """Base class for immutable analysis records."""
    model_config = ConfigDict(frozen=True, use_enum_values=False)


class Entity(FrozenModel):
    """Business entity extracted from a question."""

    name: str = Field(..., description="Canonical entity name")
    type: EntityType
    original_text: str = Field(default="", description="Question text that produced the entity")
    position: int = Field(default=0, ge=0, description="Character offset in the question")
    confidence: float = Field(..., ge=0.0, le=1.0)
    extraction_method: ExtractionMethod
    mapped_table: str = Field(default="", description="Linked physical table, empty when unlinked")
    mapped_column: str = Field(default="", description="Linked physical column, empty when unlinked")
    confirmed_by: List[ExtractionMethod] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def merge_key(self) -> str:
        return f"{self.name.lower()}|{self.type.value}"

    @property
    def is_linked(self) -> bool:
        return bool(self.mapped_table)


class Intent(FrozenModel):
    """Resolved query intent."""

    type: IntentType
    confidence: float = Field(..., ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ClassifierVote(FrozenModel):
    """Output of a single intent classifier inside the ensemble."""

    intent_type: IntentType
    confidence: float = Field(..., ge=0.0, le=1.0)
    method: str


class Domain(FrozenModel):
    """Business subject area selected for a question."""

    name: str
    description: str = ""
    key_concepts: List[str] = Field(default_factory=list)
    related_tables: List[str] = Field(default_factory=list)
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TimeRange(FrozenModel):
    """Resolved temporal window of a question."""

    start: datetime
    end: datetime
    relative_expression: str = ""
    granularity: TimeGranularity = TimeGranularity.UNKNOWN

    @field_validator('end')
    @classmethod
    def validate_order(cls, v, info):
        start = info.data.get('start')
        if start is not None and v < start:
            raise ValueError('end must not precede start')
        return v


class BusinessContextProfile(FrozenModel):
    """Validated, immutable analysis of one question."""

    question: str
    user_id: str = ""
    intent: Intent
    domain: Domain
    entities: List[Entity] = Field(default_factory=list)
    business_terms: List[str] = Field(default_factory=list)
    time_range: Optional[TimeRange] = None
    term_relevance: Dict[str, float] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    analysis_id: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return bool(self.metadata.get('fallback_analysis'))

    def entities_of_type(self, entity_type: EntityType) -> List[Entity]:
        return [e for e in self.entities if e.type == entity_type]


class AnalysisMetrics(BaseModel):
    """Timing and failure record for one analysis call."""

    analysis_id: str
    total_duration_ms: float = 0.0
    branch_durations_ms: Dict[str, float] = Field(default_factory=dict)
    failed_branches: List[str] = Field(default_factory=list)
    cancelled_branches: List[str] = Field(default_factory=list)
    cache_hit: bool = False


# =============================================================================
# Validation Models
# =============================================================================

class ValidationCheck(FrozenModel):
    check_type: ValidationCheckType
    passed: bool
    score: float = Field(..., ge=0.0, le=1.0)
    details: str = ""


class ValidationResult(FrozenModel):
    """Outcome of validating one intent, entity or domain."""

    validation_type: ValidationType
    original_confidence: float = Field(..., ge=0.0, le=1.0)
    adjusted_confidence: float = Field(..., ge=0.0, le=1.0)
    validation_score: float = Field(..., ge=0.0, le=1.0)
    is_valid: bool
    checks: List[ValidationCheck] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Prompt Assembly Models
# =============================================================================

class TokenBudget(FrozenModel):
    """Per-category token allocation for one prompt."""

    intent_type: IntentType
    max_total_tokens: int = Field(..., ge=0)
    base_prompt_tokens: int = Field(..., ge=0)
    reserved_response_tokens: int = Field(..., ge=0)
    available_context_tokens: int = Field(..., ge=0)
    category_budgets: Dict[ContextCategory, int] = Field(default_factory=dict)
    is_minimal: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total_allocated(self) -> int:
        return sum(self.category_budgets.values())

    def budget_for(self, category: ContextCategory) -> int:
        """Budget of a category, resolving template-only categories to their pool."""
        category = ContextCategory(category)
        pool = CATEGORY_BUDGET_POOL.get(category, category)
        return self.category_budgets.get(pool, 0)

    @property
    def schema_context_budget(self) -> int:
        return self.category_budgets.get(ContextCategory.SCHEMA, 0)

    @property
    def business_context_budget(self) -> int:
        return self.category_budgets.get(ContextCategory.BUSINESS, 0)

    @property
    def examples_budget(self) -> int:
        return self.category_budgets.get(ContextCategory.EXAMPLES, 0)

    @property
    def rules_budget(self) -> int:
        return self.category_budgets.get(ContextCategory.RULES, 0)

    @property
    def glossary_budget(self) -> int:
        return self.category_budgets.get(ContextCategory.GLOSSARY, 0)


class ContextSection(FrozenModel):
    """One pre-rendered fragment of supporting context."""

    section_type: SectionType
    content: str
    token_count: int = Field(..., ge=0)
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    source_id: str = ""
    priority_score: float = Field(default=0.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> ContextCategory:
        return SECTION_CATEGORY.get(self.section_type, ContextCategory.BUSINESS)

    @property
    def section_key(self) -> str:
        return f"{self.section_type.value}:{self.source_id or self.content[:64]}"


class AllocationResult(BaseModel):
    """Greedy per-category packing of sections into a budget."""

    budget: TokenBudget
    selected: Dict[ContextCategory, List[ContextSection]] = Field(default_factory=dict)
    tokens_used: Dict[ContextCategory, int] = Field(default_factory=dict)
    rejected: List[ContextSection] = Field(default_factory=list)

    @property
    def total_tokens_used(self) -> int:
        return sum(self.tokens_used.values())

    @property
    def utilization(self) -> float:
        if self.budget.available_context_tokens <= 0:
            return 0.0
        return min(1.0, self.total_tokens_used / self.budget.available_context_tokens)


class BuildStep(FrozenModel):
    name: str
    duration_ms: float = 0.0
    tokens: int = 0
    sections: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)


class ProgressiveBuildResult(FrozenModel):
    """Assembled prompt plus the trace of how it was built."""

    build_id: str
    question: str
    prompt: str
    token_count: int = Field(..., ge=0)
    budget: Optional[TokenBudget] = None
    selected_sections: List[ContextSection] = Field(default_factory=list)
    rejected_sections: List[ContextSection] = Field(default_factory=list)
    steps: List[BuildStep] = Field(default_factory=list)
    token_utilization: float = Field(default=0.0, ge=0.0)
    success: bool = True
    error_message: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UserFeedback(FrozenModel):
    feedback_type: FeedbackType
    issues: List[str] = Field(default_factory=list)
    comment: str = ""
    rating: int = Field(default=0, ge=0, le=5)


class ContextAdaptationResult(FrozenModel):
    """New build derived from an earlier one in response to feedback."""

    original_build_id: str
    feedback: UserFeedback
    strategy: AdaptationStrategy
    adapted_result: ProgressiveBuildResult
    changes: List[str] = Field(default_factory=list)


# =============================================================================
# Contextual Business Schema
# =============================================================================

class TableInfo(BaseModel):
    schema_name: str = "dbo"
    table_name: str
    business_purpose: str = ""
    business_context: str = ""
    primary_use_case: str = ""
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)


class ColumnInfo(BaseModel):
    table_name: str = ""
    column_name: str
    data_type: str = ""
    business_meaning: str = ""
    business_context: str = ""
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)


class BusinessRule(BaseModel):
    rule_name: str = ""
    description: str
    rule_type: str = ""
    sql_expression: str = ""
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)


class QueryExample(BaseModel):
    title: str = ""
    natural_language_query: str
    sql: str = ""
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)


class TableRelationship(BaseModel):
    from_table: str
    to_table: str
    relationship_type: str = "ForeignKey"
    from_column: str = ""
    to_column: str = ""
    business_meaning: str = ""
    relevance_score: float = Field(default=0.6, ge=0.0, le=1.0)


class GlossaryTerm(BaseModel):
    term: str
    definition: str = ""
    business_context: str = ""
    domain: str = ""
    mapped_tables: List[str] = Field(default_factory=list)
    mapped_columns: List[str] = Field(default_factory=list)
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)


class ContextualBusinessSchema(BaseModel):
    """Business catalog slice relevant to one question."""

    tables: List[TableInfo] = Field(default_factory=list)
    columns: List[ColumnInfo] = Field(default_factory=list)
    business_rules: List[BusinessRule] = Field(default_factory=list)
    examples: List[QueryExample] = Field(default_factory=list)
    relationships: List[TableRelationship] = Field(default_factory=list)
    glossary_terms: List[GlossaryTerm] = Field(default_factory=list)
    extra_sections: List[ContextSection] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.tables or self.columns or self.business_rules or self.examples
                    or self.relationships or self.glossary_terms or self.extra_sections)


# =============================================================================
# User Personalisation
# =============================================================================

class IntentPattern(BaseModel):
    frequency: int = 0
    success_rate: float = Field(default=0.5, ge=0.0, le=1.0)


class UserAnalysisPatterns(BaseModel):
    user_id: str
    intent_patterns: Dict[IntentType, IntentPattern] = Field(default_factory=dict)
    entity_frequency: Dict[str, int] = Field(default_factory=dict)
    domain_preferences: Dict[str, float] = Field(default_factory=dict)


class UserTokenPreferences(BaseModel):
    prefer_more_examples: bool = False
    prefer_detailed_schema: bool = False


# =============================================================================
# Similarity Threshold Tracking
# =============================================================================

class ThresholdPerformance(BaseModel):
    """Running sums of semantic-search outcomes for one threshold key."""

    total_searches: int = 0
    threshold_sum: float = 0.0
    results_count_sum: float = 0.0
    satisfaction_sum: float = 0.0
    good_results: int = 0
    poor_results: int = 0
    good_threshold_sum: float = 0.0
    poor_threshold_sum: float = 0.0
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    @property
    def average_satisfaction(self) -> float:
        return self.satisfaction_sum / self.total_searches if self.total_searches else 0.0

    @property
    def average_results(self) -> float:
        return self.results_count_sum / self.total_searches if self.total_searches else 0.0


class ThresholdAnalytics(FrozenModel):
    intent_type: Optional[IntentType] = None
    domain_name: str = ""
    search_type: str
    total_searches: int = 0
    average_threshold: float = 0.0
    average_results_count: float = 0.0
    average_satisfaction: float = 0.0
    good_results_threshold: float = 0.0
    poor_results_threshold: float = 0.0
    recommended_threshold: float = 0.0
    last_updated: datetime


class ThresholdOptimizationReport(FrozenModel):
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    intent_filter: Optional[IntentType] = None
    domain_filter: Optional[str] = None
    analytics: List[ThresholdAnalytics] = Field(default_factory=list)
