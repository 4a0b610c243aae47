"""
Intent Classification Ensemble

Four classifiers each cast a vote, weighted AI 0.4, pattern 0.3,
semantic 0.2 and structural 0.1. The intent with the highest weighted
confidence wins; ties are broken by intent declaration order.
"""

import asyncio
import re
from typing import Dict, List, Optional, Tuple

from shared.base.services import LanguageModelService
from shared.config.logging_config import configure_logger_for_component
from shared.config.settings import BusinessContextConfig, get_settings
from shared.config.vocabulary import BusinessVocabulary, load_business_vocabulary
from shared.schemas.business_context import ClassifierVote, Intent, IntentType, clamp_score
from shared.utils.caching import BaseCache, generate_cache_key, get_cache_manager, hash_question
from shared.utils.metrics import get_metrics_collector, track_performance
from shared.utils.text import contains_keyword, normalize_text, text_similarity, words

from .interfaces import IntentClassifier
from .llm_support import complete_with_timeout


CLASSIFIER_WEIGHTS = {
    "AIModel": 0.4,
    "PatternMatching": 0.3,
    "SemanticSimilarity": 0.2,
    "StructuralAnalysis": 0.1,
}

PATTERN_SCALE = 0.8
PATTERN_CAP = 0.95
SEMANTIC_SCALE = 0.7
SEMANTIC_SIMILARITY_THRESHOLD = 0.8
KEYWORD_SIMILARITY_THRESHOLD = 0.7
AI_CONFIDENCE_CAP = 0.98
AI_FALLBACK_CONFIDENCE = 0.3
STRUCTURAL_SCALE = 0.6
STRUCTURAL_DEFAULT_CONFIDENCE = 0.5

INTENT_ORDER = list(IntentType)

INTENT_CLASSIFICATION_PROMPT = """Classify the business intent of this question.

Question: "{question}"

Possible intents:
{intent_list}

Respond with exactly one line in the format INTENT|CONFIDENCE
where CONFIDENCE is between 0.0 and 1.0, for example: Aggregation|0.85
"""

_AI_RESPONSE_RE = re.compile(r"([A-Za-z]+)\s*\|\s*([0-9]*\.?[0-9]+)")


def get_intent_description(intent_type: IntentType, vocabulary: Optional[BusinessVocabulary] = None) -> str:
    """Human-readable description of an intent."""
    vocabulary = vocabulary or load_business_vocabulary()
    return vocabulary.intent_description(intent_type) or intent_type.value


def method_weight(method: str) -> float:
    """Weight of a classifier; fallback votes keep their classifier's weight."""
    return CLASSIFIER_WEIGHTS.get(method.split("_")[0], 0.1)


def combine_votes(votes: List[ClassifierVote]) -> Tuple[IntentType, float, Dict[IntentType, float]]:
    """
    Weighted combination of classifier votes.

    Each intent's score is the sum of weight x confidence over the votes
    for it, divided by the total weight of all votes.
    """
    total_weight = sum(method_weight(v.method) for v in votes)
    scores: Dict[IntentType, float] = {}
    for vote in votes:
        weight = method_weight(vote.method)
        scores[vote.intent_type] = scores.get(vote.intent_type, 0.0) + weight * vote.confidence

    if total_weight > 0:
        scores = {intent: score / total_weight for intent, score in scores.items()}

    if not scores:
        return IntentType.ANALYTICAL, AI_FALLBACK_CONFIDENCE, {}

    best = max(scores.items(), key=lambda item: (item[1], -INTENT_ORDER.index(item[0])))
    return best[0], clamp_score(best[1]), scores


class IntentClassificationEnsemble(IntentClassifier):
    """Weighted-vote intent classifier with a one-hour result cache."""

    def __init__(
        self,
        language_model: Optional[LanguageModelService] = None,
        vocabulary: Optional[BusinessVocabulary] = None,
        config: Optional[BusinessContextConfig] = None,
        cache: Optional[BaseCache] = None,
    ):
        self.logger = configure_logger_for_component("analysis.intent_ensemble")
        self.metrics = get_metrics_collector()
        self.language_model = language_model
        self.vocabulary = vocabulary or load_business_vocabulary()
        self.config = config or get_settings().business_context
        self.cache = cache or get_cache_manager().get_cache('memory')

        self.classification_counter = self.metrics.counter("intent_classification_total")
        self.cache_hit_counter = self.metrics.counter("intent_classification_cache_hits")

        self.intent_patterns: Dict[IntentType, List[re.Pattern]] = {
            intent: [re.compile(p, re.IGNORECASE) for p in vocab.patterns]
            for intent, vocab in self.vocabulary.intents.items()
        }

    @track_performance(tags={"operation": "classify_intent"})
    async def classify_intent(self, question: str) -> Intent:
        self.classification_counter.increment()

        cache_key = generate_cache_key("intent_classification", hash_question(question))
        cached, found = await self.cache.lookup(cache_key)
        if found:
            self.cache_hit_counter.increment()
            return cached

        votes = list(await asyncio.gather(
            self._classify_with_language_model(question),
            self._classify_with_patterns(question),
            self._classify_with_semantics(question),
            self._classify_with_structure(question),
        ))

        intent_type, confidence, scores = combine_votes(votes)
        intent = Intent(
            type=intent_type,
            confidence=confidence,
            keywords=self._extract_intent_keywords(question, intent_type),
            description=get_intent_description(intent_type, self.vocabulary),
            metadata={
                'classification_method': 'ensemble',
                'votes': [v.model_dump(mode='json') for v in votes],
                'all_scores': {k.value: round(v, 4) for k, v in scores.items()},
            },
        )

        await self.cache.set(cache_key, intent, ttl=self.config.intent_cache_ttl_seconds)
        self.logger.info(
            f"Classified intent as {intent_type.value} ({confidence:.2f})",
            extra={"intent": intent_type.value, "confidence": confidence}
        )
        return intent

    async def _classify_with_language_model(self, question: str) -> ClassifierVote:
        intent_list = "\n".join(
            f"- {intent.value}: {get_intent_description(intent, self.vocabulary)}" for intent in IntentType
        )
        response, ok = await complete_with_timeout(
            self.language_model,
            INTENT_CLASSIFICATION_PROMPT.format(question=question, intent_list=intent_list),
            self.config.llm_timeout_seconds,
            "intent_classification",
            self.logger,
        )
        if ok:
            vote = self._parse_language_model_vote(response)
            if vote is not None:
                return vote
            self.logger.warning(f"Unparseable intent response: {response[:100]!r}")

        return ClassifierVote(
            intent_type=IntentType.ANALYTICAL,
            confidence=AI_FALLBACK_CONFIDENCE,
            method="AIModel_Fallback",
        )

    def _parse_language_model_vote(self, response: str) -> Optional[ClassifierVote]:
        by_name = {intent.value.lower(): intent for intent in IntentType}
        for match in _AI_RESPONSE_RE.finditer(response):
            intent = by_name.get(match.group(1).lower())
            if intent is None:
                continue
            try:
                confidence = float(match.group(2))
            except ValueError:
                continue
            return ClassifierVote(
                intent_type=intent,
                confidence=clamp_score(min(confidence, AI_CONFIDENCE_CAP)),
                method="AIModel",
            )
        return None

    async def _classify_with_patterns(self, question: str) -> ClassifierVote:
        best_intent = IntentType.ANALYTICAL
        best_score = 0.0
        for intent in INTENT_ORDER:
            patterns = self.intent_patterns.get(intent, [])
            if not patterns:
                continue
            matched = sum(1 for p in patterns if p.search(question))
            score = min(matched / len(patterns) * PATTERN_SCALE, PATTERN_CAP)
            if score > best_score:
                best_intent, best_score = intent, score

        return ClassifierVote(intent_type=best_intent, confidence=best_score, method="PatternMatching")

    async def _classify_with_semantics(self, question: str) -> ClassifierVote:
        question_words = [w for w in words(question) if len(w) > 2]
        best_intent = IntentType.ANALYTICAL
        best_score = 0.0

        for intent in INTENT_ORDER:
            keywords = self.vocabulary.intents.get(intent)
            if keywords is None or not keywords.semantic_keywords:
                continue
            matched = sum(
                1 for keyword in keywords.semantic_keywords
                if any(
                    keyword in word or text_similarity(keyword, word) > SEMANTIC_SIMILARITY_THRESHOLD
                    for word in question_words
                )
            )
            score = matched / len(keywords.semantic_keywords) * SEMANTIC_SCALE
            if score > best_score:
                best_intent, best_score = intent, score

        return ClassifierVote(
            intent_type=best_intent, confidence=clamp_score(best_score), method="SemanticSimilarity"
        )

    async def _classify_with_structure(self, question: str) -> ClassifierVote:
        normalized = normalize_text(question)
        for rule in self.vocabulary.structural_rules:
            if any(contains_keyword(normalized, keyword) for keyword in rule.any_of):
                return ClassifierVote(
                    intent_type=rule.intent,
                    confidence=rule.confidence * STRUCTURAL_SCALE,
                    method="StructuralAnalysis",
                )
        return ClassifierVote(
            intent_type=IntentType.ANALYTICAL,
            confidence=STRUCTURAL_DEFAULT_CONFIDENCE,
            method="StructuralAnalysis",
        )

    def _extract_intent_keywords(self, question: str, intent_type: IntentType) -> List[str]:
        vocab = self.vocabulary.intents.get(intent_type)
        if vocab is None:
            return []
        keywords = []
        for word in words(question):
            if any(text_similarity(word, k) > KEYWORD_SIMILARITY_THRESHOLD for k in vocab.semantic_keywords):
                if word not in keywords:
                    keywords.append(word)
        return keywords
