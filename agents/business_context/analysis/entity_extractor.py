"""
Entity Extraction Pipeline

Identifies business entities (tables, columns, metrics, dimensions, time
references and comparison values) in a natural-language question.

Four independent strategies run concurrently:
- Pattern matching: regular-expression families per entity type (0.7)
- Business-term matching: exact dictionary lookup (0.9) and fuzzy lookup
  through a semantic matcher (similarity x 0.8, above the tuned fuzzy
  threshold, never below 0.8)
- Language-model extraction: a JSON array of entities, capped at 0.95
- Contextual heuristics: neighbour indicator words, accepted above 0.5

Results are merged per (name, type), linked to the physical schema and
re-scored on position, name length and extraction-method reliability.
"""

import asyncio
import re
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from shared.base.services import LanguageModelService, SemanticMatchingService, SimilarityThresholdProvider
from shared.config.logging_config import configure_logger_for_component
from shared.config.settings import BusinessContextConfig, get_settings
from shared.config.vocabulary import BusinessVocabulary, load_business_vocabulary
from shared.schemas.business_context import Entity, EntityType, ExtractionMethod, clamp_score
from shared.utils.caching import BaseCache, generate_cache_key, get_cache_manager, hash_question
from shared.utils.metrics import get_metrics_collector, track_performance
from shared.utils.text import keyword_pattern, normalize_text, tokens_with_positions

from .interfaces import EntityExtractor, EntityLinker
from .llm_support import complete_with_timeout, extract_json
from .semantic_matching import LexicalSemanticMatcher
from .threshold_optimizer import FUZZY_TERM_MATCH


PATTERN_CONFIDENCE = 0.7
EXACT_TERM_CONFIDENCE = 0.9
FUZZY_SIMILARITY_THRESHOLD = 0.8
FUZZY_CONFIDENCE_FACTOR = 0.8
AI_CONFIDENCE_CAP = 0.95
CONTEXTUAL_ACCEPT_THRESHOLD = 0.5
MERGE_BOOST_PER_STRATEGY = 0.1
MERGE_CONFIDENCE_CAP = 0.98

METHOD_RELIABILITY = {
    ExtractionMethod.BUSINESS_TERM: 1.0,
    ExtractionMethod.AI_MODEL: 0.9,
    ExtractionMethod.PATTERN: 0.8,
    ExtractionMethod.FUZZY: 0.7,
    ExtractionMethod.CONTEXTUAL: 0.6,
}

# Whole match is the entity name for these types ("last 30 days", "top 10")
_FULL_MATCH_TYPES = {EntityType.TIME_REFERENCE, EntityType.COMPARISON_VALUE}

ENTITY_EXTRACTION_PROMPT = """Extract business entities from the following question.

Question: "{question}"

Return ONLY a JSON array. Each element must have the fields
"name", "type", "originalText" and "confidence" (0.0-1.0), where "type" is one of:
Table, Column, Metric, Dimension, TimeReference, ComparisonValue.

Example: [{{"name": "revenue", "type": "Metric", "originalText": "revenue", "confidence": 0.9}}]
"""


def calculate_length_score(name: str) -> float:
    """Plausibility of an entity name by length; 2-15 characters is optimal."""
    length = len(name)
    if length < 2:
        return 0.3
    if length <= 15:
        return 1.0
    return max(0.5, 1.0 - (length - 15) * 0.05)


def calculate_position_score(position: int, question_length: int) -> float:
    """Earlier mentions score higher, with at most a 30% penalty at the end."""
    if question_length <= 0:
        return 1.0
    relative = min(max(position, 0) / question_length, 1.0)
    return 1.0 - relative * 0.3


def merge_entities(entities: Sequence[Entity]) -> List[Entity]:
    """
    Merge raw entities per lower-cased (name, type).

    The highest-confidence member survives; each additional distinct
    strategy that found the same entity boosts it by 10%, capped at 0.98.
    """
    groups: "OrderedDict[str, List[Entity]]" = OrderedDict()
    for entity in entities:
        groups.setdefault(entity.merge_key, []).append(entity)

    merged = []
    for group in groups.values():
        best = max(group, key=lambda e: e.confidence)
        methods = list(dict.fromkeys(e.extraction_method for e in group))
        corroborating = len(methods) - 1

        confidence = best.confidence
        if corroborating > 0:
            boosted = best.confidence * (1.0 + MERGE_BOOST_PER_STRATEGY * corroborating)
            confidence = max(best.confidence, min(boosted, MERGE_CONFIDENCE_CAP))

        merged.append(best.model_copy(update={
            'confidence': clamp_score(confidence),
            'confirmed_by': methods,
            'metadata': {
                **best.metadata,
                'extraction_methods': [m.value for m in methods],
                'confirmation_count': len(group),
            },
        }))
    return merged


def rescore_entity(entity: Entity, question_length: int) -> Entity:
    """Final weighted score: confidence, position, length, method reliability."""
    position_score = calculate_position_score(entity.position, question_length)
    length_score = calculate_length_score(entity.name)
    method_score = METHOD_RELIABILITY.get(entity.extraction_method, 0.6)

    final = (
        entity.confidence * 0.6
        + position_score * 0.15
        + length_score * 0.1
        + method_score * 0.15
    )
    return entity.model_copy(update={
        'confidence': clamp_score(final),
        'metadata': {
            **entity.metadata,
            'pre_rescore_confidence': entity.confidence,
            'position_score': position_score,
            'length_score': length_score,
            'method_score': method_score,
        },
    })


class EntityExtractionPipeline(EntityExtractor):
    """
    Multi-strategy entity extractor.

    Language-model responses are cached per question so repeated
    extraction of the same question yields the same merged set.
    """

    def __init__(
        self,
        language_model: Optional[LanguageModelService] = None,
        semantic_matcher: Optional[SemanticMatchingService] = None,
        entity_linker: Optional[EntityLinker] = None,
        vocabulary: Optional[BusinessVocabulary] = None,
        config: Optional[BusinessContextConfig] = None,
        cache: Optional[BaseCache] = None,
        threshold_provider: Optional[SimilarityThresholdProvider] = None,
    ):
        self.logger = configure_logger_for_component("analysis.entity_extractor")
        self.metrics = get_metrics_collector()
        self.language_model = language_model
        self.semantic_matcher = semantic_matcher or LexicalSemanticMatcher()
        self.threshold_provider = threshold_provider
        self.entity_linker = entity_linker
        self.vocabulary = vocabulary or load_business_vocabulary()
        self.config = config or get_settings().business_context
        self.cache = cache or get_cache_manager().get_cache('memory')

        self.extraction_counter = self.metrics.counter("entity_extraction_total")
        self.strategy_error_counter = self.metrics.counter("entity_extraction_strategy_errors")

        self._load_entity_patterns()
        self._load_term_dictionary()

    def _load_entity_patterns(self) -> None:
        self.entity_patterns: Dict[EntityType, List[re.Pattern]] = {
            entity_type: [re.compile(p, re.IGNORECASE) for p in patterns]
            for entity_type, patterns in self.vocabulary.entity_patterns.items()
        }

    def _load_term_dictionary(self) -> None:
        self.term_dictionary = {term.lower(): entry for term, entry in self.vocabulary.business_terms.items()}
        self.single_word_terms = [t for t in self.term_dictionary if " " not in t]
        self.phrase_terms = [t for t in self.term_dictionary if " " in t]
        self.stop_words = {w.lower() for w in self.vocabulary.stop_words}

    @track_performance(tags={"operation": "extract_entities"})
    async def extract_entities(self, question: str) -> List[Entity]:
        """
        Extract, merge, link and re-score entities.

        Args:
            question: Natural-language question

        Returns:
            Entities with final confidence >= the configured minimum, best first
        """
        self.extraction_counter.increment()
        if not question or not question.strip():
            return []

        strategies = {
            ExtractionMethod.PATTERN: self._extract_with_patterns(question),
            ExtractionMethod.BUSINESS_TERM: self._extract_with_business_terms(question),
            ExtractionMethod.AI_MODEL: self._extract_with_language_model(question),
            ExtractionMethod.CONTEXTUAL: self._extract_with_context(question),
        }
        results = await asyncio.gather(*strategies.values(), return_exceptions=True)

        raw: List[Entity] = []
        for method, result in zip(strategies.keys(), results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self.strategy_error_counter.increment()
                self.logger.warning(
                    f"Entity strategy {method.value} failed: {result}",
                    extra={"strategy": method.value}
                )
                continue
            raw.extend(result)

        merged = merge_entities(raw)
        linked = await self._link(merged, question)

        question_length = len(question)
        rescored = [rescore_entity(e, question_length) for e in linked]
        accepted = [e for e in rescored if e.confidence >= self.config.min_entity_confidence]
        accepted.sort(key=lambda e: (-e.confidence, e.position, e.name.lower()))

        self.logger.info(
            f"Extracted {len(accepted)} entities",
            extra={"raw_entities": len(raw), "merged_entities": len(merged), "accepted": len(accepted)}
        )
        return accepted

    async def _link(self, entities: List[Entity], question: str) -> List[Entity]:
        if self.entity_linker is None or not entities:
            return entities
        try:
            return await self.entity_linker.link_entities(entities, question)
        except Exception as e:
            self.logger.warning(f"Schema linking failed, keeping unlinked entities: {e}")
            return entities

    async def _extract_with_patterns(self, question: str) -> List[Entity]:
        entities = []
        for entity_type, patterns in self.entity_patterns.items():
            for pattern in patterns:
                for match in pattern.finditer(question):
                    if entity_type in _FULL_MATCH_TYPES:
                        name = match.group(0)
                    elif match.lastindex and match.lastindex >= 2:
                        name = match.group(2)
                    else:
                        name = match.group(1) if match.lastindex else match.group(0)
                    name = (name or "").strip()
                    if len(name) <= 1:
                        continue
                    entities.append(Entity(
                        name=name.lower(),
                        type=entity_type,
                        original_text=match.group(0),
                        position=match.start(),
                        confidence=PATTERN_CONFIDENCE,
                        extraction_method=ExtractionMethod.PATTERN,
                        metadata={'pattern': pattern.pattern},
                    ))
        return entities

    async def fuzzy_threshold(self) -> float:
        """Tuned fuzzy-match threshold, never below the 0.8 floor."""
        if self.threshold_provider is None:
            return FUZZY_SIMILARITY_THRESHOLD
        try:
            tuned = await self.threshold_provider.get_optimal_threshold(None, "", FUZZY_TERM_MATCH)
        except Exception as e:
            self.logger.warning(f"Fuzzy threshold lookup failed: {e}")
            return FUZZY_SIMILARITY_THRESHOLD
        return max(FUZZY_SIMILARITY_THRESHOLD, tuned)

    async def _extract_with_business_terms(self, question: str) -> List[Entity]:
        entities = []
        normalized = normalize_text(question)
        lowered = question.lower()

        for phrase in self.phrase_terms:
            match = keyword_pattern(phrase).search(normalized)
            if match:
                entry = self.term_dictionary[phrase]
                entities.append(Entity(
                    name=entry.name,
                    type=entry.type,
                    original_text=phrase,
                    position=max(lowered.find(phrase.split()[0]), 0),
                    confidence=EXACT_TERM_CONFIDENCE,
                    extraction_method=ExtractionMethod.BUSINESS_TERM,
                    metadata={'matched_term': phrase},
                ))

        fuzzy_threshold = await self.fuzzy_threshold()
        for token, position in tokens_with_positions(question):
            word = token.lower()
            entry = self.term_dictionary.get(word)
            if entry is not None:
                entities.append(Entity(
                    name=entry.name,
                    type=entry.type,
                    original_text=token,
                    position=position,
                    confidence=EXACT_TERM_CONFIDENCE,
                    extraction_method=ExtractionMethod.BUSINESS_TERM,
                    metadata={'matched_term': word},
                ))
                continue

            if len(word) <= 3 or word in self.stop_words:
                continue
            matches = await self.semantic_matcher.find_similar_terms(
                word, self.single_word_terms, fuzzy_threshold
            )
            if not matches:
                continue
            term, similarity = matches[0]
            if similarity <= fuzzy_threshold:
                continue
            entry = self.term_dictionary[term]
            entities.append(Entity(
                name=entry.name,
                type=entry.type,
                original_text=token,
                position=position,
                confidence=clamp_score(similarity * FUZZY_CONFIDENCE_FACTOR),
                extraction_method=ExtractionMethod.FUZZY,
                metadata={'original_word': word, 'matched_term': term, 'similarity': similarity},
            ))
        return entities

    async def _extract_with_language_model(self, question: str) -> List[Entity]:
        if self.language_model is None:
            return []

        cache_key = generate_cache_key("entity_extraction_ai", hash_question(question))
        cached, found = await self.cache.lookup(cache_key)
        if found:
            return cached

        response, ok = await complete_with_timeout(
            self.language_model,
            ENTITY_EXTRACTION_PROMPT.format(question=question),
            self.config.llm_timeout_seconds,
            "entity_extraction",
            self.logger,
        )
        if not ok:
            return []

        entities = self._parse_language_model_entities(response, question)
        await self.cache.set(cache_key, entities, ttl=self.config.entity_cache_ttl_seconds)
        return entities

    def _parse_language_model_entities(self, response: str, question: str) -> List[Entity]:
        data, ok = extract_json(response, "[")
        if not ok or not isinstance(data, list):
            self.logger.warning("Could not parse entity JSON from language model response")
            return []

        types_by_name = {t.value.lower(): t for t in EntityType}
        lowered = question.lower()
        entities = []
        for item in data:
            if not isinstance(item, dict):
                continue
            name = str(item.get('name') or "").strip()
            entity_type = types_by_name.get(str(item.get('type') or "").strip().lower())
            if not name or entity_type is None:
                continue
            try:
                confidence = float(item.get('confidence', 0.8))
            except (TypeError, ValueError):
                confidence = 0.8
            original_text = str(item.get('originalText') or name)
            position = lowered.find(original_text.lower())
            entities.append(Entity(
                name=name,
                type=entity_type,
                original_text=original_text,
                position=max(position, 0),
                confidence=clamp_score(min(confidence, AI_CONFIDENCE_CAP)),
                extraction_method=ExtractionMethod.AI_MODEL,
            ))
        return entities

    async def _extract_with_context(self, question: str) -> List[Entity]:
        heuristics = self.vocabulary.contextual
        tokens = tokens_with_positions(question)
        words = [token.lower() for token, _ in tokens]
        entities = []

        for index, (token, position) in enumerate(tokens):
            word = words[index]
            if len(word) <= 2 or word in self.stop_words:
                continue

            entity_type = self._infer_type_from_context(word, words, index)
            if entity_type is None:
                continue

            start = max(0, index - heuristics.window)
            window = words[start:index + heuristics.window + 1]
            indicators = set(heuristics.indicators.get(entity_type, []))
            indicator_matches = sum(1 for w in window if w in indicators)
            confidence = min(
                heuristics.base_confidence + indicator_matches * heuristics.indicator_boost,
                heuristics.max_confidence,
            )
            if confidence <= CONTEXTUAL_ACCEPT_THRESHOLD:
                continue

            entities.append(Entity(
                name=word,
                type=entity_type,
                original_text=token,
                position=position,
                confidence=clamp_score(confidence),
                extraction_method=ExtractionMethod.CONTEXTUAL,
                metadata={'context_words': window, 'position_in_sentence': index},
            ))
        return entities

    def _infer_type_from_context(self, word: str, words: List[str], index: int) -> Optional[EntityType]:
        before = words[index - 1] if index > 0 else ""
        after = words[index + 1] if index + 1 < len(words) else ""

        for rule in self.vocabulary.contextual.rules:
            if before and before in rule.before:
                return rule.type
            if after and after in rule.after:
                return rule.type
            if any(fragment in word for fragment in rule.word_contains):
                return rule.type
        return None
