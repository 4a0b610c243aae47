"""
Business term extraction and per-term relevance scoring.
"""

from typing import Dict, List, Optional, Sequence

from shared.config.logging_config import configure_logger_for_component
from shared.config.vocabulary import BusinessVocabulary, load_business_vocabulary
from shared.schemas.business_context import Domain, Entity, Intent, clamp_score
from shared.utils.text import keyword_pattern, normalize_text, words

from .interfaces import BusinessTermExtractor

HIGH_CONFIDENCE_ENTITY = 0.8


class KeywordBusinessTermExtractor(BusinessTermExtractor):
    """Vocabulary-driven term extractor."""

    def __init__(self, vocabulary: Optional[BusinessVocabulary] = None):
        self.logger = configure_logger_for_component("analysis.term_extractor")
        self.vocabulary = vocabulary or load_business_vocabulary()
        self.stop_words = {w.lower() for w in self.vocabulary.stop_words}

        known = set(self.vocabulary.business_terms) | set(self.vocabulary.schema_mappings)
        known |= {t.lower() for t in self.vocabulary.common_business_terms}
        self.known_terms = {t.lower() for t in known}
        self.phrases = sorted((t for t in self.known_terms if " " in t), key=len, reverse=True)

    async def extract_terms(self, question: str) -> List[str]:
        """
        Significant terms of the question, in order of appearance.

        Known multi-word phrases come first; every other word longer than
        two characters that is not a stop word is kept once.
        """
        normalized = normalize_text(question)
        if not normalized:
            return []

        terms: List[str] = []
        for phrase in self.phrases:
            if keyword_pattern(phrase).search(normalized) and phrase not in terms:
                terms.append(phrase)

        for word in words(normalized):
            if len(word) <= 2 or word in self.stop_words or word.isdigit():
                continue
            if word not in terms:
                terms.append(word)
        return terms

    def calculate_term_relevance(
        self,
        terms: Sequence[str],
        entities: Sequence[Entity],
        intent: Intent,
        domain: Domain,
    ) -> Dict[str, float]:
        if not terms:
            return {}

        strong_entities = [e.name.lower() for e in entities if e.confidence > HIGH_CONFIDENCE_ENTITY]
        intent_keywords = {k.lower() for k in intent.keywords}
        concepts = {c.lower() for c in domain.key_concepts}

        relevance = {}
        total = len(terms)
        for position, term in enumerate(terms):
            lowered = term.lower()
            score = 0.5
            if any(lowered in name or name in lowered for name in strong_entities):
                score += 0.3
            if lowered in intent_keywords:
                score += 0.2
            if lowered in concepts:
                score += 0.2
            score *= 1.0 - (position / total) * 0.2
            relevance[term] = clamp_score(score)
        return relevance
