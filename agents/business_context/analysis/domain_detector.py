"""
Business Domain Detector

Scores each configured domain profile by weighted keyword matches plus
co-occurrence bonuses, disambiguates close calls with ordered rules and
falls back to the business glossary when the keyword evidence is weak.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from shared.base.services import BusinessMetadataService
from shared.config.logging_config import configure_logger_for_component
from shared.config.vocabulary import DomainProfile, DomainProfiles, load_domain_profiles
from shared.schemas.business_context import Domain, clamp_score
from shared.utils.metrics import get_metrics_collector, track_performance
from shared.utils.text import contains_keyword, normalize_text

from .interfaces import DomainDetector


class BusinessDomainDetector(DomainDetector):
    """Keyword-profile domain detector driven by ``domain_profiles.yaml``."""

    def __init__(
        self,
        profiles: Optional[DomainProfiles] = None,
        metadata_service: Optional[BusinessMetadataService] = None,
    ):
        self.logger = configure_logger_for_component("analysis.domain_detector")
        self.metrics = get_metrics_collector()
        self.profiles = profiles or load_domain_profiles()
        self.metadata_service = metadata_service
        self.scoring = self.profiles.scoring
        self.detection_counter = self.metrics.counter("domain_detection_total")

    def keyword_weight(self, keyword: str, profile: DomainProfile) -> float:
        """3 for high-priority terms, 2 for phrases or long terms, else 1."""
        if keyword in {k.lower() for k in profile.high_priority}:
            return self.scoring.high_priority_weight
        if " " in keyword or len(keyword) >= self.scoring.long_term_min_length:
            return self.scoring.long_term_weight
        return self.scoring.default_weight

    def score_domain(self, question: str, profile: DomainProfile) -> Tuple[float, List[str]]:
        """Weighted keyword coverage plus capped co-occurrence bonuses."""
        keywords = profile.all_keywords
        if not keywords:
            return 0.0, []

        normalized = normalize_text(question)
        total_weight = 0.0
        matched_weight = 0.0
        matched = []
        for keyword in keywords:
            weight = self.keyword_weight(keyword, profile)
            total_weight += weight
            if contains_keyword(normalized, keyword):
                matched_weight += weight
                matched.append(keyword)

        if not matched:
            return 0.0, []

        base = matched_weight / total_weight
        bonus = 0.0
        for rule in profile.bonuses:
            if any(contains_keyword(normalized, term) for term in rule.terms):
                bonus += rule.bonus
        if len(matched) > self.scoring.extra_keyword_threshold:
            bonus += self.scoring.extra_keyword_bonus * (len(matched) - self.scoring.extra_keyword_threshold)
        bonus = min(bonus, self.scoring.bonus_cap)

        return min(base + bonus, 1.0), matched

    def disambiguate(self, question: str, scores: Dict[str, float]) -> Dict[str, float]:
        """Apply ordered disambiguation rules when the top two are too close."""
        ranked = sorted(scores.values(), reverse=True)
        if len(ranked) < 2 or ranked[1] <= 0 or ranked[0] - ranked[1] >= self.scoring.ambiguity_margin:
            return scores

        normalized = normalize_text(question)
        adjusted = dict(scores)
        for rule in self.profiles.disambiguation:
            if rule.domain not in adjusted:
                continue
            if rule.all_of and not all(contains_keyword(normalized, t) for t in rule.all_of):
                continue
            if rule.any_of and not any(contains_keyword(normalized, t) for t in rule.any_of):
                continue
            if not rule.all_of and not rule.any_of:
                continue
            boosted = max(adjusted[rule.domain] + rule.boost, rule.floor)
            adjusted[rule.domain] = min(boosted, 1.0)
            self.logger.debug(f"Disambiguation boosted {rule.domain} to {adjusted[rule.domain]:.2f}")
        return adjusted

    @track_performance(tags={"operation": "detect_domain"})
    async def detect_domain(self, question: str, business_terms: Sequence[str] = ()) -> Domain:
        self.detection_counter.increment()

        scores: Dict[str, float] = {}
        matched_keywords: Dict[str, List[str]] = {}
        for name, profile in self.profiles.domains.items():
            score, matched = self.score_domain(question, profile)
            scores[name] = score
            if matched:
                matched_keywords[name] = matched

        scores = self.disambiguate(question, scores)
        best_name = None
        best_score = 0.0
        for name, score in scores.items():
            if score > best_score:
                best_name, best_score = name, score

        if best_score < self.scoring.low_confidence_threshold:
            glossary_domain = await self._detect_from_glossary(business_terms, scores)
            if glossary_domain is not None:
                return glossary_domain

        if best_name is None:
            return self.fallback_domain(scores)

        profile = self.profiles.domains[best_name]
        domain = Domain(
            name=best_name,
            description=profile.description,
            key_concepts=list(profile.key_concepts),
            related_tables=list(profile.related_tables),
            relevance_score=clamp_score(best_score),
            metadata={
                'detection_method': 'keyword_analysis',
                'all_scores': {k: round(v, 4) for k, v in scores.items()},
                'matched_keywords': matched_keywords.get(best_name, []),
            },
        )
        self.logger.info(
            f"Detected domain {best_name} ({best_score:.2f})",
            extra={"domain": best_name, "relevance": best_score}
        )
        return domain

    async def _detect_from_glossary(self, business_terms: Sequence[str], scores: Dict[str, float]) -> Optional[Domain]:
        if self.metadata_service is None or not business_terms:
            return None
        try:
            glossary_terms = await self.metadata_service.find_relevant_glossary_terms(list(business_terms))
        except Exception as e:
            self.logger.warning(f"Glossary lookup for domain detection failed: {e}")
            return None

        for glossary_term in glossary_terms:
            if not glossary_term.domain:
                continue
            profile = self.profiles.domains.get(glossary_term.domain)
            return Domain(
                name=glossary_term.domain,
                description=profile.description if profile else glossary_term.business_context,
                key_concepts=list(profile.key_concepts) if profile else [glossary_term.term],
                related_tables=list(profile.related_tables) if profile else list(glossary_term.mapped_tables),
                relevance_score=self.scoring.glossary_relevance,
                metadata={
                    'detection_method': 'business_glossary',
                    'glossary_term': glossary_term.term,
                    'all_scores': {k: round(v, 4) for k, v in scores.items()},
                },
            )
        return None

    def fallback_domain(self, scores: Optional[Dict[str, float]] = None) -> Domain:
        fallback = self.profiles.fallback
        return Domain(
            name=fallback.name,
            description=fallback.description,
            key_concepts=list(fallback.key_concepts),
            relevance_score=0.3,
            metadata={
                'detection_method': 'fallback',
                'all_scores': {k: round(v, 4) for k, v in (scores or {}).items()},
            },
        )
