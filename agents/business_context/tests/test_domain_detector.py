import pytest

from agents.business_context.analysis.domain_detector import BusinessDomainDetector
from shared.base.in_memory import InMemoryBusinessMetadataService
from shared.config.vocabulary import load_domain_profiles

from conftest import UK_QUESTION


def test_keyword_weights():
    detector = BusinessDomainDetector()
    banking = load_domain_profiles().domains["Banking"]

    assert detector.keyword_weight("deposit", banking) == 3.0
    assert detector.keyword_weight("exchange rate", banking) == 2.0
    assert detector.keyword_weight("balance", banking) == 2.0
    assert detector.keyword_weight("roi", banking) == 1.0


def test_score_without_matches_is_zero():
    detector = BusinessDomainDetector()
    score, matched = detector.score_domain("describe the weather", load_domain_profiles().domains["Gaming"])
    assert score == 0.0
    assert matched == []


@pytest.mark.asyncio
async def test_uk_deposit_question_is_banking():
    detector = BusinessDomainDetector()

    domain = await detector.detect_domain(UK_QUESTION)

    assert domain.name == "Banking"
    assert domain.relevance_score == pytest.approx(0.2506, abs=0.001)
    scores = domain.metadata['all_scores']
    assert scores["Banking"] > scores["Gaming"] > 0
    assert "deposit" in domain.metadata['matched_keywords']
    assert "tbl_Daily_actions" in domain.related_tables


@pytest.mark.asyncio
async def test_close_scores_are_disambiguated():
    detector = BusinessDomainDetector()

    domain = await detector.detect_domain("Who are the top depositors in casino games?")

    assert domain.name == "Banking"
    assert domain.relevance_score >= 0.8


def test_disambiguation_only_applies_to_close_calls():
    detector = BusinessDomainDetector()
    scores = {"Banking": 0.9, "Gaming": 0.3}
    assert detector.disambiguate("top depositors in casino games", scores) == scores


@pytest.mark.asyncio
async def test_no_evidence_falls_back_to_general():
    detector = BusinessDomainDetector()

    domain = await detector.detect_domain("Describe the weather")

    assert domain.name == "General"
    assert domain.relevance_score == pytest.approx(0.3)
    assert domain.metadata['detection_method'] == 'fallback'


@pytest.mark.asyncio
async def test_weak_evidence_uses_business_glossary(catalog):
    detector = BusinessDomainDetector(metadata_service=InMemoryBusinessMetadataService(catalog))

    domain = await detector.detect_domain("What is the average stake", ["average", "stake"])

    assert domain.name == "Gaming"
    assert domain.relevance_score == pytest.approx(0.8)
    assert domain.metadata['detection_method'] == 'business_glossary'
    assert domain.metadata['glossary_term'] == "stake"


@pytest.mark.asyncio
async def test_glossary_lookup_failure_is_not_fatal():
    class BrokenMetadataService(InMemoryBusinessMetadataService):
        async def find_relevant_glossary_terms(self, terms):
            raise RuntimeError("catalog offline")

    detector = BusinessDomainDetector(metadata_service=BrokenMetadataService())

    domain = await detector.detect_domain("What is the average stake", ["stake"])

    assert domain.name == "General"
