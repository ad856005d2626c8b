"""Local FAQ matching: exact question, containment, then keyword overlap."""

from dataclasses import dataclass
from typing import Iterable, Optional

from relay.services.tenant_resolver import FAQEntry
from relay.services.text_utils import extract_keywords, normalize_for_matching

MIN_MATCH_SCORE = 0.3
NEAR_DUPLICATE_JACCARD = 0.7


@dataclass(frozen=True)
class FAQMatch:
    faq: FAQEntry
    score: float
    match_type: str  # exact, contains, similar, keywords


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def score_faq(message: str, faq: FAQEntry) -> Optional[FAQMatch]:
    normalized_message = normalize_for_matching(message)
    normalized_question = normalize_for_matching(faq.question)
    if not normalized_message or not normalized_question:
        return None

    if normalized_message == normalized_question:
        return FAQMatch(faq=faq, score=1.0, match_type="exact")
    if len(normalized_question) >= 8 and normalized_question in normalized_message:
        return FAQMatch(faq=faq, score=0.9, match_type="contains")

    message_words = set(extract_keywords(message))
    question_words = set(extract_keywords(faq.question))
    similarity = _jaccard(message_words, question_words)
    if similarity > NEAR_DUPLICATE_JACCARD:
        return FAQMatch(faq=faq, score=round(0.7 + similarity * 0.2, 3), match_type="similar")

    faq_keywords = question_words | {normalize_for_matching(k) for k in faq.keywords if k}
    if not message_words or not faq_keywords:
        return None
    overlap = len(message_words & faq_keywords) / len(message_words)
    if overlap <= 0:
        return None
    return FAQMatch(faq=faq, score=round(overlap * 0.8, 3), match_type="keywords")


def find_faq_matches(
    message: str,
    faqs: Iterable[FAQEntry],
    limit: int = 3,
    min_score: float = MIN_MATCH_SCORE,
) -> list[FAQMatch]:
    matches = [m for m in (score_faq(message, faq) for faq in faqs) if m and m.score >= min_score]
    matches.sort(key=lambda m: m.score, reverse=True)
    return matches[:limit]


def best_faq_match(message: str, faqs: Iterable[FAQEntry]) -> Optional[FAQMatch]:
    matches = find_faq_matches(message, faqs, limit=1)
    return matches[0] if matches else None
