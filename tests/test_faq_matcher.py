import uuid

from relay.services.faq_matcher import best_faq_match, find_faq_matches, score_faq
from relay.services.tenant_resolver import FAQEntry
from relay.services.text_utils import (
    extract_keywords,
    is_complex_query,
    is_escalation_flagged,
    normalize_for_matching,
    sentiment_score,
)

HOURS = FAQEntry(id=uuid.uuid4(), question="Quels sont vos horaires ?", answer="9h-19h du mardi au samedi.")
PRICES = FAQEntry(
    id=uuid.uuid4(),
    question="Combien coûte une coupe ?",
    answer="35 euros.",
    keywords=("prix", "tarif"),
)


class TestScoreFaq:
    def test_exact_match_ignores_case_accents_and_punctuation(self):
        match = score_faq("quels sont vos horaires", HOURS)
        assert match.match_type == "exact"
        assert match.score == 1.0

    def test_question_contained_in_message(self):
        match = score_faq("Bonjour, quels sont vos horaires svp ?", HOURS)
        assert match.match_type == "contains"
        assert match.score == 0.9

    def test_keyword_overlap(self):
        match = score_faq("horaires samedi", HOURS)
        assert match.match_type == "keywords"
        assert match.score == 0.4

    def test_stored_keywords_count(self):
        match = score_faq("tarif", PRICES)
        assert match is not None
        assert match.score == 0.8

    def test_unrelated_message(self):
        assert score_faq("je veux une pizza", HOURS) is None


class TestFindFaqMatches:
    def test_sorted_by_score_and_filtered(self):
        matches = find_faq_matches("quels sont vos horaires", [PRICES, HOURS])
        assert [m.faq for m in matches] == [HOURS]

    def test_best_match_none_without_faqs(self):
        assert best_faq_match("bonjour", []) is None


class TestTextUtils:
    def test_normalize_for_matching(self):
        assert normalize_for_matching("  Ça coûte COMBIEN ?! ") == "ca coute combien"

    def test_extract_keywords_drops_stopwords_and_short_words(self):
        assert extract_keywords("Bonjour, je voudrais un rendez-vous demain") == ["voudrais", "rendez", "demain"]

    def test_negative_sentiment_is_flagged(self):
        text = "C'est inadmissible, je veux un remboursement"
        assert sentiment_score(text) == -1.0
        assert is_escalation_flagged(text) is True

    def test_neutral_message_is_not_flagged(self):
        assert sentiment_score("Vous êtes ouverts demain ?") == 0.0
        assert is_escalation_flagged("Vous êtes ouverts demain ?") is False

    def test_complex_query(self):
        assert is_complex_query("Pourquoi la facture et quelle différence avec le contrat ?") is True
        assert is_complex_query("Bonjour") is False
