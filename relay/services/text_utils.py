import re
import unicodedata

STOPWORDS = {
    # fr
    "le", "la", "les", "un", "une", "des", "de", "du", "et", "ou", "a", "au", "aux", "en", "est",
    "je", "tu", "il", "elle", "nous", "vous", "ils", "elles", "on", "me", "te", "se", "ce", "ca",
    "mon", "ma", "mes", "ton", "ta", "tes", "son", "sa", "ses", "votre", "vos", "notre", "nos",
    "que", "qui", "quoi", "quel", "quelle", "quels", "quelles", "pour", "par", "sur", "avec", "dans",
    "pas", "ne", "plus", "y", "d", "l", "j", "c", "qu", "s", "n", "m", "t", "suis", "avez", "ai",
    "bonjour", "merci", "svp", "stp",
    # en
    "the", "an", "and", "or", "is", "are", "to", "of", "in", "on", "for", "with", "my", "your",
    "i", "you", "we", "it", "do", "does", "what", "how", "can", "please", "hello", "hi", "thanks",
}

NEGATIVE_WORDS = {
    "nul", "nulle", "horrible", "inadmissible", "inacceptable", "scandale", "scandaleux", "arnaque",
    "honte", "colere", "furieux", "furieuse", "decu", "decue", "deception", "jamais", "pire",
    "rembourser", "remboursement", "plainte", "mecontent", "mecontente", "terrible", "catastrophe",
    "angry", "awful", "worst", "refund", "complaint", "scam", "disappointed", "unacceptable",
}

POSITIVE_WORDS = {
    "merci", "super", "parfait", "genial", "top", "excellent", "bravo", "content", "contente",
    "ravi", "ravie", "great", "perfect", "thanks", "awesome", "love", "happy",
}

COMPLEX_MARKERS = {
    "difference", "comparer", "comparaison", "pourquoi", "expliquer", "explication", "contrat",
    "juridique", "legal", "facture", "litige", "compare", "explain", "why",
}

_PUNCTUATION = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_for_matching(text: str) -> str:
    """Casefold, drop accents and punctuation, collapse spaces."""
    if not text:
        return ""
    normalized = strip_accents(text.strip().casefold())
    normalized = _PUNCTUATION.sub(" ", normalized)
    return _SPACES.sub(" ", normalized).strip()


def extract_keywords(text: str) -> list[str]:
    seen: list[str] = []
    for word in normalize_for_matching(text).split():
        if len(word) < 3 or word in STOPWORDS or word in seen:
            continue
        seen.append(word)
    return seen


def sentiment_score(text: str) -> float:
    """Lexical sentiment in [-1, 1]; 0 when no polar word is present."""
    words = normalize_for_matching(text).split()
    if not words:
        return 0.0
    negative = sum(1 for word in words if word in NEGATIVE_WORDS)
    positive = sum(1 for word in words if word in POSITIVE_WORDS)
    total = negative + positive
    if total == 0:
        return 0.0
    return (positive - negative) / total


def is_complex_query(text: str) -> bool:
    if not text:
        return False
    if len(text) > 400 or text.count("?") >= 3:
        return True
    words = set(normalize_for_matching(text).split())
    return len(words & COMPLEX_MARKERS) >= 2


def is_escalation_flagged(text: str) -> bool:
    """Strongly negative or complex content goes up the model ladder."""
    return sentiment_score(text) <= -0.5 or is_complex_query(text)
