"""Keyword-based analysis used whenever the LLM path fails."""

from models.fragments import FragmentAnalysis, ReasoningFragment

STOPWORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
        "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
        "how", "man", "new", "now", "old", "see", "two", "way", "who", "boy",
        "did", "its", "let", "put", "say", "she", "too", "use",
    }
)

MIN_CONCEPT_LENGTH = 4
MAX_CONCEPTS = 5
SUMMARY_LENGTH = 100


def extract_keywords(text: str, limit: int = MAX_CONCEPTS) -> list[str]:
    """First `limit` lowercase whitespace tokens that are long enough and not stopwords."""
    keywords = []
    for word in text.lower().split():
        if len(word) < MIN_CONCEPT_LENGTH or word in STOPWORDS:
            continue
        keywords.append(word)
        if len(keywords) == limit:
            break
    return keywords


def analyze(fragment: ReasoningFragment) -> FragmentAnalysis:
    """Deterministic analysis of a fragment without any LLM call."""
    concepts = extract_keywords(fragment.text)
    return FragmentAnalysis(
        concepts=concepts,
        entities=[],
        summary=fragment.text[:SUMMARY_LENGTH] + "...",
        insights=[f"{fragment.kind.value} step focusing on: {', '.join(concepts)}"],
        relationships=[],
        source="fallback",
    )
