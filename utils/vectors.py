"""Term-frequency vectors for reasoning fragments."""

import math
import re
from collections import Counter

_WORD_PATTERN = re.compile(r"\w+")


def term_frequency_vector(text: str, max_dimensions: int = 100) -> list[float]:
    """Build an L2-normalized term-frequency vector.

    Dimensions are the distinct lowercase words of the text in first-seen
    order, truncated to max_dimensions. Empty text gives an empty vector.
    """
    words = _WORD_PATTERN.findall(text.lower())
    if not words:
        return []

    counts = list(Counter(words).values())[:max_dimensions]
    magnitude = math.sqrt(sum(c * c for c in counts))
    if magnitude == 0:
        return [0.0] * len(counts)
    return [c / magnitude for c in counts]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Compute cosine similarity between two vectors.

    Vectors of different length are compared over their common prefix.

    Returns:
        Cosine similarity score between -1 and 1, or 0.0 for empty or
        zero-magnitude vectors.
    """
    length = min(len(a), len(b))
    if length == 0:
        return 0.0

    dot = sum(a[i] * b[i] for i in range(length))
    norm_a = math.sqrt(sum(x * x for x in a[:length]))
    norm_b = math.sqrt(sum(x * x for x in b[:length]))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
