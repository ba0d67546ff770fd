"""Shared utilities for the Pooled Reason API."""

from utils.json_extraction import extract_json_object, extract_json_or_default
from utils.vectors import cosine_similarity, term_frequency_vector

__all__ = [
    # Vector utilities
    "cosine_similarity",
    "term_frequency_vector",
    # JSON extraction
    "extract_json_object",
    "extract_json_or_default",
]
