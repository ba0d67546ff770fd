"""Mock implementations for testing."""

from .llm_mock import MockLLMClient, analyses_payload
from .neo4j_mock import MockNeo4jResult, MockNeo4jSession

__all__ = [
    "MockNeo4jSession",
    "MockNeo4jResult",
    "MockLLMClient",
    "analyses_payload",
]
