"""Shared pytest fixtures for Pooled Reason API tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from models.fragments import FragmentAnalysis
from services.graph_store import GraphStore
from tests.mocks.llm_mock import MockLLMClient
from tests.mocks.neo4j_mock import MockNeo4jSession

# ============================================================================
# LLM Fixtures
# ============================================================================


@pytest.fixture
def mock_llm():
    """MockLLMClient with an empty JSON object as the default response."""
    return MockLLMClient()


# ============================================================================
# Neo4j Fixtures
# ============================================================================


@pytest.fixture
def mock_neo4j_session():
    return MockNeo4jSession()


@pytest.fixture
def graph_store(mock_neo4j_session):
    """GraphStore wired to the mock session."""

    async def session_factory():
        return mock_neo4j_session

    return GraphStore(session_factory=session_factory)


@pytest.fixture
def mock_graph_store():
    """GraphStore stand-in that records writes and returns empty reads."""
    store = MagicMock(spec=GraphStore)
    store.test_connection = AsyncMock(return_value=True)
    store.initialize_schema = AsyncMock()
    store.upsert_fragment = AsyncMock()
    store.upsert_concepts = AsyncMock()
    store.create_relationship = AsyncMock()
    store.query_session_graph = AsyncMock()
    store.query_pooled_graph = AsyncMock()
    store.find_similar_fragments = AsyncMock(return_value=[])
    return store


# ============================================================================
# Analysis Fixtures
# ============================================================================


@pytest.fixture
def mock_analysis_client():
    """Analysis client whose submit() answers every fragment with one concept."""

    def _answer(request):
        fragments = getattr(request, "fragments", None)
        if fragments is None:
            return FragmentAnalysis(concepts=["single"])
        return [FragmentAnalysis(concepts=[f"concept_{f.id}"]) for f in fragments]

    client = MagicMock()
    client.submit = AsyncMock(side_effect=_answer)
    client.drain = AsyncMock()
    return client


@pytest.fixture
def mock_relationship_finder():
    finder = MagicMock()
    finder.find_relationships = AsyncMock(return_value=[])
    return finder
