"""Neo4j persistence for reasoning fragments, concepts and relationships.

Write methods raise on failure so callers can log and skip the item.
Query methods log and return empty results instead.

Graph shape:
    (Task)-[:BELONGS_TO]->(BrowserSession)
    (ReasonFragment)-[:FROM_SESSION]->(BrowserSession)
    (ReasonFragment)-[:FROM_TASK]->(Task)
    (ReasonFragment)-[:CONTAINS_CONCEPT]->(Concept)
    (ReasonFragment)-[:CAUSAL|TEMPORAL|...]->(ReasonFragment)
"""

import json
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from db.neo4j import create_schema, get_neo4j_session, with_retry
from models.fragments import VALID_RELATIONSHIP_TYPES, ReasoningFragment, concept_id
from models.schemas import (
    GraphNode,
    GraphRelationship,
    PooledGraph,
    PooledGraphStats,
    SessionGraph,
    SimilarFragment,
)
from utils.logging import get_logger

logger = get_logger(__name__)

LABEL_LENGTH = 50

UPSERT_FRAGMENT_QUERY = """
MERGE (bs:BrowserSession {id: $session_id})
MERGE (t:Task {id: $task_id})
MERGE (t)-[:BELONGS_TO]->(bs)
MERGE (rf:ReasonFragment {id: $id})
SET rf += $properties
MERGE (rf)-[:FROM_SESSION]->(bs)
MERGE (rf)-[:FROM_TASK]->(t)
"""

UPSERT_CONCEPTS_QUERY = """
MATCH (rf:ReasonFragment {id: $fragment_id})
UNWIND $concepts AS concept
MERGE (c:Concept {id: concept.id})
ON CREATE SET c.name = concept.name
MERGE (rf)-[:CONTAINS_CONCEPT]->(c)
"""

GRAPH_PROJECTION = """
OPTIONAL MATCH (rf)-[r]->(other)
WHERE other:ReasonFragment OR other:Concept
RETURN rf {.*} AS rf,
       type(r) AS rel_type,
       properties(r) AS rel_props,
       other {.*} AS other,
       labels(other) AS other_labels
"""

SESSION_GRAPH_QUERY = (
    """
MATCH (rf:ReasonFragment)-[:FROM_SESSION]->(:BrowserSession {id: $session_id})
"""
    + GRAPH_PROJECTION
)

POOLED_GRAPH_QUERY = (
    """
MATCH (rf:ReasonFragment)
"""
    + GRAPH_PROJECTION
)

POOLED_STATS_QUERY = """
CALL { MATCH (bs:BrowserSession) RETURN count(bs) AS sessions }
CALL { MATCH (rf:ReasonFragment) RETURN count(rf) AS fragments }
CALL { MATCH (c:Concept) RETURN count(c) AS concepts }
RETURN sessions, fragments, concepts
"""


def _fragment_label(text: str | None) -> str:
    if not text:
        return "Fragment"
    return text[:LABEL_LENGTH] + "..."


def _collect_graph(records: list[dict]) -> tuple[list[GraphNode], list[GraphRelationship]]:
    """Deduplicate nodes and collect edges from (rf, r, other) rows."""
    nodes: dict[str, GraphNode] = {}
    relationships: list[GraphRelationship] = []

    for record in records:
        rf = record.get("rf")
        if not rf or "id" not in rf:
            continue

        if rf["id"] not in nodes:
            nodes[rf["id"]] = GraphNode(
                id=rf["id"],
                label=_fragment_label(rf.get("text")),
                type="ReasonFragment",
                properties={**rf, "nodeType": rf.get("type")},
            )

        other = record.get("other")
        if not other or "id" not in other:
            continue

        other_labels = record.get("other_labels") or []
        is_concept = "Concept" in other_labels
        if other["id"] not in nodes:
            nodes[other["id"]] = GraphNode(
                id=other["id"],
                label=other.get("name", other["id"]) if is_concept else _fragment_label(other.get("text")),
                type="Concept" if is_concept else (other_labels[0] if other_labels else "Node"),
                properties={
                    **other,
                    "nodeType": "concept" if is_concept else other.get("type"),
                },
            )

        if record.get("rel_type"):
            rel_props = dict(record.get("rel_props") or {})
            rel_props.setdefault("strength", 1.0)
            relationships.append(
                GraphRelationship(
                    source=rf["id"],
                    target=other["id"],
                    type=record["rel_type"],
                    properties=rel_props,
                )
            )

    return list(nodes.values()), relationships


class GraphStore:
    """Graph persistence adapter over the Neo4j async driver."""

    def __init__(self, session_factory: Callable[[], Awaitable[Any]] | None = None):
        self._session_factory = session_factory or get_neo4j_session

    async def _run_write(self, query: str, operation_name: str, **params) -> None:
        session = await self._session_factory()
        async with session:

            async def _write():
                await session.run(query, **params)

            await with_retry(
                _write,
                max_retries=3,
                base_delay=0.5,
                operation_name=operation_name,
            )

    async def _run_read(self, query: str, **params) -> list[dict]:
        session = await self._session_factory()
        async with session:
            result = await session.run(query, **params)
            return [dict(record) async for record in result]

    async def test_connection(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            session = await self._session_factory()
            async with session:
                result = await session.run("RETURN 1 AS ok")
                record = await result.single()
                return bool(record and record["ok"] == 1)
        except Exception as e:
            logger.error(f"Neo4j connection test failed: {e}")
            return False

    async def initialize_schema(self) -> None:
        """Create constraints and indexes. Raises on failure."""
        session = await self._session_factory()
        async with session:
            await create_schema(session)
        logger.info("Neo4j schema initialized successfully")

    async def upsert_fragment(self, fragment: ReasoningFragment) -> None:
        """Create or update a fragment node and its session/task links."""
        properties = fragment.to_properties()
        properties.pop("id")
        await self._run_write(
            UPSERT_FRAGMENT_QUERY,
            f"upsert_fragment({fragment.id})",
            id=fragment.id,
            session_id=fragment.session_id,
            task_id=fragment.task_id,
            properties=properties,
        )

    async def upsert_concepts(self, fragment_id: str, concepts: list[str]) -> None:
        """Link a fragment to its concepts, creating shared concept nodes as needed."""
        unique: dict[str, str] = {}
        for name in concepts:
            name = name.strip()
            if name:
                unique.setdefault(concept_id(name), name)
        if not unique:
            return

        await self._run_write(
            UPSERT_CONCEPTS_QUERY,
            f"upsert_concepts({fragment_id})",
            fragment_id=fragment_id,
            concepts=[{"id": cid, "name": name} for cid, name in unique.items()],
        )

    async def create_relationship(
        self,
        from_id: str,
        to_id: str,
        relationship_type: str,
        strength: float,
        metadata: dict | None = None,
    ) -> None:
        """Create (or refresh) a typed edge between two fragments.

        Raises:
            ValueError: If the relationship type is not whitelisted
        """
        rel_type = relationship_type.upper()
        # Cypher cannot parameterize relationship types
        if rel_type not in VALID_RELATIONSHIP_TYPES:
            raise ValueError(
                f"Invalid relationship type: '{relationship_type}'. "
                f"Allowed types: {', '.join(sorted(VALID_RELATIONSHIP_TYPES))}"
            )

        query = f"""
        MATCH (from:ReasonFragment {{id: $from_id}})
        MATCH (to:ReasonFragment {{id: $to_id}})
        MERGE (from)-[r:{rel_type}]->(to)
        SET r.strength = $strength,
            r.createdAt = $created_at,
            r.metadata = $metadata
        """
        await self._run_write(
            query,
            f"create_relationship({from_id}-[{rel_type}]->{to_id})",
            from_id=from_id,
            to_id=to_id,
            strength=strength,
            created_at=datetime.now(UTC).isoformat(),
            metadata=json.dumps(metadata or {}),
        )

    async def query_session_graph(self, session_id: str) -> SessionGraph:
        try:
            records = await self._run_read(SESSION_GRAPH_QUERY, session_id=session_id)
        except Exception as e:
            logger.error(f"Failed to get session knowledge graph for {session_id}: {e}")
            return SessionGraph(session_id=session_id)

        nodes, relationships = _collect_graph(records)
        return SessionGraph(session_id=session_id, nodes=nodes, relationships=relationships)

    async def query_pooled_graph(self) -> PooledGraph:
        try:
            records = await self._run_read(POOLED_GRAPH_QUERY)
            stats_records = await self._run_read(POOLED_STATS_QUERY)
        except Exception as e:
            logger.error(f"Failed to get pooled knowledge graph: {e}")
            return PooledGraph()

        nodes, relationships = _collect_graph(records)
        stats = PooledGraphStats()
        if stats_records:
            row = stats_records[0]
            stats = PooledGraphStats(
                sessions=row.get("sessions") or 0,
                fragments=row.get("fragments") or 0,
                concepts=row.get("concepts") or 0,
            )
        return PooledGraph(nodes=nodes, relationships=relationships, stats=stats)

    async def find_similar_fragments(
        self,
        text: str,
        session_id: str | None = None,
        limit: int = 10,
    ) -> list[SimilarFragment]:
        """Fragments whose text contains, or is contained in, the given text."""
        match = (
            "MATCH (rf:ReasonFragment)-[:FROM_SESSION]->(:BrowserSession {id: $session_id})"
            if session_id
            else "MATCH (rf:ReasonFragment)"
        )
        query = f"""
        {match}
        WHERE rf.text CONTAINS $search_text OR $search_text CONTAINS rf.text
        RETURN rf.id AS id, rf.text AS text, rf.type AS type,
               rf.sessionId AS session_id, rf.concepts AS concepts
        LIMIT $limit
        """
        try:
            records = await self._run_read(
                query, search_text=text, session_id=session_id, limit=limit
            )
        except Exception as e:
            logger.error(f"Failed to find similar fragments: {e}")
            return []

        return [
            SimilarFragment(
                id=r["id"],
                text=r.get("text") or "",
                type=r.get("type") or "",
                session_id=r.get("session_id"),
                concepts=r.get("concepts") or [],
            )
            for r in records
        ]
