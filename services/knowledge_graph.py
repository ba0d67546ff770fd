"""Knowledge graph orchestration for browser automation reasoning.

Turns agent steps into reasoning fragments and routes them either through
the cross-session step pool (ingest_steps) or straight through the
batched single-fragment analysis path (process_fragment/process_steps).
"""

import asyncio
import hashlib
from collections import OrderedDict

from config import get_settings
from models.fragments import FragmentKind, ReasoningFragment, make_fragment_id
from models.schemas import (
    AgentStep,
    ConceptCluster,
    ConceptHierarchyEntry,
    PooledGraph,
    SessionGraph,
    SessionInsights,
    SimilarFragment,
)
from services.batch_analysis import (
    BatchAnalysisClient,
    FragmentRequest,
    get_batch_analysis_client,
)
from services.graph_store import GraphStore
from services.insights import ConceptHierarchyBuilder
from services.relationship_finder import RelationshipFinder
from services.step_pool import StepPool
from utils.cache import get_cached, invalidate_graph_caches, set_cached
from utils.logging import LogContext, get_logger
from utils.vectors import term_frequency_vector

logger = get_logger(__name__)

DEFAULT_STEP_NUMBER = 1
MAX_SEEN_FRAGMENT_IDS = 50_000

SESSION_RECOMMENDATIONS = [
    "Consider reviewing similar reasoning patterns from previous sessions",
    "Monitor frequently occurring concepts for optimization opportunities",
    "Analyze relationship patterns to improve automation strategies",
]


def resolve_step_number(step: AgentStep, session_id: str) -> int:
    """Step number to pool under; unnumbered steps fall back to step 1."""
    if step.number:
        return step.number
    logger.warning(
        f"Step without a number in session {session_id}, pooling under step {DEFAULT_STEP_NUMBER}",
        extra={"session_id": session_id},
    )
    return DEFAULT_STEP_NUMBER


def extract_fragments(
    step: AgentStep,
    session_id: str,
    task_id: str,
    step_number: int,
) -> list[ReasoningFragment]:
    """Fragments for memory, evaluation, next goal and each non-empty action."""
    fragments = []

    def _add(kind: FragmentKind, text: str | None, index: int = 0):
        if not text or not text.strip():
            return
        fragments.append(
            ReasoningFragment(
                id=make_fragment_id(kind, session_id, step_number, index),
                text=text,
                kind=kind,
                session_id=session_id,
                task_id=task_id,
                step_number=step_number,
                url=step.url,
            )
        )

    _add(FragmentKind.MEMORY, step.memory)
    _add(FragmentKind.EVALUATION, step.evaluation_previous_goal)
    _add(FragmentKind.GOAL, step.next_goal)
    for index, action in enumerate(step.actions):
        _add(FragmentKind.ACTION, action, index)

    return fragments


class KnowledgeGraphService:
    """Entry point for turning agent steps into graph knowledge."""

    def __init__(
        self,
        graph_store: GraphStore | None = None,
        analysis_client: BatchAnalysisClient | None = None,
        relationship_finder: RelationshipFinder | None = None,
        step_pool: StepPool | None = None,
        hierarchy_builder: ConceptHierarchyBuilder | None = None,
    ):
        self.settings = get_settings()
        self.graph_store = graph_store or GraphStore()
        self.analysis_client = analysis_client or get_batch_analysis_client()
        self.relationship_finder = relationship_finder or RelationshipFinder()
        self.step_pool = step_pool or StepPool(
            graph_store=self.graph_store,
            analysis_client=self.analysis_client,
            relationship_finder=self.relationship_finder,
        )
        self.hierarchy_builder = hierarchy_builder or ConceptHierarchyBuilder()
        self._seen: OrderedDict[str, str] = OrderedDict()  # fragment id -> text digest

    async def initialize(self) -> None:
        """Verify the database and create the schema. Raises on failure."""
        if not await self.graph_store.test_connection():
            raise ConnectionError("Failed to connect to Neo4j database")
        await self.graph_store.initialize_schema()
        logger.info("Knowledge graph service initialized")

    def _claim(self, fragment: ReasoningFragment) -> bool:
        """Record a fragment; False if the same id and text were already ingested.

        Steps without a number all resolve to step 1, so distinct text can
        arrive under an id that is already taken. Such a fragment is renamed
        with a numeric suffix instead of being dropped.
        """
        digest = hashlib.sha1(fragment.text.encode("utf-8")).hexdigest()
        base_id = fragment.id
        candidate = base_id
        suffix = 0
        while candidate in self._seen:
            if self._seen[candidate] == digest:
                return False
            suffix += 1
            candidate = f"{base_id}_{suffix}"

        if candidate != base_id:
            logger.warning(
                f"Fragment id {base_id} already holds different text, storing as {candidate}"
            )
            fragment.id = candidate
        self._seen[candidate] = digest
        if len(self._seen) > MAX_SEEN_FRAGMENT_IDS:
            self._seen.popitem(last=False)
        return True

    def _release(self, fragment_id: str) -> None:
        self._seen.pop(fragment_id, None)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_steps(self, steps: list[AgentStep], session_id: str, task_id: str) -> None:
        """Pool the steps' fragments for cross-session analysis. Never raises."""
        with LogContext(session_id=session_id, task_id=task_id):
            enqueued = 0
            for step in steps:
                try:
                    step_number = resolve_step_number(step, session_id)
                    fragments = extract_fragments(step, session_id, task_id, step_number)
                except Exception as e:
                    logger.error(
                        f"Failed to ingest step {step.number} of session {session_id}: {e}"
                    )
                    continue

                for fragment in fragments:
                    if not self._claim(fragment):
                        logger.debug(f"Skipping already ingested fragment {fragment.id}")
                        continue
                    try:
                        self.step_pool.enqueue(fragment, session_id, step_number)
                        enqueued += 1
                    except Exception as e:
                        self._release(fragment.id)
                        logger.error(f"Failed to enqueue fragment {fragment.id}: {e}")

            logger.info(
                f"Ingested {len(steps)} steps ({enqueued} new fragments) for session {session_id}"
            )

    async def process_fragment(self, fragment: ReasoningFragment) -> bool:
        """Analyze and persist one fragment outside the step pool.

        Returns:
            True if the fragment was persisted
        """
        try:
            if not fragment.is_analyzed:
                analysis = await self.analysis_client.submit(FragmentRequest(fragment=fragment))
                fragment.apply_analysis(
                    analysis,
                    term_frequency_vector(fragment.text, self.settings.semantic_vector_dimensions),
                )

            await self.graph_store.upsert_fragment(fragment)
            await self.graph_store.upsert_concepts(fragment.id, fragment.concepts)
            logger.debug(
                f"Processed fragment {fragment.id} with {len(fragment.concepts)} concepts"
            )
            return True
        except Exception as e:
            logger.error(f"Failed to process fragment {fragment.id}: {e}")
            return False

    async def process_steps(self, steps: list[AgentStep], session_id: str, task_id: str) -> int:
        """Single-session path: analyze, persist and relate fragments directly.

        Returns:
            Number of fragments persisted
        """
        with LogContext(session_id=session_id, task_id=task_id):
            fragments = []
            for step in steps:
                step_number = resolve_step_number(step, session_id)
                for fragment in extract_fragments(step, session_id, task_id, step_number):
                    if self._claim(fragment):
                        fragments.append(fragment)

            # Concurrent so the analysis queue can batch them
            results = await asyncio.gather(*(self.process_fragment(f) for f in fragments))
            persisted = [f for f, ok in zip(fragments, results) if ok]

            relationships = await self.relationship_finder.find_relationships(
                persisted,
                self.settings.session_relationship_threshold,
                scope="session",
            )
            for rel in relationships:
                try:
                    await self.graph_store.create_relationship(
                        rel.from_id,
                        rel.to_id,
                        rel.type.neo4j_type,
                        rel.strength,
                        {"explanation": rel.explanation},
                    )
                except Exception as e:
                    logger.error(
                        f"Failed to create relationship between {rel.from_id} and {rel.to_id}: {e}"
                    )

            if persisted:
                await invalidate_graph_caches()
            logger.info(f"Processed {len(persisted)} reasoning fragments for session {session_id}")
            return len(persisted)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_session_graph(self, session_id: str) -> SessionGraph:
        cached = await get_cached("session_graph", scope=session_id)
        if cached is not None:
            return SessionGraph.model_validate(cached)

        graph = await self.graph_store.query_session_graph(session_id)
        if graph.nodes:
            await set_cached(
                "session_graph",
                graph.model_dump(),
                scope=session_id,
                ttl=self.settings.graph_cache_ttl,
            )
        return graph

    async def get_pooled_graph(self) -> PooledGraph:
        cached = await get_cached("pooled_graph")
        if cached is not None:
            return PooledGraph.model_validate(cached)

        graph = await self.graph_store.query_pooled_graph()
        if graph.nodes:
            await set_cached(
                "pooled_graph", graph.model_dump(), ttl=self.settings.graph_cache_ttl
            )
        return graph

    async def find_similar_reasoning_traces(
        self,
        text: str,
        session_id: str | None = None,
        limit: int = 5,
    ) -> list[SimilarFragment]:
        return await self.graph_store.find_similar_fragments(text, session_id, limit)

    async def generate_insights(self, session_id: str) -> SessionInsights:
        graph = await self.get_session_graph(session_id)
        if not graph.nodes:
            return SessionInsights(session_id=session_id)

        concepts: list[str] = []
        for node in graph.nodes:
            if node.type != "ReasonFragment":
                continue
            for concept in node.properties.get("concepts") or []:
                if concept not in concepts:
                    concepts.append(concept)

        hierarchy = await self.hierarchy_builder.build(concepts)
        clusters = []
        for cluster in hierarchy.clusters:
            try:
                clusters.append(ConceptCluster.model_validate(cluster))
            except ValueError as e:
                logger.debug(f"Skipping malformed concept cluster: {e}")
        entries = []
        for entry in hierarchy.hierarchy:
            try:
                entries.append(ConceptHierarchyEntry.model_validate(entry))
            except ValueError as e:
                logger.debug(f"Skipping malformed hierarchy entry: {e}")

        return SessionInsights(
            session_id=session_id,
            key_patterns=[
                f"Session contains {len(graph.nodes)} reasoning fragments",
                f"{len(graph.relationships)} semantic relationships identified",
                f"{len(concepts)} unique concepts extracted",
            ],
            concept_clusters=clusters,
            concept_hierarchy=entries,
            recommendations=list(SESSION_RECOMMENDATIONS),
        )

    async def shutdown(self) -> None:
        """Flush pending pools and queued analyses."""
        await self.step_pool.shutdown(flush_pending=True)
        await self.analysis_client.drain()


_knowledge_graph_service: KnowledgeGraphService | None = None


def get_knowledge_graph_service() -> KnowledgeGraphService:
    """Get the knowledge graph service singleton."""
    global _knowledge_graph_service
    if _knowledge_graph_service is None:
        _knowledge_graph_service = KnowledgeGraphService()
    return _knowledge_graph_service


async def close_knowledge_graph_service() -> None:
    global _knowledge_graph_service
    if _knowledge_graph_service is not None:
        await _knowledge_graph_service.shutdown()
        _knowledge_graph_service = None
