"""Tests for the knowledge graph service."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from models.fragments import FragmentKind, Relationship, RelationshipType
from models.schemas import AgentStep, GraphNode, GraphRelationship, SessionGraph
from services.insights import ConceptHierarchy
from services.knowledge_graph import (
    DEFAULT_STEP_NUMBER,
    KnowledgeGraphService,
    extract_fragments,
    resolve_step_number,
)
from tests.factories import AgentStepFactory


@pytest.fixture
def mock_step_pool():
    pool = MagicMock()
    pool.enqueue = MagicMock()
    pool.shutdown = AsyncMock()
    return pool


@pytest.fixture
def service(mock_graph_store, mock_analysis_client, mock_relationship_finder, mock_step_pool):
    hierarchy_builder = MagicMock()
    hierarchy_builder.build = AsyncMock(return_value=ConceptHierarchy())
    return KnowledgeGraphService(
        graph_store=mock_graph_store,
        analysis_client=mock_analysis_client,
        relationship_finder=mock_relationship_finder,
        step_pool=mock_step_pool,
        hierarchy_builder=hierarchy_builder,
    )


class TestExtractFragments:
    """Tests for turning one agent step into fragments."""

    def test_all_parts_become_fragments(self):
        step = AgentStepFactory.create(number=3, actions=["click", "  ", "type"])

        fragments = extract_fragments(step, "s1", "t1", 3)

        kinds = [f.kind for f in fragments]
        assert kinds == [
            FragmentKind.MEMORY,
            FragmentKind.EVALUATION,
            FragmentKind.GOAL,
            FragmentKind.ACTION,
            FragmentKind.ACTION,
        ]
        action_ids = [f.id for f in fragments if f.kind == FragmentKind.ACTION]
        assert action_ids == ["action_s1_3_0", "action_s1_3_2"]

    def test_fragment_fields_copied_from_step(self):
        step = AgentStepFactory.create(number=2, url="https://shop.example.com/cart")

        fragment = extract_fragments(step, "s1", "t1", 2)[0]

        assert fragment.id == "memory_s1_2_0"
        assert fragment.session_id == "s1"
        assert fragment.task_id == "t1"
        assert fragment.step_number == 2
        assert fragment.url == "https://shop.example.com/cart"
        assert not fragment.is_analyzed

    def test_empty_evaluation_yields_three_fragments(self):
        step = AgentStep.model_validate(
            {
                "number": 1,
                "memory": "opened page A",
                "evaluationPreviousGoal": "",
                "nextGoal": "click button",
                "actions": ["click#submit"],
            }
        )

        fragments = extract_fragments(step, "s1", "t1", 1)

        assert [(f.kind, f.text) for f in fragments] == [
            (FragmentKind.MEMORY, "opened page A"),
            (FragmentKind.GOAL, "click button"),
            (FragmentKind.ACTION, "click#submit"),
        ]

    def test_whitespace_only_text_skipped(self):
        step = AgentStepFactory.create(memory="   ", evaluation=None, next_goal="\n")

        assert extract_fragments(step, "s1", "t1", 1) == []


class TestResolveStepNumber:
    def test_number_kept(self):
        assert resolve_step_number(AgentStepFactory.create(number=7), "s1") == 7

    def test_missing_number_defaults(self):
        step = AgentStepFactory.create(number=None)
        assert resolve_step_number(step, "s1") == DEFAULT_STEP_NUMBER


class TestIngestSteps:
    """Tests for routing steps into the step pool."""

    @pytest.mark.asyncio
    async def test_fragments_enqueued_by_step(self, service, mock_step_pool):
        steps = AgentStepFactory.create_batch(2)

        await service.ingest_steps(steps, "s1", "t1")

        assert mock_step_pool.enqueue.call_count == 6
        step_numbers = [call.args[2] for call in mock_step_pool.enqueue.call_args_list]
        assert step_numbers == [1, 1, 1, 2, 2, 2]
        assert all(call.args[1] == "s1" for call in mock_step_pool.enqueue.call_args_list)

    @pytest.mark.asyncio
    async def test_redelivered_steps_deduplicated(self, service, mock_step_pool):
        steps = AgentStepFactory.create_batch(1)

        await service.ingest_steps(steps, "s1", "t1")
        await service.ingest_steps(steps, "s1", "t1")

        assert mock_step_pool.enqueue.call_count == 3

    @pytest.mark.asyncio
    async def test_same_step_in_other_session_not_deduplicated(self, service, mock_step_pool):
        steps = AgentStepFactory.create_batch(1)

        await service.ingest_steps(steps, "s1", "t1")
        await service.ingest_steps(steps, "s2", "t2")

        assert mock_step_pool.enqueue.call_count == 6

    @pytest.mark.asyncio
    async def test_unnumbered_step_pooled_as_step_one(self, service, mock_step_pool):
        step = AgentStepFactory.create(number=None, evaluation=None, next_goal=None)

        await service.ingest_steps([step], "s1", "t1")

        fragment, session_id, step_number = mock_step_pool.enqueue.call_args.args
        assert step_number == DEFAULT_STEP_NUMBER
        assert fragment.id == "memory_s1_1_0"

    @pytest.mark.asyncio
    async def test_second_unnumbered_step_gets_distinct_ids(self, service, mock_step_pool):
        first = AgentStepFactory.create(number=None, memory="Opened the search page")
        second = AgentStepFactory.create(number=None, memory="Typed the destination")

        await service.ingest_steps([first, second], "s1", "t1")

        enqueued = [call.args for call in mock_step_pool.enqueue.call_args_list]
        memories = {f.text: f.id for f, _, _ in enqueued if f.kind == FragmentKind.MEMORY}
        assert memories == {
            "Opened the search page": "memory_s1_1_0",
            "Typed the destination": "memory_s1_1_0_1",
        }
        assert all(step_number == DEFAULT_STEP_NUMBER for _, _, step_number in enqueued)
        assert len({f.id for f, _, _ in enqueued}) == len(enqueued)

    @pytest.mark.asyncio
    async def test_redelivered_unnumbered_steps_deduplicated(self, service, mock_step_pool):
        steps = [
            AgentStepFactory.create(number=None, memory="Opened the search page"),
            AgentStepFactory.create(number=None, memory="Typed the destination"),
        ]

        await service.ingest_steps(steps, "s1", "t1")
        first_count = mock_step_pool.enqueue.call_count
        await service.ingest_steps(steps, "s1", "t1")

        assert mock_step_pool.enqueue.call_count == first_count

    @pytest.mark.asyncio
    async def test_enqueue_failure_skips_only_that_fragment(self, service, mock_step_pool):
        def enqueue(fragment, session_id, step_number):
            if fragment.id == "memory_s1_1_0":
                raise RuntimeError("pool broken")

        mock_step_pool.enqueue.side_effect = enqueue

        await service.ingest_steps(AgentStepFactory.create_batch(2), "s1", "t1")

        attempted = [call.args[0].id for call in mock_step_pool.enqueue.call_args_list]
        assert len(attempted) == 6
        assert "goal_s1_1_0" in attempted

    @pytest.mark.asyncio
    async def test_failed_fragment_retried_on_redelivery(self, service, mock_step_pool):
        steps = AgentStepFactory.create_batch(1)
        mock_step_pool.enqueue.side_effect = RuntimeError("pool broken")
        await service.ingest_steps(steps, "s1", "t1")

        mock_step_pool.enqueue.reset_mock(side_effect=True)
        await service.ingest_steps(steps, "s1", "t1")

        assert mock_step_pool.enqueue.call_count == 3


class TestProcessSteps:
    """Tests for the direct single-session path."""

    @pytest.mark.asyncio
    async def test_fragments_analyzed_and_persisted(
        self, service, mock_graph_store, mock_analysis_client
    ):
        step = AgentStepFactory.create(number=1)

        persisted = await service.process_steps([step], "s1", "t1")

        assert persisted == 3
        assert mock_analysis_client.submit.await_count == 3
        assert mock_graph_store.upsert_fragment.await_count == 3
        fragment = mock_graph_store.upsert_fragment.await_args_list[0].args[0]
        assert fragment.concepts == ["single"]
        assert len(fragment.semantic_vector) == 100
        mock_graph_store.upsert_concepts.assert_any_await(fragment.id, ["single"])

    @pytest.mark.asyncio
    async def test_relationships_written(
        self, service, mock_graph_store, mock_relationship_finder
    ):
        mock_relationship_finder.find_relationships.return_value = [
            Relationship(
                from_id="memory_s1_1_0",
                to_id="goal_s1_1_0",
                type=RelationshipType.CAUSAL,
                strength=0.7,
                explanation="memory drives the goal",
            )
        ]

        await service.process_steps([AgentStepFactory.create(number=1)], "s1", "t1")

        args = mock_relationship_finder.find_relationships.await_args
        assert len(args.args[0]) == 3
        assert args.args[1] == service.settings.session_relationship_threshold
        assert args.kwargs["scope"] == "session"
        mock_graph_store.create_relationship.assert_awaited_once_with(
            "memory_s1_1_0",
            "goal_s1_1_0",
            "CAUSAL",
            0.7,
            {"explanation": "memory drives the goal"},
        )

    @pytest.mark.asyncio
    async def test_failed_fragment_not_counted(self, service, mock_graph_store):
        mock_graph_store.upsert_fragment.side_effect = [None, RuntimeError("write failed"), None]

        persisted = await service.process_steps([AgentStepFactory.create(number=1)], "s1", "t1")

        assert persisted == 2
        assert len(service.relationship_finder.find_relationships.await_args.args[0]) == 2

    @pytest.mark.asyncio
    async def test_relationship_write_failure_tolerated(
        self, service, mock_graph_store, mock_relationship_finder
    ):
        mock_relationship_finder.find_relationships.return_value = [
            Relationship("memory_s1_1_0", "goal_s1_1_0", RelationshipType.TEMPORAL, 0.5)
        ]
        mock_graph_store.create_relationship.side_effect = RuntimeError("constraint")

        persisted = await service.process_steps([AgentStepFactory.create(number=1)], "s1", "t1")

        assert persisted == 3


class TestQueries:
    @pytest.mark.asyncio
    async def test_session_graph_from_store(self, service, mock_graph_store):
        graph = SessionGraph(session_id="s1")
        mock_graph_store.query_session_graph.return_value = graph

        assert await service.get_session_graph("s1") is graph
        mock_graph_store.query_session_graph.assert_awaited_once_with("s1")

    @pytest.mark.asyncio
    async def test_similar_traces_pass_through(self, service, mock_graph_store):
        await service.find_similar_reasoning_traces("login button", session_id="s1", limit=3)

        mock_graph_store.find_similar_fragments.assert_awaited_once_with("login button", "s1", 3)


class TestGenerateInsights:
    """Tests for session insights."""

    @pytest.mark.asyncio
    async def test_empty_session(self, service, mock_graph_store):
        mock_graph_store.query_session_graph.return_value = SessionGraph(session_id="s1")

        insights = await service.generate_insights("s1")

        assert insights.session_id == "s1"
        assert insights.key_patterns == []
        assert insights.recommendations == []
        service.hierarchy_builder.build.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_patterns_and_clusters(self, service, mock_graph_store):
        mock_graph_store.query_session_graph.return_value = SessionGraph(
            session_id="s1",
            nodes=[
                GraphNode(
                    id="memory_s1_1_0",
                    label="Searching flights",
                    type="ReasonFragment",
                    properties={"concepts": ["flight search", "date picker"]},
                ),
                GraphNode(
                    id="goal_s1_1_0",
                    label="Pick a date",
                    type="ReasonFragment",
                    properties={"concepts": ["date picker"]},
                ),
                GraphNode(id="concept_date_picker", label="date picker", type="Concept"),
            ],
            relationships=[
                GraphRelationship(source="memory_s1_1_0", target="goal_s1_1_0", type="CAUSAL"),
            ],
        )
        service.hierarchy_builder.build.return_value = ConceptHierarchy(
            hierarchy=[{"parent": "booking", "children": ["flight search"], "level": 1}],
            clusters=[
                {"name": "search", "concepts": ["flight search", "date picker"], "description": "Finding flights"},
                {"concepts": ["no name"]},
            ],
        )

        insights = await service.generate_insights("s1")

        service.hierarchy_builder.build.assert_awaited_once_with(["flight search", "date picker"])
        assert insights.key_patterns == [
            "Session contains 3 reasoning fragments",
            "1 semantic relationships identified",
            "2 unique concepts extracted",
        ]
        assert [c.name for c in insights.concept_clusters] == ["search"]
        assert insights.concept_hierarchy[0].parent == "booking"
        assert len(insights.recommendations) == 3


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_creates_schema(self, service, mock_graph_store):
        await service.initialize()

        mock_graph_store.initialize_schema.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_initialize_fails_without_database(self, service, mock_graph_store):
        mock_graph_store.test_connection.return_value = False

        with pytest.raises(ConnectionError):
            await service.initialize()
        mock_graph_store.initialize_schema.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shutdown_flushes_pool_then_drains(
        self, service, mock_step_pool, mock_analysis_client
    ):
        await service.shutdown()

        mock_step_pool.shutdown.assert_awaited_once_with(flush_pending=True)
        mock_analysis_client.drain.assert_awaited_once()
