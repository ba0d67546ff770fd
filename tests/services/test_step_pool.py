"""Tests for cross-session step pooling."""

import asyncio
import json

import pytest

from models.fragments import FragmentKind, PooledEntry, Relationship, RelationshipType
from services.batch_analysis import BatchAnalysisClient, MegaBatchRequest
from services.step_pool import PoolState, StepPool, build_mega_prompt, order_by_session
from tests.factories import FragmentFactory
from tests.mocks.llm_mock import analyses_payload


@pytest.fixture
def make_pool(mock_graph_store, mock_analysis_client, mock_relationship_finder):
    def _make(collection_delay: float = 0.05, max_sessions: int = 10) -> StepPool:
        return StepPool(
            graph_store=mock_graph_store,
            analysis_client=mock_analysis_client,
            relationship_finder=mock_relationship_finder,
            collection_delay=collection_delay,
            max_sessions=max_sessions,
            relationship_threshold=0.6,
        )

    return _make


def _submitted_requests(mock_analysis_client) -> list[MegaBatchRequest]:
    return [call.args[0] for call in mock_analysis_client.submit.await_args_list]


class TestPromptBuilding:
    """Test session ordering and the mega-batch prompt."""

    def test_order_by_session_groups_in_first_seen_order(self):
        a1 = FragmentFactory.create(session_id="a", kind=FragmentKind.MEMORY)
        b1 = FragmentFactory.create(session_id="b", kind=FragmentKind.MEMORY)
        a2 = FragmentFactory.create(session_id="a", kind=FragmentKind.GOAL)
        entries = [PooledEntry("a", a1, 0.0), PooledEntry("b", b1, 0.1), PooledEntry("a", a2, 0.2)]

        ordered = order_by_session(entries)

        assert [e.fragment.id for e in ordered] == [a1.id, a2.id, b1.id]

    def test_mega_prompt_has_session_headers_and_global_indices(self):
        entries = [
            PooledEntry("session-a", FragmentFactory.create(session_id="session-a"), 0.0),
            PooledEntry("session-b", FragmentFactory.create(session_id="session-b"), 0.0),
        ]

        prompt = build_mega_prompt(3, entries)

        assert "=== SESSION session-a ===" in prompt
        assert "=== SESSION session-b ===" in prompt
        assert prompt.index("FRAGMENT [0]") < prompt.index("=== SESSION session-b ===")
        assert prompt.index("=== SESSION session-b ===") < prompt.index("FRAGMENT [1]")
        assert "step 3" in prompt
        assert "2 parallel browser automation sessions" in prompt


class TestStepPoolCollection:
    """Test enqueue, debounce and the session cap."""

    @pytest.mark.asyncio
    async def test_enqueue_collects_until_quiet(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=0.1)

        pool.enqueue(FragmentFactory.create(session_id="s1"), "s1", 1)
        await asyncio.sleep(0.06)
        pool.enqueue(FragmentFactory.create(session_id="s2"), "s2", 1)
        await asyncio.sleep(0.06)
        pool.enqueue(FragmentFactory.create(session_id="s3"), "s3", 1)

        # 0.12s since the first fragment, but the timer keeps re-arming
        assert pool.state(1) == PoolState.COLLECTING
        mock_analysis_client.submit.assert_not_awaited()

        await asyncio.sleep(0.2)
        await pool.wait_idle()

        requests = _submitted_requests(mock_analysis_client)
        assert len(requests) == 1
        assert len(requests[0].fragments) == 3
        assert pool.state(1) == PoolState.EMPTY

    @pytest.mark.asyncio
    async def test_session_cap_flushes_immediately(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=30.0, max_sessions=3)

        for session in ("s1", "s2", "s3"):
            pool.enqueue(FragmentFactory.create(session_id=session), session, 2)

        assert pool.pending_steps() == []
        await pool.wait_idle()

        requests = _submitted_requests(mock_analysis_client)
        assert len(requests) == 1
        assert {f.session_id for f in requests[0].fragments} == {"s1", "s2", "s3"}

    @pytest.mark.asyncio
    async def test_tenth_session_flushes_at_default_cap(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=30.0)
        sessions = [f"S{i}" for i in range(1, 11)]

        for session in sessions[:9]:
            pool.enqueue(FragmentFactory.create(session_id=session), session, 1)
        assert pool.state(1) == PoolState.COLLECTING
        mock_analysis_client.submit.assert_not_awaited()

        pool.enqueue(FragmentFactory.create(session_id="S10"), "S10", 1)

        assert pool.pending_steps() == []
        await pool.wait_idle()
        requests = _submitted_requests(mock_analysis_client)
        assert len(requests) == 1
        assert [f.session_id for f in requests[0].fragments] == sessions

    @pytest.mark.asyncio
    async def test_same_session_does_not_count_twice(self, make_pool):
        pool = make_pool(collection_delay=30.0, max_sessions=2)

        for kind in (FragmentKind.MEMORY, FragmentKind.EVALUATION, FragmentKind.GOAL):
            pool.enqueue(FragmentFactory.create(session_id="s1", kind=kind), "s1", 1)

        assert pool.state(1) == PoolState.COLLECTING
        assert pool.get_stats().sessions_by_step == {1: 1}
        await pool.shutdown(flush_pending=False)

    @pytest.mark.asyncio
    async def test_steps_are_pooled_separately(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=0.05)

        pool.enqueue(FragmentFactory.create(session_id="s1", step_number=1), "s1", 1)
        pool.enqueue(FragmentFactory.create(session_id="s1", step_number=2), "s1", 2)
        assert pool.pending_steps() == [1, 2]

        await asyncio.sleep(0.15)
        await pool.wait_idle()

        assert len(_submitted_requests(mock_analysis_client)) == 2

    @pytest.mark.asyncio
    async def test_late_fragment_starts_new_pool(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=30.0, max_sessions=2)

        pool.enqueue(FragmentFactory.create(session_id="s1"), "s1", 1)
        pool.enqueue(FragmentFactory.create(session_id="s2"), "s2", 1)
        late = FragmentFactory.create(session_id="s3")
        pool.enqueue(late, "s3", 1)

        assert pool.state(1) == PoolState.COLLECTING
        assert pool.get_stats().pooled_fragments == 1

        await pool.wait_idle()
        first_batch = _submitted_requests(mock_analysis_client)[0]
        assert late.id not in {f.id for f in first_batch.fragments}
        await pool.shutdown(flush_pending=False)


class TestStepPoolFlush:
    """Test flushing, persistence and relationships."""

    @pytest.mark.asyncio
    async def test_manual_flush_is_idempotent(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=30.0)
        pool.enqueue(FragmentFactory.create(session_id="s1"), "s1", 1)

        assert await pool.flush(1) == 1
        assert await pool.flush(1) == 0
        assert mock_analysis_client.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_flush_after_timer_is_noop(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=0.02)
        pool.enqueue(FragmentFactory.create(session_id="s1"), "s1", 1)

        await asyncio.sleep(0.08)
        await pool.wait_idle()

        assert await pool.flush(1) == 0
        assert mock_analysis_client.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_flush_applies_analysis_and_persists(
        self, make_pool, mock_graph_store
    ):
        pool = make_pool(collection_delay=30.0)
        fragment = FragmentFactory.create(session_id="s1", text="open the booking page")
        pool.enqueue(fragment, "s1", 1)

        await pool.flush(1)

        assert fragment.concepts == [f"concept_{fragment.id}"]
        assert fragment.semantic_vector
        assert fragment.analysis_source == "llm"
        mock_graph_store.upsert_fragment.assert_awaited_once_with(fragment)
        mock_graph_store.upsert_concepts.assert_awaited_once_with(fragment.id, fragment.concepts)

    @pytest.mark.asyncio
    async def test_persist_failure_skips_only_that_fragment(
        self, make_pool, mock_graph_store, mock_relationship_finder
    ):
        pool = make_pool(collection_delay=30.0)
        good = FragmentFactory.create(session_id="s1", kind=FragmentKind.MEMORY)
        bad = FragmentFactory.create(session_id="s1", kind=FragmentKind.GOAL)
        also_good = FragmentFactory.create(session_id="s2", kind=FragmentKind.MEMORY)

        async def upsert(fragment):
            if fragment.id == bad.id:
                raise RuntimeError("write failed")

        mock_graph_store.upsert_fragment.side_effect = upsert
        for fragment in (good, bad, also_good):
            pool.enqueue(fragment, fragment.session_id, 1)

        await pool.flush(1)

        related = mock_relationship_finder.find_relationships.await_args.args[0]
        assert [f.id for f in related] == [good.id, also_good.id]

    @pytest.mark.asyncio
    async def test_relationships_created_with_pooled_metadata(
        self, make_pool, mock_graph_store, mock_relationship_finder
    ):
        pool = make_pool(collection_delay=30.0)
        a = FragmentFactory.create(session_id="s1")
        b = FragmentFactory.create(session_id="s2")
        mock_relationship_finder.find_relationships.return_value = [
            Relationship(a.id, b.id, RelationshipType.SIMILARITY, 0.9, "same search goal")
        ]
        pool.enqueue(a, "s1", 1)
        pool.enqueue(b, "s2", 1)

        await pool.flush(1)

        assert mock_relationship_finder.find_relationships.await_args.args[1] == 0.6
        mock_graph_store.create_relationship.assert_awaited_once_with(
            a.id,
            b.id,
            "SIMILARITY",
            0.9,
            {"explanation": "same search goal", "pooled": True},
        )

    @pytest.mark.asyncio
    async def test_analysis_failure_falls_back_and_persists(
        self, make_pool, mock_analysis_client, mock_graph_store, mock_relationship_finder
    ):
        pool = make_pool(collection_delay=30.0)
        mock_analysis_client.submit.side_effect = RuntimeError("boom")
        fragment = FragmentFactory.create(session_id="s1", text="Searching direct flights to Denver")
        pool.enqueue(fragment, "s1", 1)

        assert await pool.flush(1) == 1

        assert fragment.analysis_source == "fallback"
        assert fragment.concepts
        assert fragment.semantic_vector
        mock_graph_store.upsert_fragment.assert_awaited_once_with(fragment)
        mock_relationship_finder.find_relationships.assert_awaited_once()
        assert pool.state(1) == PoolState.EMPTY


class TestStepPoolLifecycle:
    """Test stats and shutdown."""

    @pytest.mark.asyncio
    async def test_stats(self, make_pool):
        pool = make_pool(collection_delay=30.0)
        pool.enqueue(FragmentFactory.create(session_id="s1"), "s1", 4)
        pool.enqueue(FragmentFactory.create(session_id="s2"), "s2", 4)

        stats = pool.get_stats()

        assert stats.pending_steps == [4]
        assert stats.pooled_fragments == 2
        assert stats.sessions_by_step == {4: 2}
        await pool.shutdown(flush_pending=False)

    @pytest.mark.asyncio
    async def test_shutdown_flushes_pending(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=30.0)
        pool.enqueue(FragmentFactory.create(session_id="s1"), "s1", 1)
        pool.enqueue(FragmentFactory.create(session_id="s1", step_number=2), "s1", 2)

        await pool.shutdown()

        assert mock_analysis_client.submit.await_count == 2
        assert pool.pending_steps() == []

    @pytest.mark.asyncio
    async def test_shutdown_without_flush_drops(self, make_pool, mock_analysis_client):
        pool = make_pool(collection_delay=30.0)
        pool.enqueue(FragmentFactory.create(session_id="s1"), "s1", 1)

        await pool.shutdown(flush_pending=False)

        mock_analysis_client.submit.assert_not_awaited()
        assert pool.pending_steps() == []


class TestCrossSessionAnalysis:
    """One flush through the real batch analysis client."""

    @pytest.mark.asyncio
    async def test_two_sessions_share_one_prompt(
        self, mock_llm, mock_graph_store, mock_relationship_finder
    ):
        mock_llm.queue_response(json.dumps(analyses_payload(2)))
        pool = StepPool(
            graph_store=mock_graph_store,
            analysis_client=BatchAnalysisClient(llm_client=mock_llm, batch_delay=0.01),
            relationship_finder=mock_relationship_finder,
            collection_delay=30.0,
        )
        first = FragmentFactory.create(session_id="s1", text="Opened the airline homepage")
        second = FragmentFactory.create(session_id="s2", text="Opened the hotel search page")
        pool.enqueue(first, "s1", 1)
        pool.enqueue(second, "s2", 1)

        await pool.flush(1)

        assert mock_llm.get_call_count() == 1
        prompt = mock_llm.get_last_call()["prompt"]
        assert "=== SESSION s1 ===" in prompt
        assert "=== SESSION s2 ===" in prompt
        assert first.concepts == ["concept_0"]
        assert second.concepts == ["concept_1"]
        assert first.analysis_source == second.analysis_source == "llm"
        assert mock_graph_store.upsert_fragment.await_count == 2
