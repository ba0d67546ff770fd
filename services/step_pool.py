"""Cross-session pooling of reasoning fragments by step number.

Parallel automation sessions tend to reach step N at about the same time.
Instead of one LLM call per session, fragments for step N from every
session are collected into one pool and analyzed together in a single
mega-batch call, which also lets the model compare sessions.

Per step number the pool moves EMPTY -> COLLECTING -> FLUSHING -> EMPTY:
- enqueue() re-arms the step's quiet timer (`collection_delay` seconds).
- When the timer fires, or when the pool holds fragments from
  `max_sessions` distinct sessions, the pool is taken and cleared in one
  synchronous step and processed in the background.
- Fragments that arrive after the take start a fresh pool for the step.
"""

import asyncio
import time
from enum import Enum

from config import get_settings
from models.fragments import PooledEntry, ReasoningFragment
from models.schemas import StepPoolStats
from services import fallback_analyzer
from services.batch_analysis import (
    BatchAnalysisClient,
    MegaBatchRequest,
    format_fragment,
    get_batch_analysis_client,
)
from services.graph_store import GraphStore
from services.relationship_finder import RelationshipFinder
from utils.cache import invalidate_graph_caches
from utils.logging import get_logger
from utils.metrics import (
    ANALYSIS_FALLBACKS,
    STEP_POOL_FLUSHES,
    STEP_POOL_FRAGMENTS,
    STEP_POOL_PENDING,
)
from utils.vectors import term_frequency_vector

logger = get_logger(__name__)


MEGA_BATCH_PROMPT = """Analyze reasoning fragments from {session_count} parallel browser automation sessions, all at step {step_number} of their tasks.
For each fragment, provide a semantic analysis. Use the other sessions' fragments as context:
note shared goals, diverging strategies and common obstacles in the concepts and insights.

{sessions}

Provide analysis for ALL {count} fragments in the following JSON format:
{{
  "analyses": [
    {{
      "fragmentIndex": 0,
      "concepts": ["concept1", "concept2"],
      "entities": ["entity1", "entity2"],
      "relationships": [
        {{"from": "entity/concept", "to": "entity/concept", "type": "relationship_type", "strength": 0.8}}
      ],
      "summary": "Brief summary of the fragment",
      "keyInsights": ["insight1", "insight2"]
    }}
  ]
}}

"fragmentIndex" must be the number shown in brackets for the fragment; numbering runs across all sessions.
Respond with valid JSON only. Include analysis for all {count} fragments."""


class PoolState(Enum):
    EMPTY = "empty"
    COLLECTING = "collecting"
    FLUSHING = "flushing"


def order_by_session(entries: list[PooledEntry]) -> list[PooledEntry]:
    """Group entries by session (first-seen order), keeping enqueue order within a session."""
    groups: dict[str, list[PooledEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.session_id, []).append(entry)
    return [entry for group in groups.values() for entry in group]


def build_mega_prompt(step_number: int, entries: list[PooledEntry]) -> str:
    """Prompt covering every session in the pool; entries must already be session-ordered."""
    sections = []
    current_session = None
    blocks: list[str] = []
    for index, entry in enumerate(entries):
        if entry.session_id != current_session:
            if blocks:
                sections.append("\n\n".join(blocks))
            current_session = entry.session_id
            blocks = [f"=== SESSION {entry.session_id} ==="]
        blocks.append(format_fragment(index, entry.fragment, include_session=True))
    if blocks:
        sections.append("\n\n".join(blocks))

    return MEGA_BATCH_PROMPT.format(
        session_count=len({e.session_id for e in entries}),
        step_number=step_number,
        sessions="\n\n".join(sections),
        count=len(entries),
    )


class StepPool:
    """Collects fragments per step number and flushes them as one analysis batch."""

    def __init__(
        self,
        graph_store: GraphStore,
        analysis_client: BatchAnalysisClient | None = None,
        relationship_finder: RelationshipFinder | None = None,
        collection_delay: float | None = None,
        max_sessions: int | None = None,
        relationship_threshold: float | None = None,
    ):
        settings = get_settings()
        self.graph_store = graph_store
        self.analysis_client = analysis_client or get_batch_analysis_client()
        self.relationship_finder = relationship_finder or RelationshipFinder()
        self.collection_delay = (
            collection_delay if collection_delay is not None else settings.step_collection_delay
        )
        self.max_sessions = max_sessions or settings.max_sessions_per_step
        self.relationship_threshold = (
            relationship_threshold
            if relationship_threshold is not None
            else settings.pooled_relationship_threshold
        )
        self.vector_dimensions = settings.semantic_vector_dimensions

        self._pools: dict[int, list[PooledEntry]] = {}
        self._timers: dict[int, asyncio.Task] = {}
        self._in_flight: set[asyncio.Task] = set()
        self._flushing: dict[int, int] = {}

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def enqueue(self, fragment: ReasoningFragment, session_id: str, step_number: int) -> None:
        """Add a fragment to its step's pool. Must be called from the event loop."""
        pool = self._pools.setdefault(step_number, [])
        pool.append(
            PooledEntry(session_id=session_id, fragment=fragment, enqueued_at=time.monotonic())
        )
        STEP_POOL_FRAGMENTS.inc()
        STEP_POOL_PENDING.set(len(self._pools))

        session_count = len({entry.session_id for entry in pool})
        if session_count >= self.max_sessions:
            logger.info(
                f"Step {step_number} pool reached {session_count} sessions, flushing immediately"
            )
            self._cancel_timer(step_number)
            self._start_processing(step_number, self._take(step_number), trigger="session_cap")
        else:
            self._arm_timer(step_number)

    def _take(self, step_number: int) -> list[PooledEntry]:
        """Atomically remove and return a step's pool."""
        entries = self._pools.pop(step_number, [])
        STEP_POOL_PENDING.set(len(self._pools))
        return entries

    def _cancel_timer(self, step_number: int) -> None:
        timer = self._timers.pop(step_number, None)
        if timer and not timer.done():
            timer.cancel()

    def _arm_timer(self, step_number: int) -> None:
        """(Re)start the quiet-period timer for a step."""
        self._cancel_timer(step_number)

        async def delayed_flush():
            try:
                await asyncio.sleep(self.collection_delay)
            except asyncio.CancelledError:
                return
            self._timers.pop(step_number, None)
            entries = self._take(step_number)
            if entries:
                self._start_processing(step_number, entries, trigger="timer")

        self._timers[step_number] = asyncio.create_task(delayed_flush())

    def _start_processing(self, step_number: int, entries: list[PooledEntry], trigger: str) -> None:
        if not entries:
            return
        task = asyncio.create_task(self._process(step_number, entries, trigger))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(self, step_number: int, trigger: str = "manual") -> int:
        """Flush a step's pool now and wait for it to be processed.

        A no-op when the pool is empty, so it is safe after a timer or
        session-cap flush already took the pool.

        Returns:
            Number of fragments flushed
        """
        self._cancel_timer(step_number)
        entries = self._take(step_number)
        if not entries:
            logger.debug(f"Step {step_number} pool empty, nothing to flush")
            return 0
        await self._process(step_number, entries, trigger)
        return len(entries)

    async def _process(self, step_number: int, entries: list[PooledEntry], trigger: str) -> None:
        """Analyze, persist and relate one taken pool. Never raises.

        Fragments are persisted before relating so every edge has both nodes;
        only persisted fragments are offered to the relationship finder.
        """
        self._flushing[step_number] = self._flushing.get(step_number, 0) + 1
        STEP_POOL_FLUSHES.labels(trigger=trigger).inc()
        try:
            ordered = order_by_session(entries)
            session_count = len({e.session_id for e in ordered})
            logger.info(
                f"Flushing step {step_number}: {len(ordered)} fragments from {session_count} sessions",
                extra={"step_number": step_number, "trigger": trigger},
            )

            try:
                await self._analyze(step_number, ordered)
            except Exception as e:
                logger.error(
                    f"Step {step_number} analysis failed, using keyword fallback: "
                    f"{type(e).__name__}: {e}"
                )
                self._apply_fallback(ordered)

            persisted = await self._persist(ordered)
            await self._relate(persisted)
            await invalidate_graph_caches()
        except Exception as e:
            logger.error(f"Step {step_number} flush failed: {type(e).__name__}: {e}")
        finally:
            remaining = self._flushing.get(step_number, 1) - 1
            if remaining:
                self._flushing[step_number] = remaining
            else:
                self._flushing.pop(step_number, None)

    def _apply_fallback(self, ordered: list[PooledEntry]) -> None:
        unanalyzed = [e.fragment for e in ordered if not e.fragment.is_analyzed]
        ANALYSIS_FALLBACKS.labels(path="mega_batch", reason="flush_error").inc(len(unanalyzed))
        for fragment in unanalyzed:
            fragment.apply_analysis(
                fallback_analyzer.analyze(fragment),
                term_frequency_vector(fragment.text, self.vector_dimensions),
            )

    async def _analyze(self, step_number: int, ordered: list[PooledEntry]) -> None:
        """One mega-batch call for the pool; attach concepts and vectors."""
        pending = [e for e in ordered if not e.fragment.is_analyzed]
        if not pending:
            return

        prompt = build_mega_prompt(step_number, pending)
        fragments = [e.fragment for e in pending]
        analyses = await self.analysis_client.submit(MegaBatchRequest(prompt=prompt, fragments=fragments))

        for fragment, analysis in zip(fragments, analyses):
            fragment.apply_analysis(
                analysis,
                term_frequency_vector(fragment.text, self.vector_dimensions),
            )

    async def _persist(self, ordered: list[PooledEntry]) -> list[ReasoningFragment]:
        """Store fragments and their concepts; failures skip only that fragment."""
        persisted = []
        for entry in ordered:
            fragment = entry.fragment
            try:
                await self.graph_store.upsert_fragment(fragment)
                await self.graph_store.upsert_concepts(fragment.id, fragment.concepts)
                persisted.append(fragment)
            except Exception as e:
                logger.error(f"Failed to persist fragment {fragment.id}: {e}")
        return persisted

    async def _relate(self, fragments: list[ReasoningFragment]) -> None:
        relationships = await self.relationship_finder.find_relationships(
            fragments, self.relationship_threshold, scope="pooled"
        )
        for rel in relationships:
            try:
                await self.graph_store.create_relationship(
                    rel.from_id,
                    rel.to_id,
                    rel.type.neo4j_type,
                    rel.strength,
                    {"explanation": rel.explanation, "pooled": True},
                )
            except Exception as e:
                logger.error(
                    f"Failed to create relationship {rel.from_id} -> {rel.to_id}: {e}"
                )

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    def state(self, step_number: int) -> PoolState:
        if step_number in self._pools:
            return PoolState.COLLECTING
        if step_number in self._flushing:
            return PoolState.FLUSHING
        return PoolState.EMPTY

    def pending_steps(self) -> list[int]:
        """Step numbers whose pool is collecting."""
        return sorted(self._pools)

    def get_stats(self) -> StepPoolStats:
        return StepPoolStats(
            pending_steps=self.pending_steps(),
            pooled_fragments=sum(len(p) for p in self._pools.values()),
            sessions_by_step={
                step: len({e.session_id for e in pool}) for step, pool in self._pools.items()
            },
            in_flight_flushes=len(self._in_flight),
        )

    async def wait_idle(self) -> None:
        """Wait for every background flush that has started."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def shutdown(self, flush_pending: bool = True) -> None:
        """Stop timers and, by default, flush every pending pool."""
        for step_number in list(self._timers):
            self._cancel_timer(step_number)

        for step_number in self.pending_steps():
            entries = self._take(step_number)
            if flush_pending:
                self._start_processing(step_number, entries, trigger="shutdown")
            else:
                logger.warning(f"Dropping {len(entries)} unflushed fragments for step {step_number}")

        await self.wait_idle()
        logger.info("Step pool shut down")
