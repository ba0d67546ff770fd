"""Batched LLM analysis of reasoning fragments.

Two ways in:
- FragmentRequest: one fragment, queued and analyzed together with other
  queued fragments. The queue flushes when it reaches `batch_size` items or
  when `batch_delay` seconds have passed since the first unflushed item,
  whichever comes first.
- MegaBatchRequest: a pre-built cross-session prompt from the step pool,
  sent as-is in a single call.

Both paths always produce one FragmentAnalysis per fragment, in input
order. A missing or malformed item falls back to keyword analysis for that
fragment; a failed call or unparseable response falls back for all of them.
"""

import asyncio
from dataclasses import dataclass, field

from config import get_settings
from models.fragments import FragmentAnalysis, ReasoningFragment
from services import fallback_analyzer
from services.llm import LLMClient, get_llm_client
from utils.json_extraction import extract_json_object
from utils.logging import get_logger
from utils.metrics import ANALYSIS_FALLBACKS, FRAGMENTS_ANALYZED

logger = get_logger(__name__)


BATCH_ANALYSIS_PROMPT = """Analyze the following {count} reasoning fragments from a browser automation agent session.
For each fragment, provide a semantic analysis. Be concise but comprehensive.

{fragments}

Provide analysis for ALL fragments in the following JSON format:
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

Focus on:
- Extracting key concepts and entities (websites, actions, goals, obstacles)
- Identifying relationships between concepts
- Understanding the semantic meaning and intent
- Strength should be 0.0-1.0 representing confidence

"fragmentIndex" must be the number shown in brackets for the fragment.
Respond with valid JSON only. Include analysis for all {count} fragments."""


def format_fragment(index: int, fragment: ReasoningFragment, include_session: bool = False) -> str:
    """Render one fragment as a numbered prompt block."""
    lines = [f"FRAGMENT [{index}]:"]
    if include_session:
        lines.append(f"Session: {fragment.session_id}")
    lines.append(f"Type: {fragment.kind.value}")
    lines.append(f'Text: "{fragment.text}"')
    lines.append(f"Step: {fragment.step_number}")
    if fragment.url:
        lines.append(f"URL: {fragment.url}")
    return "\n".join(lines)


def build_batch_prompt(fragments: list[ReasoningFragment]) -> str:
    blocks = "\n\n".join(format_fragment(i, f) for i, f in enumerate(fragments))
    return BATCH_ANALYSIS_PROMPT.format(count=len(fragments), fragments=blocks)


def _index_analyses(payload: dict | None) -> dict[int, dict]:
    """Map fragmentIndex -> analysis item, skipping malformed entries."""
    if not payload:
        return {}
    analyses = payload.get("analyses")
    if not isinstance(analyses, list):
        return {}

    by_index: dict[int, dict] = {}
    for item in analyses:
        if not isinstance(item, dict):
            continue
        try:
            index = int(item.get("fragmentIndex"))
        except (TypeError, ValueError):
            continue
        # First answer for an index wins
        by_index.setdefault(index, item)
    return by_index


def unpack_analyses(
    payload: dict | None,
    fragments: list[ReasoningFragment],
    path: str,
) -> list[FragmentAnalysis]:
    """One analysis per fragment, falling back where the payload has none."""
    if payload is None:
        ANALYSIS_FALLBACKS.labels(path=path, reason="parse_error").inc(len(fragments))
        return [fallback_analyzer.analyze(f) for f in fragments]

    by_index = _index_analyses(payload)
    results = []
    missing = 0
    for i, fragment in enumerate(fragments):
        item = by_index.get(i)
        if item is None:
            missing += 1
            results.append(fallback_analyzer.analyze(fragment))
        else:
            results.append(FragmentAnalysis.from_dict(item))

    if missing:
        ANALYSIS_FALLBACKS.labels(path=path, reason="missing").inc(missing)
        logger.warning(
            f"LLM response missing {missing}/{len(fragments)} analyses, used fallback",
            extra={"path": path},
        )
    FRAGMENTS_ANALYZED.labels(path=path).inc(len(fragments))
    return results


@dataclass
class FragmentRequest:
    """Analyze one fragment through the batching queue."""

    fragment: ReasoningFragment


@dataclass
class MegaBatchRequest:
    """Analyze a pre-built cross-session prompt in a single call."""

    prompt: str
    fragments: list[ReasoningFragment] = field(default_factory=list)


AnalysisRequest = FragmentRequest | MegaBatchRequest


@dataclass
class _QueuedFragment:
    fragment: ReasoningFragment
    future: asyncio.Future


class BatchAnalysisClient:
    """Analyzes fragments with as few LLM calls as possible."""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        batch_size: int | None = None,
        batch_delay: float | None = None,
    ):
        settings = get_settings()
        self._llm = llm_client
        self.batch_size = batch_size or settings.analysis_batch_size
        self.batch_delay = batch_delay if batch_delay is not None else settings.analysis_batch_delay
        self._queue: list[_QueuedFragment] = []
        self._flush_task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = get_llm_client()
        return self._llm

    @property
    def pending_count(self) -> int:
        """Fragments queued but not yet sent."""
        return len(self._queue)

    async def submit(self, request: AnalysisRequest) -> FragmentAnalysis | list[FragmentAnalysis]:
        """Dispatch a tagged request to the matching path."""
        if isinstance(request, FragmentRequest):
            return await self.analyze(request.fragment)
        if isinstance(request, MegaBatchRequest):
            return await self.analyze_mega_batch(request.prompt, request.fragments)
        raise TypeError(f"Unsupported analysis request: {type(request).__name__}")

    async def analyze_batch(self, fragments: list[ReasoningFragment]) -> list[FragmentAnalysis]:
        """Analyze fragments in one LLM call. Never raises."""
        if not fragments:
            return []

        try:
            response = await self.llm.complete(
                build_batch_prompt(fragments),
                operation="batch_analysis",
            )
        except Exception as e:
            logger.error(
                f"Batch analysis of {len(fragments)} fragments failed: {type(e).__name__}: {e}"
            )
            ANALYSIS_FALLBACKS.labels(path="batch", reason="llm_error").inc(len(fragments))
            return [fallback_analyzer.analyze(f) for f in fragments]

        payload = extract_json_object(response, context="batch_analysis")
        return unpack_analyses(payload, fragments, path="batch")

    async def complete_mega_batch(self, prompt: str) -> dict:
        """Send a cross-session prompt and return the parsed payload.

        Returns {"analyses": []} when the call or parsing fails.
        """
        try:
            response = await self.llm.complete(prompt, operation="mega_batch")
        except Exception as e:
            logger.error(f"Mega-batch call failed: {type(e).__name__}: {e}")
            return {"analyses": []}

        payload = extract_json_object(response, context="mega_batch")
        if payload is None:
            return {"analyses": []}

        analyses = payload.get("analyses")
        logger.info(
            f"Mega-batch processed: {len(analyses) if isinstance(analyses, list) else 0} analyses"
        )
        return payload

    async def analyze_mega_batch(
        self,
        prompt: str,
        fragments: list[ReasoningFragment],
    ) -> list[FragmentAnalysis]:
        """Analyze fragments numbered by position in a pre-built prompt. Never raises."""
        if not fragments:
            return []
        payload = await self.complete_mega_batch(prompt)
        if not payload.get("analyses"):
            ANALYSIS_FALLBACKS.labels(path="mega_batch", reason="llm_error").inc(len(fragments))
            return [fallback_analyzer.analyze(f) for f in fragments]
        return unpack_analyses(payload, fragments, path="mega_batch")

    async def analyze(self, fragment: ReasoningFragment) -> FragmentAnalysis:
        """Queue a fragment and wait for its analysis."""
        future = asyncio.get_running_loop().create_future()
        self._queue.append(_QueuedFragment(fragment=fragment, future=future))

        if len(self._queue) >= self.batch_size:
            logger.debug(f"Analysis queue reached batch size ({len(self._queue)}), flushing")
            self._flush_now()
        elif self._flush_task is None or self._flush_task.done():
            self._schedule_flush()

        return await future

    def _schedule_flush(self):
        """Flush after batch_delay, counted from the first unflushed item."""

        async def delayed_flush():
            try:
                await asyncio.sleep(self.batch_delay)
                self._flush_task = None
                if self._queue:
                    logger.debug(f"Analysis queue timeout flush ({len(self._queue)} fragments)")
                    self._flush_now()
            except asyncio.CancelledError:
                pass

        self._flush_task = asyncio.create_task(delayed_flush())

    def _flush_now(self):
        """Take the whole queue and analyze it in the background."""
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None

        batch = self._queue.copy()
        self._queue.clear()
        if not batch:
            return

        task = asyncio.create_task(self._process_batch(batch))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _process_batch(self, batch: list[_QueuedFragment]):
        try:
            analyses = await self.analyze_batch([item.fragment for item in batch])
        except Exception as e:
            logger.error(f"Unexpected error in batch analysis: {e}")
            analyses = [fallback_analyzer.analyze(item.fragment) for item in batch]

        for item, analysis in zip(batch, analyses):
            if not item.future.done():
                item.future.set_result(analysis)

    async def drain(self):
        """Flush whatever is queued and wait for every in-flight batch."""
        self._flush_now()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)


_batch_analysis_client: BatchAnalysisClient | None = None


def get_batch_analysis_client() -> BatchAnalysisClient:
    """Get the batch analysis client singleton."""
    global _batch_analysis_client
    if _batch_analysis_client is None:
        _batch_analysis_client = BatchAnalysisClient()
    return _batch_analysis_client
