"""Concept hierarchy and clustering for session insights."""

from dataclasses import dataclass, field

from services.llm import LLMClient, get_llm_client
from utils.json_extraction import extract_json_object
from utils.logging import get_logger

logger = get_logger(__name__)


CONCEPT_HIERARCHY_PROMPT = """Given these concepts extracted from browser automation reasoning:
{concepts}

Create a conceptual hierarchy and cluster related concepts.

Respond in JSON format:
{{
  "hierarchy": [
    {{"parent": "parent_concept", "children": ["child1", "child2"], "level": 1}}
  ],
  "clusters": [
    {{"name": "cluster_name", "concepts": ["concept1", "concept2"], "description": "What this cluster represents"}}
  ]
}}

Focus on grouping related web automation concepts, UI elements, and goals.
Respond with valid JSON only."""


@dataclass
class ConceptHierarchy:
    hierarchy: list[dict] = field(default_factory=list)
    clusters: list[dict] = field(default_factory=list)


class ConceptHierarchyBuilder:
    def __init__(self, llm_client: LLMClient | None = None):
        self._llm = llm_client

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = get_llm_client()
        return self._llm

    async def build(self, concepts: list[str]) -> ConceptHierarchy:
        """Ask the LLM to organize concepts. Empty result on any failure."""
        if not concepts:
            return ConceptHierarchy()

        prompt = CONCEPT_HIERARCHY_PROMPT.format(
            concepts="\n".join(f"- {c}" for c in concepts)
        )
        try:
            response = await self.llm.complete(prompt, operation="concept_hierarchy")
        except Exception as e:
            logger.error(f"Failed to generate concept hierarchy: {e}")
            return ConceptHierarchy()

        payload = extract_json_object(response, context="concept_hierarchy") or {}
        hierarchy = payload.get("hierarchy")
        clusters = payload.get("clusters")
        return ConceptHierarchy(
            hierarchy=[h for h in hierarchy if isinstance(h, dict)] if isinstance(hierarchy, list) else [],
            clusters=[c for c in clusters if isinstance(c, dict)] if isinstance(clusters, list) else [],
        )
