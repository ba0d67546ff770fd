"""LLM-backed discovery of typed relationships between fragments."""

from config import get_settings
from models.fragments import ReasoningFragment, Relationship, RelationshipType
from services.llm import LLMClient, get_llm_client
from utils.json_extraction import extract_json_object
from utils.logging import get_logger
from utils.metrics import RELATIONSHIPS_FOUND

logger = get_logger(__name__)


RELATIONSHIP_PROMPT = """Analyze relationships between these {count} reasoning fragments from browser automation.
Be selective - only identify STRONG relationships (strength > {threshold}).

{fragments}

Relationship types:
- CAUSAL: One fragment directly causes another
- TEMPORAL: Clear sequence/ordering
- CONCEPTUAL: Same goal/theme
- DEPENDENCY: One requires another
- CONTRADICTION: The fragments conflict
- SIMILARITY: The fragments express nearly the same reasoning

JSON format:
{{
  "relationships": [
    {{
      "fragmentId1": "id1",
      "fragmentId2": "id2",
      "relationshipType": "CAUSAL|TEMPORAL|CONCEPTUAL|DEPENDENCY|CONTRADICTION|SIMILARITY",
      "strength": 0.8,
      "explanation": "Brief explanation"
    }}
  ]
}}

Only include strong relationships (strength > {threshold}). Respond with valid JSON only."""


def build_relationship_prompt(fragments: list[ReasoningFragment], threshold: float) -> str:
    blocks = "\n\n".join(
        f'Fragment {i + 1} (ID: {f.id}):\nType: {f.kind.value}\nText: "{f.text}"'
        for i, f in enumerate(fragments)
    )
    return RELATIONSHIP_PROMPT.format(
        count=len(fragments), threshold=threshold, fragments=blocks
    )


def _parse_relationship(item: dict, known_ids: set[str], min_strength: float) -> Relationship | None:
    """Validate one relationship item; None if it should be dropped."""
    from_id = item.get("fragmentId1")
    to_id = item.get("fragmentId2")
    if from_id not in known_ids or to_id not in known_ids or from_id == to_id:
        return None

    rel_type = RelationshipType.parse(item.get("relationshipType", ""))
    if rel_type is None:
        return None

    try:
        strength = float(item.get("strength"))
    except (TypeError, ValueError):
        return None
    if strength <= min_strength:
        return None

    explanation = item.get("explanation")
    return Relationship(
        from_id=from_id,
        to_id=to_id,
        type=rel_type,
        strength=strength,
        explanation=explanation if isinstance(explanation, str) else "",
    )


class RelationshipFinder:
    """Asks the LLM which fragments in a small group are related."""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        min_fragments: int | None = None,
        max_fragments: int | None = None,
    ):
        settings = get_settings()
        self._llm = llm_client
        self.min_fragments = min_fragments or settings.relationship_min_fragments
        self.max_fragments = max_fragments or settings.relationship_max_fragments

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = get_llm_client()
        return self._llm

    async def find_relationships(
        self,
        fragments: list[ReasoningFragment],
        min_strength: float,
        scope: str = "pooled",
    ) -> list[Relationship]:
        """Relationships stronger than min_strength. Never raises.

        Groups outside [min_fragments, max_fragments] are skipped without
        an LLM call to keep provider usage bounded.
        """
        count = len(fragments)
        if count < self.min_fragments or count > self.max_fragments:
            logger.info(
                f"Skipping relationship analysis for {count} fragments",
                extra={"min": self.min_fragments, "max": self.max_fragments},
            )
            return []

        try:
            response = await self.llm.complete(
                build_relationship_prompt(fragments, min_strength),
                operation="relationships",
            )
        except Exception as e:
            logger.error(f"Relationship analysis failed: {type(e).__name__}: {e}")
            return []

        payload = extract_json_object(response, context="relationships")
        if payload is None:
            return []

        items = payload.get("relationships")
        if not isinstance(items, list):
            return []

        known_ids = {f.id for f in fragments}
        relationships = []
        for item in items:
            if not isinstance(item, dict):
                continue
            relationship = _parse_relationship(item, known_ids, min_strength)
            if relationship is not None:
                relationships.append(relationship)

        RELATIONSHIPS_FOUND.labels(scope=scope).inc(len(relationships))
        logger.info(
            f"Found {len(relationships)} relationships among {count} fragments",
            extra={"scope": scope, "candidates": len(items)},
        )
        return relationships
