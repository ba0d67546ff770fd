"""Reasoning fragments and the relationships discovered between them."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Optional


class FragmentKind(Enum):
    """Which part of an agent step a fragment was taken from."""

    MEMORY = "memory"  # what the agent remembers so far
    EVALUATION = "evaluation"  # how it judged the previous goal
    GOAL = "goal"  # what it plans next
    ACTION = "action"  # one concrete action it took


class RelationshipType(Enum):
    """Semantic relationship types between fragments."""

    CAUSAL = "causal"
    TEMPORAL = "temporal"
    CONCEPTUAL = "conceptual"
    DEPENDENCY = "dependency"
    CONTRADICTION = "contradiction"
    SIMILARITY = "similarity"

    @property
    def neo4j_type(self) -> str:
        """Upper-case relationship type used in Cypher."""
        return self.value.upper()

    @classmethod
    def parse(cls, value: str) -> Optional["RelationshipType"]:
        """Parse a type name case-insensitively, None if unknown."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


# Whitelist of relationship types allowed into Cypher string interpolation
VALID_RELATIONSHIP_TYPES = frozenset(t.neo4j_type for t in RelationshipType)


def make_fragment_id(kind: FragmentKind, session_id: str, step_number: int, index: int = 0) -> str:
    """Deterministic fragment id, stable across re-ingestion of the same step."""
    return f"{kind.value}_{session_id}_{step_number}_{index}"


def concept_id(name: str) -> str:
    """Concept node id derived from its name."""
    return "concept_" + "_".join(name.lower().split())


@dataclass
class FragmentAnalysis:
    """Result of analyzing one fragment, by the LLM or the keyword fallback."""

    concepts: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    summary: str = ""
    insights: list[str] = field(default_factory=list)
    relationships: list[dict] = field(default_factory=list)
    source: str = "llm"  # "llm" or "fallback"

    @classmethod
    def from_dict(cls, data: dict) -> "FragmentAnalysis":
        """Build from an LLM analysis item, tolerating missing or mistyped fields."""

        def _str_list(value) -> list[str]:
            if not isinstance(value, list):
                return []
            return [str(v).strip() for v in value if str(v).strip()]

        relationships = data.get("relationships")
        summary = data.get("summary")
        return cls(
            concepts=_str_list(data.get("concepts")),
            entities=_str_list(data.get("entities")),
            summary=summary if isinstance(summary, str) else "",
            insights=_str_list(data.get("keyInsights", data.get("insights"))),
            relationships=[r for r in relationships if isinstance(r, dict)]
            if isinstance(relationships, list)
            else [],
        )


@dataclass
class ReasoningFragment:
    """One unit of an agent's reasoning, taken from a single step."""

    id: str
    text: str
    kind: FragmentKind
    session_id: str
    task_id: str
    step_number: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    url: Optional[str] = None
    concepts: list[str] = field(default_factory=list)
    semantic_vector: list[float] = field(default_factory=list)
    analysis_source: Optional[str] = None  # "llm" or "fallback" once analyzed

    @property
    def is_analyzed(self) -> bool:
        return self.analysis_source is not None

    def apply_analysis(
        self,
        analysis: FragmentAnalysis,
        semantic_vector: list[float],
    ) -> None:
        """Attach concepts and vector exactly once.

        Raises:
            ValueError: If the fragment was already analyzed
        """
        if self.is_analyzed:
            raise ValueError(
                f"Fragment {self.id} already analyzed by {self.analysis_source}"
            )
        self.concepts = list(analysis.concepts)
        self.semantic_vector = list(semantic_vector)
        self.analysis_source = analysis.source

    def to_properties(self) -> dict:
        """Node properties as stored in the graph."""
        return {
            "id": self.id,
            "text": self.text,
            "type": self.kind.value,
            "sessionId": self.session_id,
            "taskId": self.task_id,
            "stepNumber": self.step_number,
            "timestamp": self.timestamp.isoformat(),
            "url": self.url,
            "concepts": self.concepts,
            "semanticVector": self.semantic_vector,
            "analysisSource": self.analysis_source,
        }


@dataclass
class Relationship:
    """A typed, weighted edge between two fragments."""

    from_id: str
    to_id: str
    type: RelationshipType
    strength: float
    explanation: str = ""

    def __post_init__(self):
        self.strength = max(0.0, min(1.0, float(self.strength)))


@dataclass
class PooledEntry:
    """A fragment waiting in a step pool."""

    session_id: str
    fragment: ReasoningFragment
    enqueued_at: float
