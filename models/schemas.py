"""Pydantic schemas for the HTTP surface and the automation API."""

import json
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class AgentStep(BaseModel):
    """One step reported by the browser automation agent."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: Optional[int] = None
    memory: Optional[str] = None
    evaluation_previous_goal: Optional[str] = Field(
        default=None, alias="evaluationPreviousGoal"
    )
    next_goal: Optional[str] = Field(default=None, alias="nextGoal")
    url: Optional[str] = None
    actions: list[str] = Field(default_factory=list)

    @field_validator("actions", mode="before")
    @classmethod
    def coerce_actions(cls, v: Any) -> list[str]:
        """Actions arrive as strings or as structured action objects."""
        if v is None:
            return []
        if not isinstance(v, list):
            v = [v]
        coerced = []
        for action in v:
            if action is None:
                continue
            coerced.append(action if isinstance(action, str) else json.dumps(action, default=str))
        return coerced


class IngestStepsRequest(BaseModel):
    """Request to ingest agent steps for one session."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., min_length=1, max_length=200, alias="sessionId")
    task_id: str = Field(..., min_length=1, max_length=200, alias="taskId")
    steps: list[AgentStep] = Field(..., max_length=500)


class IngestStepsResponse(BaseModel):
    success: bool = True
    message: str = ""


# Graph query schemas
class GraphNode(BaseModel):
    id: str
    label: str
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class GraphRelationship(BaseModel):
    source: str
    target: str
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class SessionGraph(BaseModel):
    """Fragments of one session plus everything they connect to."""

    session_id: str
    nodes: list[GraphNode] = Field(default_factory=list)
    relationships: list[GraphRelationship] = Field(default_factory=list)


class PooledGraphStats(BaseModel):
    sessions: int = 0
    fragments: int = 0
    concepts: int = 0


class PooledGraph(BaseModel):
    """All sessions' fragments, concepts and relationships."""

    nodes: list[GraphNode] = Field(default_factory=list)
    relationships: list[GraphRelationship] = Field(default_factory=list)
    stats: PooledGraphStats = Field(default_factory=PooledGraphStats)


class SimilarFragment(BaseModel):
    id: str
    text: str
    type: str
    session_id: Optional[str] = None
    concepts: list[str] = Field(default_factory=list)


class ConceptCluster(BaseModel):
    name: str
    concepts: list[str] = Field(default_factory=list)
    description: str = ""


class ConceptHierarchyEntry(BaseModel):
    parent: str
    children: list[str] = Field(default_factory=list)
    level: int = 1


class SessionInsights(BaseModel):
    session_id: str
    key_patterns: list[str] = Field(default_factory=list)
    concept_clusters: list[ConceptCluster] = Field(default_factory=list)
    concept_hierarchy: list[ConceptHierarchyEntry] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class StepPoolStats(BaseModel):
    pending_steps: list[int] = Field(default_factory=list)
    pooled_fragments: int = 0
    sessions_by_step: dict[int, int] = Field(default_factory=dict)
    in_flight_flushes: int = 0


# Browser automation schemas
TERMINAL_TASK_STATUSES = frozenset({"finished", "stopped"})


class AutomationSession(BaseModel):
    """Browser session as reported by the automation API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    status: str = "active"
    live_url: Optional[str] = Field(default=None, alias="liveUrl")
    record_url: Optional[str] = Field(default=None, alias="recordUrl")
    public_share_url: Optional[str] = Field(default=None, alias="publicShareUrl")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    finished_at: Optional[str] = Field(default=None, alias="finishedAt")


class AutomationTask(BaseModel):
    """Task view as reported by the automation API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    session_id: str = Field(..., alias="sessionId")
    task: str = ""
    status: str = "started"
    llm: Optional[str] = None
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    finished_at: Optional[str] = Field(default=None, alias="finishedAt")
    done_output: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("output", "doneOutput")
    )
    is_success: Optional[bool] = Field(default=None, alias="isSuccess")
    steps: list[AgentStep] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class TaskStreamData(BaseModel):
    status: str
    session: Optional[AutomationSession] = None
    steps: list[AgentStep] = Field(default_factory=list)
    output: Optional[str] = None


class TaskStreamMessage(BaseModel):
    """One progress update for a followed task."""

    status: str
    data: Optional[TaskStreamData] = None
    error: Optional[str] = None


class CreateTaskRequest(BaseModel):
    task: str = Field(..., min_length=1, max_length=20000)
    follow: bool = True  # feed the task's steps into the knowledge graph


class CreateTaskResponse(BaseModel):
    task_id: str
    session_id: str
    live_url: Optional[str] = None
    status: str
