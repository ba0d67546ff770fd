"""Test data factories for Pooled Reason API tests.

These factories create realistic fragments, agent steps and graph records.
"""

from typing import Optional

from models.fragments import FragmentKind, ReasoningFragment, make_fragment_id
from models.schemas import AgentStep


class FragmentFactory:
    """Factory for creating reasoning fragments."""

    TEXTS = {
        FragmentKind.MEMORY: "Opened the airline homepage and located the flight search form",
        FragmentKind.EVALUATION: "Success - the search form accepted the departure city",
        FragmentKind.GOAL: "Select the return date and submit the flight search",
        FragmentKind.ACTION: '{"click_element": {"index": 12}}',
    }

    @classmethod
    def create(
        cls,
        session_id: str = "session-1",
        step_number: int = 1,
        kind: FragmentKind = FragmentKind.MEMORY,
        index: int = 0,
        text: Optional[str] = None,
        task_id: Optional[str] = None,
        url: Optional[str] = "https://example-airline.com",
    ) -> ReasoningFragment:
        return ReasoningFragment(
            id=make_fragment_id(kind, session_id, step_number, index),
            text=text or cls.TEXTS[kind],
            kind=kind,
            session_id=session_id,
            task_id=task_id or f"task-{session_id}",
            step_number=step_number,
            url=url,
        )

    @classmethod
    def create_step_set(cls, session_id: str = "session-1", step_number: int = 1) -> list[ReasoningFragment]:
        """Memory, evaluation and goal fragments for one step."""
        return [
            cls.create(session_id=session_id, step_number=step_number, kind=kind)
            for kind in (FragmentKind.MEMORY, FragmentKind.EVALUATION, FragmentKind.GOAL)
        ]


class AgentStepFactory:
    """Factory for creating agent steps as reported by the automation API."""

    @classmethod
    def create(
        cls,
        number: Optional[int] = 1,
        memory: Optional[str] = "Searching for direct flights from Boston to Denver",
        evaluation: Optional[str] = "Success - results page loaded",
        next_goal: Optional[str] = "Sort the results by price",
        actions: Optional[list] = None,
        url: Optional[str] = "https://example-airline.com/results",
    ) -> AgentStep:
        return AgentStep(
            number=number,
            memory=memory,
            evaluationPreviousGoal=evaluation,
            nextGoal=next_goal,
            actions=actions if actions is not None else [],
            url=url,
        )

    @classmethod
    def create_batch(cls, count: int, **kwargs) -> list[AgentStep]:
        """Consecutively numbered steps starting at 1."""
        return [cls.create(number=i + 1, **kwargs) for i in range(count)]


class GraphRecordFactory:
    """Factory for (rf, r, other) rows as returned by the graph queries."""

    @classmethod
    def fragment(cls, fragment_id: str, text: str = "Looking for the login button", concepts=None) -> dict:
        return {
            "id": fragment_id,
            "text": text,
            "type": fragment_id.split("_", 1)[0],
            "sessionId": "session-1",
            "concepts": concepts or [],
        }

    @classmethod
    def concept_row(cls, fragment: dict, name: str) -> dict:
        return {
            "rf": fragment,
            "rel_type": "CONTAINS_CONCEPT",
            "rel_props": {},
            "other": {"id": f"concept_{name}", "name": name},
            "other_labels": ["Concept"],
        }

    @classmethod
    def relationship_row(cls, fragment: dict, other: dict, rel_type: str, strength: float) -> dict:
        return {
            "rf": fragment,
            "rel_type": rel_type,
            "rel_props": {"strength": strength},
            "other": other,
            "other_labels": ["ReasonFragment"],
        }

    @classmethod
    def lone_row(cls, fragment: dict) -> dict:
        return {"rf": fragment, "rel_type": None, "rel_props": None, "other": None, "other_labels": None}
