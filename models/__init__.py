# Models
from models.fragments import (
    FragmentAnalysis,
    FragmentKind,
    PooledEntry,
    ReasoningFragment,
    Relationship,
    RelationshipType,
)

__all__ = [
    "FragmentAnalysis",
    "FragmentKind",
    "PooledEntry",
    "ReasoningFragment",
    "Relationship",
    "RelationshipType",
]
