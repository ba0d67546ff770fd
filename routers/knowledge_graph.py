"""Knowledge graph API endpoints.

Steps posted to /steps go through the cross-session step pool and are
analyzed in the background; /steps/direct processes one session's steps
right away and waits for the result.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from neo4j.exceptions import DriverError, Neo4jError, ServiceUnavailable

from models.schemas import (
    IngestStepsRequest,
    IngestStepsResponse,
    PooledGraph,
    SessionGraph,
    SessionInsights,
    SimilarFragment,
    StepPoolStats,
)
from services.knowledge_graph import KnowledgeGraphService, get_knowledge_graph_service
from utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/pooled", response_model=PooledGraph)
async def get_pooled_graph(
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    """Every fragment across all sessions, with concept links and stats."""
    return await service.get_pooled_graph()


@router.get("/sessions/{session_id}", response_model=SessionGraph)
async def get_session_graph(
    session_id: str,
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    return await service.get_session_graph(session_id)


@router.get("/sessions/{session_id}/insights", response_model=SessionInsights)
async def get_session_insights(
    session_id: str,
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    """Key patterns, concept clusters and recommendations for one session."""
    return await service.generate_insights(session_id)


@router.get("/similar", response_model=list[SimilarFragment])
async def find_similar(
    text: str = Query(..., min_length=1, max_length=2000),
    session_id: Optional[str] = Query(None, max_length=200),
    limit: int = Query(5, ge=1, le=50),
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    """Fragments whose text overlaps the given text."""
    return await service.find_similar_reasoning_traces(text, session_id, limit)


@router.post("/steps", response_model=IngestStepsResponse)
async def ingest_steps(
    request: IngestStepsRequest,
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    """Queue agent steps for pooled analysis.

    Returns as soon as the fragments are pooled; analysis and persistence
    happen when the step's pool flushes.
    """
    await service.ingest_steps(request.steps, request.session_id, request.task_id)
    return IngestStepsResponse(
        success=True,
        message=f"Queued {len(request.steps)} steps for session {request.session_id}",
    )


@router.post("/steps/direct", response_model=IngestStepsResponse)
async def process_steps_direct(
    request: IngestStepsRequest,
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    """Analyze and persist one session's steps without pooling."""
    persisted = await service.process_steps(
        request.steps, request.session_id, request.task_id
    )
    return IngestStepsResponse(
        success=True,
        message=f"Processed {persisted} reasoning fragments",
    )


@router.get("/pool", response_model=StepPoolStats)
async def get_pool_stats(
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    return service.step_pool.get_stats()


@router.post("/initialize", response_model=IngestStepsResponse)
async def initialize(
    service: KnowledgeGraphService = Depends(get_knowledge_graph_service),
):
    """Verify the database connection and create the graph schema."""
    try:
        await service.initialize()
    except (ConnectionError, ServiceUnavailable) as e:
        logger.error(f"Knowledge graph initialization failed: {e}")
        raise HTTPException(status_code=503, detail="Graph database unavailable")
    except (DriverError, Neo4jError) as e:
        logger.error(f"Knowledge graph schema creation failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to initialize graph schema")

    return IngestStepsResponse(success=True, message="Knowledge graph initialized")
