"""Browser automation task endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from models.schemas import AutomationSession, CreateTaskRequest, CreateTaskResponse
from services.automation import (
    AutomationAPIError,
    AutomationAuthError,
    AutomationNotFoundError,
    BrowserAutomationClient,
    get_automation_client,
)
from services.task_stream import TaskStreamIngestor, get_task_stream_ingestor
from utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def automation_client() -> BrowserAutomationClient:
    try:
        return get_automation_client()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))


def task_stream_ingestor() -> TaskStreamIngestor:
    try:
        return get_task_stream_ingestor()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))


def _raise_for_automation_error(e: AutomationAPIError, action: str):
    logger.error(f"Failed to {action}: {e}")
    if isinstance(e, AutomationAuthError):
        raise HTTPException(status_code=503, detail="Browser automation is not authorized")
    raise HTTPException(status_code=502, detail=f"Failed to {action}")


@router.post("", response_model=CreateTaskResponse, status_code=201)
async def create_task(
    request: CreateTaskRequest,
    client: BrowserAutomationClient = Depends(automation_client),
    ingestor: TaskStreamIngestor = Depends(task_stream_ingestor),
):
    """Start an automation task and, by default, feed its steps into the graph.

    The live URL is best effort: a session that is not ready yet is
    reported without one.
    """
    try:
        task = await client.create_task(request.task)
    except AutomationAPIError as e:
        _raise_for_automation_error(e, "create automation task")

    live_url = None
    try:
        session = await client.retrieve_session(task.session_id)
        live_url = session.live_url
    except AutomationAPIError as e:
        logger.warning(f"Session {task.session_id} not available yet: {e}")

    if request.follow:
        ingestor.start(task.id, task.session_id)

    return CreateTaskResponse(
        task_id=task.id,
        session_id=task.session_id,
        live_url=live_url,
        status=task.status,
    )


@router.get("/sessions/{session_id}", response_model=AutomationSession)
async def get_session(
    session_id: str,
    client: BrowserAutomationClient = Depends(automation_client),
):
    try:
        return await client.retrieve_session(session_id)
    except AutomationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    except AutomationAPIError as e:
        _raise_for_automation_error(e, f"retrieve session {session_id}")
