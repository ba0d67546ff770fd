"""Client for the Browser Use Cloud task API.

Creates automation tasks, looks up their browser sessions and follows task
progress by polling the task view until it reaches a terminal status.
"""

import asyncio
from typing import AsyncIterator

import httpx

from config import get_settings
from models.schemas import (
    AutomationSession,
    AutomationTask,
    TaskStreamData,
    TaskStreamMessage,
)
from utils.logging import get_logger

logger = get_logger(__name__)

API_KEY_HEADER = "X-Browser-Use-API-Key"


class AutomationAPIError(Exception):
    """Raised when an automation API request fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AutomationAuthError(AutomationAPIError):
    """Raised when the automation API rejects the API key."""


class AutomationNotFoundError(AutomationAPIError):
    """Raised when a task or session does not exist."""


class BrowserAutomationClient:
    """Async client for Browser Use Cloud."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        api_key = api_key if api_key is not None else settings.get_browser_use_api_key()
        if not api_key:
            raise ValueError("BROWSER_USE_API_KEY is required for browser automation")

        self.base_url = (base_url or settings.browser_use_base_url).rstrip("/")
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.task_poll_interval
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={API_KEY_HEADER: api_key, "Content-Type": "application/json"},
            timeout=timeout or settings.browser_use_timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise AutomationAPIError(f"{method} {path} failed: {type(e).__name__}: {e}") from e

        if response.status_code in (401, 403):
            raise AutomationAuthError(
                "Browser Use API rejected the API key", status_code=response.status_code
            )
        if response.status_code == 404:
            raise AutomationNotFoundError(f"{path} not found", status_code=404)
        if response.status_code >= 400:
            raise AutomationAPIError(
                f"{method} {path} returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise AutomationAPIError(f"{method} {path} returned invalid JSON") from e

    async def create_task(self, description: str) -> AutomationTask:
        data = await self._request("POST", "/tasks", json={"task": description})
        data.setdefault("task", description)
        task = AutomationTask.model_validate(data)
        logger.info(
            f"Created automation task {task.id}",
            extra={"task_id": task.id, "session_id": task.session_id},
        )
        return task

    async def get_task(self, task_id: str) -> AutomationTask:
        data = await self._request("GET", f"/tasks/{task_id}")
        return AutomationTask.model_validate(data)

    async def retrieve_session(self, session_id: str) -> AutomationSession:
        data = await self._request("GET", f"/sessions/{session_id}")
        return AutomationSession.model_validate(data)

    async def stream_task(self, task_id: str) -> AsyncIterator[TaskStreamMessage]:
        """Yield a message whenever the task's status or steps change.

        Ends after the message reporting a terminal status. Each call starts
        from scratch, so a dropped follower can resume with the same id.
        """
        last_status = None
        last_step_count = -1
        session: AutomationSession | None = None

        while True:
            task = await self.get_task(task_id)

            if session is None and task.session_id:
                try:
                    session = await self.retrieve_session(task.session_id)
                except AutomationAPIError as e:
                    logger.warning(f"Could not retrieve session {task.session_id}: {e}")

            if task.status != last_status or len(task.steps) != last_step_count:
                last_status = task.status
                last_step_count = len(task.steps)
                yield TaskStreamMessage(
                    status=task.status,
                    data=TaskStreamData(
                        status=task.status,
                        session=session,
                        steps=task.steps,
                        output=task.done_output,
                    ),
                )

            if task.is_terminal:
                logger.info(f"Task {task_id} reached status {task.status}")
                return

            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        await self._client.aclose()


_automation_client: BrowserAutomationClient | None = None


def get_automation_client() -> BrowserAutomationClient:
    """Get the automation client singleton. Raises ValueError if unconfigured."""
    global _automation_client
    if _automation_client is None:
        _automation_client = BrowserAutomationClient()
    return _automation_client


async def close_automation_client() -> None:
    global _automation_client
    if _automation_client is not None:
        await _automation_client.close()
        _automation_client = None
