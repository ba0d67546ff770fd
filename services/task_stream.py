"""Feed a followed automation task's steps into the knowledge graph."""

import asyncio

from services.automation import (
    AutomationAPIError,
    BrowserAutomationClient,
    get_automation_client,
)
from services.knowledge_graph import KnowledgeGraphService, get_knowledge_graph_service
from utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class TaskStreamIngestor:
    """Follows automation tasks and forwards each new step exactly once."""

    def __init__(
        self,
        automation_client: BrowserAutomationClient,
        knowledge_graph: KnowledgeGraphService,
    ):
        self.automation_client = automation_client
        self.knowledge_graph = knowledge_graph
        self._followers: dict[str, asyncio.Task] = {}

    async def follow(self, task_id: str, session_id: str) -> int:
        """Stream a task to completion.

        Returns:
            Number of steps forwarded
        """
        forwarded = 0
        async with LogContext(session_id=session_id, task_id=task_id):
            try:
                async for message in self.automation_client.stream_task(task_id):
                    if message.data is None:
                        continue
                    new_steps = message.data.steps[forwarded:]
                    if not new_steps:
                        continue
                    await self.knowledge_graph.ingest_steps(new_steps, session_id, task_id)
                    forwarded += len(new_steps)
                    logger.debug(f"Forwarded {len(new_steps)} steps from task {task_id}")
            except AutomationAPIError as e:
                logger.error(f"Stopped following task {task_id} after {forwarded} steps: {e}")

            logger.info(f"Finished following task {task_id}: {forwarded} steps forwarded")
        return forwarded

    def start(self, task_id: str, session_id: str) -> asyncio.Task:
        """Follow a task in the background. Returns the existing follower if any."""
        existing = self._followers.get(task_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self.follow(task_id, session_id))
        self._followers[task_id] = task
        task.add_done_callback(lambda t: self._forget(task_id, t))
        return task

    def _forget(self, task_id: str, task: asyncio.Task) -> None:
        if self._followers.get(task_id) is task:
            del self._followers[task_id]

    @property
    def active_followers(self) -> list[str]:
        return list(self._followers)

    async def shutdown(self) -> None:
        """Cancel every follower."""
        followers = list(self._followers.values())
        for task in followers:
            task.cancel()
        if followers:
            await asyncio.gather(*followers, return_exceptions=True)
        self._followers.clear()
        logger.info(f"Stopped {len(followers)} task followers")


_task_stream_ingestor: TaskStreamIngestor | None = None


def get_task_stream_ingestor() -> TaskStreamIngestor:
    """Get the task follower singleton. Raises ValueError if automation is unconfigured."""
    global _task_stream_ingestor
    if _task_stream_ingestor is None:
        _task_stream_ingestor = TaskStreamIngestor(
            get_automation_client(), get_knowledge_graph_service()
        )
    return _task_stream_ingestor


async def close_task_stream_ingestor() -> None:
    global _task_stream_ingestor
    if _task_stream_ingestor is not None:
        await _task_stream_ingestor.shutdown()
        _task_stream_ingestor = None
