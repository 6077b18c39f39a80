import asyncio
from typing import Awaitable, Optional

from replyflow.logging_config import get_logger

logger = get_logger("background")


class BackgroundDispatcher:
    """Fire-and-forget tasks (learning, CRM extraction, telemetry) with their own error boundary.

    Strong references are kept until each task finishes so the event loop cannot
    garbage-collect a running task. Failures are logged and swallowed.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, coro: Awaitable, name: str, context: Optional[dict] = None) -> asyncio.Task:
        task = asyncio.ensure_future(self._guarded(coro, name, context or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Awaitable, name: str, context: dict) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("Background task cancelled", extra={"context": {"task": name, **context}})
            raise
        except Exception as exc:
            logger.error(
                "Background task failed",
                extra={"context": {"task": name, "error": str(exc) or type(exc).__name__, **context}},
                exc_info=True,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks; whatever is still running after `timeout` is cancelled."""
        while self._tasks:
            tasks = list(self._tasks)
            done, still_running = await asyncio.wait(tasks, timeout=timeout)
            if still_running:
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning("Cancelled unfinished background tasks", extra={"context": {"count": len(still_running)}})
                return
