"""Event router — bounded, per-user ordered execution of blocking handlers.

Contract:
- Events for one user run one at a time, in arrival order
- Events for different users, and payment callbacks, run concurrently
- At most ``max_concurrency`` handlers run at once, each in a worker thread
- A failing handler is logged and never stops the queue behind it

submit_for_user() and submit() must be called from the event loop thread
(FastAPI route handlers are).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

_DEFAULT_MAX_CONCURRENCY = 16


class EventRouter:
    def __init__(self, max_concurrency: int = _DEFAULT_MAX_CONCURRENCY):
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._queues: dict[str, asyncio.Queue] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def submit_for_user(self, user_id: str, fn: Callable[..., Any], *args: Any) -> None:
        """Queue ``fn(*args)`` behind the user's earlier events."""
        self._check_open()
        queue = self._queues.get(user_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[user_id] = queue
            self._track(asyncio.create_task(self._drain(user_id, queue)))
        queue.put_nowait((fn, args))

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run ``fn(*args)`` independently of any user queue."""
        self._check_open()
        self._track(asyncio.create_task(self._run(fn, args, "callback")))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every submitted event has been handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop accepting events and give in-flight work ``timeout`` seconds."""
        self._closed = True
        if not self._tasks:
            return
        try:
            await asyncio.wait_for(self.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Event router shutdown timed out with %d tasks pending", len(self._tasks))
            for task in list(self._tasks):
                task.cancel()

    async def _drain(self, user_id: str, queue: asyncio.Queue) -> None:
        # No await between the empty check and the pop, so a new event
        # either lands in this queue before it is dropped or starts a new one.
        try:
            while True:
                try:
                    fn, args = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await self._run(fn, args, f"user {user_id}")
        finally:
            if self._queues.get(user_id) is queue:
                del self._queues[user_id]

    async def _run(self, fn: Callable[..., Any], args: tuple, label: str) -> None:
        async with self._semaphore:
            try:
                await asyncio.to_thread(fn, *args)
            except Exception:
                logger.exception("Event handler %s failed (%s)", getattr(fn, "__name__", fn), label)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("event router is shut down")
