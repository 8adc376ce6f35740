"""Run log utilities that keep both the database and SSE clients in sync."""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, AsyncIterator, Awaitable, Dict, Set

from sqlalchemy.orm import Session

from .models import RunLog

_END_OF_STREAM: Dict[str, Any] = {"event": "end"}


class LogStreamBroker:
    """In-memory broker that fans out run log entries to SSE consumers.

    Every subscriber owns its queue so two clients following the same run
    both receive every entry.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[uuid.UUID, Set["asyncio.Queue[Dict[str, Any]]"]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, run_id: uuid.UUID) -> "asyncio.Queue[Dict[str, Any]]":
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        async with self._lock:
            self._subscribers.setdefault(run_id, set()).add(queue)
        return queue

    async def unsubscribe(
        self, run_id: uuid.UUID, queue: "asyncio.Queue[Dict[str, Any]]"
    ) -> None:
        async with self._lock:
            queues = self._subscribers.get(run_id)
            if queues is None:
                return
            queues.discard(queue)
            if not queues:
                del self._subscribers[run_id]

    async def publish(self, run_id: uuid.UUID, payload: Dict[str, Any]) -> None:
        async with self._lock:
            queues = list(self._subscribers.get(run_id, ()))
        for queue in queues:
            queue.put_nowait(payload)

    async def close(self, run_id: uuid.UUID) -> None:
        """Signal subscribers that no further entries will arrive for ``run_id``."""

        await self.publish(run_id, _END_OF_STREAM)

    async def stream(
        self, run_id: uuid.UUID, queue: "asyncio.Queue[Dict[str, Any]]"
    ) -> AsyncIterator[Dict[str, Any]]:
        try:
            while True:
                item = await queue.get()
                if item is _END_OF_STREAM:
                    return
                yield item
        finally:
            await self.unsubscribe(run_id, queue)


broker = LogStreamBroker()


# the event loop only keeps weak references to tasks
_background_tasks: Set["asyncio.Task[None]"] = set()


def _run_async(coro: Awaitable[None]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(coro)
    else:
        task = loop.create_task(coro)
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)


def serialize_log(entry: RunLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "run_id": str(entry.run_id),
        "message": entry.message,
        "level": entry.level,
        "metadata": entry.data or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def emit_log(
    session: Session,
    run_id: uuid.UUID,
    message: str,
    *,
    level: str = "info",
    metadata: Dict[str, Any] | None = None,
    final: bool = False,
) -> RunLog:
    """Persist a run log entry and notify SSE listeners.

    ``final`` closes the live stream for the run after this entry.
    """

    entry = RunLog(
        id=uuid.uuid4(),
        run_id=run_id,
        message=message,
        level=level,
        data=metadata or {},
    )
    session.add(entry)
    session.commit()

    _run_async(broker.publish(run_id, serialize_log(entry)))
    if final:
        _run_async(broker.close(run_id))
    return entry

