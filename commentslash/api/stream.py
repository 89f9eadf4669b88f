"""Server-Sent Events bridge from the broadcaster to one HTTP client.

Snapshots are published from worker threads, so the listener hands them to
the client's event loop with call_soon_threadsafe. Once that loop is gone the
listener raises and the broadcaster drops it.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from starlette.concurrency import run_in_threadpool

from commentslash.core.log import short_id
from commentslash.core.schemas import QuotaStatus
from commentslash.quota.service import QuotaService

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

PING = ": ping\n\n"


def format_event(status: QuotaStatus) -> str:
    return f"data: {status.model_dump_json(by_alias=True)}\n\n"


def _offer(queue: "asyncio.Queue[QuotaStatus]", status: QuotaStatus) -> None:
    """Enqueue, discarding the oldest pending snapshot when the client lags."""
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(status)


async def quota_events(
    service: QuotaService,
    session_id: str,
    keepalive_seconds: float = 30.0,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    queue_size: int = 16,
) -> AsyncIterator[str]:
    """Yield SSE frames: the current snapshot, one per change, pings when idle.

    Each ping also refreshes the session's presence so an open dashboard is
    not swept as inactive.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[QuotaStatus] = asyncio.Queue(maxsize=queue_size)

    def listener(status: QuotaStatus) -> None:
        loop.call_soon_threadsafe(_offer, queue, status)

    subscription = service.subscribe(listener)
    logger.debug("SSE stream opened for session %s", short_id(session_id))
    try:
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                status = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except TimeoutError:
                await run_in_threadpool(service.touch_activity, session_id)
                yield PING
                continue
            yield format_event(status)
    finally:
        subscription.cancel()
        logger.debug("SSE stream closed for session %s", short_id(session_id))
