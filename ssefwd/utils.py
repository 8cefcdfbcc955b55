import asyncio
from typing import Any, Awaitable, Tuple


async def wait_unless_stopped(
    aw: Awaitable[Any], stop_event: asyncio.Event
) -> Tuple[bool, Any]:
    """
    Await ``aw`` unless ``stop_event`` is set first.

    The awaitable is cancelled if the stop event wins, so a stop request
    never blocks behind a queue or a sleep.

    Args:
        aw: Coroutine or future to wait for
        stop_event: Cooperative stop signal

    Returns:
        Tuple of (completed, result). ``result`` is None when not completed.
    """
    task = asyncio.ensure_future(aw)
    if stop_event.is_set():
        task.cancel()
        return False, None

    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for pending in (task, stopper):
            if not pending.done():
                pending.cancel()

    if task.done() and not task.cancelled():
        return True, task.result()
    return False, None
