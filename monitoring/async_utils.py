import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def run_periodic(
    name: str,
    interval_s: float,
    func: Callable[[], Awaitable[object]],
    initial_delay_s: Optional[float] = None,
) -> None:
    """Call ``func`` every ``interval_s`` seconds until cancelled.

    A failing tick is logged and the loop carries on with the next one.
    """
    await asyncio.sleep(interval_s if initial_delay_s is None else initial_delay_s)
    while True:
        try:
            await func()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s failed; will retry in %.0fs", name, interval_s)
        await asyncio.sleep(interval_s)
