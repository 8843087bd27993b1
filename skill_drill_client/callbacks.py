import asyncio
import inspect
from typing import Any, Callable, Optional

from loguru import logger


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Call a listener that may be a plain function or a coroutine function"""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def log_task_failure(task: asyncio.Task) -> None:
    """Done-callback for background poll tasks so their failures reach the log"""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error(f"Background task {task.get_name()} failed")


def spawn_task(
    coro, tasks: set[asyncio.Task], name: Optional[str] = None
) -> asyncio.Task:
    """Runs ``coro`` in the background, kept in ``tasks`` until it is done"""
    task = asyncio.get_running_loop().create_task(coro, name=name)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    task.add_done_callback(log_task_failure)
    return task
