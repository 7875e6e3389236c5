import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

# keep a reference so running tasks aren't garbage collected mid-flight
running_tasks: set[asyncio.Task] = set()


def create_handled_task(
    coroutine: Awaitable[T],
    *,
    message: str,
    message_args: tuple[Any, ...] = (),
    error_handler: Optional[Callable] = None,
    name: Optional[str] = None,
) -> asyncio.Task[T]:
    """
    Wrap a normal asyncio task with facilities that log the error on failure,
    and optionally react to it

    args:
      message (str): log error message
      message_args (tuple[Any, ...]): log message args
      error_handler (Callable): coroutine function to call upon task failure
      name (str): task name, shows up in the logs

    Returns:
      asyncio.Task: Task with error handler attached
    """
    task = asyncio.create_task(coroutine, name=name)
    if error_handler and not asyncio.iscoroutinefunction(error_handler):
        logging.warning(
            "error handler %s is not a coroutine function, it will be called synchronously",
            error_handler,
        )
    running_tasks.add(task)
    task.add_done_callback(running_tasks.discard)
    task.add_done_callback(
        functools.partial(
            _handle_task_result,
            error_handler=error_handler,
            message=message,
            message_args=message_args,
        )
    )
    return task


def _handle_task_result(
    task: asyncio.Task,
    *,
    message: str,
    message_args: tuple[Any, ...] = (),
    error_handler: Optional[Callable] = None,
) -> None:
    """
    Done callback which logs the error and hands it to the error handler, if any
    """
    name = task.get_name()
    try:
        result = task.result()
        logging.debug("result of task %s was %s", name, result)
    except asyncio.CancelledError:
        logging.info("task %s was cancelled", name)
    except Exception:  # pylint: disable=broad-except
        logging.exception(message, *message_args)
        if callable(error_handler):
            logging.info("error handler invoking for task %s", name)
            if asyncio.iscoroutinefunction(error_handler):
                create_handled_task(
                    error_handler(), message="error handler for %s failed", message_args=(name,)
                )
            else:
                error_handler()


async def cancel_all() -> None:
    for task in list(running_tasks):
        task.cancel()
    await asyncio.gather(*running_tasks, return_exceptions=True)
