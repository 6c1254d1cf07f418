"""
Helpers for orchestrating asyncio tasks.

Only the tasks are supported, not arbitrary awaitables: the callers need
to cancel what they wait for, which only the tasks can do.
"""
import asyncio
from collections.abc import Callable, Collection, Coroutine
from typing import TYPE_CHECKING, Any

from crscale._cogs.helpers import typedefs

# At runtime, the asyncio classes are not subscriptable in all supported versions.
if TYPE_CHECKING:
    Future = asyncio.Future[Any]
    Task = asyncio.Task[Any]
else:
    Future = asyncio.Future
    Task = asyncio.Task


async def cancel_coro(
        coro: Coroutine[Any, Any, Any],
        *,
        name: str | None = None,
) -> None:
    """
    Dispose of a coroutine that was never started, with no RuntimeWarnings.
    """
    try:
        coro.close()
    except AttributeError:  # not a native coroutine, but something coroutine-like.
        task = asyncio.create_task(coro, name=name)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def guard(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        finishable: bool = False,
        cancellable: bool = False,
        logger: typedefs.Logger | None = None,
) -> None:
    """
    Log the outcome of a task that is expected to run forever.

    The failures are always logged. The cancellations are logged unless
    the task is ``cancellable``; the normal exits unless it is ``finishable``.
    The outcome is propagated to the awaiter as is.
    """
    title = name.capitalize()
    try:
        await coro
    except asyncio.CancelledError:
        if logger is not None and not cancellable:
            logger.debug(f"{title} is cancelled.")
        raise
    except Exception as e:
        if logger is not None:
            logger.exception(f"{title} has failed: {e}")
        raise
    if logger is not None and not finishable:
        logger.warning(f"{title} has finished unexpectedly.")


def create_guarded_task(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        finishable: bool = False,
        cancellable: bool = False,
        logger: typedefs.Logger | None = None,
) -> Task:
    """ Start a named task, guarded by :func:`guard`. """
    guarded = guard(coro, name, finishable=finishable, cancellable=cancellable, logger=logger)
    return asyncio.create_task(guarded, name=name)


async def wait(
        tasks: Collection[Task],
        *,
        timeout: float | None = None,
        return_when: Any = asyncio.ALL_COMPLETED,
) -> tuple[set[Task], set[Task]]:
    """ Same as :func:`asyncio.wait`, but an empty collection is not an error. """
    if not tasks:
        return set(), set()
    return await asyncio.wait(tasks, timeout=timeout, return_when=return_when)


async def stop(
        tasks: Collection[Task],
        *,
        title: str,
        quiet: bool = False,
        cancelled: bool = False,
        interval: float | None = None,
        logger: typedefs.Logger | None = None,
) -> tuple[set[Task], set[Task]]:
    """
    Cancel the tasks and wait until all of them are done.

    There is no overall timeout: the stopping ends either when all the tasks
    are done, or when the stopping itself is cancelled. With ``interval``,
    the tasks still running are reported every so many seconds. In the quiet
    mode, only such stuck tasks are reported, not the normal stopping.

    ``cancelled`` only affects the wording: it marks the stopping as done
    while the current task is being cancelled already.
    """
    if not tasks:
        if logger is not None and not quiet:
            logger.debug(f"{title.capitalize()} tasks stopping is skipped: no tasks given.")
        return set(), set()

    def report(pending: Collection[Task], reason: str, rounds: int) -> None:
        if logger is not None and (not quiet or pending or rounds > 1):
            state = 'are not stopped' if pending else 'are stopped'
            logger.debug(f"{title.capitalize()} tasks {state}: {reason}; tasks left: {set(pending)!r}")

    for task in tasks:
        task.cancel()

    rounds = 0
    done: set[Task] = set()
    pending: set[Task] = set(tasks)
    while pending:
        rounds += 1
        try:
            done_now, pending = await wait(pending, timeout=interval)
        except asyncio.CancelledError:
            pending = {task for task in tasks if not task.done()}
            report(pending, 'double-cancelling at stopping' if cancelled else 'cancelling at stopping', rounds)
            raise
        report(pending, 'cancelling normally' if cancelled else 'finishing normally', rounds)
        done |= done_now
    return done, pending


async def reraise(tasks: Collection[Task]) -> None:
    """ Re-raise the first error of the finished tasks, if any; ignore cancellations. """
    for task in tasks:
        if not task.cancelled():
            task.result()


async def all_tasks(
        *,
        ignored: Collection[Task] = frozenset(),
) -> Collection[Task]:
    """ All tasks of the current event loop, except the current and the ignored ones. """
    current = asyncio.current_task()
    return {task for task in asyncio.all_tasks() if task is not current and task not in ignored}


class Scheduler:
    """
    A runner of "fire-and-forget" coroutines with a limited running capacity.

    The coroutines are wrapped into tasks as soon as they are spawned, but they
    start their actual work only when a running slot is free, in the order
    of spawning. Nothing needs to await them: the scheduler tracks them until
    they are done, and reports their failures to the exception handler.
    A coroutine that is cancelled before it gets a slot is closed unstarted.

    It is used in the dispatcher to run the per-object workers: this bounds
    the number of objects being reconciled in parallel.
    """

    def __init__(
            self,
            *,
            limit: int | None = None,
            exception_handler: Callable[[BaseException], None] | None = None,
    ) -> None:
        super().__init__()
        self._closed = False
        self._exception_handler = exception_handler
        self._semaphore = asyncio.Semaphore(limit) if limit is not None else None
        self._tasks: set[Task] = set()

    def empty(self) -> bool:
        """ Check if the scheduler has nothing to do. """
        return not self._tasks

    async def spawn(
            self,
            coro: Coroutine[Any, Any, Any],
            *,
            name: str | None = None,
    ) -> None:
        """
        Take the coroutine for ownership and eventual execution.

        A closed scheduler disposes of the coroutine and raises an error.
        """
        if self._closed:
            await cancel_coro(coro=coro, name=name)
            raise RuntimeError("Cannot add new coroutines to a closed and inactive scheduler.")
        task = asyncio.create_task(self._run(coro), name=name)
        task.add_done_callback(self._task_done_callback)
        self._tasks.add(task)

    async def close(self) -> None:
        """ Stop accepting new coroutines; cancel both the running and the pending ones. """
        self._closed = True
        await stop(set(self._tasks), title="scheduled", quiet=True)

    async def _run(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._semaphore is None:
            await coro
            return

        try:
            await self._semaphore.acquire()
        except asyncio.CancelledError:
            await cancel_coro(coro)
            raise
        try:
            await coro
        finally:
            self._semaphore.release()

    def _task_done_callback(self, task: Task) -> None:
        self._tasks.discard(task)
        exc = None if task.cancelled() else task.exception()
        if exc is not None and self._exception_handler is not None:
            self._exception_handler(exc)
