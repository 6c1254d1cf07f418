"""
Watching the objects and dispatching them to the reconciler.

Both the custom resources and their owned workloads are watched
(as in ``kubectl get --watch``), each kind in a separate asyncio task
in the never-ending loop. Every event is mapped to the key of the custom
resource it belongs to: the resource itself, or the workload's owner.
The bodies of the events are not used beyond that: the reconciler reads
the fresh objects on its own.

The keys are then pushed to the per-object queues, which are created and
destroyed dynamically, each with its own worker. A worker handles its object
sequentially, one pass at a time. Other objects are handled in parallel
in their own workers, up to a limit of workers running simultaneously.

To prevent the memory leaks over the long run, the queues and the workers
of each object are destroyed if no new events arrive for some time.

The events arriving in a short time window are coalesced into one pass.
The passes are repeated with a delay if the reconciler asks to (a requeue),
and with an increasing delay if the passes fail (a backoff). A fresh event
supersedes a pending requeue, but does not bypass an active backoff.
"""
import asyncio
import enum
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from typing_extensions import Protocol

from crscale._cogs.aiokits import aiotasks
from crscale._cogs.clients import errors
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import bodies, references
from crscale._core.actions import loggers, throttlers
from crscale._core.engines import stores
from crscale._core.reactor import reconciling

logger = logging.getLogger(__name__)


class Reconciler(Protocol):
    async def __call__(
            self,
            key: references.ObjectKey,
            *,
            logger: typedefs.Logger = ...,
    ) -> reconciling.Result:
        ...


class PassTimeoutError(reconciling.ReconciliationError):
    """ The reconciliation pass has not finished in time. """


# An end-of-stream marker sent from the dispatcher to the workers when closing.
class EOS(enum.Enum):
    token = enum.auto()


if TYPE_CHECKING:
    Backlog = asyncio.Queue[str | EOS]
else:
    Backlog = asyncio.Queue

KeyFn = Callable[[bodies.RawEvent], references.ObjectKey | None]


def get_scalable_key(raw_event: bodies.RawEvent) -> references.ObjectKey | None:
    """ The custom resources are reconciled by their own keys. """
    meta = raw_event['object'].get('metadata', {})
    namespace, name = meta.get('namespace'), meta.get('name')
    if not namespace or not name:
        return None
    return references.ObjectKey(references.NamespaceName(namespace), name)


def get_owner_key(raw_event: bodies.RawEvent) -> references.ObjectKey | None:
    """
    The workloads are reconciled by the keys of their controlling resources.

    The workloads not owned by our custom resources are ignored.
    The owners are always in the same namespace as their dependents.
    """
    body = raw_event['object']
    ref = bodies.get_controller_reference(body)
    if ref is None:
        return None
    if ref.get('kind') != references.SCALABLES.kind:
        return None
    if ref.get('apiVersion') != references.SCALABLES.api_version:
        return None
    namespace = body.get('metadata', {}).get('namespace')
    if not namespace or not ref.get('name'):
        return None
    return references.ObjectKey(references.NamespaceName(namespace), ref['name'])


class Dispatcher:
    """
    The per-object queues & workers, and the delayed re-queueing of objects.

    At most one reconciliation pass runs for every object at a time.
    The number of the objects reconciled in parallel is limited.
    """

    def __init__(
            self,
            *,
            reconciler: Reconciler,
            settings: configuration.OperatorSettings,
    ) -> None:
        super().__init__()
        self._reconciler = reconciler
        self._settings = settings
        self._closed = False
        self._signaller = asyncio.Condition()
        self._scheduler = aiotasks.Scheduler(limit=settings.queueing.worker_limit,
                                             exception_handler=self._exception_handler)
        self._backlogs: dict[references.ObjectKey, Backlog] = {}
        self._throttlers: dict[references.ObjectKey, throttlers.Throttler] = {}
        self._timers: dict[references.ObjectKey, asyncio.TimerHandle] = {}
        self._firing: set[aiotasks.Task] = set()

    @property
    def active_keys(self) -> frozenset[references.ObjectKey]:
        """ The objects with the workers, either running or waiting for events. """
        return frozenset(self._backlogs)

    @property
    def delayed_keys(self) -> frozenset[references.ObjectKey]:
        """ The objects with a pending delayed pass: either a requeue or a backoff. """
        return frozenset(self._timers)

    def is_backing_off(self, key: references.ObjectKey) -> bool:
        throttler = self._throttlers.get(key)
        return throttler is not None and throttler.is_active(asyncio.get_running_loop().time())

    async def enqueue(
            self,
            key: references.ObjectKey,
            *,
            reason: str = 'event',
            backoff: bool = False,
    ) -> None:
        """
        Request a reconciliation pass for the object.

        The object is not reconciled during its backoff: the backoff's own
        delayed pass will read the latest state anyway. Otherwise, a fresh
        request supersedes the pending requeue (if any).
        """
        if self._closed:
            return

        if not backoff and self.is_backing_off(key):
            logger.debug(f"Postponing {key} due to {reason}: backing off after a failure.")
            return

        self._cancel_timer(key)
        try:
            await self._backlogs[key].put(reason)
        except KeyError:
            # Start the worker, and feed it initially. Starting can be moderately slow.
            self._backlogs[key] = asyncio.Queue()
            await self._backlogs[key].put(reason)
            await self._scheduler.spawn(
                name=f'worker for {key}',
                coro=self._worker(key=key),
            )

    async def close(self) -> None:
        """
        Stop the workers, letting them finish their current passes first.
        """
        self._closed = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        await aiotasks.stop(set(self._firing), title='requeueing', quiet=True, logger=logger)

        # Notify all the workers to finish now. Wake them up if they are waiting in the queue-getting.
        for backlog in self._backlogs.values():
            await backlog.put(EOS.token)

        # Wait for the queues to be depleted, but only if there are some workers running.
        # Continue with the tasks termination if the timeout is reached, no matter the queues.
        async with self._signaller:
            try:
                await asyncio.wait_for(
                    self._signaller.wait_for(lambda: not self._backlogs or self._scheduler.empty()),
                    timeout=self._settings.queueing.exit_timeout)
            except asyncio.TimeoutError:
                pass  # if not depleted as configured, proceed with what's left and cancel it

        if self._backlogs:
            logger.warning(f"Unprocessed objects left: {sorted(map(str, self._backlogs))!r}.")

        await self._scheduler.close()

    async def _worker(
            self,
            *,
            key: references.ObjectKey,
    ) -> None:
        """
        A single worker for a single object, each running in its own task.

        The worker is time-limited: it exits as soon as all the object's events
        have been processed and there are no new events for some time of idling.
        A new worker is spawned when (and if) new events arrive.
        """
        queueing = self._settings.queueing
        backlog = self._backlogs[key]
        shouldstop = False
        try:
            while not shouldstop:

                # Save memory by finishing the worker if the backlog is empty for some time.
                try:
                    reason = await asyncio.wait_for(backlog.get(), timeout=queueing.idle_timeout)
                except asyncio.TimeoutError:
                    # The timeout can happen while the queue is filled: depending on the order
                    # in which the waiters are woken up. Double-check the queue and exit only
                    # if it is truly empty. There MUST be NO async/await-code between
                    # "break" and "finally", so that the queue is not populated again.
                    if backlog.empty():
                        break
                    else:
                        continue

                if isinstance(reason, EOS):
                    break

                # Coalesce the events arriving shortly after the first one into one pass.
                reasons = [reason]
                while True:
                    try:
                        more = await asyncio.wait_for(backlog.get(), timeout=queueing.batch_window)
                    except asyncio.TimeoutError:
                        break
                    if isinstance(more, EOS):
                        shouldstop = True
                        break
                    reasons.append(more)

                await self._process(key=key, reasons=reasons)

        finally:
            # Whether an exception or a break or a success, garbage-collect our queue.
            # The queue must not be left in the queue-cache without a corresponding worker.
            self._backlogs.pop(key, None)

            # Notify the closing routine about the changes in the workers' overall state.
            async with self._signaller:
                self._signaller.notify_all()

    async def _process(
            self,
            *,
            key: references.ObjectKey,
            reasons: list[str],
    ) -> None:
        loop = asyncio.get_running_loop()
        object_logger = loggers.ObjectLogger(key=key)
        object_logger.debug(f"Reconciling due to: {', '.join(dict.fromkeys(reasons))}")

        # This very pass supersedes any delayed one: a new delay is decided by this pass' outcome.
        self._cancel_timer(key)

        result: reconciling.Result | None = None
        throttler = self._throttlers.setdefault(key, throttlers.Throttler())
        with throttlers.throttled(
            throttler=throttler,
            delays=self._settings.queueing.error_delays,
            clock=loop.time,
            logger=object_logger,
            expected=(reconciling.ReconciliationError, *errors.TRANSIENT_ERRORS),
        ):
            result = await self._run_pass(key=key, logger=object_logger)

        if throttler.active_until is not None:
            self._schedule(key, delay=throttler.active_until - loop.time(), backoff=True)
        else:
            self._throttlers.pop(key, None)
            if result is not None and result.requeue_after is not None:
                self._schedule(key, delay=result.requeue_after)

    async def _run_pass(
            self,
            *,
            key: references.ObjectKey,
            logger: typedefs.Logger,
    ) -> reconciling.Result:
        timeout = self._settings.reconciling.pass_timeout
        try:
            return await asyncio.wait_for(self._reconciler(key, logger=logger), timeout=timeout)
        except asyncio.TimeoutError:
            raise PassTimeoutError(f"The pass has exceeded its deadline of {timeout} seconds.")

    def _schedule(
            self,
            key: references.ObjectKey,
            *,
            delay: float,
            backoff: bool = False,
    ) -> None:
        if self._closed:
            return
        self._cancel_timer(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(max(0, delay), self._fire, key, backoff)

    def _fire(
            self,
            key: references.ObjectKey,
            backoff: bool,
    ) -> None:
        # A callback cannot be async, so the enqueueing is done in a short-living task.
        self._timers.pop(key, None)
        reason = 'backoff' if backoff else 'requeue'
        task = asyncio.create_task(self.enqueue(key, reason=reason, backoff=backoff),
                                   name=f'{reason} of {key}')
        self._firing.add(task)
        task.add_done_callback(self._firing.discard)

    def _cancel_timer(self, key: references.ObjectKey) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _exception_handler(self, exc: BaseException) -> None:
        # The passes' errors are handled in the workers; anything escaping them is a bug.
        logger.error(f"A worker has failed unexpectedly: {exc!r}", exc_info=exc)


async def watcher(
        *,
        store: stores.Store,
        dispatcher: Dispatcher,
        resource: references.Resource,
        namespace: references.Namespace,
        key_fn: KeyFn,
) -> None:
    """
    Watch the objects of one kind, and dispatch them to the reconciliation.

    The watcher is as non-blocking and async, as possible. It only maps
    the events to the keys and passes them to the per-object queues.
    The watcher is generally a never-ending task (unless an error happens
    or it is cancelled).
    """
    async for raw_event in store.watch(resource, namespace=namespace):
        key = key_fn(raw_event)
        if key is not None:
            event_type = raw_event['type'] or 'LISTED'
            await dispatcher.enqueue(key, reason=f"{resource.kind} {event_type}")
