import asyncio

import pytest

from crscale._core.reactor.queueing import Dispatcher
from crscale._core.reactor.reconciling import Result


class FakeReconciler:
    """
    A reconciler with pre-programmed outcomes: results, errors, or coroutine functions.

    The outcomes are consumed in order; the last one is repeated infinitely.
    """

    def __init__(self, *outcomes):
        super().__init__()
        self.outcomes = list(outcomes) or [Result()]
        self.calls = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, key, *, logger=None):
        self.calls.append(key)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return await outcome()
            return outcome
        finally:
            self.running -= 1


@pytest.fixture()
def fake_reconciler():
    return FakeReconciler


@pytest.fixture()
async def make_dispatcher(settings):
    dispatchers = []

    def make_dispatcher_fn(reconciler):
        dispatcher = Dispatcher(reconciler=reconciler, settings=settings)
        dispatchers.append(dispatcher)
        return dispatcher

    try:
        yield make_dispatcher_fn
    finally:
        for dispatcher in dispatchers:
            await dispatcher.close()


@pytest.fixture()
def gate():
    """ A coroutine function to block the passes until the gate is opened. """
    event = asyncio.Event()

    async def blocked():
        await event.wait()
        return Result()

    blocked.open = event.set
    return blocked
