import asyncio
import json
import logging
import re
import time

import aiohttp.test_utils
import aiohttp.web
import pytest

from crscale._cogs.clients import auth
from crscale._cogs.configs.configuration import OperatorSettings
from crscale._cogs.structs.credentials import ConnectionInfo, Vault, VaultKey
from crscale._cogs.structs.references import SCALABLES, ObjectKey
from crscale._cogs.structs.schemes import make_scheme
from crscale._core.reactor.reconciling import Reconciler
from crscale.testing import MemoryStore


@pytest.fixture()
def settings():
    """ The settings with the timings shortened to make the tests fast. """
    settings = OperatorSettings()
    settings.networking.error_backoffs = [0, 0, 0]
    settings.watching.reconnect_backoff = 0
    settings.queueing.batch_window = 0.01
    settings.queueing.idle_timeout = 0.5
    settings.queueing.exit_timeout = 0.5
    settings.queueing.error_delays = [0.05, 0.1, 0.2]
    settings.reconciling.requeue_delay = 0.05
    settings.reconciling.pass_timeout = 1.0
    settings.workload.image = 'registry.example.com/app:1.0'
    return settings


@pytest.fixture()
def logger():
    return logging.getLogger('crscale.test')


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def scheme():
    return make_scheme()


@pytest.fixture()
def reconciler(store, scheme, settings):
    return Reconciler(store=store, scheme=scheme, settings=settings)


@pytest.fixture()
def key():
    return ObjectKey('ns1', 'web')


@pytest.fixture()
def make_resource(store, key):
    """
    A factory to create the custom resources in the store, as a user would do.

    The writes of the creation are not a part of the writes of the tests.
    """
    async def make_resource_fn(replicas=3, *, namespace=key.namespace, name=key.name, **spec):
        body = {
            'apiVersion': SCALABLES.api_version,
            'kind': SCALABLES.kind,
            'metadata': {'namespace': namespace, 'name': name},
            'spec': dict(spec, replicas=replicas) if replicas is not None else dict(spec),
        }
        created = await store.create(SCALABLES, body)
        store.writes.clear()
        return created

    return make_resource_fn


#
# A fake cluster API for the HTTP-level tests of the clients.
#


class FakeAPI:
    """
    A fake API server with pre-programmed responses for the paths.

    The responses are consumed in order; the last one is repeated infinitely.
    The requests are recorded as ``(method, path_qs, payload)`` for assertions.
    """

    def __init__(self):
        super().__init__()
        self.routes = {}
        self.requests = []
        self.url = None

    def add(self, method, path, *responders):
        self.routes.setdefault((method.upper(), path), []).extend(responders)

    async def dispatch(self, request):
        raw = await request.read()
        payload = json.loads(raw) if raw else None
        self.requests.append((request.method, request.path_qs, payload))
        responders = self.routes.get((request.method, request.path))
        if not responders:
            return self.reply(404, {'kind': 'Status', 'code': 404, 'reason': 'NotFound',
                                    'message': f'{request.path} not found'})(request)
        responder = responders.pop(0) if len(responders) > 1 else responders[0]
        return responder(request)

    @staticmethod
    def reply(status, payload=None):
        def responder(request):
            return aiohttp.web.json_response(payload if payload is not None else {}, status=status)
        return responder

    @staticmethod
    def stream(*events):
        def responder(request):
            text = ''.join(json.dumps(event) + '\n' for event in events)
            return aiohttp.web.Response(text=text, content_type='application/json')
        return responder


@pytest.fixture()
async def fakeapi():
    api = FakeAPI()

    async def handler(request):
        return await api.dispatch(request)

    app = aiohttp.web.Application()
    app.router.add_route('*', '/{tail:.*}', handler)
    server = aiohttp.test_utils.TestServer(app)
    await server.start_server()
    api.url = str(server.make_url('')).rstrip('/')
    try:
        yield api
    finally:
        await server.close()


@pytest.fixture()
def fake_vault(fakeapi):
    """
    Provide a freshly created and populated authentication vault for every test.

    The vault is set as if every coroutine is invoked from the central
    `operator` routine (where it is set normally). It is set synchronously,
    so that the context variable is inherited by the test's own task.
    """
    key = VaultKey('fixture')
    info = ConnectionInfo(server=fakeapi.url, token='fixture-token')
    vault = Vault({key: info})
    token = auth.vault_var.set(vault)
    try:
        yield vault
    finally:
        auth.vault_var.reset(token)


@pytest.fixture()
async def api_vault(fake_vault):
    """ The same vault, but with its cached sessions closed after the test. """
    try:
        yield fake_vault
    finally:
        await fake_vault.close()


#
# Helpers for the timing checks.
#

@pytest.fixture()
def timer():
    return Timer()


class Timer:
    """
    A helper context manager to measure the time of the code-blocks.

    Usage:

        with Timer() as timer:
            do_something()

        assert timer.seconds < 5.0
    """

    def __init__(self):
        super().__init__()
        self._ts = None
        self._te = None

    @property
    def seconds(self):
        if self._ts is None:
            return None
        elif self._te is None:
            return time.perf_counter() - self._ts
        else:
            return self._te - self._ts

    def __enter__(self):
        self._ts = time.perf_counter()
        self._te = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._te = time.perf_counter()


@pytest.fixture()
def wait_for():
    """ Poll until the condition is met, or fail if it is not met in time. """
    async def wait_for_fn(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("The condition is not met in time.")
            await asyncio.sleep(0.01)
    return wait_for_fn


#
# Helpers for the logging checks.
#

@pytest.fixture()
def assert_logs(caplog):
    """
    A function to assert the logs are present (by pattern).

    The listed message patterns MUST be present, in the order specified.
    Some other log messages can also be present, but they are ignored.
    """
    caplog.set_level(logging.DEBUG)

    def assert_logs_fn(patterns, prohibited=[], strict=False):
        __traceback_hide__ = True
        remaining_patterns = list(patterns)
        for message in caplog.messages:
            for idx, pattern in enumerate(remaining_patterns):
                m = re.search(pattern, message)
                if m:
                    if idx == 0:
                        remaining_patterns[:1] = []
                        break  # out of `remaining_patterns` cycle
                    else:
                        skipped_patterns = remaining_patterns[:idx]
                        raise AssertionError(f"Few patterns were skipped: {skipped_patterns!r}")
                elif strict:
                    raise AssertionError(f"Unexpected log message: {message!r}")

            for pattern in prohibited:
                m = re.search(pattern, message)
                if m:
                    raise AssertionError(f"Prohibited log pattern found: {message!r} ~ {pattern!r}")

        if remaining_patterns:
            raise AssertionError(f"Few patterns were missed: {remaining_patterns!r}")

    return assert_logs_fn
