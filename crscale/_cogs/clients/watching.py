"""
Watching and streaming watch-events.

A watch-stream is a long-living HTTP request, which delivers the changes
of the objects as JSON-lines. It is disconnected by the server from time
to time, and must be re-established from the last seen resource version.

The initial state of the objects is delivered by a regular listing,
simulated as the events of type ``None``. After that, the watching
continues from the listing's resource version.
"""
import asyncio
import logging
from collections.abc import AsyncIterator
from typing import cast

import aiohttp

from crscale._cogs.clients import api, errors, fetching
from crscale._cogs.configs import configuration
from crscale._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

# Disconnects are normal for the long-living requests: the stream just ends.
DISCONNECTS = (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError)

SUPPORTED_TYPES = frozenset({'ADDED', 'MODIFIED', 'DELETED'})
DEFAULT_RETRY_DELAY_SECONDS = 1


class WatchingError(Exception):
    """
    Raised when an unexpected error happens in the watch-stream API.
    """


def _where(namespace: references.Namespace) -> str:
    return f'in {namespace!r}' if namespace is not None else 'cluster-wide'


async def infinite_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        _iterations: int | None = None,  # for tests only; infinite if None.
) -> AsyncIterator[bodies.RawEvent]:
    """
    Stream the watch-events infinitely, re-listing when the stream is over.

    It only exits with unrecoverable exceptions.
    """
    logger.debug(f"Starting the watch-stream for {resource} {_where(namespace)}.")
    try:
        iteration = 0
        while _iterations is None or iteration < _iterations:
            iteration += 1
            try:
                async for raw_event in continuous_watch(settings=settings, resource=resource,
                                                        namespace=namespace):
                    yield raw_event
            except errors.APITooManyRequestsError as e:
                delay = (e.details or {}).get('retryAfterSeconds') or DEFAULT_RETRY_DELAY_SECONDS
                logger.warning(f"The API is throttling the watch-stream for {resource}; "
                               f"retrying in {delay} seconds: {e}")
                await asyncio.sleep(delay)
            await asyncio.sleep(settings.watching.reconnect_backoff)
    finally:
        logger.debug(f"Stopping the watch-stream for {resource} {_where(namespace)}.")


async def continuous_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
) -> AsyncIterator[bodies.RawEvent]:
    """
    List the objects, then watch them from the listing's version until it expires.

    The watch-requests are repeated through the server-side disconnects,
    each time from the latest seen version. The stream ends when the version
    is too old ("410 Gone"), so that the caller can start with a new listing.
    """
    try:
        objs, version = await fetching.list_objs(logger=logger, settings=settings,
                                                 resource=resource, namespace=namespace)
    except DISCONNECTS:
        return
    for obj in objs:
        yield {'type': None, 'object': obj}

    while True:
        async for raw_input in watch_objs(settings=settings, resource=resource,
                                          namespace=namespace, since=version):
            raw_type, raw_object = raw_input['type'], raw_input['object']
            if raw_type == 'ERROR':
                if cast(bodies.RawError, raw_object).get('code') == 410:
                    logger.debug(f"Restarting the watch-stream for {resource} {_where(namespace)}.")
                    return
                raise WatchingError(f"Error in the watch-stream: {raw_object}")

            if raw_type not in SUPPORTED_TYPES:
                logger.warning(f"Ignoring an unsupported event type: {raw_input!r}")
                continue

            version = cast(bodies.RawBody, raw_object).get('metadata', {}).get('resourceVersion', version)
            yield cast(bodies.RawEvent, raw_input)


async def watch_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        since: str | None = None,
) -> AsyncIterator[bodies.RawInput]:
    """
    Stream the raw events of one watch-request until it is disconnected.

    The cluster-scoped call is used when the controller serves all namespaces.
    Otherwise, the namespace-scoped call is used.
    """
    params = {'watch': 'true'}
    if since is not None:
        params['resourceVersion'] = since
    if settings.watching.server_timeout is not None:
        params['timeoutSeconds'] = str(settings.watching.server_timeout)

    connect_timeout = next((timeout for timeout in [settings.watching.connect_timeout,
                                                    settings.networking.connect_timeout]
                            if timeout is not None), settings.networking.request_timeout)
    timeout = aiohttp.ClientTimeout(total=settings.watching.client_timeout,
                                    sock_connect=connect_timeout)
    try:
        async for raw_input in api.stream(resource.get_url(namespace=namespace, params=params),
                                          settings=settings, timeout=timeout, logger=logger):
            yield raw_input
    except DISCONNECTS:
        pass
