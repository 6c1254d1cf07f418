"""
The raw requests to the cluster API, with retries of the transient errors.

The requests are made in the session of the current credentials (see `auth`).
The URLs are relative to the server root, as rendered by the resources.
"""
import asyncio
import json
from collections.abc import AsyncIterator, Mapping
from typing import Any

import aiohttp

from crscale._cogs.clients import auth, errors
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import typedefs


@auth.authenticated
async def request(
        method: str,
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        context: auth.APIContext | None = None,  # injected by the decorator
        logger: typedefs.Logger,
) -> aiohttp.ClientResponse:
    """
    Make a request and check its status, but do not read the response.

    The transient errors (see `errors.TRANSIENT_ERRORS`) are retried
    after each of ``networking.error_backoffs``, the last one is escalated.
    All other errors are escalated immediately.
    """
    if context is None:
        raise RuntimeError("API context is not injected by the decorator.")

    if '://' not in url:
        url = f"{context.server.rstrip('/')}/{url.lstrip('/')}"
    if timeout is None:
        timeout = aiohttp.ClientTimeout(total=settings.networking.request_timeout,
                                        sock_connect=settings.networking.connect_timeout)

    what = f"{method.upper()} {url}"
    delays = list(settings.networking.error_backoffs)
    attempts = len(delays) + 1
    for attempt in range(1, attempts + 1):
        idx = f"#{attempt}/{attempts}"
        if attempt > 1:
            logger.debug(f"Request attempt {idx}: {what}")
        try:
            response = await context.session.request(method, url, json=payload,
                                                     headers=headers, timeout=timeout)
            await errors.check_response(response)
        except errors.TRANSIENT_ERRORS as e:
            if attempt == attempts:
                logger.error(f"Request attempt {idx} failed; escalating: {what} -> {e!r}")
                raise
            logger.error(f"Request attempt {idx} failed; will retry: {what} -> {e!r}")
            await asyncio.sleep(delays[attempt - 1])
        else:
            if attempt > 1:
                logger.debug(f"Request attempt {idx} succeeded: {what}")
            return response

    raise RuntimeError("Unreachable: the last attempt either returns or raises.")


async def _read_json(
        method: str,
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        logger: typedefs.Logger,
) -> Any:
    response = await request(method, url, payload=payload, headers=headers, timeout=timeout,
                             settings=settings, logger=logger)
    async with response:
        return await response.json()


async def get(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        headers: Mapping[str, str] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('get', url, headers=headers, timeout=timeout,
                            settings=settings, logger=logger)


async def post(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('post', url, payload=payload, headers=headers,
                            settings=settings, logger=logger)


async def put(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('put', url, payload=payload, headers=headers,
                            settings=settings, logger=logger)


async def patch(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('patch', url, payload=payload, headers=headers,
                            settings=settings, logger=logger)


async def delete(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('delete', url, payload=payload, headers=headers,
                            settings=settings, logger=logger)


async def stream(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        headers: Mapping[str, str] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        logger: typedefs.Logger,
) -> AsyncIterator[Any]:
    """ Yield the parsed JSON lines of a long response, e.g. of a watch-request. """
    response = await request('get', url, headers=headers, timeout=timeout,
                             settings=settings, logger=logger)
    async with response:
        async for line in iter_jsonlines(response.content):
            yield json.loads(line.decode('utf-8'))


async def iter_jsonlines(
        content: aiohttp.StreamReader,
        chunk_size: int = 1024 * 1024,
) -> AsyncIterator[bytes]:
    """
    Split the response's content into non-empty lines.

    aiohttp's own line iteration (``async for line in response.content``)
    fails on lines longer than its buffer limit (128 KB by default),
    while a single object in a watch-stream can take a few megabytes.
    """
    tail = b''
    async for chunk in content.iter_chunked(chunk_size):
        *lines, tail = (tail + chunk).split(b'\n')
        for line in lines:
            if line:
                yield line
    if tail:
        yield tail
