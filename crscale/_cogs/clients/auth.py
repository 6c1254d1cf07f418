"""
The authenticated sessions for the API requests.

The credentials live in the vault (see `credentials.Vault`); every set
of credentials gets its own aiohttp session, created on first use and cached
in the vault until the credentials are invalidated or the vault is closed.
"""
import base64
import contextlib
import functools
import ssl
import tempfile
from collections.abc import Callable
from contextvars import ContextVar
from typing import Any, TypeVar, cast

import aiohttp

from crscale._cogs.clients import errors
from crscale._cogs.helpers import versions
from crscale._cogs.structs import credentials

# Set once by the orchestration before any tasks are spawned, so all of them share it.
vault_var: ContextVar[credentials.Vault] = ContextVar('vault_var')

_F = TypeVar('_F', bound=Callable[..., Any])


def authenticated(fn: _F) -> _F:
    """
    Inject the API context of the current credentials into a request function.

    On HTTP 401, the credentials are invalidated in the vault, and the request
    is repeated with the next ones. When none are left, the vault raises
    `credentials.LoginError`. An explicitly passed context is used as is.
    """
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        if 'context' in kwargs:
            return await fn(*args, **kwargs)

        vault = vault_var.get()
        async for key, _, context in vault.extended(APIContext, 'contexts'):
            try:
                return await fn(*args, **kwargs, context=context)
            except errors.APIUnauthorizedError as e:
                await vault.invalidate(key, exc=e)

        # Both the exhausted and the invalidated vault raise instead of ending the cycle.
        raise RuntimeError("The authentication cycle has ended with no outcome.")

    return cast(_F, wrapper)


class APIContext:
    """
    An aiohttp session of specific credentials, and the server it talks to.

    The whole controller runs in one event loop, so one session per credentials
    is enough for all the tasks.
    """

    session: aiohttp.ClientSession
    server: str
    default_namespace: str | None

    def __init__(self, info: credentials.ConnectionInfo) -> None:
        super().__init__()
        self.server = info.server
        self.default_namespace = info.default_namespace
        self.session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0, ssl=make_ssl_context(info)),
            headers=make_headers(info),
            auth=aiohttp.BasicAuth(info.username, info.password)
            if info.username and info.password else None,
        )

    async def close(self) -> None:
        await self.session.close()


def make_headers(info: credentials.ConnectionInfo) -> dict[str, str]:
    headers = {'User-Agent': f'crscale/{versions.version or "unknown"}'}
    if info.scheme or info.token:
        scheme = info.scheme or 'Bearer'
        headers['Authorization'] = f'{scheme} {info.token}' if info.token else scheme
    return headers


def make_ssl_context(info: credentials.ConnectionInfo) -> ssl.SSLContext:
    """
    Build the SSL context for the server verification and the client certificates.

    The client certificate & key given as data are written to temporary files
    only for loading them (the SSL module cannot load them from memory),
    so nothing is written to a possibly read-only filesystem if not needed.
    """
    context = ssl.create_default_context(
        purpose=ssl.Purpose.SERVER_AUTH,
        cafile=info.ca_path,
        cadata=decode_to_pem(info.ca_data) if info.ca_data is not None else None,
    )

    with contextlib.ExitStack() as stack:

        def materialize(path: str | None, data: str | bytes | None) -> str | None:
            if path or not data:
                return path
            file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
            file.write(decode_to_pem(data).encode('ascii'))
            return file.name

        cert_path = materialize(info.certificate_path, info.certificate_data)
        pkey_path = materialize(info.private_key_path, info.private_key_data)
        if cert_path and pkey_path:
            context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

    if info.insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def decode_to_pem(data: str | bytes) -> str:
    """ Accept the PEM data either as is or base64-encoded (as in kubeconfigs). """
    match data:
        case str() if data.startswith('-----BEGIN '):
            return data
        case bytes() if data.startswith(b'-----BEGIN '):
            return data.decode('ascii')
        case _:
            return base64.b64decode(data).decode('ascii')
