"""
The credentials to access the cluster API, and the vault that keeps them.

Only the rudimentary credentials are supported: those that a generic HTTP
client understands (the server, the SSL certificates and flags, the basic
or token authorization), as found in the service accounts and kubeconfigs.

.. seealso::
    :mod:`crscale._core.intents.piggybacking`.
"""
import asyncio
import dataclasses
import inspect
import random
from collections.abc import AsyncIterable, AsyncIterator, Callable, Mapping
from typing import NewType, TypeVar, cast


class LoginError(Exception):
    """ Raised when the controller cannot login to the API. """


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    """ One endpoint with specific credentials and connection flags. """
    server: str  # e.g. "https://localhost:443"
    ca_path: str | None = None
    ca_data: bytes | None = None
    insecure: bool | None = None
    username: str | None = None
    password: str | None = None
    scheme: str | None = None  # RFC-7235/5.1: e.g. Bearer, Basic, Digest, etc.
    token: str | None = None
    certificate_path: str | None = None
    certificate_data: bytes | None = None
    private_key_path: str | None = None
    private_key_data: bytes | None = None
    default_namespace: str | None = None
    priority: int = 0


_T = TypeVar('_T', bound=object)

# Usually named after the login method.
VaultKey = NewType('VaultKey', str)


@dataclasses.dataclass
class VaultItem:
    info: ConnectionInfo
    caches: dict[str, object] = dataclasses.field(default_factory=dict)


class Vault(AsyncIterable[tuple[VaultKey, ConnectionInfo]]):
    """
    The currently valid credentials, shared by all the tasks of the process.

    The vault is populated by the login at the process start, and is used
    by the API clients, which invalidate the credentials rejected by the API.
    The credentials of the highest priority are used first.

    There is no re-authentication: once all the credentials are invalidated,
    every further API call fails with `LoginError`, which stops the process.
    """

    def __init__(
            self,
            __src: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__()
        self._current: dict[VaultKey, VaultItem] = {}
        self._rejected: dict[VaultKey, set[ConnectionInfo]] = {}
        self._lock = asyncio.Lock()
        if __src is not None:
            self._add(__src)

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {sorted(self._current)!r}>'

    def __bool__(self) -> bool:
        return bool(self._current)

    async def __aiter__(self) -> AsyncIterator[tuple[VaultKey, ConnectionInfo]]:
        async for key, item in self._items():
            yield key, item.info

    async def extended(
            self,
            factory: Callable[[ConnectionInfo], _T],
            purpose: str,
    ) -> AsyncIterator[tuple[VaultKey, ConnectionInfo, _T]]:
        """
        Same as the iteration, but with an object made from the credentials.

        The objects are made by the factory once per credentials and purpose,
        and are kept until the credentials are invalidated or the vault is closed.
        """
        async for key, item in self._items():
            async with self._lock:
                if purpose not in item.caches:
                    item.caches[purpose] = factory(item.info)
            yield key, item.info, cast(_T, item.caches[purpose])

    async def _items(self) -> AsyncIterator[tuple[VaultKey, VaultItem]]:
        """
        Yield the best credentials until the consumer stops invalidating them.

        An item that is still in the vault after the consumer's turn has worked.
        An empty vault raises `LoginError` instead of yielding.
        """
        while True:
            async with self._lock:
                key, item = self.select()
            yield key, item
            async with self._lock:
                if self._current.get(key) is item:
                    break

    def select(self) -> tuple[VaultKey, VaultItem]:
        """ Pick one of the items with the highest priority. """
        if not self._current:
            raise LoginError("No valid credentials are available.")
        top = max(item.info.priority for item in self._current.values())
        return random.choice([(key, item) for key, item in self._current.items()
                              if item.info.priority == top])

    async def invalidate(
            self,
            key: VaultKey,
            *,
            exc: Exception | None = None,
    ) -> None:
        """
        Exclude the credentials from any further usage.

        Several parallel requests can invalidate the same credentials: only
        the first one has an effect. If the vault becomes empty, the error that
        caused the invalidation is re-raised (e.g. the HTTP 401 of the last try).
        """
        async with self._lock:
            item = self._current.pop(key, None)
            if item is not None:
                self._rejected.setdefault(key, set()).add(item.info)
                await _close_all(item.caches)
            if not self._current and exc is not None:
                raise exc

    async def populate(
            self,
            __src: Mapping[str, object],
    ) -> None:
        """ Add new credentials, except those already rejected under the same key. """
        async with self._lock:
            self._add(__src)

    async def close(self) -> None:
        """ Close the objects made from the credentials when the process is ending. """
        async with self._lock:
            for item in self._current.values():
                await _close_all(item.caches)

    def _add(self, __src: Mapping[str, object]) -> None:
        for name, info in __src.items():
            if not isinstance(info, ConnectionInfo):
                raise ValueError("Only ConnectionInfo instances are currently accepted.")
            key = VaultKey(str(name))
            if info not in self._rejected.get(key, set()):
                self._current[key] = VaultItem(info=info)


async def _close_all(caches: dict[str, object]) -> None:
    """ Close the cached objects, e.g. aiohttp sessions, which cannot be closed by GC. """
    for obj in caches.values():
        close = getattr(obj, 'close', None)
        if inspect.iscoroutinefunction(close):
            await close()
        elif close is not None:
            close()
    caches.clear()
