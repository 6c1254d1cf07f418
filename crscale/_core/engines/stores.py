"""
The resource store: the only shared mutable state the controller works with.

The store keeps the versioned objects keyed by their kind, namespace & name,
and provides the optimistic concurrency via the objects' resource versions:
every write carries the version of the object as it was read, and fails
with `APIConflictError` if the object has been modified since then.

The reconciler knows nothing about where the objects are actually stored:
in the cluster (`ApiStore`), or in memory (`crscale.testing.MemoryStore`).
"""
import logging
from collections.abc import AsyncIterator

from typing_extensions import Protocol

from crscale._cogs.clients import creating, deleting, fetching, updating, watching
from crscale._cogs.configs import configuration
from crscale._cogs.structs import bodies, references

logger = logging.getLogger(__name__)


class Store(Protocol):
    """
    The store's interface as used by the reconciler and the dispatcher.

    All reads return the raw bodies as stored, or ``None`` if absent.
    All writes return the raw bodies as stored after the write.
    The failed writes raise the same errors as the cluster API does:
    `APIConflictError` for stale versions or already existing objects,
    `APINotFoundError` for absent objects.
    """

    async def get(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bodies.RawBody | None: ...

    async def list(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> list[bodies.RawBody]: ...

    async def create(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody: ...

    async def update(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody: ...

    async def update_status(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody: ...

    async def delete(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bool: ...

    def watch(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> AsyncIterator[bodies.RawEvent]: ...


class ApiStore:
    """
    The store backed by the cluster API.

    It requires the credentials vault to be set in the current context
    (see `crscale._cogs.clients.auth.vault_var`).
    """

    def __init__(self, *, settings: configuration.OperatorSettings) -> None:
        super().__init__()
        self.settings = settings

    async def get(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bodies.RawBody | None:
        return await fetching.read_obj(
            settings=self.settings,
            resource=resource,
            namespace=key.namespace,
            name=key.name,
            logger=logger,
        )

    async def list(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> list[bodies.RawBody]:
        objs, _ = await fetching.list_objs(
            settings=self.settings,
            resource=resource,
            namespace=namespace,
            logger=logger,
        )
        return list(objs)

    async def create(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        return await creating.create_obj(
            settings=self.settings,
            resource=resource,
            body=body,
            logger=logger,
        )

    async def update(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        return await updating.replace_obj(
            settings=self.settings,
            resource=resource,
            body=body,
            logger=logger,
        )

    async def update_status(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        return await updating.replace_obj(
            settings=self.settings,
            resource=resource,
            body=body,
            subresource='status',
            logger=logger,
        )

    async def delete(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bool:
        return await deleting.delete_obj(
            settings=self.settings,
            resource=resource,
            namespace=key.namespace,
            name=key.name,
            logger=logger,
        )

    async def watch(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> AsyncIterator[bodies.RawEvent]:
        async for raw_event in watching.infinite_watch(
            settings=self.settings,
            resource=resource,
            namespace=namespace,
        ):
            yield raw_event
