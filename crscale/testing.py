"""
Helpers for testing the controller without a cluster.

`MemoryStore` keeps the objects in memory and behaves like the cluster API
in everything the controller relies on: the resource versions with conflicts
on stale writes, the status subresources, the watch-streams, and the garbage
collection of the owned objects (which is triggered explicitly, as the real
garbage collector is a separate process of the cluster, not of the API).

Usage::

    store = MemoryStore()
    await store.create(SCALABLES, {'metadata': {'namespace': 'ns', 'name': 'web'},
                                   'spec': {'replicas': 3}})
    reconciler = Reconciler(store=store, scheme=make_scheme(), settings=settings)
    await reconciler(ObjectKey('ns', 'web'))
    store.simulate_rollout(ObjectKey('ns', 'web'))
"""
import asyncio
import copy
import dataclasses
import datetime
import uuid
from collections.abc import AsyncIterator, Mapping
from typing import Any, cast

from typing_extensions import Literal

from crscale._cogs.clients import errors
from crscale._cogs.structs import bodies, conditions, references
from crscale._kits import scaling

Verb = Literal['create', 'update', 'update_status', 'delete']


@dataclasses.dataclass(frozen=True)
class Write:
    """ A write done via the store's interface, as seen in `MemoryStore.writes`. """
    verb: Verb
    resource: references.Resource
    key: references.ObjectKey
    body: bodies.RawBody | None = None


def _status(code: int, reason: str, message: str) -> errors.RawStatus:
    return cast(errors.RawStatus, {
        'apiVersion': 'v1',
        'kind': 'Status',
        'status': 'Failure',
        'code': code,
        'reason': reason,
        'message': message,
    })


def _get_key(body: Mapping[str, Any]) -> references.ObjectKey:
    meta = body.get('metadata', {})
    namespace, name = meta.get('namespace'), meta.get('name')
    if not namespace or not name:
        raise errors.APIClientError(_status(422, 'Invalid', "The namespace & name are required."),
                                    status=422)
    return references.ObjectKey(references.NamespaceName(namespace), name)


class MemoryStore:
    """
    An in-memory store of the objects, with the semantics of the cluster API.
    """

    def __init__(self) -> None:
        super().__init__()
        self._objects: dict[tuple[references.Resource, references.ObjectKey], dict[str, Any]] = {}
        self._version = 0
        self._watchers: list[tuple[references.Resource, references.Namespace,
                                   asyncio.Queue[bodies.RawEvent]]] = []
        self._failures: dict[tuple[Verb | Literal['get'], references.Resource], list[BaseException]] = {}
        self.writes: list[Write] = []

    #
    # Test-side helpers: not a part of the store's interface.
    #

    def inject(
            self,
            verb: Verb | Literal['get'],
            resource: references.Resource,
            exc: BaseException,
            *,
            times: int = 1,
    ) -> None:
        """ Fail the next few calls of the verb for the kind with the error. """
        self._failures.setdefault((verb, resource), []).extend([exc] * times)

    def inject_conflict(
            self,
            verb: Verb,
            resource: references.Resource,
            *,
            times: int = 1,
    ) -> None:
        status = _status(409, 'Conflict', "The object has been modified; please apply your "
                                          "changes to the latest version and try again.")
        for _ in range(times):
            self.inject(verb, resource, errors.APIConflictError(status, status=409))

    def peek(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bodies.RawBody | None:
        """ Get the object as stored, with no side effects (e.g. no injected failures). """
        obj = self._objects.get((resource, key))
        return cast(bodies.RawBody, copy.deepcopy(obj)) if obj is not None else None

    def writes_of(self, *verbs: Verb) -> list[Write]:
        return [write for write in self.writes if not verbs or write.verb in verbs]

    def simulate_rollout(
            self,
            key: references.ObjectKey,
            *,
            ready: int | None = None,
            available: int | None = None,
    ) -> bodies.RawBody:
        """
        Pretend the deployment's own controller has rolled the pods out.

        By default, all desired replicas become running, ready, and available.
        The partial readiness or availability can be set explicitly.
        """
        obj = self._objects.get((references.DEPLOYMENTS, key))
        if obj is None:
            raise LookupError(f"No deployment {key} to roll out.")
        replicas = obj.get('spec', {}).get('replicas', 1)
        ready = replicas if ready is None else ready
        available = ready if available is None else available
        is_available = available >= replicas
        now = conditions.format_timestamp(conditions.utcnow())
        obj['status'] = {
            'observedGeneration': obj['metadata'].get('generation', 1),
            'replicas': replicas,
            'readyReplicas': ready,
            'availableReplicas': available,
            'updatedReplicas': replicas,
            'conditions': [{
                'type': 'Available',
                'status': 'True' if is_available else 'False',
                'reason': 'MinimumReplicasAvailable' if is_available else 'MinimumReplicasUnavailable',
                'message': 'Deployment has minimum availability.' if is_available else
                           'Deployment does not have minimum availability.',
                'lastTransitionTime': now,
            }],
        }
        self._bump(obj)
        self._notify(references.DEPLOYMENTS, 'MODIFIED', obj)
        return cast(bodies.RawBody, copy.deepcopy(obj))

    def scale(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
            replicas: int,
    ) -> dict[str, Any]:
        """
        Set the desired replicas via the scale subresource, as ``kubectl scale`` does.

        Returns the resulting ``autoscaling/v1 Scale`` object.
        """
        obj = self._objects.get((resource, key))
        if obj is None or 'scale' not in resource.subresources:
            raise LookupError(f"No scalable {resource.plural} {key} to scale.")
        obj = cast(dict[str, Any], scaling.with_spec_replicas(cast(bodies.RawBody, obj), replicas))
        obj['metadata']['generation'] = obj['metadata'].get('generation', 1) + 1
        self._bump(obj)
        self._objects[(resource, key)] = obj
        self._notify(resource, 'MODIFIED', obj)
        return scaling.as_autoscaling_scale(cast(bodies.RawBody, obj))

    def collect_garbage(self) -> list[tuple[references.Resource, references.ObjectKey]]:
        """
        Delete the objects whose owners are gone, as the cluster's garbage collector does.

        The owners are looked up by their uids, not by names: an owner re-created
        with the same name does not save the dependents of its predecessor.
        """
        collected: list[tuple[references.Resource, references.ObjectKey]] = []
        while True:
            uids = {obj['metadata'].get('uid') for obj in self._objects.values()}
            orphans = [
                (resource, key) for (resource, key), obj in self._objects.items()
                if any(ref.get('uid') not in uids for ref in obj['metadata'].get('ownerReferences', []))
            ]
            if not orphans:
                return collected
            for resource, key in orphans:
                obj = self._objects.pop((resource, key))
                self._notify(resource, 'DELETED', obj)
                collected.append((resource, key))

    #
    # The store's interface, as used by the controller.
    #

    async def get(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bodies.RawBody | None:
        await self._enter('get', resource)
        return self.peek(resource, key)

    async def list(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> list[bodies.RawBody]:
        await asyncio.sleep(0)
        return [cast(bodies.RawBody, copy.deepcopy(obj))
                for (res, key), obj in sorted(self._objects.items(), key=lambda kv: kv[0][1])
                if res == resource and (namespace is None or key.namespace == namespace)]

    async def create(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        await self._enter('create', resource)
        key = _get_key(body)
        if (resource, key) in self._objects:
            raise errors.APIConflictError(
                _status(409, 'AlreadyExists', f"{resource.plural} {key.name!r} already exists"),
                status=409)

        obj = cast(dict[str, Any], copy.deepcopy(dict(body)))
        obj.setdefault('apiVersion', resource.api_version)
        obj.setdefault('kind', resource.kind)
        meta = obj.setdefault('metadata', {})
        meta['uid'] = str(uuid.uuid4())
        meta['generation'] = 1
        meta['creationTimestamp'] = conditions.format_timestamp(
            datetime.datetime.now(datetime.timezone.utc))
        if 'status' in resource.subresources:
            obj.pop('status', None)
        self._bump(obj)
        self._objects[(resource, key)] = obj
        self.writes.append(Write('create', resource, key, copy.deepcopy(cast(bodies.RawBody, obj))))
        self._notify(resource, 'ADDED', obj)
        return cast(bodies.RawBody, copy.deepcopy(obj))

    async def update(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        await self._enter('update', resource)
        key = _get_key(body)
        stored = self._check_version(resource, key, body)

        obj = cast(dict[str, Any], copy.deepcopy(dict(body)))
        obj['metadata'] = dict(obj.get('metadata', {}),
                               uid=stored['metadata']['uid'],
                               creationTimestamp=stored['metadata'].get('creationTimestamp'),
                               generation=stored['metadata'].get('generation', 1))
        if 'status' in resource.subresources:
            obj['status'] = copy.deepcopy(stored.get('status', {}))
            if not obj['status']:
                del obj['status']
        if obj.get('spec') != stored.get('spec'):
            obj['metadata']['generation'] += 1
        self._bump(obj)
        self._objects[(resource, key)] = obj
        self.writes.append(Write('update', resource, key, copy.deepcopy(cast(bodies.RawBody, obj))))
        self._notify(resource, 'MODIFIED', obj)
        return cast(bodies.RawBody, copy.deepcopy(obj))

    async def update_status(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        await self._enter('update_status', resource)
        key = _get_key(body)
        stored = self._check_version(resource, key, body)

        obj = copy.deepcopy(stored)
        obj['status'] = copy.deepcopy(dict(body.get('status') or {}))
        self._bump(obj)
        self._objects[(resource, key)] = obj
        self.writes.append(Write('update_status', resource, key, copy.deepcopy(cast(bodies.RawBody, obj))))
        self._notify(resource, 'MODIFIED', obj)
        return cast(bodies.RawBody, copy.deepcopy(obj))

    async def delete(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bool:
        await self._enter('delete', resource)
        obj = self._objects.pop((resource, key), None)
        if obj is None:
            return False
        self.writes.append(Write('delete', resource, key))
        self._notify(resource, 'DELETED', obj)
        return True

    async def watch(
            self,
            resource: references.Resource,
            namespace: references.Namespace = None,
    ) -> AsyncIterator[bodies.RawEvent]:
        """
        Stream the existing objects first (as the listing does), then the changes.
        """
        queue: asyncio.Queue[bodies.RawEvent] = asyncio.Queue()
        watcher = (resource, namespace, queue)
        self._watchers.append(watcher)
        try:
            for obj in await self.list(resource, namespace):
                yield {'type': None, 'object': obj}
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(watcher)

    #
    # Internals.
    #

    async def _enter(self, verb: Verb | Literal['get'], resource: references.Resource) -> None:
        await asyncio.sleep(0)  # as if it were an I/O call
        failures = self._failures.get((verb, resource))
        if failures:
            raise failures.pop(0)

    def _check_version(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
            body: bodies.RawBody,
    ) -> dict[str, Any]:
        stored = self._objects.get((resource, key))
        if stored is None:
            raise errors.APINotFoundError(
                _status(404, 'NotFound', f"{resource.plural} {key.name!r} not found"),
                status=404)
        version = body.get('metadata', {}).get('resourceVersion')
        if version is not None and version != stored['metadata']['resourceVersion']:
            raise errors.APIConflictError(
                _status(409, 'Conflict', f"Operation cannot be fulfilled on {resource.plural} "
                                         f"{key.name!r}: the object has been modified; please apply "
                                         f"your changes to the latest version and try again"),
                status=409)
        return stored

    def _bump(self, obj: dict[str, Any]) -> None:
        self._version += 1
        obj['metadata']['resourceVersion'] = str(self._version)

    def _notify(
            self,
            resource: references.Resource,
            event_type: bodies.RawEventType,
            obj: Mapping[str, Any],
    ) -> None:
        namespace = obj.get('metadata', {}).get('namespace')
        for res, ns, queue in self._watchers:
            if res == resource and (ns is None or ns == namespace):
                event = {'type': event_type, 'object': copy.deepcopy(dict(obj))}
                queue.put_nowait(cast(bodies.RawEvent, event))
