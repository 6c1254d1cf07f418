"""
Kind registration: the mapping of resource kinds to their domain models.

The reconciler never works with the raw bodies as they come from the API.
Instead, every raw body is decoded into a frozen domain model, and the models
are encoded back into the raw bodies only for the writes.

The scheme is populated once at the process start (see `make_scheme`),
then frozen, and is shared read-only by all the workers afterwards.
Any attempt to register a kind after freezing is an error.
"""
import copy
import dataclasses
from collections.abc import Callable, Mapping
from typing import Any, Generic, TypeVar, cast

from crscale._cogs.structs import bodies, conditions, references
from crscale._cogs.structs.conditions import Conditions

_ModelT = TypeVar('_ModelT')


class SchemeFrozenError(RuntimeError):
    """ Raised when a kind is registered into an already frozen scheme. """


class UnregisteredKindError(LookupError):
    """ Raised when a kind is decoded or encoded, but was never registered. """


@dataclasses.dataclass(frozen=True)
class ScalableStatus:
    replicas: int | None = None
    selector: str | None = None
    conditions: Conditions = ()


@dataclasses.dataclass(frozen=True)
class ScalableResource:
    """
    The custom resource as seen by the reconciler.

    The desired replicas are kept exactly as stored (i.e. not validated):
    a malformed value is not a decoding error, it is a state of the object
    that has to be reported on the object's own status.
    """
    namespace: references.NamespaceName
    name: str
    uid: str | None = None
    resource_version: str | None = None
    replicas: object = None
    status: ScalableStatus = ScalableStatus()
    raw: bodies.RawBody = dataclasses.field(default_factory=lambda: cast(bodies.RawBody, {}),
                                            compare=False, repr=False)

    @property
    def key(self) -> references.ObjectKey:
        return references.ObjectKey(self.namespace, self.name)


@dataclasses.dataclass(frozen=True)
class WorkloadStatus:
    replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    conditions: Conditions = ()


@dataclasses.dataclass(frozen=True)
class OwnedWorkload:
    """
    The deployment (owned or not) as seen by the reconciler.
    """
    namespace: references.NamespaceName
    name: str
    uid: str | None = None
    resource_version: str | None = None
    replicas: int | None = None
    selector: Mapping[str, Any] | None = None
    owner_references: tuple[bodies.OwnerReference, ...] = ()
    status: WorkloadStatus = WorkloadStatus()
    raw: bodies.RawBody = dataclasses.field(default_factory=lambda: cast(bodies.RawBody, {}),
                                            compare=False, repr=False)

    @property
    def key(self) -> references.ObjectKey:
        return references.ObjectKey(self.namespace, self.name)


@dataclasses.dataclass(frozen=True)
class Codec(Generic[_ModelT]):
    decoder: Callable[[bodies.RawBody], _ModelT]
    encoder: Callable[[_ModelT], bodies.RawBody]


class Scheme:
    """
    A registry of the known kinds with their decoding & encoding logic.
    """

    def __init__(self) -> None:
        super().__init__()
        self._codecs: dict[references.Resource, Codec[Any]] = {}
        self._frozen = False

    def __repr__(self) -> str:
        frozen = ' (frozen)' if self._frozen else ''
        return f'<{self.__class__.__name__}{frozen}: {list(self._codecs)!r}>'

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(
            self,
            resource: references.Resource,
            decoder: Callable[[bodies.RawBody], _ModelT],
            encoder: Callable[[_ModelT], bodies.RawBody],
    ) -> None:
        if self._frozen:
            raise SchemeFrozenError(f"Cannot register {resource!r}: the scheme is frozen.")
        self._codecs[resource] = Codec(decoder=decoder, encoder=encoder)

    def freeze(self) -> None:
        self._frozen = True

    def decode(self, resource: references.Resource, raw: bodies.RawBody) -> Any:
        return self._get_codec(resource).decoder(raw)

    def encode(self, resource: references.Resource, model: Any) -> bodies.RawBody:
        return self._get_codec(resource).encoder(model)

    def _get_codec(self, resource: references.Resource) -> Codec[Any]:
        try:
            return self._codecs[resource]
        except KeyError:
            raise UnregisteredKindError(f"The kind {resource!r} is not registered.") from None


def _as_int(value: Any, default: int = 0) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def decode_scalable(raw: bodies.RawBody) -> ScalableResource:
    meta = raw.get('metadata', {})
    spec = raw.get('spec') or {}
    status = raw.get('status') or {}
    replicas = status.get('replicas')
    selector = status.get('selector')
    return ScalableResource(
        namespace=references.NamespaceName(meta.get('namespace', '')),
        name=meta.get('name', ''),
        uid=meta.get('uid'),
        resource_version=meta.get('resourceVersion'),
        replicas=spec.get('replicas'),
        status=ScalableStatus(
            replicas=replicas if isinstance(replicas, int) and not isinstance(replicas, bool) else None,
            selector=selector if isinstance(selector, str) else None,
            conditions=conditions.parse_conditions(status.get('conditions')),
        ),
        raw=raw,
    )


def encode_scalable(model: ScalableResource) -> bodies.RawBody:
    """
    Render the resource for the writes: the stored body with the model's status.

    The unknown fields of the stored body (and of its status) are preserved.
    The version token goes with the body, so the write fails on a stale object.
    """
    raw = cast(dict[str, Any], copy.deepcopy(dict(model.raw)))
    raw.setdefault('apiVersion', references.SCALABLES.api_version)
    raw.setdefault('kind', references.SCALABLES.kind)
    meta = raw.setdefault('metadata', {})
    meta['namespace'] = model.namespace
    meta['name'] = model.name
    if model.uid is not None:
        meta['uid'] = model.uid
    if model.resource_version is not None:
        meta['resourceVersion'] = model.resource_version
    spec = raw.setdefault('spec', {})
    if model.replicas is not None:
        spec['replicas'] = model.replicas
    status = raw.setdefault('status', {})
    status['conditions'] = conditions.render(model.status.conditions)
    for field, value in [('replicas', model.status.replicas), ('selector', model.status.selector)]:
        if value is None:
            status.pop(field, None)
        else:
            status[field] = value
    return cast(bodies.RawBody, raw)


def decode_workload(raw: bodies.RawBody) -> OwnedWorkload:
    meta = raw.get('metadata', {})
    spec = raw.get('spec') or {}
    status = raw.get('status') or {}
    replicas = spec.get('replicas')
    selector = spec.get('selector')
    return OwnedWorkload(
        namespace=references.NamespaceName(meta.get('namespace', '')),
        name=meta.get('name', ''),
        uid=meta.get('uid'),
        resource_version=meta.get('resourceVersion'),
        replicas=replicas if isinstance(replicas, int) and not isinstance(replicas, bool) else None,
        selector=selector if isinstance(selector, Mapping) else None,
        owner_references=tuple(meta.get('ownerReferences') or ()),
        status=WorkloadStatus(
            replicas=_as_int(status.get('replicas')),
            ready_replicas=_as_int(status.get('readyReplicas')),
            available_replicas=_as_int(status.get('availableReplicas')),
            conditions=conditions.parse_conditions(status.get('conditions')),
        ),
        raw=raw,
    )


def encode_workload(model: OwnedWorkload) -> bodies.RawBody:
    """
    Render the workload for the writes: the stored body with the model's spec.

    Only the fields owned by the reconciler are taken from the model:
    the replicas, the selector, and the owner references. The pod template
    and all other fields are kept as stored.
    """
    raw = cast(dict[str, Any], copy.deepcopy(dict(model.raw)))
    raw.setdefault('apiVersion', references.DEPLOYMENTS.api_version)
    raw.setdefault('kind', references.DEPLOYMENTS.kind)
    meta = raw.setdefault('metadata', {})
    meta['namespace'] = model.namespace
    meta['name'] = model.name
    if model.uid is not None:
        meta['uid'] = model.uid
    if model.resource_version is not None:
        meta['resourceVersion'] = model.resource_version
    if model.owner_references:
        meta['ownerReferences'] = [dict(ref) for ref in model.owner_references]
    spec = raw.setdefault('spec', {})
    if model.replicas is not None:
        spec['replicas'] = model.replicas
    if model.selector is not None:
        spec['selector'] = copy.deepcopy(dict(model.selector))
    return cast(bodies.RawBody, raw)


def make_scheme() -> Scheme:
    """
    Build the process-wide scheme with all the kinds known to the controller.
    """
    scheme = Scheme()
    scheme.register(references.SCALABLES, decode_scalable, encode_scalable)
    scheme.register(references.DEPLOYMENTS, decode_workload, encode_workload)
    scheme.freeze()
    return scheme
