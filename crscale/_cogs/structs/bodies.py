"""
The raw objects as they come from and go to the cluster API.

The types are detailed only to the fields used by the controller; the objects
can have any other fields at runtime. The reconciler never works with the raw
bodies directly: they are decoded into the domain models first (see `schemes`).
"""
from collections.abc import Mapping
from typing import Any, cast

from typing_extensions import Literal, TypedDict

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

# ``None`` is used for the listing, when the pseudo-watch-stream is simulated.
RawInputType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED', 'ERROR']
RawEventType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED']


class OwnerReference(TypedDict, total=False):
    controller: bool
    blockOwnerDeletion: bool
    apiVersion: str
    kind: str
    name: str
    uid: str


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    namespace: str
    labels: Labels
    annotations: Annotations
    ownerReferences: list[OwnerReference]
    resourceVersion: str
    generation: int
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]


# A special payload for type==ERROR (this is not a connection or client error).
class RawError(TypedDict, total=False):
    apiVersion: str     # usually: Literal['v1']
    kind: str           # usually: Literal['Status']
    metadata: Mapping[Any, Any]
    code: int
    reason: str
    status: str
    message: str


# As received from the stream before processing the errors and special cases.
class RawInput(TypedDict, total=True):
    type: RawInputType
    object: RawBody | RawError


# As passed to the dispatcher after processing the errors and special cases.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


def build_owner_reference(body: RawBody) -> OwnerReference:
    """
    Make a controlling owner reference to the object, for its dependents.

    The dependents are garbage-collected by the cluster when the owner is deleted.
    The fields absent in the owner (e.g. ``uid`` of unsaved objects) are omitted.
    """
    metadata = body.get('metadata', {})
    fields = {
        'apiVersion': body.get('apiVersion'),
        'kind': body.get('kind'),
        'name': metadata.get('name'),
        'uid': metadata.get('uid'),
    }
    ref: dict[str, Any] = {'controller': True, 'blockOwnerDeletion': True}
    ref.update({key: value for key, value in fields.items() if value})
    return cast(OwnerReference, ref)


def get_controller_reference(body: RawBody) -> OwnerReference | None:
    """ The controlling owner of the object, if any (the API allows at most one). """
    refs = body.get('metadata', {}).get('ownerReferences', [])
    return next((ref for ref in refs if ref.get('controller')), None)
