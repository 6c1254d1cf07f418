"""
The owned workload: its desired shape as derived from the custom resource.

All functions here are pure: they neither read nor write anything,
and only build the bodies for the reconciler to compare and to store.
"""
import copy
from typing import Any, cast

from crscale._cogs.configs import configuration
from crscale._cogs.structs import bodies, references, schemes

WORKLOAD_NAME_LABEL = 'app.kubernetes.io/name'
WORKLOAD_INSTANCE_LABEL = 'app.kubernetes.io/instance'
MANAGED_BY_LABEL = 'app.kubernetes.io/managed-by'

WORKLOAD_NAME = 'crscale-workload'
MANAGER_NAME = 'crscale'


def workload_key(resource: schemes.ScalableResource) -> references.ObjectKey:
    """ The workload is named the same as its resource, in the same namespace. """
    return references.ObjectKey(resource.namespace, resource.name)


def selector_labels(resource: schemes.ScalableResource) -> dict[str, str]:
    """ The labels which select the pods of this very resource and no other. """
    return {
        WORKLOAD_NAME_LABEL: WORKLOAD_NAME,
        WORKLOAD_INSTANCE_LABEL: resource.name,
    }


def workload_labels(resource: schemes.ScalableResource) -> dict[str, str]:
    return dict(selector_labels(resource), **{MANAGED_BY_LABEL: MANAGER_NAME})


def build_owner_reference(resource: schemes.ScalableResource) -> bodies.OwnerReference:
    return bodies.build_owner_reference(cast(bodies.RawBody, {
        'apiVersion': references.SCALABLES.api_version,
        'kind': references.SCALABLES.kind,
        'metadata': {'name': resource.name, 'uid': resource.uid},
    }))


def build_workload(
        resource: schemes.ScalableResource,
        replicas: int,
        settings: configuration.OperatorSettings,
) -> bodies.RawBody:
    """
    Build the full desired body of the workload for its creation.

    The pod template comes from the settings. It is used only once, here:
    the existing workloads are never re-synced with the new settings.
    """
    labels = workload_labels(resource)
    body: dict[str, Any] = {
        'apiVersion': references.DEPLOYMENTS.api_version,
        'kind': references.DEPLOYMENTS.kind,
        'metadata': {
            'namespace': resource.namespace,
            'name': resource.name,
            'labels': labels,
            'ownerReferences': [build_owner_reference(resource)],
        },
        'spec': {
            'replicas': replicas,
            'selector': {'matchLabels': selector_labels(resource)},
            'template': {
                'metadata': {'labels': labels},
                'spec': {
                    'containers': [{
                        'name': settings.workload.container_name,
                        'image': settings.workload.image,
                        'ports': [{'containerPort': settings.workload.container_port}],
                    }],
                },
            },
        },
    }
    return cast(bodies.RawBody, body)


def is_controlled_by(
        workload: schemes.OwnedWorkload,
        resource: schemes.ScalableResource,
) -> bool:
    """
    Check if the workload is controlled by this very resource (not its namesake).

    A resource re-created with the same name gets a new uid, so the workload
    of the deleted predecessor is not adopted (until garbage-collected).
    """
    for ref in workload.owner_references:
        if (ref.get('controller') and
                ref.get('kind') == references.SCALABLES.kind and
                ref.get('uid') == resource.uid):
            return True
    return False


def scaled(body: bodies.RawBody, replicas: int) -> bodies.RawBody:
    """
    A copy of an existing body with only the replicas changed.

    The version token is kept intact: the update fails with a conflict
    if the workload has been modified by someone else since it was read.
    """
    result = cast(dict[str, Any], copy.deepcopy(dict(body)))
    result.setdefault('spec', {})['replicas'] = replicas
    return cast(bodies.RawBody, result)
