"""
The cluster manifests needed to install and to run the controller.

The manifests are built as plain dicts and rendered as a multi-document
YAML stream, ready for ``kubectl apply -f -``.
"""
from collections.abc import Iterable, Mapping
from typing import Any

import yaml

from crscale._cogs.configs import configuration
from crscale._cogs.structs import references
from crscale._kits import scaling, synchronizing

DEFAULT_OPERATOR_NAME = 'crscale-controller'
DEFAULT_OPERATOR_NAMESPACE = 'crscale-system'
DEFAULT_OPERATOR_IMAGE = 'ghcr.io/crscale/crscale:latest'

KINDS = ('crd', 'rbac', 'sample', 'operator')


def build_crd() -> dict[str, Any]:
    resource = references.SCALABLES
    condition_schema = {
        'type': 'object',
        'required': ['type', 'status'],
        'properties': {
            'type': {'type': 'string'},
            'status': {'type': 'string', 'enum': ['True', 'False', 'Unknown']},
            'reason': {'type': 'string'},
            'message': {'type': 'string'},
            'lastTransitionTime': {'type': 'string', 'format': 'date-time'},
        },
    }
    return {
        'apiVersion': references.CRDS.api_version,
        'kind': references.CRDS.kind,
        'metadata': {'name': f'{resource.plural}.{resource.group}'},
        'spec': {
            'group': resource.group,
            'scope': 'Namespaced',
            'names': {
                'kind': resource.kind,
                'plural': resource.plural,
                'singular': resource.singular,
                'shortNames': sorted(resource.shortcuts),
            },
            'versions': [{
                'name': resource.version,
                'served': True,
                'storage': True,
                'schema': {'openAPIV3Schema': {
                    'type': 'object',
                    'properties': {
                        'spec': {
                            'type': 'object',
                            'required': ['replicas'],
                            'properties': {
                                'replicas': {'type': 'integer', 'minimum': 0},
                            },
                        },
                        'status': {
                            'type': 'object',
                            'properties': {
                                'replicas': {'type': 'integer', 'minimum': 0},
                                'selector': {'type': 'string'},
                                'conditions': {
                                    'type': 'array',
                                    'items': condition_schema,
                                    'x-kubernetes-list-type': 'map',
                                    'x-kubernetes-list-map-keys': ['type'],
                                },
                            },
                        },
                    },
                }},
                'subresources': {
                    'status': {},
                    'scale': dict(scaling.SCALE_PATHS),
                },
                'additionalPrinterColumns': [
                    {'name': 'Desired', 'type': 'integer', 'jsonPath': '.spec.replicas'},
                    {'name': 'Current', 'type': 'integer', 'jsonPath': '.status.replicas'},
                    {'name': 'Ready', 'type': 'string',
                     'jsonPath': '.status.conditions[?(@.type=="Ready")].status'},
                    {'name': 'Age', 'type': 'date', 'jsonPath': '.metadata.creationTimestamp'},
                ],
            }],
        },
    }


def build_rbac(
        *,
        name: str = DEFAULT_OPERATOR_NAME,
        namespace: str = DEFAULT_OPERATOR_NAMESPACE,
) -> list[dict[str, Any]]:
    scalables = references.SCALABLES
    deployments = references.DEPLOYMENTS
    return [
        {
            'apiVersion': 'v1',
            'kind': 'ServiceAccount',
            'metadata': {'name': name, 'namespace': namespace},
        },
        {
            'apiVersion': 'rbac.authorization.k8s.io/v1',
            'kind': 'ClusterRole',
            'metadata': {'name': name},
            'rules': [
                {
                    'apiGroups': [scalables.group],
                    'resources': [scalables.plural],
                    'verbs': ['get', 'list', 'watch', 'update'],
                },
                {
                    'apiGroups': [scalables.group],
                    'resources': [f'{scalables.plural}/status'],
                    'verbs': ['get', 'update', 'patch'],
                },
                {
                    'apiGroups': [scalables.group],
                    'resources': [f'{scalables.plural}/scale'],
                    'verbs': ['get', 'update', 'patch'],
                },
                {
                    'apiGroups': [deployments.group],
                    'resources': [deployments.plural],
                    'verbs': ['get', 'list', 'watch', 'create', 'update'],
                },
            ],
        },
        {
            'apiVersion': 'rbac.authorization.k8s.io/v1',
            'kind': 'ClusterRoleBinding',
            'metadata': {'name': name},
            'roleRef': {
                'apiGroup': 'rbac.authorization.k8s.io',
                'kind': 'ClusterRole',
                'name': name,
            },
            'subjects': [{'kind': 'ServiceAccount', 'name': name, 'namespace': namespace}],
        },
    ]


def build_sample(
        *,
        name: str = 'example',
        namespace: str = 'default',
        replicas: int = 3,
) -> dict[str, Any]:
    return {
        'apiVersion': references.SCALABLES.api_version,
        'kind': references.SCALABLES.kind,
        'metadata': {'name': name, 'namespace': namespace},
        'spec': {'replicas': replicas},
    }


def build_operator(
        *,
        name: str = DEFAULT_OPERATOR_NAME,
        namespace: str = DEFAULT_OPERATOR_NAMESPACE,
        image: str = DEFAULT_OPERATOR_IMAGE,
        settings: configuration.OperatorSettings | None = None,
) -> dict[str, Any]:
    settings = settings if settings is not None else configuration.OperatorSettings()
    labels = {
        synchronizing.WORKLOAD_NAME_LABEL: name,
        synchronizing.MANAGED_BY_LABEL: synchronizing.MANAGER_NAME,
    }
    return {
        'apiVersion': references.DEPLOYMENTS.api_version,
        'kind': references.DEPLOYMENTS.kind,
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
        'spec': {
            'replicas': 1,
            'strategy': {'type': 'Recreate'},
            'selector': {'matchLabels': labels},
            'template': {
                'metadata': {'labels': labels},
                'spec': {
                    'serviceAccountName': name,
                    'containers': [{
                        'name': 'controller',
                        'image': image,
                        'args': ['run', '--all-namespaces'],
                        'env': [
                            {'name': 'CRSCALE_WORKLOAD_IMAGE', 'value': settings.workload.image},
                        ],
                    }],
                },
            },
        },
    }


def build(
        kind: str = 'all',
        *,
        name: str = DEFAULT_OPERATOR_NAME,
        namespace: str = DEFAULT_OPERATOR_NAMESPACE,
        image: str = DEFAULT_OPERATOR_IMAGE,
        settings: configuration.OperatorSettings | None = None,
) -> list[dict[str, Any]]:
    """
    Build the manifests of one kind (see `KINDS`) or of all of them (``"all"``).

    The sample resource is not a part of the installation, so it is not
    included into ``"all"``: it is only built when explicitly requested.
    """
    match kind:
        case 'crd':
            return [build_crd()]
        case 'rbac':
            return build_rbac(name=name, namespace=namespace)
        case 'sample':
            return [build_sample()]
        case 'operator':
            return [build_operator(name=name, namespace=namespace, image=image, settings=settings)]
        case 'all':
            return ([build_crd()] +
                    build_rbac(name=name, namespace=namespace) +
                    [build_operator(name=name, namespace=namespace, image=image, settings=settings)])
        case _:
            raise ValueError(f"Unknown manifest kind: {kind!r}. Use one of: {', '.join(KINDS)}.")


def render(documents: Iterable[Mapping[str, Any]]) -> str:
    return yaml.safe_dump_all([dict(document) for document in documents], sort_keys=False)
