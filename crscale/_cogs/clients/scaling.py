"""
The scale subresource, as used by autoscalers and the ``scale`` command.

The scale subresource is a narrow view over the object's replicas,
in the generic ``autoscaling/v1 Scale`` representation, regardless
of the object's own schema (the paths are declared in the CRD).
"""
from typing import Any

from crscale._cogs.clients import api
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import references


async def read_scale(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        logger: typedefs.Logger,
) -> dict[str, Any]:
    scale: dict[str, Any] = await api.get(
        url=resource.get_url(namespace=namespace, name=name, subresource='scale'),
        logger=logger,
        settings=settings,
    )
    return scale


async def patch_scale(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        replicas: int,
        logger: typedefs.Logger,
) -> dict[str, Any]:
    """
    Set the desired replicas via the scale subresource (as ``kubectl scale`` does).
    """
    scale: dict[str, Any] = await api.patch(
        url=resource.get_url(namespace=namespace, name=name, subresource='scale'),
        headers={'Content-Type': 'application/merge-patch+json'},
        payload={'spec': {'replicas': replicas}},
        logger=logger,
        settings=settings,
    )
    return scale
