from collections.abc import Collection

from crscale._cogs.clients import api, errors
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import bodies, references


async def read_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Read a single object of a specific resource type.

    Returns ``None`` if the object is absent (HTTP 404). All other errors
    are escalated to the caller: the absence is the only expected outcome.
    """
    try:
        body: bodies.RawBody = await api.get(
            url=resource.get_url(namespace=namespace, name=name),
            logger=logger,
            settings=settings,
        )
    except errors.APINotFoundError:
        return None
    return body


async def list_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        logger: typedefs.Logger,
) -> tuple[Collection[bodies.RawBody], str]:
    """
    List the objects of specific resource type.

    The cluster-scoped call is used when the controller serves all namespaces.
    Otherwise, the namespace-scoped call is used.

    The items of the lists come with no ``kind`` & ``apiVersion``: they are
    restored from the list's own fields, so that the bodies are complete.
    """
    rsp = await api.get(
        url=resource.get_url(namespace=namespace),
        logger=logger,
        settings=settings,
    )

    items: list[bodies.RawBody] = []
    resource_version = rsp.get('metadata', {}).get('resourceVersion', None)
    for item in rsp.get('items', []):
        if 'kind' in rsp:
            item.setdefault('kind', rsp['kind'][:-4] if rsp['kind'][-4:] == 'List' else rsp['kind'])
        if 'apiVersion' in rsp:
            item.setdefault('apiVersion', rsp['apiVersion'])
        items.append(item)

    return items, resource_version
