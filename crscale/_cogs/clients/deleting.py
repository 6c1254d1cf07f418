from crscale._cogs.clients import api, errors
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import references


async def delete_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        logger: typedefs.Logger,
) -> bool:
    """
    Delete an object, and let the server garbage-collect its dependents.

    The deletion is done with the background propagation: the owned objects
    are deleted by the server's garbage collector, not by the controller.

    Returns ``False`` if the object was already absent (HTTP 404).
    """
    try:
        await api.delete(
            url=resource.get_url(namespace=namespace, name=name),
            payload={'apiVersion': 'v1', 'kind': 'DeleteOptions', 'propagationPolicy': 'Background'},
            logger=logger,
            settings=settings,
        )
    except errors.APINotFoundError:
        return False
    return True
