from crscale._cogs.clients import api
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import bodies, references


async def replace_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        body: bodies.RawBody,
        subresource: str | None = None,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Replace an object of a specific kind with the new body (HTTP PUT).

    Unlike patching, the replacement carries the object's resource version,
    so it fails with `APIConflictError` (HTTP 409) if the object has been
    modified since it was read; or with `APINotFoundError` (HTTP 404)
    if it has been deleted meanwhile. Both are escalated to the caller.

    With ``subresource="status"``, only the status is replaced, while all
    other fields of the body are ignored by the server (and vice versa:
    the status is ignored in the main resource's replacement).
    """
    namespace = body.get('metadata', {}).get('namespace')
    name = body.get('metadata', {}).get('name')
    replaced_body: bodies.RawBody = await api.put(
        url=resource.get_url(namespace=namespace, name=name, subresource=subresource),
        payload=body,
        logger=logger,
        settings=settings,
    )
    return replaced_body
