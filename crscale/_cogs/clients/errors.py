"""
The errors of the cluster API, independent of the HTTP client library.

The API's own failures are raised as `APIError` and its descendants,
with the details of the failure as reported in the API's ``Status`` objects;
the client library's errors are chained as their causes.

Only the reasons that drive the controller's decisions have their own classes:
the conflicts and the absent objects for the reconciler, the authorization
failures for the credentials vault, the throttling for the watchers.

The network-level errors (connectivity, SSL, timeouts) are not API errors,
and are raised by the client library as they are.
"""
import asyncio
import json
from collections.abc import Collection, Mapping

import aiohttp
from typing_extensions import Literal, TypedDict


class RawStatusCause(TypedDict):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict, total=False):
    name: str
    uid: str
    retryAfterSeconds: int
    kind: str
    group: str
    causes: Collection[RawStatusCause]


class RawStatus(TypedDict, total=False):
    apiVersion: str
    kind: Literal["Status"]
    code: int
    status: Literal["Success", "Failure"]
    reason: str
    message: str
    details: RawStatusDetails


class APIError(Exception):
    """ A failure reported by the API, with the fields of its ``Status`` (if any). """

    def __init__(
            self,
            payload: RawStatus | None,
            *,
            status: int,
    ) -> None:
        super().__init__(payload.get('message') if payload else None, payload)
        self.status = status
        self.payload: RawStatus = payload or {}

    @property
    def code(self) -> int | None:
        return self.payload.get('code')

    @property
    def message(self) -> str | None:
        return self.payload.get('message')

    @property
    def reason(self) -> str | None:
        return self.payload.get('reason')

    @property
    def details(self) -> RawStatusDetails | None:
        return self.payload.get('details')


class APIClientError(APIError):
    pass


class APIServerError(APIError):
    pass


class APIUnauthorizedError(APIClientError):
    pass


class APIForbiddenError(APIClientError):
    pass


class APINotFoundError(APIClientError):
    pass


class APIConflictError(APIClientError):
    pass


class APITooManyRequestsError(APIClientError):
    pass


_CLASSES_BY_STATUS: Mapping[int, type[APIError]] = {
    401: APIUnauthorizedError,
    403: APIForbiddenError,
    404: APINotFoundError,
    409: APIConflictError,
    429: APITooManyRequestsError,
}

# The errors worth retrying: the same request can succeed a bit later.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
    APIServerError,
    APITooManyRequestsError,
)


def build_error(
        payload: RawStatus | None,
        *,
        status: int,
) -> APIError:
    """ Make an error of the class that corresponds to the HTTP status. """
    if status in _CLASSES_BY_STATUS:
        cls = _CLASSES_BY_STATUS[status]
    elif 400 <= status < 500:
        cls = APIClientError
    elif 500 <= status < 600:
        cls = APIServerError
    else:
        cls = APIError
    return cls(payload, status=status)


async def check_response(
        response: aiohttp.ClientResponse,
) -> None:
    """
    Raise an API error if the response is a failure; do nothing otherwise.

    Only the ``Status`` objects are kept as the errors' payloads: other bodies
    are not reported, since they can contain anything, including secrets.
    """
    if response.status < 400:
        return

    payload: RawStatus | None
    try:
        payload = await response.json()  # must be read before raise_for_status() closes it.
    except (json.JSONDecodeError, aiohttp.ContentTypeError, aiohttp.ClientConnectionError):
        payload = None
    if not isinstance(payload, Mapping) or payload.get('kind') != 'Status':
        payload = None

    try:
        response.raise_for_status()
    except aiohttp.ClientResponseError as e:
        raise build_error(payload, status=response.status) from e
