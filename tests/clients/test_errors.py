import asyncio

import aiohttp
import pytest

from crscale._cogs.clients.errors import TRANSIENT_ERRORS, APIClientError, APIConflictError, \
                                         APIError, APIForbiddenError, APINotFoundError, \
                                         APIServerError, APITooManyRequestsError, \
                                         APIUnauthorizedError, build_error


@pytest.mark.parametrize('status, cls', [
    (401, APIUnauthorizedError),
    (403, APIForbiddenError),
    (404, APINotFoundError),
    (409, APIConflictError),
    (429, APITooManyRequestsError),
    (400, APIClientError),
    (422, APIClientError),
    (500, APIServerError),
    (503, APIServerError),
    (302, APIError),
])
def test_error_class_by_status(status, cls):
    error = build_error(None, status=status)
    assert type(error) is cls
    assert error.status == status


def test_error_fields_from_the_status_payload():
    payload = {'kind': 'Status', 'code': 409, 'reason': 'AlreadyExists',
               'message': 'already exists', 'details': {'name': 'web'}}
    error = build_error(payload, status=409)
    assert str(error.args[0]) == 'already exists'
    assert error.code == 409
    assert error.reason == 'AlreadyExists'
    assert error.message == 'already exists'
    assert error.details == {'name': 'web'}


def test_error_fields_without_a_payload():
    error = build_error(None, status=500)
    assert error.code is None
    assert error.reason is None
    assert error.message is None
    assert error.details is None


@pytest.mark.parametrize('exc', [
    aiohttp.ClientConnectionError(),
    asyncio.TimeoutError(),
    APIServerError(None, status=500),
    APITooManyRequestsError(None, status=429),
])
def test_transient_errors(exc):
    assert isinstance(exc, TRANSIENT_ERRORS)


@pytest.mark.parametrize('exc', [
    APIConflictError(None, status=409),
    APINotFoundError(None, status=404),
    APIClientError(None, status=400),
])
def test_permanent_errors(exc):
    assert not isinstance(exc, TRANSIENT_ERRORS)
