import pytest

from crscale._cogs.clients.creating import create_obj
from crscale._cogs.clients.deleting import delete_obj
from crscale._cogs.clients.errors import APIConflictError
from crscale._cogs.clients.fetching import list_objs, read_obj
from crscale._cogs.clients.scaling import patch_scale, read_scale
from crscale._cogs.clients.updating import replace_obj
from crscale._cogs.structs.references import CRDS, SCALABLES

NS_URL = '/apis/crscale.dev/v1/namespaces/ns1/scalableresources'
ALL_URL = '/apis/crscale.dev/v1/scalableresources'
OBJ_URL = NS_URL + '/web'
BODY = {'metadata': {'namespace': 'ns1', 'name': 'web', 'resourceVersion': '7'},
        'spec': {'replicas': 3}}


async def test_read_an_existing_object(api_vault, fakeapi, settings, logger):
    fakeapi.add('GET', OBJ_URL, fakeapi.reply(200, BODY))
    body = await read_obj(settings=settings, resource=SCALABLES, namespace='ns1', name='web',
                          logger=logger)
    assert body == BODY


async def test_read_an_absent_object(api_vault, fakeapi, settings, logger):
    body = await read_obj(settings=settings, resource=SCALABLES, namespace='ns1', name='web',
                          logger=logger)
    assert body is None


@pytest.mark.parametrize('namespace, url', [
    pytest.param('ns1', NS_URL, id='namespaced'),
    pytest.param(None, ALL_URL, id='clusterwide'),
])
async def test_list_restores_the_kinds(api_vault, fakeapi, settings, logger, namespace, url):
    fakeapi.add('GET', url, fakeapi.reply(200, {
        'apiVersion': 'crscale.dev/v1',
        'kind': 'ScalableResourceList',
        'metadata': {'resourceVersion': '123'},
        'items': [{'metadata': {'name': 'a'}}, {'metadata': {'name': 'b'}}],
    }))

    items, resource_version = await list_objs(settings=settings, resource=SCALABLES,
                                              namespace=namespace, logger=logger)

    assert resource_version == '123'
    assert [item['kind'] for item in items] == ['ScalableResource', 'ScalableResource']
    assert [item['apiVersion'] for item in items] == ['crscale.dev/v1', 'crscale.dev/v1']


async def test_create_in_the_body_namespace(api_vault, fakeapi, settings, logger):
    fakeapi.add('POST', NS_URL, fakeapi.reply(201, BODY))
    created = await create_obj(settings=settings, resource=SCALABLES, body={'spec': {}},
                               namespace='ns1', name='web', logger=logger)
    assert created == BODY
    assert fakeapi.requests == [
        ('POST', NS_URL, {'spec': {}, 'metadata': {'namespace': 'ns1', 'name': 'web'}}),
    ]


async def test_create_a_clusterwide_object(api_vault, fakeapi, settings, logger):
    url = '/apis/apiextensions.k8s.io/v1/customresourcedefinitions'
    fakeapi.add('POST', url, fakeapi.reply(201, {}))
    await create_obj(settings=settings, resource=CRDS, body={'metadata': {'name': 'x'}},
                     logger=logger)
    assert fakeapi.requests[0][:2] == ('POST', url)


async def test_create_an_existing_object(api_vault, fakeapi, settings, logger):
    fakeapi.add('POST', NS_URL, fakeapi.reply(409, {'kind': 'Status', 'reason': 'AlreadyExists'}))
    with pytest.raises(APIConflictError) as err:
        await create_obj(settings=settings, resource=SCALABLES, body=BODY, logger=logger)
    assert err.value.reason == 'AlreadyExists'


@pytest.mark.parametrize('subresource, url', [
    pytest.param(None, OBJ_URL, id='main'),
    pytest.param('status', OBJ_URL + '/status', id='status'),
])
async def test_replace_with_the_version(api_vault, fakeapi, settings, logger, subresource, url):
    fakeapi.add('PUT', url, fakeapi.reply(200, BODY))
    await replace_obj(settings=settings, resource=SCALABLES, body=BODY,
                      subresource=subresource, logger=logger)
    method, path, payload = fakeapi.requests[0]
    assert (method, path) == ('PUT', url)
    assert payload['metadata']['resourceVersion'] == '7'


async def test_replace_a_stale_object(api_vault, fakeapi, settings, logger):
    fakeapi.add('PUT', OBJ_URL, fakeapi.reply(409, {'kind': 'Status', 'reason': 'Conflict'}))
    with pytest.raises(APIConflictError):
        await replace_obj(settings=settings, resource=SCALABLES, body=BODY, logger=logger)


async def test_delete_in_background(api_vault, fakeapi, settings, logger):
    fakeapi.add('DELETE', OBJ_URL, fakeapi.reply(200, {}))
    deleted = await delete_obj(settings=settings, resource=SCALABLES, namespace='ns1', name='web',
                               logger=logger)
    assert deleted is True
    assert fakeapi.requests[0][2]['propagationPolicy'] == 'Background'


async def test_delete_an_absent_object(api_vault, fakeapi, settings, logger):
    deleted = await delete_obj(settings=settings, resource=SCALABLES, namespace='ns1', name='web',
                               logger=logger)
    assert deleted is False


async def test_read_the_scale(api_vault, fakeapi, settings, logger):
    scale = {'kind': 'Scale', 'spec': {'replicas': 3}, 'status': {'replicas': 2}}
    fakeapi.add('GET', OBJ_URL + '/scale', fakeapi.reply(200, scale))
    result = await read_scale(settings=settings, resource=SCALABLES, namespace='ns1', name='web',
                              logger=logger)
    assert result == scale


async def test_patch_the_scale(api_vault, fakeapi, settings, logger):
    fakeapi.add('PATCH', OBJ_URL + '/scale', fakeapi.reply(200, {'spec': {'replicas': 5}}))
    result = await patch_scale(settings=settings, resource=SCALABLES, namespace='ns1', name='web',
                               replicas=5, logger=logger)
    assert result == {'spec': {'replicas': 5}}
    assert fakeapi.requests == [('PATCH', OBJ_URL + '/scale', {'spec': {'replicas': 5}})]
