import pytest

from crscale._cogs.structs.credentials import ConnectionInfo, LoginError, Vault, VaultKey


async def test_empty_vault_fails_to_select():
    vault = Vault()
    assert not vault
    with pytest.raises(LoginError):
        vault.select()


async def test_the_highest_priority_is_selected():
    low = ConnectionInfo(server='https://low', priority=10)
    high = ConnectionInfo(server='https://high', priority=20)
    vault = Vault({'low': low, 'high': high})

    for _ in range(10):
        key, item = vault.select()
        assert key == 'high'
        assert item.info is high


async def test_iteration_stops_on_the_first_success():
    info = ConnectionInfo(server='https://a')
    vault = Vault({'a': info})
    seen = [(key, item) async for key, item in vault]
    assert seen == [('a', info)]


async def test_invalidation_switches_to_other_credentials():
    a = ConnectionInfo(server='https://a', priority=20)
    b = ConnectionInfo(server='https://b', priority=10)
    vault = Vault({'a': a, 'b': b})

    seen = []
    async for key, info in vault:
        seen.append(info)
        if key == 'a':
            await vault.invalidate(VaultKey('a'))

    assert seen == [a, b]


async def test_invalidation_of_the_last_credentials_reraises():
    vault = Vault({'a': ConnectionInfo(server='https://a')})
    error = RuntimeError('401')
    with pytest.raises(RuntimeError) as err:
        await vault.invalidate(VaultKey('a'), exc=error)
    assert err.value is error
    assert not vault


async def test_invalidated_credentials_are_not_repopulated():
    info = ConnectionInfo(server='https://a')
    vault = Vault({'a': info})
    await vault.invalidate(VaultKey('a'))

    await vault.populate({'a': info})
    assert not vault

    await vault.populate({'a': ConnectionInfo(server='https://a', token='new')})
    assert vault


async def test_only_connection_infos_are_accepted():
    with pytest.raises(ValueError):
        Vault({'a': 'https://a'})


class Closable:
    instances = []

    def __init__(self, info):
        super().__init__()
        self.info = info
        self.closed = False
        Closable.instances.append(self)

    async def close(self):
        self.closed = True


async def test_cached_objects_are_created_once_and_closed():
    Closable.instances.clear()
    vault = Vault({'a': ConnectionInfo(server='https://a')})

    async for _, _, obj1 in vault.extended(Closable, 'test'):
        pass
    async for _, _, obj2 in vault.extended(Closable, 'test'):
        pass

    assert obj1 is obj2
    assert len(Closable.instances) == 1

    await vault.close()
    assert obj1.closed
