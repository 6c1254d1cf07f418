"""
Rudimentary login to the cluster API.

Only the raw credentials of the two trivial cases are supported:
the in-cluster service account and the local kubeconfig files.
No auth-provider plugins are executed and no tokens are refreshed.

Both sources are tried; whatever is found is put into the credentials vault,
the in-cluster service account being preferred if both are present.

.. seealso::
    :mod:`crscale._cogs.structs.credentials`.
"""
import logging
import os
from collections.abc import Iterable
from typing import Any

import yaml

from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import credentials

logger = logging.getLogger(__name__)

# Higher priority is more preferred.
PRIORITY_OF_KUBECONFIG: int = 10
PRIORITY_OF_SERVICE_ACCOUNT: int = 20

# As per https://kubernetes.io/docs/tasks/run-application/access-api-from-pod/
SERVICE_ACCOUNT_DIR = '/var/run/secrets/kubernetes.io/serviceaccount'
SERVICE_ACCOUNT_SERVER = 'https://kubernetes.default.svc'

DEFAULT_KUBECONFIG = '~/.kube/config'


def _read_stripped(path: str) -> str | None:
    if not os.path.exists(path):
        return None
    with open(path, encoding='utf-8') as f:
        return f.read().strip()


def has_service_account() -> bool:
    return os.path.exists(os.path.join(SERVICE_ACCOUNT_DIR, 'token'))


def login_with_service_account() -> credentials.ConnectionInfo | None:
    token = _read_stripped(os.path.join(SERVICE_ACCOUNT_DIR, 'token'))
    if token is None:
        return None
    ca_path = os.path.join(SERVICE_ACCOUNT_DIR, 'ca.crt')
    return credentials.ConnectionInfo(
        server=SERVICE_ACCOUNT_SERVER,
        ca_path=ca_path if os.path.exists(ca_path) else None,
        token=token or None,
        default_namespace=_read_stripped(os.path.join(SERVICE_ACCOUNT_DIR, 'namespace')) or None,
        priority=PRIORITY_OF_SERVICE_ACCOUNT,
    )


def _kubeconfig_paths() -> list[str]:
    # As per https://kubernetes.io/docs/concepts/configuration/organize-cluster-access-kubeconfig/
    env_value = os.environ.get('KUBECONFIG')
    if env_value:
        return [os.path.expanduser(path.strip()) for path in env_value.split(os.pathsep) if path.strip()]
    default_path = os.path.expanduser(DEFAULT_KUBECONFIG)
    return [default_path] if os.path.exists(default_path) else []


def has_kubeconfig() -> bool:
    return bool(_kubeconfig_paths())


def _merge_kubeconfigs(paths: Iterable[str]) -> dict[str, Any]:
    """
    Merge the kubeconfig files: the first found value of every entry wins.

    As prescribed for kubeconfigs, an absent or unparseable file is a failure.
    """
    merged: dict[str, Any] = {'current-context': None, 'contexts': {}, 'clusters': {}, 'users': {}}
    for path in paths:
        with open(path, encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
        merged['current-context'] = merged['current-context'] or config.get('current-context')
        for section, field in [('contexts', 'context'), ('clusters', 'cluster'), ('users', 'user')]:
            for entry in config.get(section) or []:
                merged[section].setdefault(entry['name'], entry.get(field) or {})
    return merged


def login_with_kubeconfig() -> credentials.ConnectionInfo | None:
    paths = _kubeconfig_paths()
    if not paths:
        return None

    config = _merge_kubeconfigs(paths)
    if config['current-context'] is None:
        raise credentials.LoginError('Current context is not set in kubeconfigs.')
    try:
        context = config['contexts'][config['current-context']]
        cluster = config['clusters'][context['cluster']]
        user = config['users'][context['user']] if context.get('user') else {}
    except KeyError as e:
        raise credentials.LoginError(f'The kubeconfigs are inconsistent: {e} is not found.')

    # The auth-provider's token is used as is, even if it is expired.
    provider_token = user.get('auth-provider', {}).get('config', {}).get('access-token')
    return credentials.ConnectionInfo(
        server=cluster.get('server'),
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token') or provider_token,
        default_namespace=context.get('namespace'),
        priority=PRIORITY_OF_KUBECONFIG,
    )


def login(
        *,
        logger: typedefs.Logger = logger,
) -> dict[str, credentials.ConnectionInfo]:
    """
    Collect all the credentials available in the environment.

    Raises `LoginError` if there are none, as the controller cannot work then.
    """
    found: dict[str, credentials.ConnectionInfo] = {}
    if has_service_account() and (info := login_with_service_account()) is not None:
        logger.debug("Logged in with the in-cluster service account.")
        found['service-account'] = info
    if has_kubeconfig() and (info := login_with_kubeconfig()) is not None:
        logger.debug("Logged in with the kubeconfig file.")
        found['kubeconfig'] = info
    if not found:
        raise credentials.LoginError("Cannot login: neither the in-cluster service account, "
                                     "nor a kubeconfig file is found.")
    return found


async def authenticate(
        *,
        vault: credentials.Vault,
        logger: typedefs.Logger = logger,
) -> None:
    """ Login and put the found credentials into the vault. """
    await vault.populate(login(logger=logger))
