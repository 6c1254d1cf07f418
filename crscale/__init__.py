"""
The main crscale module for all the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the controller's top-level interface,
# as it is seen by the users and the embedding code. So, we export the names.

from crscale._cogs.configs.configuration import (
    OperatorSettings,
    NetworkingSettings,
    WatchingSettings,
    QueueingSettings,
    ReconcilingSettings,
    WorkloadSettings,
)
from crscale._cogs.helpers.versions import (
    version as __version__,
)
from crscale._cogs.structs.credentials import (
    LoginError,
    ConnectionInfo,
    Vault,
)
from crscale._cogs.structs.references import (
    ObjectKey,
    Resource,
    SCALABLES,
    DEPLOYMENTS,
)
from crscale._cogs.structs.schemes import (
    ScalableResource,
    ScalableStatus,
    OwnedWorkload,
    WorkloadStatus,
    Scheme,
    make_scheme,
)
from crscale._core.actions.loggers import (
    configure,
    LogFormat,
)
from crscale._core.engines.stores import (
    Store,
    ApiStore,
)
from crscale._core.intents.piggybacking import (
    login_with_kubeconfig,
    login_with_service_account,
)
from crscale._core.reactor.queueing import (
    Dispatcher,
)
from crscale._core.reactor.reconciling import (
    Phase,
    Result,
    Reconciler,
    ReconciliationError,
    InvariantViolation,
    ConflictRetriesExhausted,
)
from crscale._core.reactor.running import (
    spawn_tasks,
    run_tasks,
    operator,
    run,
)

__all__ = [
    'OperatorSettings', 'NetworkingSettings', 'WatchingSettings',
    'QueueingSettings', 'ReconcilingSettings', 'WorkloadSettings',
    'LoginError', 'ConnectionInfo', 'Vault',
    'ObjectKey', 'Resource', 'SCALABLES', 'DEPLOYMENTS',
    'ScalableResource', 'ScalableStatus', 'OwnedWorkload', 'WorkloadStatus',
    'Scheme', 'make_scheme',
    'configure', 'LogFormat',
    'Store', 'ApiStore',
    'login_with_kubeconfig', 'login_with_service_account',
    'Dispatcher',
    'Phase', 'Result', 'Reconciler',
    'ReconciliationError', 'InvariantViolation', 'ConflictRetriesExhausted',
    'spawn_tasks', 'run_tasks', 'operator', 'run',
]
