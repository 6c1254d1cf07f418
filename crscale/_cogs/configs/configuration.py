"""
All configuration flags, options, settings to fine-tune the controller.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

The settings are constructed once at the process start (from the defaults,
the CLI options, and the ``CRSCALE_*`` environment variables), and are never
modified afterwards: all the components only read them.
"""
import dataclasses
from collections.abc import Iterable


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: float | None = 5 * 60  # == aiohttp.client.DEFAULT_TIMEOUT
    """
    A timeout for the API requests (except watching; see ``watching``).
    """

    connect_timeout: float | None = None
    """
    A timeout for the connection establishment of the API requests.
    """

    error_backoffs: Iterable[float] = (1, 1, 2, 3, 5, 8)
    """
    Backoff intervals in case of retryable errors of the API requests.

    Only the connection errors, timeouts, HTTP 429 and 5xx are retried;
    all other errors are escalated to the caller immediately.
    When the backoffs are depleted, the last error is escalated.

    To disable retrying, set it to ``[]`` or ``()``.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: float | None = None
    """
    The maximum duration of one streaming request. Patched in some tests.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: float | None = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: float | None = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between watch requests (to prevent API flooding).
    """


@dataclasses.dataclass
class QueueingSettings:
    """
    Settings for how the watch-events are dispatched to the reconciler.
    """

    worker_limit: int | None = 16
    """
    How many objects can be reconciled simultaneously.
    If ``None``, there is no limit to the number of workers (as many as needed).
    """

    idle_timeout: float = 5.0
    """
    How soon an idle worker is exited and garbage-collected if no events arrive.
    """

    batch_window: float = 0.1
    """
    How long does a worker wait for more events after the first one.
    All events arriving within this window are coalesced into one pass.
    """

    exit_timeout: float = 2.0
    """
    How soon a worker is cancelled when the dispatcher is closing.
    This is the time given to the worker to finish its current pass.
    """

    error_delays: Iterable[float] = (1, 1, 2, 4, 8, 16, 32, 64, 128, 256)
    """
    Backoff intervals for retrying the failed reconciliation passes.

    Every further failure of the same object leads to the next, bigger delay;
    once depleted, the last delay is repeated. Every success resets the delays.

    To disable the retries (on your own risk), set it to ``[]`` or ``()``:
    the failed objects are then reconciled only on the next watch-event.
    """


@dataclasses.dataclass
class ReconcilingSettings:

    requeue_delay: float = 2.0
    """
    How soon an object is reconciled again after its workload was changed,
    or while the workload is not ready yet (a short delay to let the cluster
    schedule the pods before the next pass re-reads the status).
    """

    pass_timeout: float | None = 60.0
    """
    A deadline for a single reconciliation pass (including all API calls).
    If exceeded, the pass is cancelled and retried as a transient failure.
    """

    conflict_retries: int = 3
    """
    How many times a pass is re-run from a fresh read when the store reports
    a version conflict (or a concurrent deletion) of a written object.
    """


@dataclasses.dataclass
class WorkloadSettings:
    """
    The default pod template of the owned workloads.

    It is used only when the workload is created. Existing workloads
    are not re-synced when these settings change.
    """

    image: str = 'quay.io/nginx/nginx-unprivileged:stable-alpine'
    container_name: str = 'app'
    container_port: int = 8080


@dataclasses.dataclass
class OperatorSettings:
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
    reconciling: ReconcilingSettings = dataclasses.field(default_factory=ReconcilingSettings)
    workload: WorkloadSettings = dataclasses.field(default_factory=WorkloadSettings)
