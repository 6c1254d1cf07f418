"""
The reconciliation of a single custom resource with its owned workload.

The reconciler is invoked with the object's key only, never with its body:
every pass starts with a fresh read of both objects from the store,
so nothing stale is ever carried from one pass to another.

One pass does the minimal set of writes to converge the objects:

* Creates the workload if it is absent.
* Scales the workload if its replicas differ from the desired ones.
* Reports the workload's observed state on the resource's status.

Every write is guarded by the objects' resource versions. If any of the writes
conflicts with a concurrent change (or the object disappears meanwhile),
the whole pass is re-run from the fresh read -- the changes are never merged.

The state of the resource passes through the phases::

    Unknown -> Creating -> Scaling -> Converged

Any change of the desired replicas brings the resource back to scaling.
The deletion is not a phase: the workload is garbage-collected by the cluster
via its owner reference, and the next pass finds nothing to reconcile.
"""
import dataclasses
import datetime
import enum
import logging
from collections.abc import Callable

from crscale._cogs.clients import errors
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import conditions, references, schemes
from crscale._cogs.structs.conditions import ConditionStatus
from crscale._core.engines import stores
from crscale._kits import scaling, synchronizing

logger = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    UNKNOWN = 'Unknown'
    CREATING = 'Creating'
    SCALING = 'Scaling'
    CONVERGED = 'Converged'


@dataclasses.dataclass(frozen=True)
class Result:
    requeue_after: float | None = None
    phase: Phase = Phase.UNKNOWN


class ReconciliationError(Exception):
    """ A base for the errors of the reconciliation passes. """


class InvariantViolation(ReconciliationError):
    """
    The objects are in a state which the reconciler cannot fix by itself.

    The violation is reported on the resource's status (``Degraded=True``)
    before being raised. It is retried with backoff in case someone fixes it.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class ConflictRetriesExhausted(ReconciliationError):
    """ The objects keep changing concurrently: the pass is given up for now. """


# The errors that make the pass re-run from a fresh read, if raised by the writes.
RETRIED_ERRORS = (errors.APIConflictError, errors.APINotFoundError)


class Reconciler:

    def __init__(
            self,
            *,
            store: stores.Store,
            scheme: schemes.Scheme,
            settings: configuration.OperatorSettings,
            clock: Callable[[], datetime.datetime] = conditions.utcnow,
    ) -> None:
        super().__init__()
        self.store = store
        self.scheme = scheme
        self.settings = settings
        self.clock = clock

    async def __call__(
            self,
            key: references.ObjectKey,
            *,
            logger: typedefs.Logger = logger,
    ) -> Result:
        attempts = 1 + max(0, self.settings.reconciling.conflict_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await self.reconcile(key, logger=logger)
            except RETRIED_ERRORS as e:
                logger.debug(f"Re-running the pass after a concurrent change "
                             f"(attempt #{attempt}/{attempts}): {e!r}")
                if attempt >= attempts:
                    raise ConflictRetriesExhausted(
                        f"The objects kept changing concurrently for {attempts} passes.") from e
        raise RuntimeError("Reached an impossible state: the end of the conflict retries.")

    async def reconcile(
            self,
            key: references.ObjectKey,
            *,
            logger: typedefs.Logger = logger,
    ) -> Result:
        """
        Do a single pass with no retries: the conflicts are escalated.
        """
        raw = await self.store.get(references.SCALABLES, key)
        if raw is None:
            logger.debug("The resource is absent. Nothing to reconcile.")
            return Result()

        now = self.clock()
        resource: schemes.ScalableResource = self.scheme.decode(references.SCALABLES, raw)

        # Make a freshly created resource observable before anything else is done.
        if not resource.status.conditions:
            initial: conditions.Conditions = ()
            for type in conditions.TRACKED_TYPES:
                initial = conditions.upsert(initial, type, ConditionStatus.UNKNOWN,
                                            'Reconciling', "The reconciliation has started.", now)
            resource = await self._write_status(resource, dataclasses.replace(
                resource.status, conditions=initial))

        try:
            return await self._converge(resource, now=now, logger=logger)
        except InvariantViolation as e:
            await self._report_violation(resource, e, now=now)
            raise

    async def _converge(
            self,
            resource: schemes.ScalableResource,
            *,
            now: datetime.datetime,
            logger: typedefs.Logger,
    ) -> Result:
        requeue_delay = self.settings.reconciling.requeue_delay
        desired = get_desired_replicas(resource)

        # Create the workload if absent. The status is reported on the next passes.
        raw_workload = await self.store.get(references.DEPLOYMENTS, synchronizing.workload_key(resource))
        if raw_workload is None:
            body = synchronizing.build_workload(resource, desired, self.settings)
            await self.store.create(references.DEPLOYMENTS, body)
            logger.info(f"Created the workload with {desired} replicas.")
            message = "The workload is being created."
            status = resource.status
            status = self._set(status, conditions.AVAILABLE, ConditionStatus.FALSE, 'Creating', message, now)
            status = self._set(status, conditions.READY, ConditionStatus.FALSE, 'Creating', message, now)
            status = self._set(status, conditions.DEGRADED, ConditionStatus.FALSE, 'AsExpected', '', now)
            await self._write_status_if_changed(resource, status)
            return Result(requeue_after=requeue_delay, phase=Phase.CREATING)

        # Never touch someone else's workload, even if it is named the same.
        workload: schemes.OwnedWorkload = self.scheme.decode(references.DEPLOYMENTS, raw_workload)
        if not synchronizing.is_controlled_by(workload, resource):
            raise InvariantViolation('OwnershipConflict',
                                     f"The deployment {workload.key} exists but is not "
                                     f"controlled by this resource.")

        # Scale the workload if needed. The status remains as is until the workload is rolled out.
        if workload.replicas != desired:
            await self.store.update(references.DEPLOYMENTS, synchronizing.scaled(workload.raw, desired))
            logger.info(f"Scaled the workload from {workload.replicas} to {desired} replicas.")
            return Result(requeue_after=requeue_delay, phase=Phase.SCALING)

        # The workload is as desired. Report what it observes.
        try:
            selector = scaling.format_selector(workload.selector)
        except ValueError as e:
            raise InvariantViolation('MalformedSelector', f"The workload's selector is unusable: {e}")

        # A resource already reported at another scale keeps that report until the rollout is done.
        observed = workload.status.replicas
        rolling_out = observed != desired or workload.status.ready_replicas < desired
        if rolling_out and resource.status.replicas not in (None, desired):
            logger.debug(f"Waiting for the rollout: {workload.status.ready_replicas}/{desired} "
                         f"replicas are ready, {resource.status.replicas} are reported.")
            return Result(requeue_after=requeue_delay, phase=Phase.SCALING)

        available = is_workload_available(workload, desired)
        ready = available and not rolling_out

        status = dataclasses.replace(resource.status, replicas=observed, selector=selector)
        if available:
            status = self._set(status, conditions.AVAILABLE, ConditionStatus.TRUE,
                               'MinimumReplicasAvailable',
                               f"{workload.status.available_replicas}/{desired} replicas are available.", now)
        else:
            status = self._set(status, conditions.AVAILABLE, ConditionStatus.FALSE,
                               'ReplicasUnavailable',
                               f"{observed}/{desired} replicas are running; the workload is not available.", now)
        if ready:
            status = self._set(status, conditions.READY, ConditionStatus.TRUE,
                               'ReplicasReady', f"{workload.status.ready_replicas}/{desired} replicas are ready.", now)
        else:
            status = self._set(status, conditions.READY, ConditionStatus.FALSE,
                               'ScalingInProgress', f"{workload.status.ready_replicas}/{desired} replicas are ready.", now)
        status = self._set(status, conditions.DEGRADED, ConditionStatus.FALSE, 'AsExpected', '', now)

        written = await self._write_status_if_changed(resource, status)
        if written is not resource:
            logger.debug(f"Reported {observed}/{desired} replicas (ready={ready}).")

        if ready:
            return Result(requeue_after=None, phase=Phase.CONVERGED)
        return Result(requeue_after=requeue_delay, phase=Phase.SCALING)

    async def _report_violation(
            self,
            resource: schemes.ScalableResource,
            violation: InvariantViolation,
            *,
            now: datetime.datetime,
    ) -> None:
        status = resource.status
        status = self._set(status, conditions.DEGRADED, ConditionStatus.TRUE,
                           violation.reason, violation.message, now)
        status = self._set(status, conditions.READY, ConditionStatus.FALSE,
                           violation.reason, violation.message, now)
        await self._write_status_if_changed(resource, status)

    @staticmethod
    def _set(
            status: schemes.ScalableStatus,
            type: str,
            value: ConditionStatus,
            reason: str,
            message: str,
            now: datetime.datetime,
    ) -> schemes.ScalableStatus:
        updated = conditions.upsert(status.conditions, type, value, reason, message, now)
        return dataclasses.replace(status, conditions=updated)

    async def _write_status_if_changed(
            self,
            resource: schemes.ScalableResource,
            status: schemes.ScalableStatus,
    ) -> schemes.ScalableResource:
        if status == resource.status:
            return resource
        return await self._write_status(resource, status)

    async def _write_status(
            self,
            resource: schemes.ScalableResource,
            status: schemes.ScalableStatus,
    ) -> schemes.ScalableResource:
        body = self.scheme.encode(references.SCALABLES, dataclasses.replace(resource, status=status))
        stored = await self.store.update_status(references.SCALABLES, body)
        return self.scheme.decode(references.SCALABLES, stored)


def get_desired_replicas(resource: schemes.ScalableResource) -> int:
    value = resource.replicas
    if value is None:
        raise InvariantViolation('MissingReplicas', "The desired replicas are not set.")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvariantViolation('InvalidReplicas',
                                 f"The desired replicas must be a non-negative integer, got {value!r}.")
    return value


def is_workload_available(workload: schemes.OwnedWorkload, desired: int) -> bool:
    """
    Check if the workload reports itself as available.

    The workload's own ``Available`` condition is preferred. Without conditions
    (e.g. not yet observed by its own controller), the counts are used instead.
    """
    condition = conditions.find(workload.status.conditions, conditions.AVAILABLE)
    if condition is not None:
        return condition.status == ConditionStatus.TRUE
    return workload.status.available_replicas >= desired
