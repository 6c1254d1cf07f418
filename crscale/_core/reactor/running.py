import asyncio
import logging
import signal
import threading
from collections.abc import Callable, Collection, Coroutine
from typing import Any, TypeVar

from crscale._cogs.aiokits import aiotasks
from crscale._cogs.clients import auth
from crscale._cogs.configs import configuration
from crscale._cogs.structs import credentials, references, schemes
from crscale._core.engines import stores
from crscale._core.intents import piggybacking
from crscale._core.reactor import queueing, reconciling

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def run(
        *,
        settings: configuration.OperatorSettings | None = None,
        namespace: references.Namespace = None,
        vault: credentials.Vault | None = None,
        store: stores.Store | None = None,
        stop_flag: asyncio.Event | None = None,
) -> None:
    """
    Run the whole controller synchronously.

    This function should be used to run the controller in normal sync mode.
    """
    try:
        asyncio.run(operator(
            settings=settings,
            namespace=namespace,
            vault=vault,
            store=store,
            stop_flag=stop_flag,
        ))
    except asyncio.CancelledError:
        pass


async def operator(
        *,
        settings: configuration.OperatorSettings | None = None,
        namespace: references.Namespace = None,
        vault: credentials.Vault | None = None,
        store: stores.Store | None = None,
        stop_flag: asyncio.Event | None = None,
) -> None:
    """
    Run the whole controller asynchronously.

    This function should be used to run the controller in an asyncio event-loop
    if the controller is orchestrated explicitly and manually.

    If a store is given, it is used as is, with no login to the cluster.
    Otherwise, the cluster API is used with the credentials from the vault;
    if the vault is empty or not given, the credentials are looked up
    in the environment (the in-cluster service account or the kubeconfig).
    """
    settings = settings if settings is not None else configuration.OperatorSettings()
    vault = vault if vault is not None else credentials.Vault()
    try:
        if store is None:
            if not vault:
                await piggybacking.authenticate(vault=vault, logger=logger)
            auth.vault_var.set(vault)  # inherited by all the tasks spawned below.
            store = stores.ApiStore(settings=settings)

        existing_tasks = await aiotasks.all_tasks()
        operator_tasks = await spawn_tasks(
            settings=settings,
            namespace=namespace,
            store=store,
            stop_flag=stop_flag,
        )
        try:
            await run_tasks(operator_tasks, ignored=existing_tasks)
        finally:
            _remove_signal_handlers()
    finally:
        await vault.close()


def execute(
        command: Callable[[configuration.OperatorSettings], Coroutine[Any, Any, _T]],
        *,
        settings: configuration.OperatorSettings | None = None,
        vault: credentials.Vault | None = None,
) -> _T:
    """
    Run a one-shot command against the cluster API, e.g. from the CLI.

    The credentials are handled the same way as for the controller,
    but no watchers, workers, or signal handlers are started.
    """
    return asyncio.run(_execute(command, settings=settings, vault=vault))


async def _execute(
        command: Callable[[configuration.OperatorSettings], Coroutine[Any, Any, _T]],
        *,
        settings: configuration.OperatorSettings | None = None,
        vault: credentials.Vault | None = None,
) -> _T:
    settings = settings if settings is not None else configuration.OperatorSettings()
    vault = vault if vault is not None else credentials.Vault()
    try:
        if not vault:
            await piggybacking.authenticate(vault=vault, logger=logger)
        auth.vault_var.set(vault)
        return await command(settings)
    finally:
        await vault.close()


async def spawn_tasks(
        *,
        settings: configuration.OperatorSettings,
        namespace: references.Namespace,
        store: stores.Store,
        stop_flag: asyncio.Event | None = None,
) -> Collection[aiotasks.Task]:
    """
    Spawn all the tasks needed to run the controller.

    The kinds are registered once here, before any object is dispatched,
    and are never registered afterwards.
    """
    loop = asyncio.get_running_loop()
    signal_flag: aiotasks.Future = asyncio.Future()
    scheme = schemes.make_scheme()
    reconciler = reconciling.Reconciler(store=store, scheme=scheme, settings=settings)
    dispatcher = queueing.Dispatcher(reconciler=reconciler, settings=settings)
    tasks: list[aiotasks.Task] = []

    # A top-level task for external stopping by setting a stop-flag or by OS signals.
    tasks.append(aiotasks.create_guarded_task(
        name="stop-flag checker", finishable=True, logger=logger,
        coro=_stop_flag_checker(
            signal_flag=signal_flag,
            stop_flag=stop_flag)))

    # The dispatcher lives as long as the watchers feed it; it is closed gracefully on exit.
    tasks.append(aiotasks.create_guarded_task(
        name="dispatcher", logger=logger,
        coro=_dispatcher_keeper(dispatcher=dispatcher)))

    tasks.append(aiotasks.create_guarded_task(
        name=f"watcher of {references.SCALABLES}", logger=logger,
        coro=queueing.watcher(
            store=store,
            dispatcher=dispatcher,
            resource=references.SCALABLES,
            namespace=namespace,
            key_fn=queueing.get_scalable_key)))
    tasks.append(aiotasks.create_guarded_task(
        name=f"watcher of {references.DEPLOYMENTS}", logger=logger,
        coro=queueing.watcher(
            store=store,
            dispatcher=dispatcher,
            resource=references.DEPLOYMENTS,
            namespace=namespace,
            key_fn=queueing.get_owner_key)))

    # Ensure that all guarded tasks got control for a moment to enter the guard.
    await asyncio.sleep(0)

    # On Ctrl+C or pod termination, cancel all tasks gracefully.
    if threading.current_thread() is threading.main_thread():
        try:
            loop.add_signal_handler(signal.SIGINT, _set_once, signal_flag, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, _set_once, signal_flag, signal.SIGTERM)
        except NotImplementedError:
            logger.warning("OS signals are ignored: can't add signal handler in Windows.")
    else:
        logger.warning("OS signals are ignored: running not in the main thread.")

    where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
    logger.info(f"The controller is running {where}.")
    return tasks


async def run_tasks(
        root_tasks: Collection[aiotasks.Task],
        *,
        ignored: Collection[aiotasks.Task] = frozenset(),
) -> None:
    """
    Run the root tasks until any of them exits, then stop everything.

    The root tasks never exit normally: an exit of one of them (e.g. by the
    stop-flag, or by a failure) stops all the others. The tasks spawned
    meanwhile (e.g. the workers) are then given a few seconds to finish,
    and are cancelled afterwards. The errors of all these tasks are re-raised.
    """
    try:
        root_done, root_pending = await aiotasks.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await aiotasks.stop(root_tasks, title="Root", logger=logger, cancelled=True, interval=10)
        await _stop_spawned_tasks(ignored=ignored, grace_period=None)
        raise

    root_cancelled, _ = await aiotasks.stop(root_pending, title="Root", logger=logger)
    spawned_done = await _stop_spawned_tasks(ignored=ignored, grace_period=5)
    await aiotasks.reraise(root_done | root_cancelled | spawned_done)


async def _stop_spawned_tasks(
        *,
        ignored: Collection[aiotasks.Task],
        grace_period: float | None,
) -> set[aiotasks.Task]:
    """ Let the leftover tasks finish on their own for a while, then cancel them. """
    tasks = await aiotasks.all_tasks(ignored=ignored)
    done: set[aiotasks.Task] = set()
    pending: set[aiotasks.Task] = set(tasks)
    if grace_period is not None:
        try:
            done, pending = await aiotasks.wait(tasks, timeout=grace_period)
        except asyncio.CancelledError:
            await aiotasks.stop(tasks, title="Hung", logger=logger, cancelled=True, interval=1)
            raise
    cancelled, _ = await aiotasks.stop(pending, title="Hung", logger=logger,
                                       cancelled=grace_period is None, interval=1)
    return done | cancelled


def _remove_signal_handlers() -> None:
    if threading.current_thread() is threading.main_thread():
        loop = asyncio.get_running_loop()
        try:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
        except NotImplementedError:
            pass  # never added in the first place


def _set_once(future: aiotasks.Future, value: object) -> None:
    if not future.done():
        future.set_result(value)


async def _dispatcher_keeper(
        *,
        dispatcher: queueing.Dispatcher,
) -> None:
    try:
        await asyncio.Event().wait()
    finally:
        await dispatcher.close()


async def _stop_flag_checker(
        signal_flag: aiotasks.Future,
        stop_flag: asyncio.Event | None,
) -> None:
    """
    A top-level task for external stopping by setting a stop-flag. Once set,
    this task will exit, and thus all other top-level tasks will be cancelled.
    """

    # Selects the flags to be awaited (if set).
    flags: list[aiotasks.Future] = [signal_flag]
    if stop_flag is not None:
        flags.append(asyncio.create_task(stop_flag.wait(), name="stop-flag waiter"))

    # Wait until one of the stoppers is set/raised.
    try:
        done, pending = await asyncio.wait(flags, return_when=asyncio.FIRST_COMPLETED)
        future = done.pop()
        result = await future
    except asyncio.CancelledError:
        pass  # the controller is stopping for any other reason
    else:
        if isinstance(result, signal.Signals):
            logger.info("Signal %s is received. The controller is stopping.", result.name)
        else:
            logger.info("Stop-flag is raised. The controller is stopping.")
    finally:
        for flag in flags:
            if flag is not signal_flag:
                flag.cancel()
