import asyncio
import dataclasses
import functools
import logging
from collections.abc import Callable
from typing import Any

import click

from crscale._cogs.clients import creating, errors, fetching, scaling, updating
from crscale._cogs.configs import configuration
from crscale._cogs.helpers import versions
from crscale._cogs.structs import credentials, references
from crscale._core.actions import loggers
from crscale._core.engines import stores
from crscale._core.reactor import running
from crscale._kits import manifests

logger = logging.getLogger(__name__)


@dataclasses.dataclass()
class CLIControls:
    """ `crscale run` controls, which are impossible to pass via CLI. """
    stop_flag: asyncio.Event | None = None
    vault: credentials.Vault | None = None
    store: stores.Store | None = None
    settings: configuration.OperatorSettings | None = None


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: bool | None = False,
                log_refkey: str | None = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


@click.version_option(version=versions.version, prog_name='crscale')
@click.group(name='crscale', context_settings=dict(
    auto_envvar_prefix='CRSCALE',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-A', '--all-namespaces', 'clusterwide', is_flag=True)
@click.option('-n', '--namespace', type=str)
@click.option('--workload-image', type=str, envvar='CRSCALE_WORKLOAD_IMAGE')
@click.option('--worker-limit', type=click.IntRange(min=1))
@click.option('--requeue-delay', type=click.FloatRange(min=0))
@click.option('--pass-timeout', type=click.FloatRange(min=0, min_open=True))
@click.option('--conflict-retries', type=click.IntRange(min=0))
@click.make_pass_decorator(CLIControls, ensure=True)
def run(
        __controls: CLIControls,
        namespace: str | None,
        clusterwide: bool,
        workload_image: str | None,
        worker_limit: int | None,
        requeue_delay: float | None,
        pass_timeout: float | None,
        conflict_retries: int | None,
) -> None:
    """ Start the controller and reconcile the scalable resources. """
    if namespace and clusterwide:
        raise click.UsageError("Either --namespace or --all-namespaces can be used, not both.")
    if not namespace and not clusterwide:
        logger.warning("No --namespace or --all-namespaces is specified; serving all namespaces.")

    settings = __controls.settings if __controls.settings is not None else configuration.OperatorSettings()
    if workload_image is not None:
        settings.workload.image = workload_image
    if worker_limit is not None:
        settings.queueing.worker_limit = worker_limit
    if requeue_delay is not None:
        settings.reconciling.requeue_delay = requeue_delay
    if pass_timeout is not None:
        settings.reconciling.pass_timeout = pass_timeout
    if conflict_retries is not None:
        settings.reconciling.conflict_retries = conflict_retries

    return running.run(
        settings=settings,
        namespace=references.NamespaceName(namespace) if namespace else None,
        vault=__controls.vault,
        store=__controls.store,
        stop_flag=__controls.stop_flag,
    )


@main.command(name='manifests')
@click.argument('kind', type=click.Choice(manifests.KINDS + ('all',)), default='all')
@click.option('--name', type=str, default=manifests.DEFAULT_OPERATOR_NAME)
@click.option('-n', '--namespace', type=str, default=manifests.DEFAULT_OPERATOR_NAMESPACE)
@click.option('--image', type=str, default=manifests.DEFAULT_OPERATOR_IMAGE)
@click.option('--workload-image', type=str, envvar='CRSCALE_WORKLOAD_IMAGE')
def manifests_(
        kind: str,
        name: str,
        namespace: str,
        image: str,
        workload_image: str | None,
) -> None:
    """ Print the YAML manifests for installing the controller. """
    settings = configuration.OperatorSettings()
    if workload_image is not None:
        settings.workload.image = workload_image
    documents = manifests.build(kind, name=name, namespace=namespace, image=image, settings=settings)
    click.echo(manifests.render(documents), nl=False)


@main.command()
@logging_options
def install() -> None:
    """ Create or update the custom resource definition in the cluster. """
    async def command(settings: configuration.OperatorSettings) -> None:
        body = manifests.build_crd()
        name = body['metadata']['name']
        try:
            await creating.create_obj(settings=settings, resource=references.CRDS,
                                      body=body, logger=logger)
        except errors.APIConflictError:
            existing = await fetching.read_obj(settings=settings, resource=references.CRDS,
                                               namespace=None, name=name, logger=logger)
            if existing is None:
                raise
            body['metadata']['resourceVersion'] = existing['metadata']['resourceVersion']
            await updating.replace_obj(settings=settings, resource=references.CRDS,
                                       body=body, logger=logger)
            click.echo(f"The custom resource definition {name} is updated.")
        else:
            click.echo(f"The custom resource definition {name} is created.")

    running.execute(command)


@main.command(name='apply-sample')
@logging_options
@click.option('--name', type=str, default='example')
@click.option('-n', '--namespace', type=str, default='default')
@click.option('-r', '--replicas', type=click.IntRange(min=0), default=3)
def apply_sample(name: str, namespace: str, replicas: int) -> None:
    """ Create a sample scalable resource. """
    async def command(settings: configuration.OperatorSettings) -> None:
        body = manifests.build_sample(name=name, namespace=namespace, replicas=replicas)
        try:
            await creating.create_obj(settings=settings, resource=references.SCALABLES,
                                      body=body, logger=logger)
        except errors.APIConflictError:
            click.echo(f"The scalable resource {namespace}/{name} already exists.")
        else:
            click.echo(f"The scalable resource {namespace}/{name} is created.")

    running.execute(command)


@main.command()
@logging_options
@click.argument('name', type=str)
@click.option('-n', '--namespace', type=str, default='default')
@click.option('-r', '--replicas', type=click.IntRange(min=0))
def scale(name: str, namespace: str, replicas: int | None) -> None:
    """
    Show or set the replicas of a scalable resource via its scale subresource.

    Without ``--replicas``, the current desired & observed replicas are shown.
    """
    async def command(settings: configuration.OperatorSettings) -> None:
        try:
            if replicas is None:
                result = await scaling.read_scale(settings=settings, resource=references.SCALABLES,
                                                  namespace=references.NamespaceName(namespace),
                                                  name=name, logger=logger)
            else:
                result = await scaling.patch_scale(settings=settings, resource=references.SCALABLES,
                                                   namespace=references.NamespaceName(namespace),
                                                   name=name, replicas=replicas, logger=logger)
        except errors.APINotFoundError:
            raise click.ClickException(f"The scalable resource {namespace}/{name} is not found.")

        desired = result.get('spec', {}).get('replicas', replicas)
        if replicas is not None:
            click.echo(f"The scalable resource {namespace}/{name} is scaled to {desired} replicas.")
        else:
            observed = result.get('status', {}).get('replicas', 0)
            selector = result.get('status', {}).get('selector') or '<none>'
            click.echo(f"The scalable resource {namespace}/{name} has {desired} desired "
                       f"and {observed} observed replicas; selector: {selector}")

    running.execute(command)
