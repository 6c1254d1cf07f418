import asyncio
import logging

import yaml

from crscale._cogs.clients.errors import APIConflictError, APINotFoundError
from crscale._cogs.structs.references import CRDS, SCALABLES
from crscale.cli import CLIControls
from crscale.testing import MemoryStore


def test_help(invoke):
    result = invoke(['--help'])
    assert result.exit_code == 0
    for command in ['run', 'manifests', 'install', 'apply-sample', 'scale']:
        assert command in result.output


def test_version(invoke):
    result = invoke(['--version'])
    assert result.exit_code == 0
    assert 'crscale' in result.output


def test_manifests_of_the_crd(invoke):
    result = invoke(['manifests', 'crd'])
    assert result.exit_code == 0
    crd, = yaml.safe_load_all(result.output)
    assert crd['kind'] == 'CustomResourceDefinition'
    assert crd['metadata']['name'] == 'scalableresources.crscale.dev'


def test_manifests_of_everything(invoke):
    result = invoke(['manifests', '--name', 'ctl', '-n', 'ops', '--image', 'example/ctl:1',
                     '--workload-image', 'example/app:2'])
    assert result.exit_code == 0
    documents = list(yaml.safe_load_all(result.output))
    kinds = [document['kind'] for document in documents]
    assert kinds[0] == 'CustomResourceDefinition'
    assert kinds[-1] == 'Deployment'
    assert 'ScalableResource' not in kinds

    operator = documents[-1]
    container, = operator['spec']['template']['spec']['containers']
    assert operator['metadata']['namespace'] == 'ops'
    assert container['image'] == 'example/ctl:1'
    assert container['env'] == [{'name': 'CRSCALE_WORKLOAD_IMAGE', 'value': 'example/app:2'}]


def test_manifests_with_an_unknown_kind(invoke):
    result = invoke(['manifests', 'nonexistent'])
    assert result.exit_code == 2


def test_install_creates_the_crd(invoke, execute, mocker):
    create_obj = mocker.patch('crscale._cogs.clients.creating.create_obj', return_value={})

    result = invoke(['install'])

    assert result.exit_code == 0
    assert "scalableresources.crscale.dev is created." in result.output
    assert create_obj.call_args.kwargs['resource'] == CRDS
    assert execute.called


def test_install_updates_the_existing_crd(invoke, execute, mocker):
    mocker.patch('crscale._cogs.clients.creating.create_obj',
                 side_effect=APIConflictError(None, status=409))
    mocker.patch('crscale._cogs.clients.fetching.read_obj',
                 return_value={'metadata': {'resourceVersion': '9'}})
    replace_obj = mocker.patch('crscale._cogs.clients.updating.replace_obj', return_value={})

    result = invoke(['install'])

    assert result.exit_code == 0
    assert "scalableresources.crscale.dev is updated." in result.output
    assert replace_obj.call_args.kwargs['body']['metadata']['resourceVersion'] == '9'


def test_apply_sample(invoke, execute, mocker):
    create_obj = mocker.patch('crscale._cogs.clients.creating.create_obj', return_value={})

    result = invoke(['apply-sample', '--name', 'demo', '-n', 'ns1', '-r', '2'])

    assert result.exit_code == 0
    assert "ns1/demo is created." in result.output
    body = create_obj.call_args.kwargs['body']
    assert create_obj.call_args.kwargs['resource'] == SCALABLES
    assert body['metadata'] == {'name': 'demo', 'namespace': 'ns1'}
    assert body['spec'] == {'replicas': 2}


def test_apply_sample_when_it_exists(invoke, execute, mocker):
    mocker.patch('crscale._cogs.clients.creating.create_obj',
                 side_effect=APIConflictError(None, status=409))
    result = invoke(['apply-sample'])
    assert result.exit_code == 0
    assert "default/example already exists." in result.output


def test_scale(invoke, execute, mocker):
    patch_scale = mocker.patch('crscale._cogs.clients.scaling.patch_scale',
                               return_value={'spec': {'replicas': 5}})

    result = invoke(['scale', 'web', '-n', 'ns1', '-r', '5'])

    assert result.exit_code == 0
    assert "ns1/web is scaled to 5 replicas." in result.output
    assert patch_scale.call_args.kwargs['replicas'] == 5
    assert patch_scale.call_args.kwargs['name'] == 'web'


def test_scale_is_shown_without_replicas(invoke, execute, mocker):
    read_scale = mocker.patch('crscale._cogs.clients.scaling.read_scale', return_value={
        'spec': {'replicas': 5}, 'status': {'replicas': 3, 'selector': 'app=web'}})
    patch_scale = mocker.patch('crscale._cogs.clients.scaling.patch_scale')

    result = invoke(['scale', 'web', '-n', 'ns1'])

    assert result.exit_code == 0
    assert "ns1/web has 5 desired and 3 observed replicas; selector: app=web" in result.output
    assert read_scale.call_args.kwargs['name'] == 'web'
    assert read_scale.call_args.kwargs['namespace'] == 'ns1'
    assert not patch_scale.called


def test_scale_of_an_absent_resource_is_not_shown(invoke, execute, mocker):
    mocker.patch('crscale._cogs.clients.scaling.read_scale',
                 side_effect=APINotFoundError(None, status=404))
    result = invoke(['scale', 'web'])
    assert result.exit_code == 1
    assert "default/web is not found." in result.output


def test_scale_an_absent_resource(invoke, execute, mocker):
    mocker.patch('crscale._cogs.clients.scaling.patch_scale',
                 side_effect=APINotFoundError(None, status=404))
    result = invoke(['scale', 'web', '-r', '5'])
    assert result.exit_code == 1
    assert "default/web is not found." in result.output


def test_scale_requires_non_negative_replicas(invoke):
    result = invoke(['scale', 'web', '-r', '-1'])
    assert result.exit_code == 2


#
# The controller itself, stopped immediately via the pre-set stop-flag.
#

def make_controls(settings):
    stop_flag = asyncio.Event()
    stop_flag.set()
    return CLIControls(stop_flag=stop_flag, store=MemoryStore(), settings=settings)


def test_run_in_a_namespace(invoke, settings):
    result = invoke(['run', '-n', 'ns1'], obj=make_controls(settings))
    assert result.exit_code == 0


def test_run_with_both_namespace_options(invoke, settings):
    result = invoke(['run', '-n', 'ns1', '--all-namespaces'], obj=make_controls(settings))
    assert result.exit_code == 2
    assert "not both" in result.output


def test_run_without_namespace_options(invoke, settings, caplog):
    caplog.set_level(logging.DEBUG)
    result = invoke(['run'], obj=make_controls(settings))
    assert result.exit_code == 0
    assert any("serving all namespaces" in message for message in caplog.messages)


def test_run_options_go_to_the_settings(invoke, settings):
    result = invoke(['run', '-A', '--workload-image', 'example/app:2', '--worker-limit', '3',
                     '--requeue-delay', '0.5', '--pass-timeout', '10', '--conflict-retries', '1'],
                    obj=make_controls(settings))
    assert result.exit_code == 0
    assert settings.workload.image == 'example/app:2'
    assert settings.queueing.worker_limit == 3
    assert settings.reconciling.requeue_delay == 0.5
    assert settings.reconciling.pass_timeout == 10
    assert settings.reconciling.conflict_retries == 1


def test_run_options_from_the_environment(invoke, settings):
    env = {'CRSCALE_WORKLOAD_IMAGE': 'example/env:3', 'CRSCALE_RUN_WORKER_LIMIT': '7'}
    result = invoke(['run', '-A'], obj=make_controls(settings), env=env)
    assert result.exit_code == 0
    assert settings.workload.image == 'example/env:3'
    assert settings.queueing.worker_limit == 7


def test_run_rejects_invalid_options(invoke, settings):
    result = invoke(['run', '-A', '--worker-limit', '0'], obj=make_controls(settings))
    assert result.exit_code == 2
