import asyncio
import logging

import click.testing
import pytest

from crscale._cogs.configs.configuration import OperatorSettings
from crscale.cli import main


@pytest.fixture(autouse=True)
def restored_logging():
    """ The commands configure the logging globally; revert it after every test. """
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    try:
        yield
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)


@pytest.fixture()
def invoke():
    runner = click.testing.CliRunner()

    def invoke_fn(args, **kwargs):
        return runner.invoke(main, args, catch_exceptions=False, **kwargs)

    return invoke_fn


@pytest.fixture()
def execute(mocker):
    """ Run the one-shot commands with no login to the cluster (the API calls are mocked). """
    def execute_fn(command, *, settings=None, vault=None):
        return asyncio.run(command(settings if settings is not None else OperatorSettings()))

    return mocker.patch('crscale._core.reactor.running.execute', side_effect=execute_fn)
