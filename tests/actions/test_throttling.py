import logging

import pytest

from crscale._core.actions.throttlers import Throttler, throttled


class Clock:
    def __init__(self):
        super().__init__()
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture()
def clock():
    return Clock()


def test_success_does_not_activate(clock, logger):
    throttler = Throttler()
    with throttled(throttler=throttler, delays=[1, 2], clock=clock, logger=logger):
        pass
    assert throttler.active_until is None
    assert not throttler.is_active(clock())


def test_errors_activate_with_increasing_delays(clock, logger):
    throttler = Throttler()

    with throttled(throttler=throttler, delays=[1, 2], clock=clock, logger=logger):
        raise RuntimeError('boom')
    assert throttler.active_until == 101
    assert throttler.is_active(100.5)
    assert not throttler.is_active(101)

    with throttled(throttler=throttler, delays=[1, 2], clock=clock, logger=logger):
        raise RuntimeError('boom')
    assert throttler.active_until == 102

    with throttled(throttler=throttler, delays=[1, 2], clock=clock, logger=logger):
        raise RuntimeError('boom')
    assert throttler.active_until == 102  # the last delay is repeated


def test_success_resets_the_delays(clock, logger):
    throttler = Throttler()
    with throttled(throttler=throttler, delays=[1, 2], clock=clock, logger=logger):
        raise RuntimeError('boom')
    with throttled(throttler=throttler, delays=[1, 2], clock=clock, logger=logger):
        pass
    with throttled(throttler=throttler, delays=[1, 2], clock=clock, logger=logger):
        raise RuntimeError('boom')
    assert throttler.active_until == 101


def test_no_delays_means_no_throttling(clock, logger, assert_logs):
    throttler = Throttler()
    with throttled(throttler=throttler, delays=[], clock=clock, logger=logger):
        raise RuntimeError('boom')
    assert throttler.active_until is None
    assert_logs([r"Failed with no retries configured: RuntimeError"])


def test_errors_not_of_interest_are_escalated(clock, logger):
    throttler = Throttler()
    with pytest.raises(ValueError):
        with throttled(throttler=throttler, delays=[1], clock=clock, logger=logger,
                       errors=RuntimeError):
            raise ValueError('escalated')
    assert throttler.active_until is None


def test_expected_errors_are_logged_without_tracebacks(clock, logger, caplog):
    caplog.set_level(logging.DEBUG)
    throttler = Throttler()
    with throttled(throttler=throttler, delays=[1], clock=clock, logger=logger,
                   expected=LookupError):
        raise LookupError('expected')

    record, = caplog.records
    assert record.levelno == logging.ERROR
    assert record.getMessage() == "Throttling for 1 seconds due to an error: expected"
    assert record.exc_info is None


def test_unexpected_errors_are_logged_with_tracebacks(clock, logger, caplog):
    caplog.set_level(logging.DEBUG)
    throttler = Throttler()
    with throttled(throttler=throttler, delays=[1], clock=clock, logger=logger,
                   expected=LookupError):
        raise RuntimeError('unexpected')

    record, = caplog.records
    assert record.getMessage() == "Throttling for 1 seconds due to an unexpected error: RuntimeError('unexpected')"
    assert record.exc_info is not None
