import contextlib
import dataclasses
from collections.abc import Callable, Iterable, Iterator

from crscale._cogs.helpers import typedefs


@dataclasses.dataclass(frozen=False)
class Throttler:
    """ A state of throttling for one specific object (there can be many). """
    source_of_delays: Iterator[float] | None = None
    last_used_delay: float | None = None
    active_until: float | None = None  # the event loop's clock

    def is_active(self, now: float) -> bool:
        return self.active_until is not None and self.active_until > now


@contextlib.contextmanager
def throttled(
        *,
        throttler: Throttler,
        delays: Iterable[float],
        clock: Callable[[], float],
        logger: typedefs.Logger,
        errors: type[BaseException] | tuple[type[BaseException], ...] = Exception,
        expected: type[BaseException] | tuple[type[BaseException], ...] = (),
) -> Iterator[None]:
    """
    Activate the throttling on errors, and reset it on successes.

    The throttling itself is not awaited here: the caller decides how to wait
    until ``throttler.active_until``, e.g. by scheduling a delayed retry.

    Every next error of the same throttler leads to the next delay; once the
    delays are depleted, the last one is repeated infinitely. If there are
    no delays at all, the throttling is never activated, only logged.

    The errors of interest are logged and suppressed; all others are escalated.
    The expected errors are logged briefly, the unexpected ones with tracebacks.
    """
    try:
        yield

    except Exception as e:

        # If it is not an error-of-interest, escalate normally. BaseExceptions are escalated always.
        if not isinstance(e, errors):
            raise

        # Activate throttling if not yet active, or reuse the active sequence of delays.
        if throttler.source_of_delays is None:
            throttler.source_of_delays = iter(delays)

        # Choose a delay. If there are none, avoid throttling at all.
        delay = next(throttler.source_of_delays, throttler.last_used_delay)
        if delay is not None:
            throttler.last_used_delay = delay
            throttler.active_until = clock() + delay
            if isinstance(e, expected):
                logger.error(f"Throttling for {delay} seconds due to an error: {e}")
            else:
                logger.exception(f"Throttling for {delay} seconds due to an unexpected error: {e!r}")
        else:
            throttler.active_until = None
            if isinstance(e, expected):
                logger.error(f"Failed with no retries configured: {e}")
            else:
                logger.exception(f"Failed with no retries configured: {e!r}")

    else:
        # Reset the throttling. Release the iterator to keep the memory free during normal run.
        throttler.source_of_delays = throttler.last_used_delay = throttler.active_until = None
