import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryableError(Exception):
    """failure worth another attempt within the retry budget"""


class TransportError(RetryableError):
    """network/service unreachable or malformed response"""


class NotFoundError(RetryableError):
    """queried entity not visible (yet) at the requested commitment"""


class PermanentError(Exception):
    """failure that short-circuits the retry loop"""


class FailedType:
    """marker for a lookup that never produced a value"""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "FAILED"

    def __reduce__(self):
        return (FailedType, ())


FAILED = FailedType()


def is_failed(value) -> bool:
    return value is FAILED


@dataclass
class RetryPolicy:
    """exponential backoff with a cap on total elapsed time per call"""
    initial_interval: float = 0.5
    multiplier: float = 1.5
    randomization_factor: float = 0.5
    max_interval: float = 60.0
    max_elapsed: float = 180.0
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def delays(self):
        """yield jittered backoff delays forever"""
        interval = self.initial_interval
        while True:
            delta = self.randomization_factor * interval
            yield self.rng.uniform(interval - delta, interval + delta)
            interval = min(interval * self.multiplier, self.max_interval)


def with_retry(operation: Callable[[], T], policy: RetryPolicy) -> Union[T, FailedType]:
    """Call ``operation`` until it returns a value or the budget runs out.

    ``operation`` takes no arguments and signals failure by raising
    ``RetryableError`` (try again after a backoff) or ``PermanentError``
    (give up now). Both end as ``FAILED`` once the policy gives up; any other
    exception is a bug in the operation and propagates.

    A value is only returned if it was produced before ``policy.max_elapsed``
    seconds had passed since the first attempt.
    """
    start = policy.clock()
    deadline = start + policy.max_elapsed
    attempts = 0

    for delay in policy.delays():
        attempts += 1
        try:
            value = operation()
        except PermanentError as e:
            logger.debug(f"Permanent failure after {attempts} attempt(s): {e}")
            return FAILED
        except RetryableError as e:
            now = policy.clock()
            if now >= deadline:
                logger.debug(f"Retry budget exhausted after {attempts} attempt(s): {e}")
                return FAILED
            # never sleep past the deadline
            policy.sleep(min(delay, deadline - now))
            if policy.clock() >= deadline:
                logger.debug(f"Retry budget exhausted after {attempts} attempt(s): {e}")
                return FAILED
            continue

        if policy.clock() > deadline:
            logger.debug(f"Value arrived after the {policy.max_elapsed}s budget, discarding")
            return FAILED
        return value
