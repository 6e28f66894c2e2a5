import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import TransferFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientError(Exception):
    """Raised by an operation to ask for another attempt."""


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 5.0
    multiplier: float = 2.0
    ceiling: float = 300.0
    max_attempts: int = 10

    def delay(self, failures: int) -> float:
        """Delay before the next attempt after ``failures`` failed attempts."""
        return min(self.base_delay * self.multiplier ** (failures - 1), self.ceiling)


def retry(
    operation: Callable[[], T],
    policy: BackoffPolicy,
    describe: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, float, Exception], None] | None = None,
) -> T:
    """Run ``operation`` until it stops raising TransientError or attempts run out.

    Any other exception propagates immediately.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation()
        except TransientError as exc:
            if attempt >= policy.max_attempts:
                logger.error(
                    "giving up",
                    extra={"operation": describe, "attempts": attempt, "error": str(exc)},
                )
                raise TransferFailed(
                    f"{describe} failed after {policy.max_attempts} attempts: {exc}"
                ) from exc
            delay = policy.delay(attempt)
            logger.warning(
                "attempt failed, retrying",
                extra={"operation": describe, "attempt": attempt, "delay": delay, "error": str(exc)},
            )
            if on_retry:
                on_retry(attempt, delay, exc)
            sleep(delay)
    raise TransferFailed(f"{describe} was never attempted (max_attempts={policy.max_attempts})")
