"""
Retry policy and a generic "attempt with policy" helper.

The helper never logs. Callers that want to report failed attempts pass an
``on_failure`` callback.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Type


def linear_backoff(base_delay: float, attempt: int) -> float:
    """Delay before ``attempt`` (1-based): base, 2*base, 3*base..."""
    return base_delay * attempt


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently to retry one operation.

    max_attempts counts the first try. No delay precedes the first attempt;
    attempt N >= 2 waits ``backoff(base_delay, N)`` seconds.
    """
    max_attempts: int = 3
    base_delay: float = 5.0
    backoff: Callable[[float, int], float] = linear_backoff
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def delay_before(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return max(0.0, self.backoff(self.base_delay, attempt))


@dataclass
class AttemptOutcome:
    """Result of running an operation under a RetryPolicy"""
    succeeded: bool
    attempts: int
    value: Any = None
    errors: List[BaseException] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None


def attempt_with_policy(
    operation: Callable[[], Any],
    policy: RetryPolicy,
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> AttemptOutcome:
    """
    Run ``operation`` until it returns or ``policy.max_attempts`` is used up.

    Exceptions outside ``policy.retry_on`` propagate immediately.
    """
    sleep = sleep or time.sleep
    errors: List[BaseException] = []
    for attempt in range(1, policy.max_attempts + 1):
        delay = policy.delay_before(attempt)
        if delay > 0:
            sleep(delay)
        try:
            value = operation()
        except policy.retry_on as exc:
            errors.append(exc)
            if on_failure is not None:
                on_failure(attempt, exc)
            continue
        return AttemptOutcome(succeeded=True, attempts=attempt, value=value, errors=errors)

    return AttemptOutcome(succeeded=False, attempts=policy.max_attempts, errors=errors)
