from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from globalsched.core.errors import ExternalProviderError

T = TypeVar("T")

logger = logging.getLogger("globalsched.external")


@dataclass(frozen=True)
class ExternalCallPolicy:
    attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))


def call_external(op: str, fn: Callable[[], T], policy: ExternalCallPolicy) -> T:
    """
    Bounded retry for scheduler/runner API calls.

    Raises ExternalProviderError once `policy.attempts` calls have failed.
    """
    attempts = max(1, int(policy.attempts))
    last_err: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_err = e
            logger.warning("external_call_failed op=%s attempt=%d/%d error=%s", op, attempt, attempts, e)
            if attempt < attempts:
                policy.sleep(policy.delay_for(attempt))
    raise ExternalProviderError(
        f"op={op} attempts={attempts} error={type(last_err).__name__}: {last_err}",
        op=op,
        attempts=attempts,
    ) from last_err
