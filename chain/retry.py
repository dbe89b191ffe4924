# chain_sync/chain/retry.py

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from config import (
    RPC_RETRY_ATTEMPTS,
    RPC_RETRY_BASE_DELAY_MS,
    RPC_RETRY_MAX_DELAY_MS,
    RPC_RETRY_JITTER_MS,
)
from logger import get_logger

log = get_logger("retry")

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


@dataclass
class RetryPolicy:
    """
    Linear backoff: delay = min(base * attempt, max) + jitter.
    Only exceptions whose ``retryable`` attribute is true are retried.
    """
    attempts: int = RPC_RETRY_ATTEMPTS
    base_delay: float = RPC_RETRY_BASE_DELAY_MS / 1000
    max_delay: float = RPC_RETRY_MAX_DELAY_MS / 1000
    jitter: float = RPC_RETRY_JITTER_MS / 1000
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * attempt, self.max_delay) + random.uniform(0, self.jitter)

    def call(self, fn: Callable[[], T], *, label: Optional[str] = None) -> T:
        attempts = max(1, self.attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as e:
                if not is_retryable(e) or attempt >= attempts:
                    raise
                delay = self.delay_for(attempt)
                log.warning(
                    f"{label or 'ledger call'} failed (attempt {attempt}/{attempts}): {e} "
                    f"| retrying in {delay:.2f}s"
                )
                self.sleep(delay)
        raise AssertionError("unreachable")
