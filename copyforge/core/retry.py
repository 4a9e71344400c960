"""
Retry policy for upstream calls.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from .errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_server_error(error: BaseException) -> bool:
    """Only 5xx responses earn another attempt; 4xx would fail the same way."""
    status = getattr(error, "status_code", None)
    return status is None or status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to attempt a call and which failures earn another try.

    The default retries a server-side failure exactly once after a short
    fixed delay. Anything not listed in `retry_on`, or rejected by
    `retry_if`, propagates on first raise.
    """
    max_attempts: int = 2
    retry_on: Tuple[Type[BaseException], ...] = (UpstreamError,)
    delay_seconds: float = 2.0
    sleep: Callable[[float], None] = time.sleep
    retry_if: Callable[[BaseException], bool] = is_server_error

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    def call(self, fn: Callable[[], T]) -> T:
        """Run `fn` under this policy and return its result."""
        attempt = 1
        while True:
            try:
                return fn()
            except self.retry_on as e:
                if attempt >= self.max_attempts or not self.retry_if(e):
                    raise
                logger.warning(
                    "event=retry.scheduled | attempt=%d | max_attempts=%d | error=%s",
                    attempt, self.max_attempts, e,
                )
                self.sleep(self.delay_seconds)
                attempt += 1
