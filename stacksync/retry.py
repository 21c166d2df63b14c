#!/usr/bin/env python3

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from stacksync.errors import TransientRemoteError

T = TypeVar("T")

# Never wait longer than this between two attempts, whatever the host
# asks for
MAX_BACKOFF_SECONDS = 300.0


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff for remote calls.  Only
    TransientRemoteError is retried; everything else propagates on the
    first failure.  The delay before attempt n (n >= 1) is
    initial_backoff * factor ** (n - 1), unless the host told us how
    long to wait.
    """

    max_attempts: int = 4
    initial_backoff: float = 1.0
    factor: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay(self, attempt: int, e: TransientRemoteError) -> float:
        if e.retry_after is not None:
            return min(max(e.retry_after, 0.0), MAX_BACKOFF_SECONDS)
        return min(self.initial_backoff * self.factor ** (attempt - 1), MAX_BACKOFF_SECONDS)

    def call(self, what: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except TransientRemoteError as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logging.warning(
                        "{} failed {} times, giving up: {}".format(what, attempt, e)
                    )
                    raise
                delay = self.delay(attempt, e)
                logging.warning(
                    "{} failed ({}); retrying in {:.1f}s (attempt {}/{})".format(
                        what, e, delay, attempt + 1, self.max_attempts
                    )
                )
                self.sleep(delay)
