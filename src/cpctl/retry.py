"""Fixed-interval polling used by the readiness waits."""
from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt failed."""

    def __init__(self, attempts: int, delay: float, last_error: BaseException | None) -> None:
        """Record the budget that was used up and the final failure."""
        self.attempts = attempts
        self.delay = delay
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"timed out after {int(attempts * delay)} seconds{detail}")


def retry(
    func: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *func* up to *attempts* times, sleeping *delay* seconds between calls."""
    last_error: BaseException | None = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            last_error = exc
        if attempt < attempts - 1:
            sleep(delay)
    raise RetryExhaustedError(attempts, delay, last_error)


__all__ = ["RetryExhaustedError", "retry"]
