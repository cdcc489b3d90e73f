import asyncio
import contextlib
import time
from collections.abc import AsyncGenerator, Callable

from loguru import logger


class AsyncRateLimiter:
    """An asynchronous, weight-based rate limiter over fixed time windows.

    Exchange REST APIs such as Binance budget requests by "weight" per
    minute rather than by request count: a kline page costs more than a ping,
    and the exchange-info call costs more still. This limiter keeps a budget
    of `weight_limit` per `period_sec` window and makes callers wait for the
    next window once the budget is spent.

    The window is tracked lazily on each acquisition, so no background task
    is needed and the limiter can be shared freely between coroutines.

    Usage:
        limiter = AsyncRateLimiter(1200, 60)  # 1200 weight per minute
        async with limiter.acquire(weight=2):
            await make_api_call()
    """

    def __init__(
        self,
        weight_limit: int,
        period_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initializes the rate limiter.

        Args:
            weight_limit: The maximum total weight allowed in a period.
            period_sec: The window length in seconds.
            clock: Monotonic clock, injectable for tests.
        """
        if not isinstance(weight_limit, int) or weight_limit <= 0:
            err_msg = "Weight limit must be a positive integer."
            raise ValueError(err_msg)
        if not isinstance(period_sec, int | float) or period_sec <= 0:
            err_msg = "Period must be a positive number."
            raise ValueError(err_msg)

        self.weight_limit = weight_limit
        self.period_sec = period_sec
        self._clock = clock
        self._lock = asyncio.Lock()
        self._window_start = clock()
        self._used = 0

    @property
    def remaining(self) -> int:
        """Weight still available in the current window."""
        if self._clock() - self._window_start >= self.period_sec:
            return self.weight_limit
        return self.weight_limit - self._used

    def _roll_window(self) -> None:
        now = self._clock()
        if now - self._window_start >= self.period_sec:
            self._window_start = now
            self._used = 0

    @contextlib.asynccontextmanager
    async def acquire(self, weight: int = 1) -> AsyncGenerator[None, None]:
        """Reserves `weight` from the budget, waiting for a new window if needed.

        Raises:
            ValueError: If `weight` can never fit in a single window.
        """
        if weight <= 0 or weight > self.weight_limit:
            err_msg = f"Weight must be between 1 and {self.weight_limit}."
            raise ValueError(err_msg)

        # Holding the lock while sleeping keeps waiters in FIFO order.
        async with self._lock:
            self._roll_window()
            while self._used + weight > self.weight_limit:
                wait_s = self.period_sec - (self._clock() - self._window_start)
                logger.debug(
                    f"Rate limit budget exhausted; waiting {max(wait_s, 0):.2f}s."
                )
                await asyncio.sleep(max(wait_s, 0))
                self._roll_window()
            self._used += weight
        yield
