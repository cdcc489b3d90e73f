import pytest
from pytest_mock import MockerFixture

from barsync.utils.rate_limiter import AsyncRateLimiter


class FakeClock:
    """A manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.mark.asyncio
async def test_acquire_within_budget_does_not_wait(
    clock: FakeClock, mocker: MockerFixture
) -> None:
    """Tests that acquisitions inside the budget never sleep."""
    sleep = mocker.patch("barsync.utils.rate_limiter.asyncio.sleep")
    limiter = AsyncRateLimiter(10, 60, clock=clock)

    for _ in range(5):
        async with limiter.acquire(weight=2):
            pass

    sleep.assert_not_called()
    assert limiter.remaining == 0


@pytest.mark.asyncio
async def test_acquire_waits_for_next_window(
    clock: FakeClock, mocker: MockerFixture
) -> None:
    """Tests that an exhausted budget waits until the window rolls over."""

    async def fake_sleep(seconds: float) -> None:
        clock.now += seconds

    sleep = mocker.patch(
        "barsync.utils.rate_limiter.asyncio.sleep", side_effect=fake_sleep
    )
    limiter = AsyncRateLimiter(4, 60, clock=clock)

    async with limiter.acquire(weight=3):
        pass
    clock.now += 15
    async with limiter.acquire(weight=2):
        pass

    sleep.assert_awaited_once()
    assert sleep.await_args.args[0] == pytest.approx(45)
    assert limiter.remaining == 2


@pytest.mark.asyncio
async def test_budget_resets_after_period(clock: FakeClock) -> None:
    """Tests that the full budget is available again after one period."""
    limiter = AsyncRateLimiter(5, 10, clock=clock)
    async with limiter.acquire(weight=5):
        pass
    assert limiter.remaining == 0

    clock.now += 10

    assert limiter.remaining == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("weight", [0, -1, 11])
async def test_acquire_rejects_impossible_weights(
    clock: FakeClock, weight: int
) -> None:
    """Tests that weights that can never fit in a window are rejected."""
    limiter = AsyncRateLimiter(10, 60, clock=clock)
    with pytest.raises(ValueError):
        async with limiter.acquire(weight=weight):
            pass


@pytest.mark.parametrize(
    ("limit", "period"), [(0, 60), (-5, 60), (1.5, 60), (10, 0), (10, -1)]
)
def test_constructor_validation(limit: int, period: float) -> None:
    """Tests parameter validation."""
    with pytest.raises(ValueError):
        AsyncRateLimiter(limit, period)
