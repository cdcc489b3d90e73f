import asyncio
import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from loguru import logger

from barsync.cycle import CycleReport, DownloadCycle, require_inputs
from barsync.types import Resolution, TimeWindow
from barsync.utils.time import to_utc_datetime, truncate_to_day, utc_now

DEFAULT_INTERVAL = timedelta(hours=12)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class JobState:
    """The download job carried across cycles.

    Attributes:
        tickers: Tickers to download, in order.
        resolution: The requested resolution, possibly `Resolution.ALL`.
        from_date: Start of the next cycle's window. Advanced after each
            completed cycle to the day of that cycle's window end.
        end_date: Optional fixed end; when unset each window ends "now".
        runs: Number of cycles started so far.
    """

    tickers: tuple[str, ...]
    resolution: Resolution
    from_date: datetime
    end_date: datetime | None = None
    runs: int = 0

    @classmethod
    def create(
        cls,
        tickers: list[str] | tuple[str, ...],
        resolution: "Resolution | str | None",
        from_date: datetime,
        end_date: datetime | None = None,
    ) -> "JobState":
        """Validates configuration values and builds the initial state.

        Raises:
            ConfigurationError: If tickers or resolution are missing.
        """
        parsed = require_inputs(tickers, resolution)
        return cls(
            tickers=tuple(t.strip() for t in tickers if t.strip()),
            resolution=parsed,
            from_date=to_utc_datetime(from_date),
            end_date=to_utc_datetime(end_date) if end_date else None,
        )


class RecurringScheduler:
    """Runs download cycles on a fixed interval over a rolling time window.

    The scheduler owns the `JobState`; nothing else mutates it. Each firing
    captures the current time as the window end, downloads
    `[from_date, now)`, and then moves `from_date` forward to the start of
    the day of that window end. Cycles never overlap: a firing that arrives
    while a cycle is still running is dropped, not queued.

    Usage:
        scheduler = RecurringScheduler(cycle, state, interval=timedelta(hours=12))
        await scheduler.run_forever()
    """

    def __init__(
        self,
        cycle: DownloadCycle,
        state: JobState,
        interval: timedelta = DEFAULT_INTERVAL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initializes the scheduler.

        Args:
            cycle: The cycle executed on every firing.
            state: The initial job state; owned by the scheduler from now on.
            interval: Time between two firings.
            clock: Source of the current UTC time, injectable for tests.
        """
        if interval <= timedelta(0):
            err_msg = "Interval must be positive."
            raise ValueError(err_msg)
        self._cycle = cycle
        self._job = state
        self.interval = interval
        self._clock = clock
        self._state = SchedulerState.IDLE
        self._timer_task: asyncio.Task[None] | None = None
        self._cycle_task: asyncio.Task[CycleReport | None] | None = None
        self._running = asyncio.Event()

    @property
    def state(self) -> SchedulerState:
        return self._state

    def snapshot(self) -> JobState:
        """Returns a copy of the current job state."""
        return dataclasses.replace(self._job)

    async def fire(self) -> CycleReport | None:
        """Runs one cycle unless another one is in flight.

        Returns:
            The cycle report, or None if the firing was dropped, there was
            nothing left to download, or the cycle crashed.
        """
        if self._state is SchedulerState.RUNNING:
            logger.warning("A download cycle is still running; firing dropped.")
            return None
        # No await between the check above and this transition.
        self._state = SchedulerState.RUNNING
        try:
            return await self._run_cycle()
        finally:
            self._state = SchedulerState.IDLE

    async def _run_cycle(self) -> CycleReport | None:
        job = self._job
        to_date = self._clock()
        if job.end_date is not None and job.end_date < to_date:
            to_date = job.end_date

        if job.from_date >= to_date:
            logger.info(
                f"Nothing to download: from {job.from_date} is not before "
                f"to {to_date}."
            )
            return None

        job.runs += 1
        logger.info(
            f"Running download cycle; from: {job.from_date}; to: {to_date}; "
            f"total runs: {job.runs}"
        )
        try:
            report = await self._cycle.run(
                job.tickers, job.resolution, TimeWindow(job.from_date, to_date)
            )
        except Exception:
            # The window is kept as is, so the next firing covers it again.
            logger.exception("Download cycle crashed; from_date not advanced.")
            return None

        if job.end_date is not None and to_date == job.end_date:
            # Final window; truncating would re-fetch the last partial day.
            job.from_date = to_date
        else:
            job.from_date = truncate_to_day(to_date)
        logger.info(f"Next cycle starts from {job.from_date}.")
        return report

    def _launch(self) -> None:
        """Starts a cycle task unless one is already in flight."""
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.warning(
                "Trigger fired while a download cycle is running; firing dropped."
            )
            return
        self._cycle_task = asyncio.create_task(self.fire())

    async def _timer(self) -> None:
        """Fires immediately, then once per interval."""
        interval_s = self.interval.total_seconds()
        while self._running.is_set():
            self._launch()
            await asyncio.sleep(interval_s)

    def start(self) -> None:
        """Starts the recurring trigger in a background task."""
        if self._timer_task is None or self._timer_task.done():
            self._running.set()
            self._timer_task = asyncio.create_task(self._timer())
            logger.info(f"Scheduler started; firing every {self.interval}.")
        else:
            logger.warning("Scheduler is already running.")

    async def stop(self) -> None:
        """Stops the trigger, waiting for an in-flight cycle to complete."""
        if not self._running.is_set():
            logger.warning("Scheduler is not running.")
            return

        logger.info("Stopping scheduler...")
        self._running.clear()
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass  # Expected cancellation.
            finally:
                self._timer_task = None
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.info("Waiting for the running download cycle to finish...")
            await self._cycle_task
        logger.info("Scheduler stopped.")

    async def run_forever(self) -> None:
        """Starts the scheduler and blocks until cancelled."""
        self.start()
        try:
            if self._timer_task is not None:
                await self._timer_task
        finally:
            await self.stop()
