from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Any, Callable

from ticketvault.core.clock import isoformat, utc_now
from ticketvault.core.config import get_settings
from ticketvault.services.archival.runner import ArchivalConfig, ArchivalRunner, ArchivalRunSummary


logger = logging.getLogger(__name__)


class ArchivalScheduler:
    """Own the recurring archival timer and the single-run overlap guard.

    Arming state (the timer task) and run state (the lock) are independent:
    ``stop()`` disarms the timer but never cancels a run already in flight,
    and a trigger that finds a run in progress is skipped rather than queued.
    """

    def __init__(
        self,
        runner: ArchivalRunner | None = None,
        *,
        interval_hours: float | None = None,
        config_provider: Callable[[], ArchivalConfig] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._runner = runner or ArchivalRunner()
        hours = interval_hours if interval_hours is not None else get_settings().archival_run_interval_hours
        self._interval = timedelta(hours=hours)
        self._config_provider = config_provider or ArchivalConfig.from_settings
        self._time_provider = time_provider or utc_now
        self._run_lock = asyncio.Lock()
        self._timer_task: asyncio.Task[None] | None = None
        self._run_tasks: set[asyncio.Task[Any]] = set()
        self._next_run_at: datetime | None = None
        self._current_run_started_at: datetime | None = None
        self._last_summary: ArchivalRunSummary | None = None
        self._last_error: str | None = None
        self._skipped_runs = 0

    @property
    def runner(self) -> ArchivalRunner:
        return self._runner

    @property
    def next_run_at(self) -> datetime | None:
        return self._next_run_at if self.armed else None

    @property
    def armed(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def start(self) -> bool:
        # Must be called from inside a running event loop.
        if self.armed:
            logger.warning("archival_scheduler_already_started")
            return False
        self._timer_task = asyncio.get_running_loop().create_task(self._timer_loop())
        logger.info("archival_scheduler_started interval_s=%s", int(self._interval.total_seconds()))
        return True

    def stop(self) -> bool:
        if not self.armed:
            logger.warning("archival_scheduler_not_running")
            return False
        self._timer_task.cancel()
        self._timer_task = None
        self._next_run_at = None
        logger.info("archival_scheduler_stopped in_flight=%s", self.running)
        return True

    async def shutdown(self) -> None:
        # Disarm, then let in-flight runs finish so their ledger writes land.
        if self.armed:
            self.stop()
        if self._run_tasks:
            await asyncio.gather(*list(self._run_tasks), return_exceptions=True)

    async def run_now(self, *, trigger: str = "manual") -> ArchivalRunSummary | None:
        """Execute one pass unless another is in progress.

        Returns ``None`` when the overlap guard is held; runner errors propagate.
        """
        if self._run_lock.locked():
            self._skipped_runs += 1
            logger.info("archival_run_skipped_in_progress trigger=%s", trigger)
            return None
        async with self._run_lock:
            self._current_run_started_at = self._time_provider()
            try:
                summary = await self._runner.run(self._config_provider())
            except Exception as exc:  # noqa: BLE001 - record then re-raise for the caller.
                self._last_error = str(exc)
                logger.exception("archival_run_failed trigger=%s", trigger)
                raise
            finally:
                self._current_run_started_at = None
            self._last_summary = summary
            self._last_error = None
            return summary

    def get_status(self) -> dict[str, Any]:
        return {
            "armed": self.armed,
            "running": self.running,
            "intervalHours": self._interval.total_seconds() / 3600,
            "nextRunAt": isoformat(self._next_run_at) if self.armed else None,
            "currentRunStartedAt": isoformat(self._current_run_started_at),
            "skippedRuns": self._skipped_runs,
            "lastError": self._last_error,
            "lastRun": self._last_summary.to_dict() if self._last_summary else None,
        }

    def _spawn_run(self, trigger: str) -> asyncio.Task[Any]:
        # Runs live outside the timer task so cancelling the timer leaves them intact.
        task = asyncio.get_running_loop().create_task(self._run_logged(trigger))
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)
        return task

    async def _run_logged(self, trigger: str) -> ArchivalRunSummary | None:
        try:
            return await self.run_now(trigger=trigger)
        except Exception:  # noqa: BLE001 - keep the timer alive; run_now already logged.
            return None

    async def _timer_loop(self) -> None:
        interval_s = max(1.0, self._interval.total_seconds())
        while True:
            self._spawn_run("scheduled")
            self._next_run_at = self._time_provider() + self._interval
            await asyncio.sleep(interval_s)
