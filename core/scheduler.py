import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from core.milestones.tracker import CycleReport, MilestoneTracker
from shared.logging.logger import get_logger

log = get_logger("core.scheduler")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MilestoneScheduler:
    """
    Fixed-interval driver for milestone cycles.

    - First cycle runs immediately on start
    - Cycles never overlap; the interval is waited after each cycle ends
    - After cutoff_at, cycles are skipped
    """

    def __init__(
        self,
        tracker: MilestoneTracker,
        *,
        interval_seconds: float = 60.0,
        cutoff_at: Optional[datetime] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._tracker = tracker
        self._interval = float(interval_seconds)
        self._cutoff_at = cutoff_at
        self._clock = clock or _utcnow
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self.last_report: Optional[CycleReport] = None

        # --------------------------------------------------
        # METRICS (READ-ONLY, ADDITIVE)
        # --------------------------------------------------
        self._metrics = {
            "cycles_run": 0,
            "cycles_skipped": 0,
            "cycles_aborted": 0,
            "cycles_failed": 0,
        }

    # ------------------------------------------------------------

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def cutoff_passed(self) -> bool:
        if self._cutoff_at is None:
            return False
        return self._clock() >= self._cutoff_at

    # ------------------------------------------------------------

    async def tick(self) -> Optional[CycleReport]:
        """
        Run a single guarded cycle. Never raises except on cancellation.
        """
        if self.cutoff_passed():
            self._metrics["cycles_skipped"] += 1
            log.info(
                "Skipping milestone check - cutoff passed "
                f"({self._cutoff_at.isoformat()}, now {self._clock().isoformat()})"
            )
            return None

        try:
            report = await self._tracker.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._metrics["cycles_failed"] += 1
            log.exception("Error checking milestones")
            return None

        self._metrics["cycles_run"] += 1
        if report.aborted:
            self._metrics["cycles_aborted"] += 1

        self.last_report = report
        log.debug(f"Cycle report: {report.as_dict()}")
        return report

    # ------------------------------------------------------------

    async def run(self):
        log.info(f"Milestone checks every {self._interval:g}s")
        if self._cutoff_at:
            log.info(f"All checks stop after cutoff: {self._cutoff_at.isoformat()}")

        try:
            while not self._stop_event.is_set():
                await self.tick()

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            log.debug("Milestone scheduler cancelled")
            raise

        log.info("Milestone scheduler stopped")

    async def start(self):
        if self._task:
            return

        if self.cutoff_passed():
            log.info(
                f"Cutoff already passed (current time: {self._clock().isoformat()}); "
                "no milestone checks will be scheduled"
            )
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())

    async def shutdown(self):
        log.info("Scheduler shutdown initiated")
        self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=self._interval + 5)
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None

        log.info(f"Scheduler shutdown complete (metrics={self.get_metrics()})")
