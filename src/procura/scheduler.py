"""Closure scheduler: closes bidding windows whose deadline has passed.

A background asyncio task sweeps once at start and then every
``sweep_interval_seconds``. Each expired project is closed through
``LifecycleEngine.close_bidding`` on its own, so a failure on one project is
logged and the sweep moves on. Closing races with a manual close resolve in
the store; the loser sees a noop and sends nothing.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from .clock import Clock
from .lifecycle import LifecycleEngine
from .models import Trigger
from .store import ProjectStore

logger = structlog.get_logger()

# Default interval between sweeps
SWEEP_INTERVAL_SECONDS = 300.0


class SchedulerState(str, Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"
    STOPPED = "stopped"


@dataclass
class SweepReport:
    """Result of one sweep."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    examined: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "examined": len(self.examined),
            "closed": list(self.closed),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


class ClosureScheduler:
    """Periodic sweep over projects past their bidding deadline."""

    def __init__(
        self,
        engine: LifecycleEngine,
        store: Optional[ProjectStore] = None,
        clock: Optional[Clock] = None,
        interval: float = SWEEP_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        sweep_on_start: bool = True,
    ):
        self.engine = engine
        self.store = store or engine.store
        self.clock = clock or engine.clock
        self.interval = interval
        self._sleep = sleep
        self.sweep_on_start = sweep_on_start

        self._task: Optional[asyncio.Task] = None
        self._sweeping = False
        self.state = SchedulerState.STOPPED
        self.last_sweep_at: Optional[datetime] = None
        self.last_report: Optional[SweepReport] = None
        self.sweeps_run = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ============================================================
    # Sweep
    # ============================================================

    async def sweep(self) -> Optional[SweepReport]:
        """Run one pass now.

        Returns:
            SweepReport, or None if a sweep was already in progress
        """
        if self._sweeping:
            logger.info("sweep_skipped", reason="sweep already running")
            return None

        self._sweeping = True
        self.state = SchedulerState.SWEEPING
        report = SweepReport(started_at=self.clock.now())
        try:
            expired = await self.store.find_expired_bidding(report.started_at)
            for project in expired:
                report.examined.append(project.id)
                try:
                    result = await self.engine.close_bidding(project.id, trigger=Trigger.SCHEDULER)
                except Exception as e:
                    report.failed.append(project.id)
                    logger.error("auto_close_failed", project_id=project.id, error=str(e))
                    continue
                if result.applied:
                    report.closed.append(project.id)
                    logger.info("auto_closed", project_id=project.id, title=project.title)
                else:
                    report.skipped.append(project.id)
        finally:
            self._sweeping = False
            report.finished_at = self.clock.now()
            self.last_sweep_at = report.finished_at
            self.last_report = report
            self.sweeps_run += 1
            self.state = SchedulerState.IDLE if self.running else SchedulerState.STOPPED

        if report.examined:
            logger.info(
                "sweep_completed",
                examined=len(report.examined),
                closed=len(report.closed),
                skipped=len(report.skipped),
                failed=len(report.failed),
            )
        else:
            logger.debug("sweep_completed", examined=0)
        return report

    async def _loop(self) -> None:
        if self.sweep_on_start:
            await self._safe_sweep()
        while True:
            await self._sleep(self.interval)
            await self._safe_sweep()

    async def _safe_sweep(self) -> None:
        try:
            await self.sweep()
        except Exception as e:
            logger.error("sweep_error", error=str(e))

    # ============================================================
    # Control
    # ============================================================

    def start(self) -> None:
        """Start the background loop. Does nothing if already running."""
        if self.running:
            logger.warning("scheduler_already_running")
            return
        self.state = SchedulerState.IDLE
        self._task = asyncio.create_task(self._loop())
        logger.info("scheduler_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to exit."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state = SchedulerState.STOPPED
        logger.info("scheduler_stopped")

    async def restart(self) -> None:
        await self.stop()
        self.start()

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "running": self.running,
            "interval_seconds": self.interval,
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
            "sweeps_run": self.sweeps_run,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
