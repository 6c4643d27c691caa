#!/usr/bin/env python3
"""
Background scheduler for the feed keeper service.

Runs three independent periodic jobs on the asyncio loop:

- refresh: pull every feed, once at startup and then every REFRESH_INTERVAL_MINUTES
- purge: drop old read articles, after a startup delay and then daily (off when PURGE_DAYS <= 0)
- snapshot: write and prune database snapshots (off when BACKUP_DIR is empty)

All jobs share one stop event. Setting it makes every loop exit at its next
wait; work already in progress is allowed to finish.
"""

import asyncio
from time import time
from typing import Awaitable, Callable, List, Optional, Set

from config import config, get_logger
from fetcher import FeedFetcher
from models import DatabaseQueue
from refresher import FeedRefresher, FeedRefreshOutcome, RefreshSummary
from telemetry import init_telemetry, trace_span
import backup

# Module-specific logger
logger = get_logger("scheduler")

MINUTE_IN_SECONDS = 60
HOUR_IN_SECONDS = 3600


class PeriodicTask:
    """Run an async job every `interval` seconds until the stop event is set.

    The first run happens immediately when `run_immediately` is set, otherwise
    after `initial_delay` seconds. A failing run is logged and the loop carries on.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval: float,
        stop_event: asyncio.Event,
        initial_delay: float = 0.0,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self.job = job
        self.interval = interval
        self.stop_event = stop_event
        self.initial_delay = initial_delay
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self.task: Optional[asyncio.Task] = None

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True means shutdown was requested."""
        if self.stop_event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_once(self) -> None:
        self.runs += 1
        try:
            await self.job()
        except Exception as e:
            self.failures += 1
            logger.exception(f"💥 {self.name} run failed: {e}")

    async def run(self) -> None:
        delay = 0.0 if self.run_immediately else self.initial_delay
        logger.info(f"⏱️ {self.name} scheduled every {self.interval:.0f}s (first run in {delay:.0f}s)")
        while not await self._wait(delay):
            await self.run_once()
            delay = self.interval
        logger.info(f"📶 {self.name} loop stopped")

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.run(), name=self.name)
        return self.task


class BackgroundScheduler:
    """Owns the database queue, the fetcher and the periodic jobs of the service."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        fetcher: Optional[FeedFetcher] = None,
        refresh_interval: Optional[float] = None,
        purge_days: Optional[int] = None,
        purge_delay: Optional[float] = None,
        purge_interval: Optional[float] = None,
        backup_dir: Optional[str] = None,
        backup_interval: Optional[float] = None,
        backup_keep: Optional[int] = None,
        backup_delay: Optional[float] = None,
        pacing_seconds: Optional[float] = None,
        clock: Callable[[], float] = time,
    ) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = fetcher
        self.refresh_interval = refresh_interval or config.REFRESH_INTERVAL_MINUTES * MINUTE_IN_SECONDS
        self.purge_days = config.PURGE_DAYS if purge_days is None else purge_days
        self.purge_delay = config.PURGE_STARTUP_DELAY_SECONDS if purge_delay is None else purge_delay
        self.purge_interval = purge_interval or config.PURGE_INTERVAL_HOURS * HOUR_IN_SECONDS
        self.backup_dir = config.BACKUP_DIR if backup_dir is None else backup_dir
        self.backup_interval = backup_interval or config.BACKUP_INTERVAL_HOURS * HOUR_IN_SECONDS
        self.backup_keep = config.BACKUP_KEEP if backup_keep is None else backup_keep
        self.backup_delay = config.BACKUP_STARTUP_DELAY_SECONDS if backup_delay is None else backup_delay
        self.pacing_seconds = pacing_seconds
        self.clock = clock

        self.stop_event = asyncio.Event()
        self.refresher: Optional[FeedRefresher] = None
        self.periodic: List[PeriodicTask] = []
        self._detached: Set[asyncio.Task] = set()
        self.running = False

    async def start(self) -> None:
        if self.running:
            return
        init_telemetry("feed-keeper")
        await self.db.start()
        if self.fetcher is None:
            self.fetcher = FeedFetcher()
        self.refresher = FeedRefresher(
            self.db,
            self.fetcher,
            retention_days=self.purge_days,
            pacing_seconds=self.pacing_seconds,
            clock=self.clock,
        )

        self.periodic = [
            PeriodicTask("refresh", self._refresh_job, self.refresh_interval, self.stop_event, run_immediately=True),
        ]
        if self.purge_days > 0:
            self.periodic.append(
                PeriodicTask("purge", self._purge_job, self.purge_interval, self.stop_event, initial_delay=self.purge_delay)
            )
        else:
            logger.info("Article purge disabled (PURGE_DAYS <= 0)")
        if self.backup_dir:
            self.periodic.append(
                PeriodicTask("snapshot", self._backup_job, self.backup_interval, self.stop_event, initial_delay=self.backup_delay)
            )
        else:
            logger.info("Periodic snapshots disabled (BACKUP_DIR not set)")

        for task in self.periodic:
            task.start()
        self.running = True
        logger.info(f"🚀 Scheduler started with {len(self.periodic)} periodic jobs")

    async def _refresh_job(self) -> RefreshSummary:
        return await self.refresher.refresh_all(self.stop_event)

    async def _purge_job(self) -> int:
        return await self.refresher.purge_old_articles()

    @trace_span("scheduler.snapshot", tracer_name="scheduler")
    async def _backup_job(self) -> str:
        path = await self.db.backup_database(self.backup_dir)
        backup.prune_backups(self.backup_dir, self.backup_keep)
        return path

    def trigger_refresh(self, feed_id: Optional[int] = None) -> asyncio.Task:
        """Start a refresh of one feed (or all feeds) that outlives the caller.

        The task is owned by the scheduler, so a caller that goes away does not
        cancel it. Callers that want the outcome should await
        ``asyncio.shield(task)``.
        """
        if not self.running:
            raise RuntimeError("Scheduler is not running")
        if feed_id is None:
            coro = self.refresher.refresh_all(self.stop_event)
        else:
            coro = self.refresher.refresh_one(feed_id)
        task = asyncio.create_task(coro, name=f"manual-refresh-{feed_id or 'all'}")
        self._detached.add(task)
        task.add_done_callback(self._detached_done)
        return task

    def _detached_done(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Manual refresh {task.get_name()} failed: {error}")
        elif isinstance(task.result(), FeedRefreshOutcome):
            outcome = task.result()
            logger.info(f"Manual refresh of feed {outcome.feed_id}: {outcome.status}")

    async def stop(self) -> None:
        """Signal every loop to stop, wait for in-flight work, then release resources."""
        if not self.running:
            return
        logger.info("🛑 Stopping scheduler")
        self.stop_event.set()
        pending = [t.task for t in self.periodic if t.task is not None] + list(self._detached)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.fetcher is not None:
            await self.fetcher.close()
        await self.db.stop()
        self.running = False
        logger.info("Scheduler stopped")

    async def run_forever(self) -> None:
        """Start, then block until the stop event is set."""
        await self.start()
        try:
            await self.stop_event.wait()
        finally:
            await self.stop()
