#!/usr/bin/env python3
"""
Feed refresh engine.

Pulls every subscribed feed through the conditional fetcher, applies the
failure backoff and the age filter, and persists the results through the
DatabaseQueue. One failing feed never stops the rest of a batch.
"""

import asyncio
from dataclasses import dataclass
from time import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from config import config, get_logger
from errors import FeedExistsError, FeedNotFoundError, FetchError
from fetcher import NOT_MODIFIED, FeedFetcher
from models import DatabaseQueue
from telemetry import trace_span
from utils import format_duration, validate_url

# Module-specific logger
logger = get_logger("refresher")

HOUR_IN_SECONDS = 3600
DAY_IN_SECONDS = 86400
MAX_BACKOFF_HOURS = 24
MAX_BACKOFF_EXPONENT = 5


def backoff_hours(error_count: int) -> int:
    """Hours to wait after `error_count` consecutive failures: 2, 4, 8, 16, then 24."""
    if error_count <= 0:
        return 0
    return min(2 ** min(error_count, MAX_BACKOFF_EXPONENT), MAX_BACKOFF_HOURS)


def should_skip_feed(error_count: int, last_attempt: Optional[int], now: float) -> bool:
    """True while a failing feed is still inside its backoff window."""
    if error_count <= 0 or not last_attempt:
        return False
    return now < last_attempt + backoff_hours(error_count) * HOUR_IN_SECONDS


def retention_cutoff(now: float, retention_days: int) -> Optional[int]:
    """Oldest publication time worth keeping, or None when retention is disabled."""
    if retention_days <= 0:
        return None
    return int(now) - retention_days * DAY_IN_SECONDS


def filter_old_items(items: Iterable[Dict[str, Any]], cutoff: Optional[int]) -> List[Dict[str, Any]]:
    """Keep items published after `cutoff`, plus items with no known publication time.

    Returns a new list in the original order; the input is not modified.
    """
    if cutoff is None:
        return list(items)
    return [
        item for item in items
        if item.get('published_at') is None or item['published_at'] > cutoff
    ]


@dataclass
class FeedRefreshOutcome:
    feed_id: int
    status: str  # "updated", "not_modified", "failed" or "skipped"
    new_articles: int = 0
    error: Optional[str] = None


@dataclass
class RefreshSummary:
    checked: int = 0
    skipped: int = 0
    not_modified: int = 0
    updated: int = 0
    failed: int = 0
    new_articles: int = 0
    stopped: bool = False

    def add(self, outcome: FeedRefreshOutcome) -> None:
        self.checked += 1
        if outcome.status == "skipped":
            self.skipped += 1
        elif outcome.status == "not_modified":
            self.not_modified += 1
        elif outcome.status == "updated":
            self.updated += 1
        else:
            self.failed += 1
        self.new_articles += outcome.new_articles


@trace_span("purge_old_articles", tracer_name="refresher")
async def purge_old_articles(db: DatabaseQueue, retention_days: int, now: float) -> int:
    """Delete read, unstarred articles older than the retention horizon.

    Returns the number of articles removed; 0 when retention is disabled.
    """
    cutoff = retention_cutoff(now, retention_days)
    if cutoff is None:
        return 0
    candidates = await db.execute('count_old_read_articles', cutoff=cutoff)
    if candidates == 0:
        logger.debug(f"No read articles older than {retention_days} days")
        return 0
    deleted = await db.execute('purge_old_read_articles', cutoff=cutoff)
    logger.info(f"🧹 Purged {deleted} read articles older than {retention_days} days")
    return deleted


class FeedRefresher:
    """Runs refresh passes over the subscribed feeds."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: FeedFetcher,
        retention_days: Optional[int] = None,
        pacing_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], float] = time,
    ) -> None:
        self.db = db
        self.fetcher = fetcher
        self.retention_days = config.PURGE_DAYS if retention_days is None else retention_days
        self.pacing_seconds = config.FEED_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        self.batch_size = batch_size or config.REFRESH_BATCH_SIZE
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    async def _pause(self, stop_event: Optional[asyncio.Event]) -> None:
        """Wait between feeds, returning early if shutdown is requested."""
        if self.pacing_seconds <= 0:
            return
        if stop_event is None:
            await asyncio.sleep(self.pacing_seconds)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.pacing_seconds)
        except asyncio.TimeoutError:
            pass

    async def _refresh_feed(self, feed: Dict[str, Any], apply_backoff: bool = True) -> FeedRefreshOutcome:
        feed_id = feed['id']
        url = feed['url']
        now = self._now()

        if apply_backoff and should_skip_feed(feed['error_count'], feed['last_updated'], now):
            wait_until = feed['last_updated'] + backoff_hours(feed['error_count']) * HOUR_IN_SECONDS
            logger.debug(
                f"Skipping {url}: {feed['error_count']} consecutive errors, "
                f"next attempt in {format_duration(wait_until - now)}"
            )
            return FeedRefreshOutcome(feed_id, "skipped")

        try:
            result = await self.fetcher.fetch(url, feed['etag'] or "", feed['last_modified'] or "")
        except FetchError as e:
            error_count = await self.db.execute('record_feed_error', feed_id=feed_id, error=str(e), now=now)
            logger.warning(
                f"⚠️ Error refreshing {url}: {e} (error #{error_count}, "
                f"backing off {backoff_hours(error_count)}h)"
            )
            return FeedRefreshOutcome(feed_id, "failed", error=str(e))

        if result is NOT_MODIFIED:
            await self.db.execute('mark_feed_not_modified', feed_id=feed_id, now=now)
            logger.debug(f"Feed {url} not modified")
            return FeedRefreshOutcome(feed_id, "not_modified")

        items = filter_old_items(result.items, retention_cutoff(now, self.retention_days))
        new_articles = await self.db.execute('upsert_articles', feed_id=feed_id, items=items, now=now)
        await self.db.execute(
            'update_feed_after_fetch',
            feed_id=feed_id,
            title=result.title,
            site_url=result.site_url,
            description=result.description,
            etag=result.etag,
            last_modified=result.last_modified,
            now=now,
        )
        if new_articles:
            logger.info(f"📰 {feed['title'] or url}: {new_articles} new articles ({len(items)} in feed window)")
        return FeedRefreshOutcome(feed_id, "updated", new_articles=new_articles)

    @trace_span("refresh_all", tracer_name="refresher")
    async def refresh_all(self, stop_event: Optional[asyncio.Event] = None) -> RefreshSummary:
        """Refresh up to batch_size feeds in id order, honouring backoff.

        Feeds are processed one at a time with a pause between fetches. The
        pass stops between feeds once `stop_event` is set.
        """
        summary = RefreshSummary()
        feeds = await self.db.execute('list_feeds_for_refresh', limit=self.batch_size)
        started = time()
        fetched_any = False

        for feed in feeds:
            if stop_event is not None and stop_event.is_set():
                summary.stopped = True
                break
            if fetched_any and not should_skip_feed(feed['error_count'], feed['last_updated'], self._now()):
                await self._pause(stop_event)
                if stop_event is not None and stop_event.is_set():
                    summary.stopped = True
                    break
            try:
                outcome = await self._refresh_feed(feed)
            except Exception as e:
                # A storage fault on one feed must not abort the batch
                logger.exception(f"Unexpected error refreshing feed {feed['id']} ({feed['url']}): {e}")
                outcome = FeedRefreshOutcome(feed['id'], "failed", error=str(e))
            if outcome.status != "skipped":
                fetched_any = True
            summary.add(outcome)

        logger.info(
            f"✅ Refresh pass: {summary.checked} feeds, {summary.updated} updated, "
            f"{summary.not_modified} unchanged, {summary.failed} failed, {summary.skipped} backing off, "
            f"{summary.new_articles} new articles in {format_duration(time() - started)}"
            + (" (stopped early)" if summary.stopped else "")
        )
        return summary

    @trace_span("refresh_one", tracer_name="refresher", attr_from_args=lambda self, feed_id: {"feed.id": feed_id})
    async def refresh_one(self, feed_id: int) -> FeedRefreshOutcome:
        """Refresh a single feed immediately, ignoring any backoff window."""
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if feed is None:
            raise FeedNotFoundError(f"Feed {feed_id} not found")
        return await self._refresh_feed(feed, apply_backoff=False)

    @trace_span("subscribe", tracer_name="refresher", attr_from_args=lambda self, url: {"http.url": url})
    async def subscribe(self, url: str) -> int:
        """Fetch a new feed unconditionally, store it with its articles and return its id."""
        url = (url or "").strip()
        if not validate_url(url):
            raise ValueError(f"Invalid feed URL: {url!r}")
        if await self.db.execute('get_feed_by_url', url=url) is not None:
            raise FeedExistsError(f"Already subscribed to {url}")

        result = await self.fetcher.fetch(url)
        if result is NOT_MODIFIED:
            raise FetchError("Server answered 304 to an unconditional request", url=url, status=304)

        now = self._now()
        items = filter_old_items(result.items, retention_cutoff(now, self.retention_days))
        feed_id = await self.db.execute(
            'create_feed',
            url=url,
            title=result.title or url,
            site_url=result.site_url,
            description=result.description,
            etag=result.etag,
            last_modified=result.last_modified,
            now=now,
        )
        new_articles = await self.db.execute('upsert_articles', feed_id=feed_id, items=items, now=now)
        logger.info(f"➕ Subscribed to {url} (feed {feed_id}, {new_articles} articles)")
        return feed_id

    async def import_feeds(self, urls: Iterable[str], stop_event: Optional[asyncio.Event] = None) -> int:
        """Subscribe to each URL not already present. Returns how many were added."""
        imported = 0
        for index, url in enumerate(urls):
            if stop_event is not None and stop_event.is_set():
                break
            if await self.db.execute('get_feed_by_url', url=url.strip()) is not None:
                logger.debug(f"Already subscribed to {url}, skipping")
                continue
            if index:
                await self._pause(stop_event)
            try:
                await self.subscribe(url)
                imported += 1
            except (FetchError, FeedExistsError, ValueError) as e:
                logger.warning(f"⚠️ Could not import {url}: {e}")
        logger.info(f"Imported {imported} feeds")
        return imported

    async def purge_old_articles(self) -> int:
        return await purge_old_articles(self.db, self.retention_days, self._now())
