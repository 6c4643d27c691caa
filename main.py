#!/usr/bin/env python3
"""
Feed Keeper command line.

Runs the background service (periodic refresh, purge and snapshots) or a
single maintenance operation:

    run             start the service until SIGINT/SIGTERM
    refresh         one refresh pass over every feed
    refresh-feed    refresh one feed now, ignoring backoff (--feed-id)
    subscribe       add a feed (--url)
    import          subscribe to every feed listed in feeds.yaml
    purge           delete old read articles now
    backup          write a snapshot (--backup-dir)
    prune           keep only the newest snapshots (--backup-dir, --keep)
    restore         replace the database with a snapshot (--file); service must be stopped
    backup-status   report the newest snapshot age (--backup-dir, --max-age-hours)
    status          database and snapshot summary
"""

import argparse
import asyncio
import os
import signal
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from config import config, get_logger
from errors import FeedExistsError, FeedKeeperError, FetchError
from fetcher import FeedFetcher
from models import DatabaseQueue
from refresher import FeedRefresher
from scheduler import BackgroundScheduler
from telemetry import init_telemetry, shutdown_telemetry
from utils import format_age, format_duration
import backup

# Module-specific logger
logger = get_logger("main")

MODES = [
    'run', 'refresh', 'refresh-feed', 'subscribe', 'import', 'purge',
    'backup', 'prune', 'restore', 'backup-status', 'status',
]


class FeedKeeperCommands:
    """One-shot operations behind the command line modes. Each returns an exit code."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH

    async def _with_refresher(self, action):
        fetcher = FeedFetcher()
        try:
            async with DatabaseQueue(self.db_path) as db:
                return await action(FeedRefresher(db, fetcher))
        finally:
            await fetcher.close()

    async def run_service(self) -> int:
        scheduler = BackgroundScheduler(self.db_path)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scheduler.stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass
        logger.info(f"Starting feed keeper service: {config.get_config_summary()}")
        await scheduler.run_forever()
        return 0

    async def refresh(self) -> int:
        summary = await self._with_refresher(lambda r: r.refresh_all())
        print(f"🔄 {summary.checked} feeds: {summary.updated} updated, {summary.not_modified} unchanged, "
              f"{summary.failed} failed, {summary.skipped} backing off, {summary.new_articles} new articles")
        return 0

    async def refresh_feed(self, feed_id: int) -> int:
        outcome = await self._with_refresher(lambda r: r.refresh_one(feed_id))
        print(f"🔄 Feed {feed_id}: {outcome.status}" + (f" ({outcome.error})" if outcome.error else ""))
        return 0 if outcome.status != "failed" else 1

    async def subscribe(self, url: str) -> int:
        try:
            feed_id = await self._with_refresher(lambda r: r.subscribe(url))
        except (FetchError, FeedExistsError, ValueError) as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1
        print(f"➕ Subscribed to {url} as feed {feed_id}")
        return 0

    async def import_feeds(self) -> int:
        urls = config.feed_urls()
        if not urls:
            print(f"No feeds configured in {config.FEEDS_CONFIG_PATH}", file=sys.stderr)
            return 1
        imported = await self._with_refresher(lambda r: r.import_feeds(urls))
        print(f"📥 Imported {imported} of {len(urls)} feeds")
        return 0

    async def purge(self) -> int:
        if config.PURGE_DAYS <= 0:
            print("Purge disabled (PURGE_DAYS <= 0)")
            return 0
        deleted = await self._with_refresher(lambda r: r.purge_old_articles())
        print(f"🧹 Purged {deleted} articles older than {config.PURGE_DAYS} days")
        return 0

    async def backup(self, backup_dir: str) -> int:
        async with DatabaseQueue(self.db_path) as db:
            path = await db.backup_database(backup_dir)
        print(f"💾 Snapshot written to {path}")
        return 0

    def prune(self, backup_dir: str, keep: int) -> int:
        removed = backup.prune_backups(backup_dir, keep)
        print(f"🗑️ Removed {removed} old snapshots (keeping {keep})")
        return 0

    def restore(self, backup_file: str, assume_yes: bool = False) -> int:
        print("⚠️  Restore replaces the live database. Stop the feed keeper service before continuing.")
        print(f"   Database: {os.path.abspath(self.db_path)}")
        print(f"   Snapshot: {os.path.abspath(backup_file)}")
        if not assume_yes:
            try:
                answer = input("Continue? [y/N] ").strip().lower()
            except EOFError:
                # No terminal to ask on; only --yes may proceed
                answer = ""
            if answer not in ('y', 'yes'):
                print("Restore cancelled")
                return 1
        backup.restore_backup(backup_file, self.db_path)
        print("♻️ Restore complete")
        return 0

    def backup_status(self, backup_dir: str, max_age_hours: Optional[float] = None) -> int:
        age = backup.latest_backup_age(backup_dir)
        print(f"💾 Newest usable snapshot in {backup_dir}: {format_age(age)} old")
        if max_age_hours is not None and age > timedelta(hours=max_age_hours):
            print(f"❌ Newest snapshot is older than {max_age_hours}h", file=sys.stderr)
            return 2
        return 0

    async def status(self) -> int:
        async with DatabaseQueue(self.db_path) as db:
            counts = await db.execute('get_status_counts')
            feeds = await db.execute('list_feeds')
        now = datetime.now(timezone.utc).timestamp()
        print(f"\n📊 Feed Keeper Status ({self.db_path})")
        print(f"   📡 Feeds: {counts['feeds']} ({counts['failing_feeds']} failing)")
        print(f"   📰 Articles: {counts['articles']} ({counts['read_articles']} read, {counts['starred_articles']} starred)")
        for feed in feeds:
            if feed['error_count']:
                since = format_duration(now - feed['last_updated']) if feed['last_updated'] else "n/a"
                print(f"   ⚠️  [{feed['id']}] {feed['title'] or feed['url']}: {feed['error_count']} errors, "
                      f"last attempt {since} ago: {feed['last_error']}")
        if config.BACKUP_DIR:
            print(f"   💾 Newest snapshot: {format_age(backup.latest_backup_age(config.BACKUP_DIR))} old")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Keeper: feed refresh engine and database snapshots')
    parser.add_argument('mode', choices=MODES, help='Operation mode')
    parser.add_argument('--db', type=str, help='Database path (defaults to DATABASE_PATH)')
    parser.add_argument('--feed-id', type=int, help='Feed id for refresh-feed')
    parser.add_argument('--url', type=str, help='Feed URL for subscribe')
    parser.add_argument('--backup-dir', type=str, help='Snapshot directory (defaults to BACKUP_DIR)')
    parser.add_argument('--keep', type=int, help='Snapshots to keep for prune (defaults to BACKUP_KEEP)')
    parser.add_argument('--file', type=str, help='Snapshot file for restore')
    parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation before restoring')
    parser.add_argument('--max-age-hours', type=float,
                        help='backup-status exits non-zero when the newest snapshot is older than this')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    commands = FeedKeeperCommands(args.db)
    backup_dir = args.backup_dir or config.BACKUP_DIR

    if args.mode in ('backup', 'prune', 'backup-status') and not backup_dir:
        parser.error(f"{args.mode} needs --backup-dir or BACKUP_DIR")
    if args.mode == 'refresh-feed' and args.feed_id is None:
        parser.error("refresh-feed needs --feed-id")
    if args.mode == 'subscribe' and not args.url:
        parser.error("subscribe needs --url")
    if args.mode == 'restore' and not args.file:
        parser.error("restore needs --file")

    if args.mode not in ('restore', 'prune', 'backup-status'):
        init_telemetry("feed-keeper")

    try:
        if args.mode == 'run':
            return asyncio.run(commands.run_service())
        elif args.mode == 'refresh':
            return asyncio.run(commands.refresh())
        elif args.mode == 'refresh-feed':
            return asyncio.run(commands.refresh_feed(args.feed_id))
        elif args.mode == 'subscribe':
            return asyncio.run(commands.subscribe(args.url))
        elif args.mode == 'import':
            return asyncio.run(commands.import_feeds())
        elif args.mode == 'purge':
            return asyncio.run(commands.purge())
        elif args.mode == 'backup':
            return asyncio.run(commands.backup(backup_dir))
        elif args.mode == 'prune':
            keep = config.BACKUP_KEEP if args.keep is None else args.keep
            return commands.prune(backup_dir, keep)
        elif args.mode == 'restore':
            return commands.restore(args.file, assume_yes=args.yes)
        elif args.mode == 'backup-status':
            return commands.backup_status(backup_dir, args.max_age_hours)
        elif args.mode == 'status':
            return asyncio.run(commands.status())
    except FeedKeeperError as e:
        logger.error(f"❌ {args.mode} failed: {e}")
        print(f"❌ {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("👋 Feed keeper shutting down")
        return 130
    finally:
        shutdown_telemetry()
    return 0


if __name__ == "__main__":
    sys.exit(main())
