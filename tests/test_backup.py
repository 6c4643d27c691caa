import asyncio
import os
import sqlite3
import threading
from datetime import datetime, timezone

import pytest

import backup
from conftest import make_sqlite_file
from errors import BackupError, RestoreError
from models import DatabaseQueue

MOMENT = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _live_connection(path):
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("CREATE TABLE items (title TEXT)")
    conn.executemany("INSERT INTO items (title) VALUES (?)", [("one",), ("two",)])
    conn.commit()
    return conn


def test_snapshot_name_is_utc_second_resolution():
    assert backup.snapshot_name(MOMENT) == "feedkeeper-2025-01-02-030405.db"
    assert backup.parse_snapshot_time("feedkeeper-2025-01-02-030405.db") == MOMENT
    assert backup.parse_snapshot_time("feedkeeper-2025-13-02-030405.db") is None
    assert backup.parse_snapshot_time("other-2025-01-02-030405.db") is None


def test_create_backup_writes_self_contained_copy(tmp_path):
    conn = _live_connection(tmp_path / "live.db")
    try:
        path = backup.create_backup(conn, str(tmp_path / "snaps" / "nested"), now=MOMENT)
    finally:
        conn.close()

    assert os.path.basename(path) == "feedkeeper-2025-01-02-030405.db"
    assert not os.path.exists(path + "-wal")
    snap = sqlite3.connect(path)
    try:
        assert snap.execute("PRAGMA journal_mode").fetchone()[0] == "delete"
        assert snap.execute("SELECT COUNT(*) FROM items").fetchone()[0] == 2
    finally:
        snap.close()


@pytest.mark.asyncio
async def test_backup_through_database_queue_while_open(db, tmp_path):
    await db.execute("create_feed", url="https://example.com/feed.xml", now=1)
    backup_dir = tmp_path / "snaps"

    path = await db.backup_database(str(backup_dir), now=MOMENT)

    snap = sqlite3.connect(path)
    try:
        assert snap.execute("SELECT url FROM feeds").fetchall() == [("https://example.com/feed.xml",)]
    finally:
        snap.close()
    # The live database is still usable afterwards
    assert await db.execute("count_articles") == 0


def test_same_second_snapshot_does_not_overwrite(tmp_path):
    conn = _live_connection(tmp_path / "live.db")
    backup_dir = tmp_path / "snaps"
    try:
        first = backup.create_backup(conn, str(backup_dir), now=MOMENT)
        original = open(first, "rb").read()
        conn.execute("INSERT INTO items (title) VALUES ('three')")
        conn.commit()

        with pytest.raises(BackupError):
            backup.create_backup(conn, str(backup_dir), now=MOMENT)
    finally:
        conn.close()

    assert open(first, "rb").read() == original
    assert os.listdir(backup_dir) == [os.path.basename(first)]


def test_failed_backup_leaves_no_partial_file(tmp_path):
    conn = _live_connection(tmp_path / "live.db")
    conn.close()
    backup_dir = tmp_path / "snaps"

    with pytest.raises(BackupError):
        backup.create_backup(conn, str(backup_dir), now=MOMENT)

    assert os.listdir(backup_dir) == []


def test_unusable_backup_dir_raises(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    conn = _live_connection(tmp_path / "live.db")
    try:
        with pytest.raises(BackupError):
            backup.create_backup(conn, str(blocker / "snaps"), now=MOMENT)
    finally:
        conn.close()


def _touch_snapshots(backup_dir, count):
    names = [f"feedkeeper-2025-01-{day:02d}-120000.db" for day in range(1, count + 1)]
    for name in names:
        (backup_dir / name).write_bytes(b"snapshot")
    return names


def test_prune_keeps_newest_and_ignores_foreign_files(tmp_path):
    names = _touch_snapshots(tmp_path, 5)
    (tmp_path / "notes.txt").write_text("keep me")
    (tmp_path / "feedkeeper-latest.db").write_bytes(b"keep me too")
    (tmp_path / "feedkeeper-2025-01-09-120000.db.partial").write_bytes(b"and me")

    removed = backup.prune_backups(str(tmp_path), 2)

    assert removed == 3
    assert sorted(os.listdir(tmp_path)) == sorted(names[-2:] + [
        "notes.txt", "feedkeeper-latest.db", "feedkeeper-2025-01-09-120000.db.partial",
    ])


def test_prune_with_fewer_snapshots_than_keep(tmp_path):
    names = _touch_snapshots(tmp_path, 2)

    assert backup.prune_backups(str(tmp_path), 7) == 0
    assert sorted(os.listdir(tmp_path)) == names


def test_prune_disabled_for_non_positive_keep(tmp_path):
    _touch_snapshots(tmp_path, 3)

    assert backup.prune_backups(str(tmp_path), 0) == 0
    assert backup.prune_backups(str(tmp_path / "missing"), -1) == 0
    assert len(os.listdir(tmp_path)) == 3


def test_prune_missing_directory_raises(tmp_path):
    with pytest.raises(BackupError):
        backup.prune_backups(str(tmp_path / "missing"), 3)


def test_restore_replaces_database_and_clears_side_files(tmp_path):
    source = make_sqlite_file(tmp_path / "feedkeeper-2025-01-02-030405.db", rows=("restored",))
    target = tmp_path / "live.db"
    make_sqlite_file(target, rows=("current",))
    (tmp_path / "live.db-wal").write_bytes(b"stale wal")
    (tmp_path / "live.db-shm").write_bytes(b"stale shm")

    backup.restore_backup(str(source), str(target))

    assert target.read_bytes() == source.read_bytes()
    assert not (tmp_path / "live.db-wal").exists()
    assert not (tmp_path / "live.db-shm").exists()
    assert [p for p in os.listdir(tmp_path) if p.startswith(".restore-")] == []
    conn = sqlite3.connect(str(target))
    try:
        assert conn.execute("SELECT body FROM notes").fetchall() == [("restored",)]
    finally:
        conn.close()


def test_restore_into_missing_target(tmp_path):
    source = make_sqlite_file(tmp_path / "snap.db")
    target = tmp_path / "fresh.db"

    backup.restore_backup(str(source), str(target))

    assert target.read_bytes() == source.read_bytes()


@pytest.mark.parametrize("kind", ["missing", "directory", "empty", "garbage"])
def test_invalid_snapshot_leaves_target_untouched(tmp_path, kind):
    target = make_sqlite_file(tmp_path / "live.db", rows=("current",))
    wal = tmp_path / "live.db-wal"
    wal.write_bytes(b"wal in use")
    before = target.read_bytes()

    candidate = tmp_path / "candidate.db"
    if kind == "directory":
        candidate.mkdir()
    elif kind == "empty":
        candidate.write_bytes(b"")
    elif kind == "garbage":
        candidate.write_bytes(b"this is not a database file at all" * 200)

    with pytest.raises(RestoreError):
        backup.restore_backup(str(candidate), str(target))

    assert target.read_bytes() == before
    assert wal.read_bytes() == b"wal in use"


def test_snapshot_never_removes_a_file_it_did_not_write(tmp_path, monkeypatch):
    backup_dir = tmp_path / "snaps"
    backup_dir.mkdir()
    existing = make_sqlite_file(backup_dir / backup.snapshot_name(MOMENT), rows=("from the other writer",))
    before = existing.read_bytes()
    # Another writer can claim the name after any existence check
    monkeypatch.setattr(backup.os.path, "lexists", lambda p: False)
    conn = _live_connection(tmp_path / "live.db")
    try:
        with pytest.raises(BackupError):
            backup.create_backup(conn, str(backup_dir), now=MOMENT)
    finally:
        conn.close()

    assert existing.read_bytes() == before


def test_prune_twice_with_same_keep_is_stable(tmp_path):
    names = _touch_snapshots(tmp_path, 6)

    assert backup.prune_backups(str(tmp_path), 3) == 3
    first = sorted(os.listdir(tmp_path))
    assert backup.prune_backups(str(tmp_path), 3) == 0

    assert sorted(os.listdir(tmp_path)) == first == names[-3:]


@pytest.mark.parametrize("mode", [0o644, 0o640])
def test_restore_keeps_target_permissions(tmp_path, mode):
    source = make_sqlite_file(tmp_path / "snap.db", rows=("restored",))
    target = make_sqlite_file(tmp_path / "live.db", rows=("current",))
    os.chmod(target, mode)

    backup.restore_backup(str(source), str(target))

    assert os.stat(target).st_mode & 0o777 == mode


def test_restore_into_missing_target_is_world_readable(tmp_path):
    source = make_sqlite_file(tmp_path / "snap.db")
    os.chmod(source, 0o600)
    target = tmp_path / "fresh.db"

    backup.restore_backup(str(source), str(target))

    assert os.stat(target).st_mode & 0o777 == 0o644


def test_restore_removes_stale_rollback_journal(tmp_path):
    source = make_sqlite_file(tmp_path / "snap.db", rows=("restored",))
    target = make_sqlite_file(tmp_path / "live.db", rows=("current",))
    (tmp_path / "live.db-journal").write_bytes(b"hot journal")

    backup.restore_backup(str(source), str(target))

    assert not (tmp_path / "live.db-journal").exists()


def test_failed_replace_keeps_old_database_and_wal(tmp_path, monkeypatch):
    source = make_sqlite_file(tmp_path / "snap.db", rows=("restored",))
    target = make_sqlite_file(tmp_path / "live.db", rows=("current",))
    wal = tmp_path / "live.db-wal"
    wal.write_bytes(b"uncheckpointed frames")
    before = target.read_bytes()

    def refuse(src, dst):
        raise OSError("device busy")

    monkeypatch.setattr(backup.os, "replace", refuse)

    with pytest.raises(RestoreError):
        backup.restore_backup(str(source), str(target))

    assert target.read_bytes() == before
    assert wal.read_bytes() == b"uncheckpointed frames"
    assert [p for p in os.listdir(tmp_path) if p.startswith(".restore-")] == []


def _articles(prefix, count):
    return [{"guid": f"{prefix}-{n}", "title": f"Article {n}", "content": "x" * 500} for n in range(count)]


@pytest.mark.asyncio
async def test_snapshot_runs_off_the_event_loop(db, tmp_path, monkeypatch):
    entered = threading.Event()
    released = threading.Event()
    order = []

    def slow_snapshot(db_path, backup_dir, now=None, busy_timeout_ms=5000):
        entered.set()
        released.wait(timeout=5)
        order.append("snapshot")
        return os.path.join(backup_dir, "feedkeeper-2025-01-02-030405.db")

    monkeypatch.setattr(backup, "snapshot_database", slow_snapshot)

    task = asyncio.create_task(db.backup_database(str(tmp_path / "snaps")))
    while not entered.is_set():
        await asyncio.sleep(0.01)
    await db.execute("create_feed", url="https://example.com/feed.xml", now=1)
    order.append("write")
    released.set()
    await task

    assert order == ["write", "snapshot"]


@pytest.mark.asyncio
async def test_snapshot_is_consistent_under_concurrent_writes(db, tmp_path):
    feed_id = await db.execute("create_feed", url="https://example.com/feed.xml", now=1)
    for batch in range(4):
        await db.execute("upsert_articles", feed_id=feed_id, items=_articles(f"seed{batch}", 50), now=1)

    async def keep_writing():
        for batch in range(8):
            await db.execute("upsert_articles", feed_id=feed_id, items=_articles(f"live{batch}", 25), now=2)
            await asyncio.sleep(0)

    path, _ = await asyncio.gather(db.backup_database(str(tmp_path / "snaps"), now=MOMENT), keep_writing())

    snap = sqlite3.connect(path)
    try:
        assert snap.execute("PRAGMA integrity_check").fetchone()[0] == "ok"
        copied = snap.execute("SELECT COUNT(*) FROM articles").fetchone()[0]
    finally:
        snap.close()
    assert 200 <= copied <= 400
    assert await db.execute("count_articles") == 400


@pytest.mark.asyncio
async def test_restore_brings_back_snapshot_contents(tmp_path):
    db_path = str(tmp_path / "feeds.db")
    queue = DatabaseQueue(db_path)
    await queue.start()
    try:
        feed_id = await queue.execute("create_feed", url="https://example.com/feed.xml", now=1)
        await queue.execute("upsert_articles", feed_id=feed_id, items=_articles("kept", 60), now=1)
        article_id = await queue.execute("get_article_id", feed_id=feed_id, guid="kept-0")
        await queue.execute("set_article_state", article_id=article_id, is_starred=True, now=1)
        snapshot = await queue.backup_database(str(tmp_path / "snaps"), now=MOMENT)
        await queue.execute("upsert_articles", feed_id=feed_id, items=_articles("later", 30), now=2)
        assert await queue.execute("count_articles") == 90
    finally:
        await queue.stop()

    backup.restore_backup(snapshot, db_path)

    queue = DatabaseQueue(db_path)
    await queue.start()
    try:
        assert await queue.execute("count_articles") == 60
        counts = await queue.execute("get_status_counts")
        assert (counts["feeds"], counts["starred_articles"]) == (1, 1)
    finally:
        await queue.stop()
