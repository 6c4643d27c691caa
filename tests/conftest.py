import os

# Keep tests from instrumenting aiohttp/sqlite3 globally
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import sqlite3

import pytest
import pytest_asyncio

from fetcher import NOT_MODIFIED
from models import DatabaseQueue


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "feeds.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


class FakeFetcher:
    """Scripted stand-in for FeedFetcher: url -> FetchResult, NOT_MODIFIED or an exception."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self.closed = False

    async def fetch(self, url, etag="", last_modified=""):
        self.calls.append((url, etag, last_modified))
        response = self.responses.get(url, NOT_MODIFIED)
        if isinstance(response, Exception):
            raise response
        return response

    def urls_fetched(self):
        return [call[0] for call in self.calls]

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


def make_sqlite_file(file_path, rows=("alpha", "beta")):
    """Write a small standalone SQLite database and return its path."""
    conn = sqlite3.connect(str(file_path))
    try:
        conn.execute("CREATE TABLE notes (body TEXT)")
        conn.executemany("INSERT INTO notes (body) VALUES (?)", [(r,) for r in rows])
        conn.commit()
    finally:
        conn.close()
    return file_path
