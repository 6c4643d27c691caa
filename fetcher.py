#!/usr/bin/env python3
"""
Conditional feed fetcher.

This module retrieves a single RSS/Atom feed over HTTP, honouring the stored
caching validators (ETag / Last-Modified), and turns the response into feed
metadata plus a list of article dicts. It never touches the database; the
refresher decides what to persist.
"""

import asyncio
import calendar
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Dict, List, Optional, Union

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError
from telemetry import trace_span
from utils import sanitize_html

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_NOT_MODIFIED = 304


class _NotModified:
    """Sentinel returned by FeedFetcher.fetch() for an HTTP 304."""

    def __repr__(self) -> str:
        return "NOT_MODIFIED"

    def __bool__(self) -> bool:
        return False


NOT_MODIFIED = _NotModified()


@dataclass
class FetchResult:
    """A successfully fetched and parsed feed."""

    title: str = ""
    site_url: str = ""
    description: str = ""
    items: List[Dict[str, Any]] = field(default_factory=list)
    etag: str = ""
    last_modified: str = ""


def _struct_to_timestamp(value) -> Optional[int]:
    """feedparser normalises dates to UTC struct_time; convert without local-time skew."""
    if not value:
        return None
    try:
        return calendar.timegm(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _entry_item(entry, base_url: Optional[str]) -> Optional[Dict[str, Any]]:
    """Map a feedparser entry to an article dict, or None when it has no usable identity."""
    link = (entry.get('link') or '').strip()
    guid = (entry.get('id') or '').strip() or link
    if not guid:
        return None

    content = ""
    for content_item in entry.get('content') or []:
        if content_item.get('value'):
            content = content_item['value']
            break

    item_base = link or base_url
    return {
        'guid': guid,
        'url': link,
        'title': (entry.get('title') or '').strip(),
        'author': (entry.get('author') or '').strip(),
        'content': sanitize_html(content, item_base),
        'summary': sanitize_html(entry.get('summary') or '', item_base),
        'published_at': _struct_to_timestamp(entry.get('published_parsed') or entry.get('updated_parsed')),
    }


def parse_feed(content: Union[bytes, str], base_url: Optional[str] = None) -> FetchResult:
    """Parse raw feed bytes into a FetchResult (without validators).

    Raises FetchError when the body is not recognisable as RSS or Atom.
    Entries with neither an id nor a link are dropped.
    """
    parsed = feedparser.parse(content)
    if not parsed.get('version') and not parsed.entries:
        cause = parsed.get('bozo_exception')
        detail = f": {cause}" if cause else ""
        raise FetchError(f"Not a recognised RSS/Atom feed{detail}", url=base_url or "")

    feed_meta = parsed.feed
    items = []
    dropped = 0
    for entry in parsed.entries:
        item = _entry_item(entry, base_url)
        if item is None:
            dropped += 1
            continue
        items.append(item)
    if dropped:
        logger.debug(f"Dropped {dropped} entries without id or link from {base_url}")

    return FetchResult(
        title=(feed_meta.get('title') or '').strip(),
        site_url=(feed_meta.get('link') or '').strip(),
        description=(feed_meta.get('subtitle') or feed_meta.get('description') or '').strip(),
        items=items,
    )


class FeedFetcher:
    """HTTP client for feeds. One instance is shared by every refresh."""

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
    ) -> None:
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.max_redirects = config.MAX_REDIRECTS if max_redirects is None else max_redirects
        self.executor = ThreadPoolExecutor(thread_name_prefix="feedparse")
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking callable in the fetcher's thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def build_headers(self, etag: str = "", last_modified: str = "") -> Dict[str, str]:
        """Request headers; validators are sent exactly as stored."""
        headers = {'User-Agent': self.user_agent}
        if etag:
            headers['If-None-Match'] = etag
        if last_modified:
            headers['If-Modified-Since'] = last_modified
        return headers

    @trace_span(
        "fetch_http_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag="", last_modified="": {
            "http.url": url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, url: str, etag: str = "", last_modified: str = "") -> Union[FetchResult, _NotModified]:
        """Fetch `url`, returning NOT_MODIFIED on a 304 or a parsed FetchResult.

        Raises FetchError for transport failures, non-2xx responses and
        unparseable bodies.
        """
        headers = self.build_headers(etag, last_modified)
        try:
            async with self._get_session().get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=self.timeout),
                max_redirects=self.max_redirects,
            ) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.debug(f"Feed {url} not modified since last fetch")
                    return NOT_MODIFIED
                if not 200 <= response.status < 300:
                    raise FetchError(f"HTTP {response.status}", url=url, status=response.status)

                new_etag = response.headers.get('ETag', '')
                new_last_modified = response.headers.get('Last-Modified', '')
                content = await response.read()
                final_url = str(response.url)
        except asyncio.TimeoutError as e:
            raise FetchError(f"Timed out after {self.timeout}s", url=url) from e
        except ClientError as e:
            raise FetchError(f"Network error: {self._format_client_error(e)}", url=url) from e

        result = await self.run_in_executor(parse_feed, content, final_url)
        logger.debug(f"Fetched {url}: {len(result.items)} items")
        return replace(result, etag=new_etag, last_modified=new_last_modified)

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if getattr(os_error, 'strerror', None):
                parts.append(str(os_error.strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Close the HTTP session (when owned) and the parser thread pool."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")
