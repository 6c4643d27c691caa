#!/usr/bin/env python3
"""
Utility functions shared by the fetcher, refresher and command line.

This module contains URL validation, HTML sanitising for stored article
bodies, and human-readable duration formatting.
"""

from datetime import timedelta
from typing import Optional
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

_DANGEROUS_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link"
]
_TRACKER_RE = re.compile(r'(pixel|tracker|counter|spacer|blank|trans)', re.I)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    parsed = urlparse(url)
    return parsed.scheme in ('http', 'https') and bool(parsed.hostname)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "2d 1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def format_age(age: timedelta) -> str:
    """Render a snapshot age, with timedelta.max shown as 'never'."""
    if age == timedelta.max:
        return "never"
    return format_duration(age.total_seconds())


def sanitize_html(html_content: Optional[str], base_url: Optional[str] = None) -> str:
    """Strip unsafe markup from feed-supplied HTML.

    Args:
        html_content: Raw HTML from a feed entry
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images lose their src)
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup(_DANGEROUS_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:'):
                del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if _TRACKER_RE.search(src) or (
            re.search(r'\.(gif|png)$', src, re.I) and img.get('height') in ('0', '1')
        ):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith(('mailto:', '#')):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            resolved = urljoin(base_url, value)
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr):
                continue
            val = str(tag[attr]).strip()
            if not val:
                continue
            rewritten = _rewrite_url(val, attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    return str(soup).strip()
