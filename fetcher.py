#!/usr/bin/env python3
"""
RSS feed fetcher.

This module retrieves a feed over HTTP(S), parses it with feedparser and
normalizes it into a FeedDocument. Network failures, unparseable bodies and
channels missing their required fields all surface as FetchError; individual
items missing required fields are dropped instead.
"""

from asyncio import get_event_loop, TimeoutError
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Any, List, Optional

import feedparser
from feedparser.datetimes import _parse_date as feedparser_parse_date
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import FetchError
from telemetry import get_tracer, init_telemetry, trace_span
from utils import RetryHelper

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("gator-fetcher")
_tracer = get_tracer("fetcher")

# HTTP status codes
HTTP_OK = 200

CUSTOM_DATE_FORMATS = [
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
]


@dataclass
class FeedItem:
    """One entry of a fetched feed, with the publish date still unparsed."""

    title: str
    link: str
    description: Optional[str]
    pub_date: str


@dataclass
class FeedDocument:
    """A normalized feed: channel fields plus the entries that passed validation."""

    title: str
    link: str
    description: str
    items: List[FeedItem] = field(default_factory=list)


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        time_struct = feedparser_parse_date(date_str)
        if time_struct:
            # feedparser normalizes to UTC
            return timegm(time_struct)
    except (ValueError, TypeError, OverflowError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
    except (TypeError, ValueError, OverflowError, IndexError):
        return None
    return None


def _parse_with_isoformat(date_str: str) -> Optional[int]:
    try:
        dt = datetime.fromisoformat(date_str)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_with_custom_formats(date_str: str) -> Optional[int]:
    for fmt in CUSTOM_DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        except (ValueError, TypeError):
            continue
    return None


def parse_published_date(date_str: Optional[str]) -> Optional[int]:
    """Parse an item's publish date into a Unix timestamp.

    Tries feedparser's date handlers, RFC 2822, ISO 8601 and a few custom
    formats in that order. Returns None (and logs a warning) when none of
    them understand the value, so the post is kept without a date.
    """
    if not date_str or not date_str.strip():
        return None

    value = date_str.strip()
    parsers = (
        _parse_with_feedparser,
        _parse_with_email_utils,
        _parse_with_isoformat,
        _parse_with_custom_formats,
    )
    for parser in parsers:
        timestamp = parser(value)
        if timestamp is not None:
            return timestamp

    logger.warning(f"Could not parse date: {date_str}")
    return None


class FeedFetcher:
    """Fetches and parses feeds; one instance is shared across scheduler ticks."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self.executor = ThreadPoolExecutor(max_workers=2)
        self.session = session
        self._owns_session = False
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)

    async def initialize(self) -> None:
        """Open the HTTP session if one was not supplied."""
        if self.session is None:
            self.session = ClientSession(headers={'User-Agent': config.USER_AGENT})
            self._owns_session = True
        logger.debug("FeedFetcher initialized")

    async def close(self) -> None:
        """Close the HTTP session (if we own it) and the parser thread pool."""
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
            self._owns_session = False
        self.executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")

    async def __aenter__(self) -> "FeedFetcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def fetch(self, url: str) -> FeedDocument:
        """Fetch ``url`` and return its normalized document.

        Raises:
            FetchError: On network failure, non-200 status, unparseable body
                or missing channel fields.
        """
        content = await self._fetch_feed_content(url)
        return await self.run_in_executor(self.parse_document, content, url)

    async def _fetch_feed_content(self, url: str) -> bytes:
        """Fetch the raw feed body, retrying transient network errors."""
        if self.session is None:
            await self.initialize()

        headers = {'User-Agent': config.USER_AGENT}
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        max_retries = self.retry_helper.max_retries

        for attempt in range(max_retries + 1):
            try:
                async with self.session.get(
                    url,
                    headers=headers,
                    timeout=timeout,
                    max_redirects=config.MAX_REDIRECTS,
                ) as response:
                    if response.status != HTTP_OK:
                        raise FetchError(f"HTTP {response.status} fetching {url}", url)
                    return await response.read()

            except TimeoutError as e:
                logger.warning(
                    "Timeout fetching %s (attempt %d/%d, timeout=%ss)",
                    url,
                    attempt + 1,
                    max_retries + 1,
                    config.HTTP_TIMEOUT,
                )
                if attempt < max_retries:
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchError(f"Timed out fetching {url}", url) from e
            except ClientError as e:
                detail = self._format_client_error(e)
                if attempt < max_retries:
                    logger.warning("Retry %d/%d for %s due to error: %s", attempt + 1, max_retries, url, detail)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchError(f"Network error fetching {url}: {detail}", url) from e

        # Only reachable with a negative retry count
        raise FetchError(f"Could not fetch {url}", url)

    def parse_document(self, content: bytes | str, url: Optional[str] = None) -> FeedDocument:
        """Parse a feed body into a FeedDocument.

        Items need a title, a real link element, a description and a publish
        date (``pubDate``; Atom entries may use ``updated`` instead).

        Raises:
            FetchError: If the body is not a recognizable feed or the channel
                lacks a title, link or description.
        """
        if isinstance(content, str):
            content = content.encode('utf-8')

        feed = feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)

        if not feed.get('version'):
            reason = feed.get('bozo_exception') or "unrecognized format"
            raise FetchError(f"Invalid RSS feed: could not parse document ({reason})", url)

        if feed.bozo:
            logger.debug(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")

        channel = feed.feed
        title = channel.get('title')
        link = channel.get('link')
        description = channel.get('description')
        if not title or not link or not description:
            raise FetchError("Invalid RSS feed: missing required channel fields", url)

        is_atom = feed.version.startswith('atom')
        items: List[FeedItem] = []
        for entry in feed.entries:
            item_title = entry.get('title')
            item_link = entry.get('link')
            # feedparser fills link from a permalink guid when the item has no <link>
            if entry.get('guidislink') and not entry.get('links'):
                item_link = None
            item_description = entry.get('description')
            item_date = entry.get('published')
            if not item_date and is_atom:
                item_date = entry.get('updated')
            if not item_title or not item_link or not item_description or not item_date:
                logger.debug(f"Dropping incomplete item in {url}: {item_title or item_link or '<untitled>'}")
                continue
            items.append(FeedItem(
                title=item_title.strip(),
                link=item_link.strip(),
                description=item_description,
                pub_date=item_date,
            ))

        return FeedDocument(title=title, link=link, description=description, items=items)

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
