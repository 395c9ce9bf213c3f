#!/usr/bin/env python3
"""
Feed ingestion: rotation policy and the per-feed pipeline.

One scheduler tick asks the store for the next feed to poll (never-fetched
feeds first, then least recently fetched), marks it fetched *before* touching
the network so a failing feed cannot hog the rotation, fetches it and stores
each item as a post. Posts are deduplicated by URL in the store itself; a
collision comes back as ``None`` and is simply not counted.
"""

from dataclasses import dataclass
from time import time
from typing import Any, Callable, Dict, Optional

from config import get_logger
from errors import FetchError
from fetcher import FeedFetcher, parse_published_date
from models import DatabaseQueue
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("aggregator")
_tracer = get_tracer("aggregator")


@dataclass
class IngestResult:
    """Outcome of ingesting one feed."""

    feed_name: str
    feed_url: str
    found: int = 0
    saved: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FeedAggregator:
    """Runs the rotation policy and the ingestion pipeline against a store."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: FeedFetcher,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Args:
            db: Started DatabaseQueue
            fetcher: Anything with an async ``fetch(url) -> FeedDocument``
            clock: Wall-clock source used for last_fetched_at (default: time.time)
        """
        self.db = db
        self.fetcher = fetcher
        self.clock = clock or time

    async def next_feed(self) -> Optional[Dict[str, Any]]:
        """Pick the feed to poll this tick, or None when no feeds exist."""
        return await self.db.execute('next_feed_to_fetch')

    @trace_span(
        "ingest_feed",
        tracer_name="aggregator",
        attr_from_args=lambda self, feed: {
            "feed.id": int(feed.get('id') or 0),
            "feed.url": feed.get('url') or "",
        },
    )
    async def ingest(self, feed: Dict[str, Any]) -> IngestResult:
        """Fetch one feed and store its items as posts.

        The feed is marked fetched before the request goes out. A FetchError is
        logged and reported in the result; StoreError propagates to the caller.
        """
        result = IngestResult(feed_name=feed['name'], feed_url=feed['url'])

        await self.db.execute('mark_feed_fetched', feed_id=feed['id'], fetched_at=int(self.clock()))

        try:
            document = await self.fetcher.fetch(feed['url'])
        except FetchError as e:
            logger.error(f"Error fetching feed {feed['name']} ({feed['url']}): {e}")
            result.error = str(e)
            return result

        result.found = len(document.items)
        logger.info(f"Found {result.found} posts in {feed['name']}")

        for item in document.items:
            published_at = parse_published_date(item.pub_date)
            post = await self.db.execute(
                'create_post',
                title=item.title,
                url=item.link,
                description=item.description or None,
                published_at=published_at,
                feed_id=feed['id'],
            )
            if post is None:
                logger.debug(f"  Already saved: {item.link}")
                continue
            result.saved += 1
            logger.info(f"  Saved: {item.title}")

        logger.info(f"Successfully saved {result.saved} new posts from {feed['name']} ({feed['url']})")
        return result

    @trace_span("scrape_feeds", tracer_name="aggregator")
    async def scrape_feeds(self) -> Optional[IngestResult]:
        """Run one tick: select the next feed and ingest it.

        Returns None on an idle tick (no feeds registered).
        """
        logger.info("Fetching next feed...")
        feed = await self.next_feed()
        if feed is None:
            logger.info("No feeds to fetch")
            return None

        logger.info(f"Fetching feed: {feed['name']} ({feed['url']})")
        result = await self.ingest(feed)
        logger.info("Feed fetch complete")
        return result
