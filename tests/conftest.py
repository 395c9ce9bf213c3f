import os

# Keep tests hermetic: no tracer provider, no instrumentation
os.environ.setdefault("DISABLE_TELEMETRY", "true")

from typing import Dict, List, Optional, Union

import pytest
import pytest_asyncio

from config import Session, config
from errors import FetchError
from fetcher import FeedDocument, FeedFetcher
from models import DatabaseQueue


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Point every test at its own database and gator config file."""
    monkeypatch.setattr(config, 'DATABASE_PATH', str(tmp_path / "gator.db"))
    monkeypatch.setattr(config, 'GATOR_CONFIG_PATH', str(tmp_path / "gatorconfig.yaml"))
    monkeypatch.setattr(config, 'RETRY_DELAY_BASE', 0.0)
    monkeypatch.setattr(config, 'MAX_RETRIES', 0)
    return config


@pytest.fixture
def session(tmp_path):
    return Session(db_path=str(tmp_path / "gator.db"), config_path=str(tmp_path / "gatorconfig.yaml"))


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "gator.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest_asyncio.fixture
async def user(db):
    return await db.execute('create_user', name='kahya')


def make_rss(
    items: List[Dict[str, str]],
    title: Optional[str] = "Example Feed",
    link: Optional[str] = "https://example.com/",
    description: Optional[str] = "An example feed",
) -> str:
    """Build a small RSS 2.0 document; pass None to leave a channel field out."""
    channel = []
    if title is not None:
        channel.append(f"<title>{title}</title>")
    if link is not None:
        channel.append(f"<link>{link}</link>")
    if description is not None:
        channel.append(f"<description>{description}</description>")
    for item in items:
        parts = []
        for tag in ("title", "link", "description", "pubDate"):
            if tag in item:
                parts.append(f"<{tag}>{item[tag]}</{tag}>")
        channel.append(f"<item>{''.join(parts)}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        + "".join(channel)
        + "</channel></rss>"
    )


class StubFetcher:
    """Serves canned documents by URL and records what the store looked like at fetch time."""

    def __init__(self, db: Optional[DatabaseQueue] = None):
        self.db = db
        self.responses: Dict[str, Union[str, FeedDocument, Exception]] = {}
        self.calls: List[str] = []
        self.last_fetched_at_seen: List[Optional[int]] = []
        self._parser = FeedFetcher()

    def add(self, url: str, response: Union[str, FeedDocument, Exception]) -> None:
        self.responses[url] = response

    async def fetch(self, url: str) -> FeedDocument:
        self.calls.append(url)
        if self.db is not None:
            feed = await self.db.execute('get_feed_by_url', url=url)
            self.last_fetched_at_seen.append(feed['last_fetched_at'] if feed else None)
        response = self.responses.get(url)
        if response is None:
            raise FetchError(f"HTTP 404 fetching {url}", url)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, FeedDocument):
            return response
        return self._parser.parse_document(response, url)


@pytest.fixture
def stub_fetcher(db):
    return StubFetcher(db)
