import socket

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import config
from conftest import make_rss
from errors import FetchError
from fetcher import FeedFetcher

RSS = make_rss(
    [{"title": "Served", "link": "https://example.com/served",
      "description": "from the test server", "pubDate": "Mon, 02 Jan 2006 15:04:05 +0000"}],
)


@pytest_asyncio.fixture
async def feed_server():
    """Local HTTP server exposing /feed.xml, /missing and /garbage; records request headers."""
    seen_headers = []

    async def feed(request):
        seen_headers.append(dict(request.headers))
        return web.Response(text=RSS, content_type='application/rss+xml')

    async def garbage(request):
        return web.Response(text="<html><body>not a feed", content_type='text/html')

    async def redirect(request):
        raise web.HTTPFound('/feed.xml')

    app = web.Application()
    app.router.add_get('/feed.xml', feed)
    app.router.add_get('/garbage', garbage)
    app.router.add_get('/moved', redirect)

    server = TestServer(app)
    await server.start_server()
    server.seen_headers = seen_headers
    try:
        yield server
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_fetch_parses_served_feed(feed_server):
    async with FeedFetcher() as fetcher:
        document = await fetcher.fetch(str(feed_server.make_url('/feed.xml')))

    assert document.title == "Example Feed"
    assert [item.link for item in document.items] == ["https://example.com/served"]


@pytest.mark.asyncio
async def test_fetch_sends_gator_user_agent(feed_server):
    async with FeedFetcher() as fetcher:
        await fetcher.fetch(str(feed_server.make_url('/feed.xml')))

    assert feed_server.seen_headers[0]['User-Agent'] == config.USER_AGENT


@pytest.mark.asyncio
async def test_fetch_follows_redirects(feed_server):
    async with FeedFetcher() as fetcher:
        document = await fetcher.fetch(str(feed_server.make_url('/moved')))

    assert len(document.items) == 1


@pytest.mark.asyncio
async def test_non_200_status_raises_fetch_error(feed_server):
    url = str(feed_server.make_url('/missing'))

    async with FeedFetcher() as fetcher:
        with pytest.raises(FetchError, match="HTTP 404") as excinfo:
            await fetcher.fetch(url)

    assert excinfo.value.url == url


@pytest.mark.asyncio
async def test_non_feed_body_raises_fetch_error(feed_server):
    async with FeedFetcher() as fetcher:
        with pytest.raises(FetchError, match="Invalid RSS feed"):
            await fetcher.fetch(str(feed_server.make_url('/garbage')))


@pytest.mark.asyncio
async def test_connection_refused_raises_fetch_error():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    url = f"http://127.0.0.1:{port}/feed.xml"

    async with FeedFetcher() as fetcher:
        with pytest.raises(FetchError, match="Network error"):
            await fetcher.fetch(url)
