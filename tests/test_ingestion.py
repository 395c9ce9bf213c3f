from datetime import datetime, timezone

import pytest
import pytest_asyncio

from aggregator import FeedAggregator
from conftest import make_rss
from errors import FetchError, StoreError
from fetcher import FeedDocument, FeedItem

FEED_URL = "https://blog.example.com/rss"


def _items(*slugs, pub_date="Mon, 02 Jan 2006 15:04:05 +0000"):
    return [
        {
            "title": f"Post {slug}",
            "link": f"https://blog.example.com/{slug}",
            "description": f"<p>Body of {slug}</p>",
            "pubDate": pub_date,
        }
        for slug in slugs
    ]


@pytest_asyncio.fixture
async def feed(db, user):
    return await db.execute('create_feed', name='Blog', url=FEED_URL, user_id=user['id'])


@pytest.mark.asyncio
async def test_ingest_saves_every_valid_item(db, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, make_rss(_items("a", "b")))
    aggregator = FeedAggregator(db, stub_fetcher)

    result = await aggregator.ingest(feed)

    assert result.ok
    assert result.found == 2
    assert result.saved == 2
    assert await db.execute('count_posts', feed_id=feed['id']) == 2


@pytest.mark.asyncio
async def test_reingesting_same_document_saves_nothing(db, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, make_rss(_items("a", "b")))
    aggregator = FeedAggregator(db, stub_fetcher)

    await aggregator.ingest(feed)
    second = await aggregator.ingest(feed)

    assert second.ok
    assert second.found == 2
    assert second.saved == 0
    assert await db.execute('count_posts') == 2


@pytest.mark.asyncio
async def test_duplicate_urls_within_one_document_stored_once(db, feed, stub_fetcher):
    items = _items("same") + _items("same")
    items[1]["title"] = "Same post, retitled"
    stub_fetcher.add(FEED_URL, make_rss(items))

    result = await FeedAggregator(db, stub_fetcher).ingest(feed)

    assert result.found == 2
    assert result.saved == 1
    assert await db.execute('count_posts') == 1


@pytest.mark.asyncio
async def test_url_shared_across_feeds_is_stored_once(db, user, feed, stub_fetcher):
    """The same article URL published by two feeds belongs to whichever feed saved it first."""
    other = await db.execute('create_feed', name='Mirror', url='https://mirror.example.com/rss', user_id=user['id'])
    stub_fetcher.add(FEED_URL, make_rss(_items("a", "b")))
    stub_fetcher.add(other['url'], make_rss(_items("b", "c")))
    aggregator = FeedAggregator(db, stub_fetcher)

    await aggregator.ingest(feed)
    result = await aggregator.ingest(other)

    assert result.saved == 1
    assert await db.execute('count_posts', feed_id=feed['id']) == 2
    assert await db.execute('count_posts', feed_id=other['id']) == 1


@pytest.mark.asyncio
async def test_unparseable_date_keeps_post_without_date(db, user, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, make_rss(_items("undated", pub_date="not-a-date")))
    await db.execute('create_feed_follow', user_id=user['id'], feed_id=feed['id'])

    result = await FeedAggregator(db, stub_fetcher).ingest(feed)

    assert result.saved == 1
    posts = await db.execute('get_posts_for_user', user_id=user['id'], limit=5)
    assert posts[0]['url'] == "https://blog.example.com/undated"
    assert posts[0]['published_at'] is None


@pytest.mark.asyncio
async def test_published_date_stored_as_utc_timestamp(db, user, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, make_rss(_items("dated", pub_date="Sat, 15 Nov 2025 16:00:00 +0000")))
    await db.execute('create_feed_follow', user_id=user['id'], feed_id=feed['id'])

    await FeedAggregator(db, stub_fetcher).ingest(feed)

    posts = await db.execute('get_posts_for_user', user_id=user['id'], limit=5)
    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert posts[0]['published_at'] == expected


@pytest.mark.asyncio
async def test_empty_description_stored_as_null(db, user, feed, stub_fetcher):
    document = FeedDocument(
        title="Blog",
        link="https://blog.example.com/",
        description="A blog",
        items=[FeedItem(title="Bare", link="https://blog.example.com/bare", description="", pub_date="")],
    )
    stub_fetcher.add(FEED_URL, document)
    await db.execute('create_feed_follow', user_id=user['id'], feed_id=feed['id'])

    await FeedAggregator(db, stub_fetcher).ingest(feed)

    posts = await db.execute('get_posts_for_user', user_id=user['id'], limit=5)
    assert posts[0]['description'] is None
    assert posts[0]['published_at'] is None


@pytest.mark.asyncio
async def test_channel_missing_description_fails_without_posts(db, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, make_rss(_items("a"), description=None))

    result = await FeedAggregator(db, stub_fetcher, clock=lambda: 1_700_000_000).ingest(feed)

    assert not result.ok
    assert "missing required channel fields" in result.error
    assert result.saved == 0
    assert await db.execute('count_posts') == 0
    # The failed feed still moves to the back of the rotation
    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['last_fetched_at'] == 1_700_000_000


@pytest.mark.asyncio
async def test_feed_marked_fetched_before_request(db, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, make_rss(_items("a")))

    await FeedAggregator(db, stub_fetcher, clock=lambda: 42).ingest(feed)

    assert stub_fetcher.last_fetched_at_seen == [42]


@pytest.mark.asyncio
async def test_network_error_reported_in_result(db, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, FetchError("Timed out fetching feed", FEED_URL))

    result = await FeedAggregator(db, stub_fetcher).ingest(feed)

    assert result.error == "Timed out fetching feed"
    assert result.found == 0


@pytest.mark.asyncio
async def test_store_error_propagates(db, feed, stub_fetcher):
    stub_fetcher.add(FEED_URL, make_rss(_items("a")))
    aggregator = FeedAggregator(db, stub_fetcher)
    await db.stop()

    with pytest.raises(StoreError):
        await aggregator.ingest(feed)
