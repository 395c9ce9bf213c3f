#!/usr/bin/env python3
"""
CLI command handlers.

Every handler is an async function ``handler(session, db, args)`` where
``session`` is the explicit current-user context read from the gator config
file, ``db`` a started DatabaseQueue and ``args`` the parsed argparse
namespace. Handlers that need a logged-in user are wrapped with
``logged_in``, which resolves the user and passes it as a fourth argument.
"""

import asyncio
import signal
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Optional

from aggregator import FeedAggregator
from config import Session, config, get_logger, set_user
from errors import CommandError, UsageError
from fetcher import FeedFetcher
from models import DatabaseQueue
from scheduler import AggregationScheduler
from utils import clean_html_to_markdown, format_duration, parse_duration, truncate_string, validate_url

# Module-specific logger
logger = get_logger("commands")


def logged_in(handler):
    """Resolve the session's current user and pass it to ``handler``."""

    @wraps(handler)
    async def wrapper(session: Session, db: DatabaseQueue, args):
        if not session.current_user_name:
            raise CommandError("No user is currently logged in")
        user = await db.execute('get_user_by_name', name=session.current_user_name)
        if not user:
            raise CommandError(f"User {session.current_user_name} not found")
        return await handler(session, db, args, user)

    return wrapper


def _format_timestamp(timestamp: Optional[int]) -> str:
    if timestamp is None:
        return "n/a"
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


def print_feed(feed: Dict[str, Any], user: Dict[str, Any]) -> None:
    print(f"* ID: {feed['id']}")
    print(f"* Name: {feed['name']}")
    print(f"* URL: {feed['url']}")
    print(f"* User: {user['name']}")
    print(f"* Created at: {_format_timestamp(feed['created_at'])}")


# User commands
async def handler_register(session: Session, db: DatabaseQueue, args) -> None:
    existing = await db.execute('get_user_by_name', name=args.name)
    if existing:
        raise CommandError(f"User {args.name} already exists")

    user = await db.execute('create_user', name=args.name)
    set_user(session, args.name)
    print(f"User {args.name} was created")
    logger.debug(f"Created user {user}")


async def handler_login(session: Session, db: DatabaseQueue, args) -> None:
    user = await db.execute('get_user_by_name', name=args.name)
    if not user:
        raise CommandError(f"User {args.name} does not exist")

    set_user(session, args.name)
    print(f"User has been set to: {args.name}")


async def handler_reset(session: Session, db: DatabaseQueue, args) -> None:
    await db.execute('delete_all_users')
    print("Database reset successfully")


async def handler_users(session: Session, db: DatabaseQueue, args) -> None:
    users = await db.execute('get_users')
    if not users:
        print("No users found")
        return

    for user in users:
        if user['name'] == session.current_user_name:
            print(f"* {user['name']} (current)")
        else:
            print(f"* {user['name']}")


# Feed commands
@logged_in
async def handler_addfeed(session: Session, db: DatabaseQueue, args, user: Dict[str, Any]) -> None:
    if not validate_url(args.url):
        raise UsageError(f"Invalid feed URL: {args.url}")
    if await db.execute('get_feed_by_url', url=args.url):
        raise CommandError(f"Feed with URL {args.url} already exists")

    feed = await db.execute('create_feed', name=args.name, url=args.url, user_id=user['id'])
    follow = await db.execute('create_feed_follow', user_id=user['id'], feed_id=feed['id'])

    print("Feed created successfully:")
    print_feed(feed, user)
    print(f"{follow['user_name']} is now following {follow['feed_name']}")


async def handler_feeds(session: Session, db: DatabaseQueue, args) -> None:
    feeds = await db.execute('get_feeds')
    if not feeds:
        print("No feeds found")
        return

    for feed in feeds:
        print(f"* Name: {feed['name']}")
        print(f"  URL: {feed['url']}")
        print(f"  User: {feed['user_name']}")


@logged_in
async def handler_follow(session: Session, db: DatabaseQueue, args, user: Dict[str, Any]) -> None:
    feed = await db.execute('get_feed_by_url', url=args.url)
    if not feed:
        raise CommandError(f"Feed with URL {args.url} not found")

    follow = await db.execute('create_feed_follow', user_id=user['id'], feed_id=feed['id'])
    print(f"{follow['user_name']} is now following {follow['feed_name']}")


@logged_in
async def handler_following(session: Session, db: DatabaseQueue, args, user: Dict[str, Any]) -> None:
    follows = await db.execute('get_feed_follows_for_user', user_id=user['id'])
    if not follows:
        print("Not following any feeds")
        return

    print(f"Feeds followed by {user['name']}:")
    for follow in follows:
        print(f"* {follow['feed_name']}")


@logged_in
async def handler_unfollow(session: Session, db: DatabaseQueue, args, user: Dict[str, Any]) -> None:
    feed = await db.execute('get_feed_by_url', url=args.url)
    if not feed:
        raise CommandError(f"Feed with URL {args.url} not found")

    deleted = await db.execute('delete_feed_follow', user_id=user['id'], feed_id=feed['id'])
    if not deleted:
        raise CommandError("You are not following this feed")
    print(f"Successfully unfollowed {args.url}")


# Post commands
@logged_in
async def handler_browse(session: Session, db: DatabaseQueue, args, user: Dict[str, Any]) -> None:
    limit = config.BROWSE_DEFAULT_LIMIT
    if args.limit is not None:
        try:
            limit = int(args.limit)
        except ValueError:
            limit = 0
        if limit < 1:
            raise UsageError("Limit must be a positive number")

    print(f"Fetching the latest {limit} posts...")
    posts = await db.execute('get_posts_for_user', user_id=user['id'], limit=limit)
    if not posts:
        print("No posts found. Follow some feeds first!")
        return

    print(f"\nLatest posts for {user['name']}:\n")
    for post in posts:
        print(f"Title: {post['title']}")
        print(f"Feed: {post['feed_name']}")
        print(f"URL: {post['url']}")
        if post['description']:
            text = clean_html_to_markdown(post['description'], base_url=post['url'])
            print(f"Description: {truncate_string(text, config.DESCRIPTION_PREVIEW_CHARS)}")
        if post['published_at'] is not None:
            print(f"Published: {_format_timestamp(post['published_at'])}")
        print("---")


# Aggregation
async def handler_agg(
    session: Session,
    db: DatabaseQueue,
    args,
    stop_event: Optional[asyncio.Event] = None,
    fetcher: Optional[FeedFetcher] = None,
) -> int:
    """Poll feeds every ``args.duration`` until interrupted.

    Returns the number of ticks run. When no ``stop_event`` is given, SIGINT
    and SIGTERM set one so the current tick can finish before exiting.
    """
    try:
        interval = parse_duration(args.duration)
    except ValueError as e:
        raise UsageError(str(e)) from e
    if interval <= 0:
        raise UsageError(f"Duration must be positive: {args.duration}")

    print(f"Collecting feeds every {format_duration(interval)}")

    loop = asyncio.get_running_loop()
    installed_signals = []
    if stop_event is None:
        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed_signals.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops do not support signal handlers
                logger.debug(f"Could not install handler for {sig!r}")

    owns_fetcher = fetcher is None
    if owns_fetcher:
        fetcher = FeedFetcher()
        await fetcher.initialize()

    aggregator = FeedAggregator(db, fetcher)
    scheduler = AggregationScheduler(aggregator.scrape_feeds, interval)
    try:
        ticks = await scheduler.run(stop_event)
    finally:
        for sig in installed_signals:
            loop.remove_signal_handler(sig)
        if owns_fetcher:
            await fetcher.close()

    print("\nShutting down feed aggregator...")
    return ticks
