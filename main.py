#!/usr/bin/env python3
"""
Gator command-line entry point.

Parses the command line, reads the gator config file into an explicit
Session, opens the database and dispatches to the matching handler in
commands.py. Errors raised by handlers are reported as ``Error: <message>``
with exit status 1.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

import commands
from config import config, get_logger, read_user_config
from errors import GatorError
from models import DatabaseQueue
from telemetry import init_telemetry

# Module-specific logger
logger = get_logger("main")
init_telemetry("gator")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='gator', description='Gator RSS aggregator')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to the gator config file (default: ~/.gatorconfig.yaml)')
    sub = parser.add_subparsers(dest='command', metavar='command')

    register = sub.add_parser('register', help='Create a user and log in as them')
    register.add_argument('name', help='User name')
    register.set_defaults(handler=commands.handler_register)

    login = sub.add_parser('login', help='Log in as an existing user')
    login.add_argument('name', help='User name')
    login.set_defaults(handler=commands.handler_login)

    reset = sub.add_parser('reset', help='Delete all users, feeds and posts')
    reset.set_defaults(handler=commands.handler_reset)

    users = sub.add_parser('users', help='List users')
    users.set_defaults(handler=commands.handler_users)

    addfeed = sub.add_parser('addfeed', help='Add a feed and follow it')
    addfeed.add_argument('name', help='Feed name')
    addfeed.add_argument('url', help='Feed URL')
    addfeed.set_defaults(handler=commands.handler_addfeed)

    feeds = sub.add_parser('feeds', help='List all feeds')
    feeds.set_defaults(handler=commands.handler_feeds)

    follow = sub.add_parser('follow', help='Follow an existing feed')
    follow.add_argument('url', help='Feed URL')
    follow.set_defaults(handler=commands.handler_follow)

    following = sub.add_parser('following', help='List feeds you follow')
    following.set_defaults(handler=commands.handler_following)

    unfollow = sub.add_parser('unfollow', help='Stop following a feed')
    unfollow.add_argument('url', help='Feed URL')
    unfollow.set_defaults(handler=commands.handler_unfollow)

    browse = sub.add_parser('browse', help='Show the latest posts from followed feeds')
    browse.add_argument('limit', nargs='?', default=None, help='Number of posts (default: 2)')
    browse.set_defaults(handler=commands.handler_browse)

    agg = sub.add_parser('agg', help='Poll feeds periodically until interrupted')
    agg.add_argument('duration', help='Time between requests, e.g. 30s, 1m, 1h')
    agg.set_defaults(handler=commands.handler_agg)

    return parser


async def run_command(args: argparse.Namespace) -> None:
    """Build the session and database, then run the selected handler."""
    session = read_user_config(args.config)
    logger.debug(f"Configuration: {config.get_config_summary()}")
    logger.debug(f"Using database {session.db_path} (user: {session.current_user_name or 'none'})")
    async with DatabaseQueue(session.db_path) as db:
        await args.handler(session, db, args)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, 'handler', None):
        print("Error: Not enough arguments provided", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1

    try:
        asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.info("Interrupted - shutting down")
    except GatorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
