#!/usr/bin/env python3
"""
Utility classes and functions for Gator.

This module contains shared helpers used by the fetcher, the scheduler and the
CLI: retry backoff, duration parsing/formatting, URL validation and HTML
cleanup for post descriptions.
"""

from asyncio import sleep
from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

DURATION_PATTERN = re.compile(r'^(\d+)(ms|s|m|h)$')
DURATION_UNITS = {
    'ms': 0.001,
    's': 1,
    'm': 60,
    'h': 3600,
}


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted URL.

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

    return url.startswith(('http://', 'https://')) and '.' in url


def parse_duration(value: str) -> float:
    """Parse a duration such as ``500ms``, ``30s``, ``1m`` or ``2h`` into seconds.

    Raises:
        ValueError: If the string does not match the ``<digits><unit>`` grammar.
    """
    match = DURATION_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid duration format: {value}. Use format like: 1s, 1m, 1h")
    amount, unit = match.groups()
    return int(amount) * DURATION_UNITS[unit]


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Returns:
        ``"500ms"`` below one second, ``"1.5s"`` below a minute,
        ``"2m 30s"`` below an hour and ``"1h 5m"`` above that.
    """
    ms = max(int(round(seconds * 1000)), 0)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:g}s"
    if ms < 3_600_000:
        minutes = ms // 60_000
        secs = (ms % 60_000) // 1000
        return f"{minutes}m {secs}s"
    hours = ms // 3_600_000
    minutes = (ms % 3_600_000) // 60_000
    return f"{hours}h {minutes}m"


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to ``max_length`` characters, appending a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    return text[:max_length] + suffix


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    - Converts resulting HTML to Markdown with markdownify
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup([
        "script", "style", "iframe", "form", "object", "embed", "noscript",
        "frame", "frameset", "applet", "meta", "base", "link"
    ]):
        tag.decompose()

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if re.search(r'(pixel|tracker|counter|spacer|blank|trans)', src, re.I) or \
           (re.search(r'\.(gif|png)$', src, re.I) and (img.get('height') in ('0', '1'))):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith('mailto:'):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            resolved = urljoin(base_url, value)
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ['href', 'src']:
            if not tag.has_attr(attr):
                continue
            val = str(tag[attr])
            if not val:
                continue
            rewritten = _rewrite_url(val, attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    # wrap_width=0 keeps URLs on one line
    return md(str(soup), heading_style="ATX", wrap_width=0).strip()
