"""URL helpers for URL-based topic analysis."""

from __future__ import annotations

from urllib.parse import urlparse


def is_valid_url(value: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_domain(url: str) -> str:
    try:
        return urlparse(url.strip()).hostname or ""
    except ValueError:
        return ""


def url_topic_title(url: str) -> str:
    return f"Content from {extract_domain(url)}"
