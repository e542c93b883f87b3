# tasklane/core/utils/url.py
"""Connection URL helpers: credential masking for logs and driver normalization."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse

_DRIVER_SUFFIXES: frozenset[str] = frozenset({'psycopg', 'asyncpg'})


def mask_database_url(url: str) -> str:
    """Replace the password in a connection URL with ``***``."""
    try:
        parsed = urlparse(url)
        password = parsed.password
    except ValueError:
        password = None
        parsed = None
    if parsed is not None and password:
        netloc = parsed.netloc.replace(f':{password}@', ':***@')
        return urlunparse(parsed._replace(netloc=netloc))
    if parsed is None and '@' in url:
        pre, post = url.split('@', 1)
        return f"{pre.rsplit(':', 1)[0]}:***@{post}"
    return url


def to_psycopg_url(url: str) -> str:
    """Strip the SQLAlchemy driver suffix so psycopg can connect directly.

    ``postgresql+psycopg://...`` -> ``postgresql://...``
    """
    parsed = urlparse(url)
    if '+' not in parsed.scheme:
        return url
    base, driver = parsed.scheme.split('+', 1)
    if base in {'postgresql', 'postgres'} and driver in _DRIVER_SUFFIXES:
        return urlunparse(parsed._replace(scheme=base))
    return url
