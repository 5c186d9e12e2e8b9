# linkgrab/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **api**      – Bot API calls          (total=25 s, connect=5 s, pool limit=20)
- **poller**   – getUpdates long-poll   (per-request timeout, pool limit=2)
- **uploader** – multipart media upload (no total timeout, 120 s between reads)

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from linkgrab.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_api_session() -> aiohttp.ClientSession:
    """Session for regular Bot API calls."""
    return _get_or_create(
        "api",
        aiohttp.ClientTimeout(total=25, connect=5),
        limit=20,
    )


def get_poller_session() -> aiohttp.ClientSession:
    """Session for long-polling (timeouts are set per request)."""
    return _get_or_create(
        "poller",
        aiohttp.ClientTimeout(total=None, connect=5),
        limit=2,
    )


def get_uploader_session() -> aiohttp.ClientSession:
    """Session for media uploads; a 1 GiB upload has no sensible total timeout."""
    return _get_or_create(
        "uploader",
        aiohttp.ClientTimeout(total=None, connect=15, sock_read=120),
        limit=10,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
