# app/infra/http_client.py
"""
Shared aiohttp sessions, one per named profile.

Session profiles
~~~~~~~~~~~~~~~~
- **host_api** – hosting platform REST calls: channel send, inbox check,
  entitlement check (total=15 s by default, connect=5 s, pool limit=20,
  JSON accept header)

The timeout is fixed by the first caller; later calls reuse the session.
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}

_JSON_HEADERS = {"Accept": "application/json"}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
    headers: dict[str, str] | None = None,
) -> aiohttp.ClientSession:
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            headers=headers,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d, timeout=%ss)", name, limit, timeout.total)
    return session


def get_host_api_session(total_timeout: float = 15.0) -> aiohttp.ClientSession:
    return _get_or_create(
        "host_api",
        aiohttp.ClientTimeout(total=total_timeout, connect=5),
        limit=20,
        headers=_JSON_HEADERS,
    )


async def close_all_sessions() -> None:
    """Close every managed session. Safe to call when none were opened."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
