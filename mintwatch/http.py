from __future__ import annotations

import asyncio
import logging
import os
import weakref
from typing import Any

import aiohttp
import orjson

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
CONNECTOR_LIMIT = int(os.getenv("MINTWATCH_HTTP_CONNECTOR_LIMIT", "32") or 32)
CONNECTOR_LIMIT_PER_HOST = int(os.getenv("MINTWATCH_HTTP_CONNECTOR_LIMIT_PER_HOST", "8") or 8)

_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)


class HTTPError(Exception):
    """Raised when an HTTP request returns a non-success status code."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def dumps(obj: object) -> bytes:
    """Serialize *obj* to JSON bytes."""

    return orjson.dumps(obj)


def loads(data: str | bytes) -> Any:
    """Deserialize JSON *data*."""

    return orjson.loads(data)


def _timeout_from_env() -> float:
    raw = os.getenv("MINTWATCH_HTTP_TIMEOUT")
    try:
        return float(raw) if raw not in {None, ""} else DEFAULT_TIMEOUT
    except ValueError:
        return DEFAULT_TIMEOUT


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""

    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        connector = aiohttp.TCPConnector(
            limit=CONNECTOR_LIMIT, limit_per_host=CONNECTOR_LIMIT_PER_HOST
        )
        sess = aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": os.getenv("MINTWATCH_HTTP_USER_AGENT", "mintwatch/0.3")},
            timeout=aiohttp.ClientTimeout(total=_timeout_from_env()),
            json_serialize=lambda obj: orjson.dumps(obj).decode(),
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close all known aiohttp sessions."""

    to_close = list(_SESSIONS.values())
    _SESSIONS.clear()
    for sess in to_close:
        if not sess.closed:
            await sess.close()


__all__ = [
    "HTTPError",
    "dumps",
    "loads",
    "get_session",
    "close_session",
]
