from __future__ import annotations

import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import orjson

DEFAULT_LOG_FILE = Path("logs") / "mintwatch.log"
DEFAULT_MAX_BYTES = 5_000_000
DEFAULT_BACKUP_COUNT = 3
DEFAULT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "aiohttp.access")

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}

_HANDLER_SENTINEL = "_mintwatch_handler"


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value

        return orjson.dumps(payload, default=str).decode()


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *minutes* interval."""

    interval = max(0.0, minutes) * 60.0
    now = time.monotonic()

    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now

    target = logger or logging.getLogger()
    target.warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    """Clear cached emission timestamps for :func:`warn_once_per`."""

    with _warn_once_lock:
        _warn_once_last_emit.clear()


def _parse_log_level(value: str | int | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    level = value.strip().upper()
    if level.isdigit():
        return int(level)
    return getattr(logging, level, logging.INFO)


def _truthy(value: str | None) -> bool:
    return value is not None and value.strip().lower() in {"1", "true", "yes", "on"}


def configure_runtime_logging(
    *,
    level: str | int | None = None,
    console: bool | None = None,
    logfile: str | Path | None = None,
    json_logs: bool | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    force: bool = False,
) -> Path | None:
    """Install file and console handlers on the root logger.

    Arguments fall back to ``MINTWATCH_LOG_*`` environment variables.  Pass
    ``logfile=""`` to skip the rotating file handler.  Calling this twice
    replaces the handlers installed by the previous call instead of stacking
    new ones.
    """

    resolved_level = _parse_log_level(level if level is not None else os.getenv("MINTWATCH_LOG_LEVEL"))

    if console is None:
        env_console = os.getenv("MINTWATCH_LOG_CONSOLE")
        console = True if env_console is None else _truthy(env_console)
    if json_logs is None:
        json_logs = _truthy(os.getenv("MINTWATCH_LOG_JSON"))

    if json_logs:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = _UTCFormatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if force or getattr(handler, _HANDLER_SENTINEL, False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(resolved_level)

    if logfile is None:
        logfile = os.getenv("MINTWATCH_LOG_FILE", str(DEFAULT_LOG_FILE))
    log_path: Path | None = None
    if logfile:
        log_path = Path(logfile).resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes or DEFAULT_MAX_BYTES,
            backupCount=backup_count or DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(resolved_level)
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_SENTINEL, True)
        root.addHandler(file_handler)

    if console:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(resolved_level)
        stream_handler.setFormatter(formatter)
        setattr(stream_handler, _HANDLER_SENTINEL, True)
        root.addHandler(stream_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    root.debug("Logging initialised", extra={"log_file": str(log_path) if log_path else None})
    return log_path


def _normalize_for_log(value: Any, *, max_string: int) -> Any:
    if isinstance(value, dict):
        return {
            str(k): _normalize_for_log(v, max_string=max_string)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_normalize_for_log(v, max_string=max_string) for v in value]
    if isinstance(value, set):
        return sorted(
            (_normalize_for_log(v, max_string=max_string) for v in value),
            key=str,
        )
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str):
        if len(value) <= max_string:
            return value
        return f"{value[:max_string]}...({len(value)} chars)"
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    return str(value)


def serialize_for_log(value: Any, *, max_string: int = 256) -> str:
    """Return a compact JSON string safe for logging."""

    try:
        return orjson.dumps(_normalize_for_log(value, max_string=max_string)).decode()
    except (TypeError, orjson.JSONEncodeError):
        return repr(value)


__all__ = [
    "JsonFormatter",
    "configure_runtime_logging",
    "warn_once_per",
    "reset_warn_once_cache",
    "serialize_for_log",
]
