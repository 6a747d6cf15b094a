import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger("incus-backup")

LOG_FORMAT = "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Attach a stderr handler to the package logger.

    INCUS_BACKUP_LOG_LEVEL overrides the level chosen by ``verbose``.
    """
    level_name = os.getenv("INCUS_BACKUP_LOG_LEVEL", "DEBUG" if verbose else "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    if not any(getattr(h, "_incus_backup", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._incus_backup = True
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def rfc3339(moment: datetime) -> str:
    """Format a datetime as RFC3339 UTC with a ``Z`` suffix and no fractions."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


async def call_maybe_async(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Await coroutine functions directly, run blocking ones in a worker thread."""
    if asyncio.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    return await asyncio.to_thread(func, *args, **kwargs)

