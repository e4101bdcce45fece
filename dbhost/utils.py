"""Shared utility functions."""

import asyncio
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("dbhost")

T = TypeVar("T")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string, the format stored in records."""
    return datetime.now(timezone.utc).isoformat()


def poll(
    check: Callable[[], T],
    *,
    attempts: int,
    interval: float,
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "poll",
) -> T | None:
    """Call ``check`` until it returns a truthy value or attempts run out.

    Exceptions listed in ``retry_on`` are logged and count as a failed
    attempt; anything else propagates. No sleep follows the final attempt.

    :param check: Zero-argument callable, truthy result means done
    :param attempts: Maximum number of calls to ``check``
    :param interval: Seconds to sleep between attempts (fixed, no backoff)
    :param retry_on: Exception types treated as a failed attempt
    :param sleep: Sleep function, replaceable for tests or other runtimes
    :param label: Name used in log messages
    :return: The first truthy result, or None when attempts are exhausted
    """
    for attempt in range(1, attempts + 1):
        try:
            result = check()
            if result:
                return result
        except retry_on as e:
            logger.debug(f"{label}: attempt {attempt}/{attempts} failed: {e}")
        if attempt < attempts:
            sleep(interval)
    return None


async def apoll(
    check: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    interval: float,
    retry_on: tuple[type[BaseException], ...] = (),
    label: str = "poll",
) -> T | None:
    """Event-loop counterpart of :func:`poll` for coroutine checks."""
    for attempt in range(1, attempts + 1):
        try:
            result = await check()
            if result:
                return result
        except retry_on as e:
            logger.debug(f"{label}: attempt {attempt}/{attempts} failed: {e}")
        if attempt < attempts:
            await asyncio.sleep(interval)
    return None
