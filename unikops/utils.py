"""Shared utility functions."""

import logging
import subprocess
import sys
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import TypeVar

from rich.console import Console
from rich.logging import RichHandler

from .errors import CommandError

logger = logging.getLogger("unikops")

T = TypeVar("T", bound=Hashable)


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

    for name, lvl, propagate in [
        ("boto3", logging.INFO, True),
        ("botocore", logging.WARNING, True),
        ("urllib3", logging.WARNING, True),
        ("httpx", logging.WARNING, True),
        ("pyroute2", logging.WARNING, True),
        ("scapy", logging.ERROR, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def debug(msg: str) -> None:
    logger.debug(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def run_cmd(*args, check: bool = True) -> str:
    """Execute local command and return stdout.

    :raises CommandError: If the command exits non-zero and check is set
    """
    debug(f"run: {' '.join(args)}")
    try:
        result = subprocess.run(args, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise CommandError(list(args), 127, str(e)) from e
    if check and result.returncode != 0:
        raise CommandError(list(args), result.returncode, result.stderr)
    return result.stdout.strip()


def run_concurrently(
    fn: Callable[[T], object], items: Iterable[T]
) -> dict[T, Exception | None]:
    """Run fn on every item in parallel, one worker per item.

    Blocks until every item has reported. Completion order is unspecified,
    but each item gets exactly one entry in the result. Repeated items run
    once, with a warning.

    :param fn: Operation to run, e.g. a provider's delete_instance
    :param items: Items to operate on
    :return: Map of item to the exception it raised, or None on success
    """
    items = list(items)
    unique = list(dict.fromkeys(items))
    for item in unique:
        if items.count(item) > 1:
            warn(f"'{item}' given {items.count(item)} times, running it once")
    items = unique
    results: dict[T, Exception | None] = {}
    if not items:
        return results
    with ThreadPoolExecutor(max_workers=len(items)) as pool:
        futures = {pool.submit(fn, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            exc = future.exception()
            results[item] = exc if isinstance(exc, Exception) else None
    return results


def bytes2human(size: int) -> str:
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size) < 1024 or unit == "TB":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size}"


def timestamp_to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")
