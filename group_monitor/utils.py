"""
Utility functions for the group monitor.
"""

import itertools
import logging
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

SYNTHETIC_ID_PREFIX = "sim_"

_synthetic_counter = itertools.count(1)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso_utc(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with a Z suffix."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def next_record_id(last_id: int) -> int:
    """
    Return an id greater than ``last_id``, based on wall-clock milliseconds.

    Ids stay monotonic when the clock does not move between calls or
    steps backwards.
    """
    return max(int(time.time() * 1000), last_id + 1)


def synthetic_message_id() -> str:
    """
    Build a source message id for manually injected messages.

    The prefix never occurs in platform ids, which have the form
    ``<bool>_<chat>@<server>_<hash>``.
    """
    synthetic_id = f"{SYNTHETIC_ID_PREFIX}{int(time.time() * 1000)}_{next(_synthetic_counter)}"
    logger.debug(f"Generated synthetic message id: {synthetic_id}")
    return synthetic_id


def format_uptime(seconds: int) -> str:
    return f"{seconds}s"
