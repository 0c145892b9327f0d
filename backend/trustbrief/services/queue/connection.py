"""
Redis connection and rq queue construction.

Every stage queue is backed by three rq queues, one per priority band:
"<name>-high" (priority 7-10), "<name>" (4-6) and "<name>-low" (0-3).
Workers listen to every high band before any normal band before any low
band, so higher-priority jobs are taken first and jobs of equal band run
in the order they were enqueued.
"""

from functools import lru_cache

import redis
from rq import Queue

DEFAULT_JOB_TIMEOUT = 900

HIGH_PRIORITY = 7
LOW_PRIORITY = 3

BAND_SUFFIXES = ("-high", "", "-low")


@lru_cache(maxsize=4)
def get_redis_connection(url: str) -> redis.Redis:
    """Return a cached Redis connection. rq needs raw bytes, so no decode_responses."""
    return redis.from_url(url)


def band_name(queue_name: str, priority: int) -> str:
    if priority >= HIGH_PRIORITY:
        return f"{queue_name}-high"
    if priority <= LOW_PRIORITY:
        return f"{queue_name}-low"
    return queue_name


def band_names(queue_name: str) -> list[str]:
    return [f"{queue_name}{suffix}" for suffix in BAND_SUFFIXES]


def get_queue(name: str, connection: redis.Redis, *, timeout: int = DEFAULT_JOB_TIMEOUT) -> Queue:
    return Queue(name, connection=connection, default_timeout=timeout)


def listen_order(queue_names: list[str]) -> list[str]:
    """rq queue names for a worker, highest band of every queue first."""
    return [f"{name}{suffix}" for suffix in BAND_SUFFIXES for name in queue_names]


__all__ = [
    "DEFAULT_JOB_TIMEOUT",
    "band_name",
    "band_names",
    "get_queue",
    "get_redis_connection",
    "listen_order",
]
