"""
Valkey locks around Celery tasks.

Two kinds of lock share the ``celery:lock:`` namespace: one per periodic task
(the reconciler) and one per backport job, so a redelivered or re-dispatched
job message never drives a run that a live worker is still driving.
"""

import logging
from contextlib import contextmanager
from functools import wraps
from typing import Any
from collections.abc import Callable, Iterator
from valkey import Valkey

from agent_backport.config import settings

logger = logging.getLogger(__name__)

LOCK_PREFIX = "celery:lock:"

# Periodic tasks hold their lock until they finish; this only bounds a crashed worker
DEFAULT_LOCK_TIMEOUT = 7 * 24 * 60 * 60


def get_valkey_client() -> Valkey:
    use_tls = bool(settings.valkey_auth_token)
    return Valkey(
        host=settings.valkey_host,
        port=settings.valkey_port,
        db=settings.valkey_db,
        password=settings.valkey_auth_token or None,
        ssl=use_tls,
        decode_responses=False,
    )


@contextmanager
def acquire_task_lock(
    lock_name: str,
    blocking: bool = False,
    timeout: int = DEFAULT_LOCK_TIMEOUT,
) -> Iterator[bool]:
    """
    Try to take the lock ``celery:lock:<lock_name>`` and yield whether it was taken.

    ``timeout`` is how long a lock survives a worker that died while holding
    it. Per-job backport locks pass ``settings.backport_lock_seconds``.
    """
    key = f"{LOCK_PREFIX}{lock_name}"
    lock = get_valkey_client().lock(key, timeout=timeout, blocking_timeout=0)

    held = False
    try:
        held = lock.acquire(blocking=blocking)
        if held:
            logger.info(f"Acquired lock {key}")
        else:
            logger.info(f"Lock {key} is held elsewhere")
        yield held
    finally:
        if held:
            try:
                lock.release()
                logger.info(f"Released lock {key}")
            except Exception as e:
                # The lock expires on its own after `timeout`
                logger.warning(f"Error releasing lock {key}: {e}")


def with_task_lock(
    lock_name: str | None = None,
    blocking: bool = False,
    timeout: int = DEFAULT_LOCK_TIMEOUT,
):
    """
    Skip a task body while another run of the same task holds its lock.

    The lock name defaults to the wrapped function's name.
    """

    def decorator(func: Callable) -> Callable:
        name = lock_name or func.__name__

        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            with acquire_task_lock(name, blocking=blocking, timeout=timeout) as held:
                if held:
                    return func(*args, **kwargs)
            return {
                "status": "skipped",
                "reason": "previous_task_still_running",
                "message": f"Task {name} is already running, skipped this execution",
            }

        return wrapper

    return decorator
