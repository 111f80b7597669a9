"""Process liveness probe used to detect stale deployment locks."""

from __future__ import annotations

import logging

import psutil

logger = logging.getLogger(__name__)


def is_process_alive(holder_id: str) -> bool:
    """Return True if the process identified by *holder_id* is running.

    Holder ids that are not process ids cannot be probed and are
    reported as alive, so such a lock is never reclaimed automatically.
    """
    try:
        pid = int(holder_id)
    except (TypeError, ValueError):
        logger.debug("Holder %r is not a pid; assuming it is alive", holder_id)
        return True

    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
