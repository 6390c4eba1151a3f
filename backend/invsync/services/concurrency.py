# Overview: Retry and row-locking helpers shared by every stock write path.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

# Failures worth retrying: locks/deadlocks and optimistic version conflicts
TRANSIENT_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, session, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The session is rolled back before each
    new attempt so func always starts from a clean transaction.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except TRANSIENT_ERRORS as exc:
            session.rollback()
            if attempt >= attempts - 1:
                raise
            delay = backoff_base * (2 ** attempt)
            logger.warning("Transient store error (attempt %s/%s), retrying in %.2fs: %s",
                           attempt + 1, attempts, delay, exc)
            time.sleep(delay)

