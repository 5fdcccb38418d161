# Overview: Locking and bounded-retry helpers shared by the core components.

from __future__ import annotations

import time
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

T = TypeVar("T")


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = (OperationalError, StaleDataError),
    on_retry: Callable[[BaseException, int], None] | None = None,
) -> T:
    """
    Execute an operation with retry on the given failures.

    Only for operations that are safe to repeat: reads, local transactions
    that rolled back, and mutations carrying an idempotency reference.
    Stock decrements without a reference must never be wrapped in this.
    """
    last_exc: BaseException | None = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            last_exc = exc
            if on_retry is not None:
                on_retry(exc, attempt)
            if attempt >= attempts - 1:
                raise
            if backoff_base:
                time.sleep(backoff_base * (2 ** attempt))
    # attempts < 1
    raise RuntimeError("run_with_retry requires at least one attempt") from last_exc
