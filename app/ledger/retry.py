"""
Bounded retry of optimistic transactions.

The store detects conflicting commits; the caller re-runs the whole
read-modify-write. No backoff: the conflict is already resolved by the time
the losing commit is rejected. Exhaustion surfaces as ResourceConflict.
"""
from __future__ import annotations

from typing import Awaitable, Callable

import structlog

from app.core.errors import ResourceConflict, TransactionConflict
from app.core.metrics import TRANSACTION_RETRIES
from app.ledger.store import LedgerStore, T, Transaction

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3


async def run_with_retries(
    store: LedgerStore,
    fn: Callable[[Transaction], Awaitable[T]],
    *,
    operation: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    **log_context,
) -> T:
    for attempt in range(1, max_attempts + 1):
        try:
            return await store.run_transaction(fn)
        except TransactionConflict as e:
            TRANSACTION_RETRIES.labels(operation=operation).inc()
            logger.info(
                "transaction_conflict",
                operation=operation,
                attempt=attempt,
                max_attempts=max_attempts,
                conflict=str(e),
                **log_context,
            )

    raise ResourceConflict(
        f"{operation} kept conflicting with concurrent updates; retry the request",
        attempts=max_attempts,
        **log_context,
    )
