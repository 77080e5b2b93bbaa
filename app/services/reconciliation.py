"""
reconciliation.py
─────────────────
Out-of-band sweep that repairs interviews left in `in_progress`:
  - the evaluator attached a finalReport but the status update was lost
    → completed (score / finalScore back-filled from the report)
  - no report and older than the staleness window → failed ("abandoned")

Safe to run concurrently with itself and with live traffic: each record is
moved by its own status-guarded transaction.

Schedule: every 30 minutes (Kubernetes CronJob)

Usage:
  python -m app.services.reconciliation
  OR via the admin endpoint: POST /v1/admin/reconcile-stuck-interviews

Environment variables used:
  LEDGER_BACKEND, DATABASE_URL, STALENESS_WINDOW_SECONDS, RESTORE_CREDIT_ON_ABANDON
"""
from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Optional

import structlog

from app.core.config import get_settings
from app.ledger.store import LedgerStore
from app.schemas.ledger import ReconciliationResult
from app.services.event_publisher import INTERVIEWS_RECONCILED, publish_ledger_event
from app.services.lifecycle import InterviewLifecycle

logger = structlog.get_logger(__name__)


async def run_reconciliation(
    store: LedgerStore,
    staleness_window_seconds: Optional[int] = None,
    restore_credits: Optional[bool] = None,
) -> ReconciliationResult:
    """
    Args:
        store:                     Ledger store to sweep
        staleness_window_seconds:  Override STALENESS_WINDOW_SECONDS
        restore_credits:           Override RESTORE_CREDIT_ON_ABANDON
    """
    settings = get_settings()
    window = staleness_window_seconds if staleness_window_seconds is not None else settings.staleness_window_seconds
    if restore_credits is None:
        restore_credits = settings.restore_credit_on_abandon

    started = time.perf_counter()
    lifecycle = InterviewLifecycle(store, max_attempts=settings.reservation_max_attempts)
    result = await lifecycle.reconcile_stuck_interviews(
        timedelta(seconds=window), restore_credits=restore_credits,
    )

    if result.fixed:
        await publish_ledger_event(INTERVIEWS_RECONCILED, {
            "completed_ids": result.completed_ids,
            "failed_ids": result.failed_ids,
            "fixed": result.fixed,
            "total": result.total,
        })
    logger.info(
        "reconciliation_run_complete",
        window_seconds=window,
        elapsed_seconds=round(time.perf_counter() - started, 2),
        fixed=result.fixed,
        skipped=result.skipped,
        errors=result.errors,
    )
    return result


async def _main() -> ReconciliationResult:
    from app.ledger.sql import SqlLedgerStore

    settings = get_settings()
    if settings.ledger_backend != "sql":
        raise ValueError("LEDGER_BACKEND must be 'sql' to reconcile from the command line")
    store = SqlLedgerStore.from_url(settings.database_url)
    try:
        return await run_reconciliation(store)
    finally:
        await store.close()


if __name__ == "__main__":
    import sys

    try:
        result = asyncio.run(_main())
        print(f"✓ Reconciled {result.fixed} of {result.total} in-progress interviews "
              f"({result.skipped} skipped, {result.errors} errors)")
    except Exception as e:
        print(f"✗ Reconciliation failed: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(1 if result.errors else 0)
