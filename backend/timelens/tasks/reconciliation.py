"""Background task that keeps usage counters in line with persisted results"""
import asyncio
from datetime import date, timedelta
from typing import Dict, List, Optional

from timelens.core.config import settings
from timelens.core.logging import reconciliation_logger
from timelens.core.metrics import reconciliation_runs_counter
from timelens.db.redis import acquire_lock, release_lock
from timelens.db.session import SessionLocal
from timelens.services.quota_service import reconcile_usage_counters
from timelens.utils.dates import today_utc

RECONCILIATION_LOCK_KEY = "lock:quota_reconciliation"


def run_reconciliation(days: Optional[List[date]] = None, db=None) -> Optional[List[Dict]]:
    """Reconcile today and yesterday (a run right after midnight still covers the closing day).

    Returns None when another worker holds the lock.
    """
    if not acquire_lock(RECONCILIATION_LOCK_KEY, timeout=max(60, settings.QUOTA_RECONCILIATION_INTERVAL_SECONDS)):
        reconciliation_logger.debug("Reconciliation already running on another worker, skipping")
        reconciliation_runs_counter.labels(status="skipped").inc()
        return None

    today = today_utc()
    days = days or [today - timedelta(days=1), today]
    should_close = db is None
    db = db or SessionLocal()
    try:
        reports = [reconcile_usage_counters(db, day) for day in days]
        for report in reports:
            if report["repaired"] or report["over_limit"]:
                reconciliation_logger.warning(
                    f"Reconciliation {report['date']}: repaired {report['repaired']}, "
                    f"over limit {report['over_limit']}"
                )
        reconciliation_runs_counter.labels(status="success").inc()
        return reports
    except Exception:
        db.rollback()
        reconciliation_runs_counter.labels(status="error").inc()
        raise
    finally:
        if should_close:
            db.close()
        release_lock(RECONCILIATION_LOCK_KEY)


async def reconciliation_task():
    """Run reconciliation every QUOTA_RECONCILIATION_INTERVAL_SECONDS"""
    while True:
        await asyncio.sleep(settings.QUOTA_RECONCILIATION_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(run_reconciliation)
        except Exception as e:
            reconciliation_logger.error(f"Quota reconciliation failed: {e}", exc_info=True)
