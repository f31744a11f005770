"""Admin API routes: analytics, billing oversight and quota maintenance"""
import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from timelens.core.security import require_auth, require_csrf_new
from timelens.db.session import get_db
from timelens.models.user import User
from timelens.services import quota_service, subscription_service, transaction_service
from timelens.services.webhook_service import list_billing_events
from timelens.tasks.reconciliation import run_reconciliation

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def require_admin(user_id: int = Depends(require_csrf_new), db: Session = Depends(get_db)) -> User:
    """Dependency: Require admin role (state-changing requests, CSRF checked)"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_admin:
        raise HTTPException(403, "Admin access required")
    return user


def require_admin_get(user_id: int = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    """Dependency: Require admin role (for GET requests - no CSRF required)"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_admin:
        raise HTTPException(403, "Admin access required")
    return user


@router.get("/analytics/usage")
def usage_analytics(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    admin: User = Depends(require_admin_get),
    db: Session = Depends(get_db)
):
    return quota_service.get_usage_analytics(db, start=start, end=end)


@router.get("/analytics/subscriptions")
def subscription_analytics(admin: User = Depends(require_admin_get), db: Session = Depends(get_db)):
    return subscription_service.get_subscription_analytics(db)


@router.get("/analytics/revenue")
def revenue_analytics(
    period: str = Query("month", pattern="^(month|year)$"),
    admin: User = Depends(require_admin_get),
    db: Session = Depends(get_db)
):
    return transaction_service.revenue_analytics(db, period=period)


@router.get("/subscriptions/past-due")
def past_due_subscriptions(admin: User = Depends(require_admin_get), db: Session = Depends(get_db)):
    subscriptions = subscription_service.get_past_due_subscriptions(db)
    return {"subscriptions": [subscription_service.serialize_subscription(s) for s in subscriptions]}


@router.get("/subscriptions/expiring")
def expiring_subscriptions(
    days: int = Query(7, ge=1, le=90),
    admin: User = Depends(require_admin_get),
    db: Session = Depends(get_db)
):
    subscriptions = subscription_service.get_expiring_subscriptions(db, days=days)
    return {"subscriptions": [subscription_service.serialize_subscription(s) for s in subscriptions]}


@router.get("/transactions/failed")
def failed_transactions(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    admin: User = Depends(require_admin_get),
    db: Session = Depends(get_db)
):
    transactions = transaction_service.get_failed_transactions(db, start=start, end=end)
    return {"transactions": [transaction_service.serialize_transaction(tx) for tx in transactions]}


@router.get("/transactions/refunds")
def refund_transactions(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    admin: User = Depends(require_admin_get),
    db: Session = Depends(get_db)
):
    transactions = transaction_service.get_refund_transactions(db, start=start, end=end)
    return {"transactions": [transaction_service.serialize_transaction(tx) for tx in transactions]}


@router.post("/users/{user_id}/reset-usage")
def reset_user_usage(user_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    counter = quota_service.reset_usage(user_id, db)
    logger.warning(f"Admin {admin.id} reset today's usage for user {user_id}")
    return {"user_id": user_id, "date": counter.usage_date.isoformat(), "count": counter.transformations_count}


@router.post("/reconcile-usage")
def reconcile_usage(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    """Run the quota reconciliation pass now"""
    reports = run_reconciliation(db=db)
    if reports is None:
        raise HTTPException(409, "Reconciliation already running")
    return {"reports": reports}


@router.get("/webhooks/events")
def webhook_events(
    limit: int = Query(50, ge=1, le=500),
    failed_only: bool = Query(False),
    admin: User = Depends(require_admin_get),
    db: Session = Depends(get_db)
):
    events = list_billing_events(db, limit=limit, failed_only=failed_only)
    return {
        "events": [
            {
                "event_id": e.event_id,
                "event_type": e.event_type,
                "normalized_type": e.normalized_type,
                "processed": e.processed,
                "error_message": e.error_message,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ]
    }
