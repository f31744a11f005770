"""Transaction ledger - idempotent record of Stripe charges, failures and refunds"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timelens.core.errors import InvalidRequest, InvalidStateTransition, NotFoundError
from timelens.models.transaction import Transaction
from timelens.services.subscription_service import mark_payment_failed
from timelens.utils.dates import period_start, utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
PAID = "paid"
FAILED = "failed"
REFUNDED = "refunded"

STATUSES = {PENDING, PAID, FAILED, REFUNDED}
TRANSACTION_TYPES = {"subscription_start", "recurring", "upgrade", "downgrade", "refund"}

STATUS_TRANSITIONS = {
    PENDING: {PAID, FAILED},
    PAID: {REFUNDED},
    FAILED: set(),
    REFUNDED: set(),
}


def transaction_type_for_billing_reason(billing_reason: Optional[str], amount_cents: int) -> str:
    """Map a Stripe invoice billing_reason to a transaction type"""
    if billing_reason == "subscription_create":
        return "subscription_start"
    if billing_reason == "subscription_update":
        return "upgrade" if amount_cents >= 0 else "downgrade"
    return "recurring"


def serialize_transaction(tx: Transaction) -> Dict:
    return {
        "id": tx.id,
        "subscription_id": tx.subscription_id,
        "order_id": tx.order_id,
        "amount_cents": tx.amount_cents,
        "currency": tx.currency,
        "status": tx.status,
        "transaction_type": tx.transaction_type,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


def get_transaction(transaction_id: str, db: Session) -> Optional[Transaction]:
    return db.query(Transaction).filter(Transaction.id == transaction_id).first()


def record_event(
    event_id: str,
    user_id: int,
    amount_cents: int,
    currency: str,
    status: str,
    transaction_type: str,
    db: Session,
    subscription_id: Optional[str] = None,
    order_id: Optional[str] = None,
    event_at: Optional[datetime] = None
) -> Tuple[Transaction, bool]:
    """Insert a transaction keyed by the Stripe event id.

    Redelivery of the same event is a no-op. A failed charge also moves the user
    to past_due in the same commit, unless event_at is older than the
    subscription's newest applied event.

    Returns:
        (transaction, created) where created is False for duplicates
    """
    if status not in STATUSES:
        raise InvalidRequest(f"Unknown transaction status: {status}")
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidRequest(f"Unknown transaction type: {transaction_type}")

    existing = get_transaction(event_id, db)
    if existing:
        logger.info(f"Transaction {event_id} already recorded, skipping")
        return existing, False

    tx = Transaction(
        id=event_id,
        user_id=user_id,
        subscription_id=subscription_id,
        order_id=order_id,
        amount_cents=amount_cents,
        currency=(currency or "usd").lower(),
        status=status,
        transaction_type=transaction_type,
    )
    db.add(tx)

    try:
        db.flush()
        if status == FAILED:
            mark_payment_failed(user_id, subscription_id, db, commit=False, event_at=event_at)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_transaction(event_id, db)
        if existing is None:
            raise
        return existing, False

    db.refresh(tx)
    logger.info(
        f"Recorded transaction {event_id}: user {user_id}, {amount_cents} {tx.currency}, "
        f"{status}/{transaction_type}"
    )
    return tx, True


def update_transaction_status(transaction_id: str, status: str, db: Session) -> Transaction:
    """Move a transaction along pending -> paid|failed or paid -> refunded"""
    tx = get_transaction(transaction_id, db)
    if not tx:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    if tx.status == status:
        return tx
    if status not in STATUS_TRANSITIONS.get(tx.status, set()):
        raise InvalidStateTransition(f"Cannot move transaction {transaction_id} from {tx.status} to {status}")

    tx.status = status
    tx.updated_at = utcnow()
    db.commit()
    db.refresh(tx)
    logger.info(f"Transaction {transaction_id} status -> {status}")
    return tx


def refund_order(order_id: str, db: Session) -> List[Transaction]:
    """Mark every paid transaction for a Stripe invoice as refunded"""
    paid = db.query(Transaction).filter(
        Transaction.order_id == order_id,
        Transaction.status == PAID
    ).all()
    return [update_transaction_status(tx.id, REFUNDED, db) for tx in paid]


def get_user_transactions(user_id: int, db: Session, limit: int = 50) -> List[Transaction]:
    return db.query(Transaction).filter(
        Transaction.user_id == user_id
    ).order_by(Transaction.created_at.desc()).limit(limit).all()


def _in_range(query, start: Optional[datetime], end: Optional[datetime]):
    if start is not None:
        query = query.filter(Transaction.created_at >= start)
    if end is not None:
        query = query.filter(Transaction.created_at <= end)
    return query


def get_failed_transactions(db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Transaction]:
    query = db.query(Transaction).filter(Transaction.status == FAILED)
    return _in_range(query, start, end).order_by(Transaction.created_at.desc()).all()


def get_refund_transactions(db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Transaction]:
    query = db.query(Transaction).filter(Transaction.status == REFUNDED)
    return _in_range(query, start, end).order_by(Transaction.created_at.desc()).all()


def calculate_revenue(db: Session, start: datetime, end: datetime) -> int:
    """Sum of paid amounts in cents between start and end (inclusive)"""
    query = db.query(func.coalesce(func.sum(Transaction.amount_cents), 0)).filter(
        Transaction.status == PAID
    )
    return int(_in_range(query, start, end).scalar() or 0)


def revenue_analytics(db: Session, period: str = "month") -> Dict:
    """Paid revenue over a rolling month or year, broken out by transaction type"""
    now = utcnow()
    try:
        start = period_start(period, now)
    except ValueError:
        raise InvalidRequest(f"Unsupported period: {period}")

    rows = _in_range(
        db.query(Transaction.transaction_type, func.sum(Transaction.amount_cents)).filter(
            Transaction.status == PAID
        ),
        start,
        now
    ).group_by(Transaction.transaction_type).all()

    revenue_by_type = {tx_type: int(total or 0) for tx_type, total in rows}
    return {
        "period": period,
        "start": start.isoformat(),
        "end": now.isoformat(),
        "total_revenue": sum(revenue_by_type.values()),
        "mrr": revenue_by_type.get("recurring", 0),
        "revenue_by_type": revenue_by_type,
    }
