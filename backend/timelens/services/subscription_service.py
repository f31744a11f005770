"""Subscription service - Subscription lifecycle and plan mirroring onto users"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timelens.core.errors import InvalidRequest, InvalidStateTransition, NotFoundError
from timelens.models.subscription import Subscription
from timelens.models.user import User
from timelens.services import stripe_service
from timelens.services.plans import (
    PLAN_LIMITS, get_plan_details, get_plan_price, is_downgrade, is_upgrade, is_valid_plan
)
from timelens.utils.dates import ensure_utc, utcnow

logger = logging.getLogger(__name__)

ACTIVE = "active"
PAST_DUE = "past_due"
CANCELLED = "cancelled"

ALLOWED_TRANSITIONS = {
    ACTIVE: {PAST_DUE, CANCELLED},
    PAST_DUE: {ACTIVE, CANCELLED},
    CANCELLED: set(),
}


def _get_user(user_id: int, db: Session) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")
    return user


def _is_stale(subscription: Subscription, event_at: Optional[datetime]) -> bool:
    """True when an event is older than the newest one already applied"""
    if event_at is None or subscription.last_event_at is None:
        return False
    return ensure_utc(event_at) < ensure_utc(subscription.last_event_at)


def _touch_version(subscription: Subscription, event_at: Optional[datetime]) -> None:
    if event_at is not None:
        subscription.last_event_at = event_at


def serialize_subscription(subscription: Optional[Subscription]) -> Optional[Dict]:
    if subscription is None:
        return None
    return {
        "id": subscription.id,
        "plan_type": subscription.plan_type,
        "status": subscription.status,
        "start_date": subscription.start_date.isoformat() if subscription.start_date else None,
        "next_billing_date": subscription.next_billing_date.isoformat() if subscription.next_billing_date else None,
        "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


def get_subscription(subscription_id: str, db: Session) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.id == subscription_id).first()


def get_current_subscription(user_id: int, db: Session) -> Optional[Subscription]:
    """Latest subscription that is not cancelled"""
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status != CANCELLED
    ).order_by(Subscription.start_date.desc()).first()


def _mirror_to_user(subscription: Subscription, db: Session) -> None:
    """Copy the subscription's plan and status onto its owning user.

    A cancelled subscription only downgrades the user when it is not superseded
    by another live subscription.
    """
    user = _get_user(subscription.user_id, db)

    if subscription.status == CANCELLED:
        other = db.query(Subscription).filter(
            Subscription.user_id == user.id,
            Subscription.id != subscription.id,
            Subscription.status != CANCELLED
        ).first()
        if other:
            logger.info(
                f"Subscription {subscription.id} cancelled but user {user.id} still has {other.id}; keeping plan"
            )
            return
        user.current_plan = "free"
        user.subscription_status = CANCELLED
        user.subscription_end_date = subscription.end_date or utcnow()
        user.next_billing_date = None
        return

    user.current_plan = subscription.plan_type
    user.subscription_status = subscription.status
    user.subscription_start_date = subscription.start_date
    user.next_billing_date = subscription.next_billing_date
    user.subscription_end_date = None
    if subscription.stripe_customer_id and not user.stripe_customer_id:
        user.stripe_customer_id = subscription.stripe_customer_id


def create_subscription(
    subscription_id: str,
    user_id: int,
    plan_type: str,
    db: Session,
    customer_ref: Optional[str] = None,
    start_date: Optional[datetime] = None,
    next_billing_date: Optional[datetime] = None,
    event_at: Optional[datetime] = None
) -> Subscription:
    """Create an active subscription and move the user onto its plan.

    Idempotent on subscription_id: a second call returns the existing row untouched.
    Any other live subscription of the user is superseded (cancelled).

    Raises:
        NotFoundError: If the user does not exist
        InvalidRequest: If the plan is unknown
    """
    existing = get_subscription(subscription_id, db)
    if existing:
        logger.info(f"Subscription {subscription_id} already exists, skipping create")
        return existing

    if not is_valid_plan(plan_type):
        raise InvalidRequest(f"Unknown plan: {plan_type}")
    user = _get_user(user_id, db)

    now = utcnow()
    superseded = db.query(Subscription).filter(
        Subscription.user_id == user.id,
        Subscription.status != CANCELLED
    ).all()
    for old in superseded:
        old.status = CANCELLED
        old.end_date = now
        logger.info(f"Subscription {old.id} superseded by {subscription_id} for user {user.id}")

    subscription = Subscription(
        id=subscription_id,
        user_id=user.id,
        stripe_customer_id=customer_ref,
        plan_type=plan_type,
        status=ACTIVE,
        start_date=start_date or now,
        next_billing_date=next_billing_date,
        cancel_at_period_end=False,
        last_event_at=event_at,
    )
    db.add(subscription)
    _mirror_to_user(subscription, db)

    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same subscription
        db.rollback()
        existing = get_subscription(subscription_id, db)
        if existing is None:
            raise
        return existing

    db.refresh(subscription)
    logger.info(f"Created subscription {subscription_id} ({plan_type}) for user {user.id}")
    return subscription


def update_subscription_status(
    subscription_id: str,
    status: str,
    db: Session,
    next_billing_date: Optional[datetime] = None,
    event_at: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
    commit: bool = True
) -> Subscription:
    """Apply a provider-confirmed status change and mirror it onto the user.

    Events older than the last applied one are ignored. Re-applying the current
    status only refreshes billing dates.

    Raises:
        NotFoundError: If the subscription id is unknown
        InvalidStateTransition: If the transition is not allowed
    """
    subscription = get_subscription(subscription_id, db)
    if not subscription:
        raise NotFoundError(f"Subscription {subscription_id} not found")

    if _is_stale(subscription, event_at):
        logger.info(
            f"Ignoring stale update for subscription {subscription_id} "
            f"(event {event_at}, last applied {subscription.last_event_at})"
        )
        return subscription

    if status not in ALLOWED_TRANSITIONS:
        raise InvalidStateTransition(f"Unknown subscription status: {status}")

    if status != subscription.status and status not in ALLOWED_TRANSITIONS[subscription.status]:
        raise InvalidStateTransition(
            f"Cannot move subscription {subscription_id} from {subscription.status} to {status}"
        )

    previous = subscription.status
    subscription.status = status
    if next_billing_date is not None:
        subscription.next_billing_date = next_billing_date
    if cancel_at_period_end is not None:
        subscription.cancel_at_period_end = cancel_at_period_end
    if status == CANCELLED:
        subscription.end_date = end_date or utcnow()
    _touch_version(subscription, event_at)
    _mirror_to_user(subscription, db)

    if commit:
        db.commit()
        db.refresh(subscription)

    if previous != status:
        logger.info(f"Subscription {subscription_id}: {previous} -> {status}")
    return subscription


def change_subscription_plan(
    subscription_id: str,
    plan_type: str,
    db: Session,
    event_at: Optional[datetime] = None
) -> Subscription:
    """Switch the plan of a live subscription (Stripe keeps the id across price changes)"""
    if not is_valid_plan(plan_type):
        raise InvalidRequest(f"Unknown plan: {plan_type}")
    subscription = get_subscription(subscription_id, db)
    if not subscription:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    if _is_stale(subscription, event_at) or subscription.plan_type == plan_type:
        return subscription
    if subscription.status == CANCELLED:
        raise InvalidStateTransition(f"Subscription {subscription_id} is cancelled")

    previous = subscription.plan_type
    subscription.plan_type = plan_type
    _touch_version(subscription, event_at)
    _mirror_to_user(subscription, db)
    db.commit()
    db.refresh(subscription)
    logger.info(f"Subscription {subscription_id} plan changed: {previous} -> {plan_type}")
    return subscription


def mark_payment_failed(
    user_id: int,
    subscription_id: Optional[str],
    db: Session,
    commit: bool = True,
    event_at: Optional[datetime] = None
) -> None:
    """Put the user (and the subscription, when known) into past_due.

    A failure older than the newest event applied to the subscription leaves
    its state alone.
    """
    user = _get_user(user_id, db)
    subscription = get_subscription(subscription_id, db) if subscription_id else None

    if subscription and subscription.status == CANCELLED:
        logger.info(f"Payment failure for cancelled subscription {subscription_id}, status unchanged")
    elif subscription and _is_stale(subscription, event_at):
        logger.info(f"Ignoring stale payment failure for subscription {subscription_id} at {event_at}")
    else:
        if subscription:
            subscription.status = PAST_DUE
            _touch_version(subscription, event_at)
        user.subscription_status = PAST_DUE
        logger.warning(f"User {user_id} marked past_due after failed payment (subscription {subscription_id})")

    if commit:
        db.commit()


def cancel_subscription(user_id: int, db: Session) -> Dict:
    """User-requested cancellation.

    Free users are cancelled immediately. Paid subscriptions are cancelled through
    Stripe at period end and finalized by the customer.subscription.deleted webhook.
    """
    user = _get_user(user_id, db)
    subscription = get_current_subscription(user.id, db)

    if user.current_plan == "free" or subscription is None:
        user.subscription_status = CANCELLED
        user.subscription_end_date = utcnow()
        db.commit()
        logger.info(f"User {user_id} cancelled free plan")
        return {"status": CANCELLED, "plan_type": user.current_plan}

    stripe_service.request_subscription_cancellation(subscription.id)
    return {
        "status": "pending_provider_confirmation",
        "plan_type": subscription.plan_type,
        "subscription_id": subscription.id,
        "effective_date": subscription.next_billing_date.isoformat() if subscription.next_billing_date else None,
    }


def can_upgrade_to_plan(user_id: int, target_plan: str, db: Session) -> Dict:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return {"allowed": False, "reason": "User not found"}
    if not is_valid_plan(target_plan):
        return {"allowed": False, "reason": "Unknown plan"}
    if user.current_plan == target_plan:
        return {"allowed": False, "reason": "Already on this plan"}
    if not is_upgrade(user.current_plan, target_plan):
        return {"allowed": False, "reason": "Cannot upgrade to this plan"}
    if user.subscription_status == PAST_DUE:
        return {"allowed": False, "reason": "Payment is past due"}
    return {"allowed": True}


def can_downgrade_to_plan(user_id: int, target_plan: str, db: Session) -> Dict:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return {"allowed": False, "reason": "User not found"}
    if not is_valid_plan(target_plan):
        return {"allowed": False, "reason": "Unknown plan"}
    if user.current_plan == target_plan:
        return {"allowed": False, "reason": "Already on this plan"}
    if not is_downgrade(user.current_plan, target_plan):
        return {"allowed": False, "reason": "Cannot downgrade to this plan"}
    return {"allowed": True}


def get_user_subscription(user_id: int, db: Session) -> Dict:
    """Plan, status and dates for the user plus the current subscription row"""
    user = _get_user(user_id, db)
    return {
        "plan_type": user.current_plan,
        "status": user.subscription_status,
        "start_date": user.subscription_start_date.isoformat() if user.subscription_start_date else None,
        "end_date": user.subscription_end_date.isoformat() if user.subscription_end_date else None,
        "next_billing_date": user.next_billing_date.isoformat() if user.next_billing_date else None,
        "plan": get_plan_details(user.current_plan),
        "subscription": serialize_subscription(get_current_subscription(user.id, db)),
    }


def get_subscription_history(user_id: int, db: Session) -> List[Dict]:
    subscriptions = db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).order_by(Subscription.start_date.desc()).all()
    return [serialize_subscription(s) for s in subscriptions]


def get_subscription_analytics(db: Session) -> Dict:
    plan_rows = db.query(User.current_plan, func.count(User.id)).group_by(User.current_plan).all()
    status_rows = db.query(User.subscription_status, func.count(User.id)).group_by(User.subscription_status).all()

    paid_plans = [plan for plan in PLAN_LIMITS if get_plan_price(plan) > 0]
    active_paid = db.query(User.current_plan, func.count(User.id)).filter(
        User.current_plan.in_(paid_plans),
        User.subscription_status == ACTIVE
    ).group_by(User.current_plan).all()

    mrr_cents = sum(get_plan_price(plan) * count for plan, count in active_paid)
    active_subscriptions = db.query(func.count(Subscription.id)).filter(
        Subscription.status == ACTIVE
    ).scalar() or 0

    return {
        "plan_distribution": {plan: count for plan, count in plan_rows},
        "status_distribution": {status: count for status, count in status_rows},
        "monthly_recurring_revenue_cents": mrr_cents,
        "active_subscriptions": int(active_subscriptions),
    }


def get_past_due_subscriptions(db: Session) -> List[Subscription]:
    return db.query(Subscription).filter(
        Subscription.status == PAST_DUE
    ).order_by(Subscription.next_billing_date.asc()).all()


def get_expiring_subscriptions(db: Session, days: int = 7) -> List[Subscription]:
    """Active subscriptions set to cancel at period end whose period ends within N days"""
    now = utcnow()
    return db.query(Subscription).filter(
        Subscription.status == ACTIVE,
        Subscription.cancel_at_period_end.is_(True),
        Subscription.next_billing_date.isnot(None),
        Subscription.next_billing_date <= now + timedelta(days=days)
    ).order_by(Subscription.next_billing_date.asc()).all()
