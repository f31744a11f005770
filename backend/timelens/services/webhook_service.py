"""Stripe webhook processing: verification, idempotency log, normalization and dispatch"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from timelens.core.errors import InvalidRequest, NotFoundError
from timelens.core.logging import billing_logger
from timelens.core.metrics import webhook_events_counter
from timelens.models.billing_event import BillingEvent
from timelens.models.user import User
from timelens.services import subscription_service, transaction_service
from timelens.services.plans import get_plan_for_price_id, is_valid_plan
from timelens.services.stripe_service import construct_webhook_event, get_stripe_value
from timelens.utils.dates import from_timestamp, utcnow

logger = logging.getLogger(__name__)

EVENT_TYPE_MAP = {
    "customer.subscription.created": "subscription.created",
    "customer.subscription.updated": "subscription.updated",
    "customer.subscription.deleted": "subscription.canceled",
    "invoice.paid": "order.paid",
    "invoice.payment_succeeded": "order.paid",
    "invoice.payment_failed": "order.failed",
    "charge.refunded": "order.refunded",
    "checkout.session.completed": "checkout.completed",
}

STRIPE_STATUS_MAP = {
    "active": subscription_service.ACTIVE,
    "trialing": subscription_service.ACTIVE,
    "past_due": subscription_service.PAST_DUE,
    "unpaid": subscription_service.PAST_DUE,
    "canceled": subscription_service.CANCELLED,
    "incomplete_expired": subscription_service.CANCELLED,
}


def normalize_event_type(stripe_type: str) -> Optional[str]:
    return EVENT_TYPE_MAP.get(stripe_type)


def map_subscription_status(stripe_status: Optional[str]) -> Optional[str]:
    """Local status for a Stripe subscription status, None for ones we ignore (incomplete, paused)"""
    return STRIPE_STATUS_MAP.get(stripe_status)


# ============================================================================
# EVENT LOG
# ============================================================================

def log_billing_event(event_id: str, event_type: str, payload: Any, db: Session) -> BillingEvent:
    billing_event = db.query(BillingEvent).filter(BillingEvent.event_id == event_id).first()
    if not billing_event:
        billing_event = BillingEvent(
            event_id=event_id,
            event_type=event_type,
            normalized_type=normalize_event_type(event_type),
            payload=payload,
            processed=False
        )
        db.add(billing_event)
        db.commit()
        db.refresh(billing_event)
    return billing_event


def mark_billing_event_processed(event_id: str, db: Session, error_message: str = None):
    billing_event = db.query(BillingEvent).filter(BillingEvent.event_id == event_id).first()
    if billing_event:
        billing_event.processed = True
        billing_event.processed_at = utcnow()
        billing_event.error_message = error_message
        db.commit()


def list_billing_events(db: Session, limit: int = 50, failed_only: bool = False):
    query = db.query(BillingEvent)
    if failed_only:
        query = query.filter(BillingEvent.error_message.isnot(None))
    return query.order_by(BillingEvent.created_at.desc()).limit(limit).all()


# ============================================================================
# PAYLOAD HELPERS
# ============================================================================

def _metadata_value(obj: Any, key: str) -> Optional[str]:
    metadata = get_stripe_value(obj, "metadata", {}) or {}
    return get_stripe_value(metadata, key)


def _resolve_user_id(obj: Any, db: Session) -> int:
    """User id from metadata, falling back to the Stripe customer id"""
    user_id = _metadata_value(obj, "user_id") or get_stripe_value(obj, "client_reference_id")
    if user_id:
        user = db.query(User).filter(User.id == int(user_id)).first()
        if user:
            return user.id

    customer_id = get_stripe_value(obj, "customer")
    if customer_id:
        user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
        if user:
            return user.id

    raise NotFoundError(f"User not found for customer {customer_id}")


def _first_subscription_item(subscription: Any) -> Optional[Any]:
    items = get_stripe_value(subscription, "items", {})
    data = get_stripe_value(items, "data", []) or []
    return data[0] if data else None


def _resolve_plan(subscription: Any) -> Optional[str]:
    """Plan from the subscription's price id, then from metadata"""
    item = _first_subscription_item(subscription)
    price = get_stripe_value(item, "price", {})
    plan_type = get_plan_for_price_id(get_stripe_value(price, "id"))
    if plan_type:
        return plan_type

    plan_key = _metadata_value(subscription, "plan_key")
    if plan_key and is_valid_plan(plan_key):
        return plan_key
    return None


def _period_end(subscription: Any):
    # Newer API versions carry the period on the subscription item
    period_end = get_stripe_value(subscription, "current_period_end")
    if period_end is None:
        period_end = get_stripe_value(_first_subscription_item(subscription), "current_period_end")
    return from_timestamp(period_end)


def _period_start(subscription: Any):
    start = get_stripe_value(subscription, "current_period_start") or get_stripe_value(subscription, "start_date")
    if start is None:
        start = get_stripe_value(_first_subscription_item(subscription), "current_period_start")
    return from_timestamp(start)


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    subscription_id = get_stripe_value(invoice, "subscription")
    if subscription_id:
        return subscription_id
    parent = get_stripe_value(invoice, "parent", {})
    details = get_stripe_value(parent, "subscription_details", {})
    return get_stripe_value(details, "subscription")


# ============================================================================
# HANDLERS
# ============================================================================

def handle_checkout_completed(session: Any, db: Session):
    """Link the Stripe customer to the user who started checkout"""
    customer_id = get_stripe_value(session, "customer")
    if not customer_id:
        return
    user_id = _resolve_user_id(session, db)
    user = db.query(User).filter(User.id == user_id).first()
    if user.stripe_customer_id != customer_id:
        user.stripe_customer_id = customer_id
        db.commit()
        billing_logger.info(f"Linked Stripe customer {customer_id} to user {user_id}")


def _create_from_stripe(subscription: Any, status: str, event_at, db: Session):
    subscription_id = get_stripe_value(subscription, "id")
    plan_type = _resolve_plan(subscription)
    if not plan_type:
        raise InvalidRequest(f"Unknown price for subscription {subscription_id}")
    user_id = _resolve_user_id(subscription, db)

    created = subscription_service.create_subscription(
        subscription_id,
        user_id,
        plan_type,
        db,
        customer_ref=get_stripe_value(subscription, "customer"),
        start_date=_period_start(subscription),
        next_billing_date=_period_end(subscription),
        event_at=event_at
    )
    if status == subscription_service.PAST_DUE:
        created = subscription_service.update_subscription_status(
            subscription_id, status, db, event_at=event_at
        )
    return created


def handle_subscription_created(subscription: Any, event_at, db: Session):
    stripe_status = get_stripe_value(subscription, "status")
    status = map_subscription_status(stripe_status)
    if status not in (subscription_service.ACTIVE, subscription_service.PAST_DUE):
        billing_logger.info(
            f"Subscription {get_stripe_value(subscription, 'id')} created with status {stripe_status}, waiting for update"
        )
        return None
    return _create_from_stripe(subscription, status, event_at, db)


def handle_subscription_updated(subscription: Any, event_at, db: Session):
    subscription_id = get_stripe_value(subscription, "id")
    stripe_status = get_stripe_value(subscription, "status")
    status = map_subscription_status(stripe_status)
    if status is None:
        billing_logger.info(f"Ignoring Stripe status {stripe_status} for subscription {subscription_id}")
        return None

    existing = subscription_service.get_subscription(subscription_id, db)
    if existing is None:
        # Update delivered before create; upsert when it carries enough to build the row
        if status != subscription_service.CANCELLED and _resolve_plan(subscription):
            billing_logger.info(f"Subscription {subscription_id} unknown, creating from update event")
            return _create_from_stripe(subscription, status, event_at, db)
        raise NotFoundError(f"Subscription {subscription_id} not found")

    plan_type = _resolve_plan(subscription)
    if plan_type and plan_type != existing.plan_type and status != subscription_service.CANCELLED:
        subscription_service.change_subscription_plan(subscription_id, plan_type, db, event_at=event_at)

    return subscription_service.update_subscription_status(
        subscription_id,
        status,
        db,
        next_billing_date=_period_end(subscription),
        event_at=event_at,
        end_date=from_timestamp(get_stripe_value(subscription, "ended_at")),
        cancel_at_period_end=bool(get_stripe_value(subscription, "cancel_at_period_end", False))
    )


def handle_subscription_canceled(subscription: Any, event_at, db: Session):
    subscription_id = get_stripe_value(subscription, "id")
    ended_at = get_stripe_value(subscription, "ended_at") or get_stripe_value(subscription, "canceled_at")
    return subscription_service.update_subscription_status(
        subscription_id,
        subscription_service.CANCELLED,
        db,
        event_at=event_at,
        end_date=from_timestamp(ended_at)
    )


def handle_order_paid(invoice: Any, event_id: str, event_at, db: Session):
    user_id = _resolve_user_id(invoice, db)
    subscription_id = _invoice_subscription_id(invoice)
    amount = int(get_stripe_value(invoice, "amount_paid", 0))

    tx, created = transaction_service.record_event(
        event_id,
        user_id,
        amount,
        get_stripe_value(invoice, "currency", "usd"),
        transaction_service.PAID,
        transaction_service.transaction_type_for_billing_reason(
            get_stripe_value(invoice, "billing_reason"), amount
        ),
        db,
        subscription_id=subscription_id,
        order_id=get_stripe_value(invoice, "id")
    )

    # A successful retry clears past_due
    subscription = subscription_service.get_subscription(subscription_id, db) if subscription_id else None
    if created and subscription and subscription.status == subscription_service.PAST_DUE:
        subscription_service.update_subscription_status(
            subscription_id, subscription_service.ACTIVE, db, event_at=event_at
        )
    return tx


def handle_order_failed(invoice: Any, event_id: str, event_at, db: Session):
    user_id = _resolve_user_id(invoice, db)
    amount = int(get_stripe_value(invoice, "amount_due", 0))
    tx, _ = transaction_service.record_event(
        event_id,
        user_id,
        amount,
        get_stripe_value(invoice, "currency", "usd"),
        transaction_service.FAILED,
        transaction_service.transaction_type_for_billing_reason(
            get_stripe_value(invoice, "billing_reason"), amount
        ),
        db,
        subscription_id=_invoice_subscription_id(invoice),
        order_id=get_stripe_value(invoice, "id"),
        event_at=event_at
    )
    return tx


def handle_order_refunded(charge: Any, db: Session):
    invoice_id = get_stripe_value(charge, "invoice")
    if not invoice_id:
        billing_logger.info(f"Refunded charge {get_stripe_value(charge, 'id')} has no invoice, nothing to update")
        return []
    refunded = transaction_service.refund_order(invoice_id, db)
    if not refunded:
        billing_logger.warning(f"No paid transaction found for refunded invoice {invoice_id}")
    return refunded


# ============================================================================
# DISPATCH
# ============================================================================

def handle_billing_event(event: Any, db: Session) -> Dict[str, Any]:
    """Apply a verified Stripe event once.

    Processing errors (unknown price, unknown customer, bad transition) are logged
    on the event row and reported as handled so Stripe does not redeliver.
    """
    event_id = event["id"]
    event_type = event["type"]
    normalized = normalize_event_type(event_type)

    billing_event = log_billing_event(event_id, event_type, event, db)
    if billing_event.processed:
        billing_logger.info(f"Webhook event {event_id} already processed")
        webhook_events_counter.labels(event_type=event_type, status="duplicate").inc()
        return {"status": "already_processed"}

    if normalized is None:
        mark_billing_event_processed(event_id, db)
        webhook_events_counter.labels(event_type=event_type, status="ignored").inc()
        return {"status": "ignored"}

    data = event["data"]["object"]
    event_at = from_timestamp(get_stripe_value(event, "created"))

    try:
        if normalized == "checkout.completed":
            handle_checkout_completed(data, db)
        elif normalized == "subscription.created":
            handle_subscription_created(data, event_at, db)
        elif normalized == "subscription.updated":
            handle_subscription_updated(data, event_at, db)
        elif normalized == "subscription.canceled":
            handle_subscription_canceled(data, event_at, db)
        elif normalized == "order.paid":
            handle_order_paid(data, event_id, event_at, db)
        elif normalized == "order.failed":
            handle_order_failed(data, event_id, event_at, db)
        elif normalized == "order.refunded":
            handle_order_refunded(data, db)

        mark_billing_event_processed(event_id, db)
        webhook_events_counter.labels(event_type=event_type, status="success").inc()
        billing_logger.info(f"Processed webhook event {event_id} ({event_type} -> {normalized})")
        return {"status": "success"}
    except Exception as e:
        db.rollback()
        billing_logger.error(f"Error processing webhook {event_id} ({event_type}): {e}", exc_info=True)
        mark_billing_event_processed(event_id, db, error_message=str(e))
        webhook_events_counter.labels(event_type=event_type, status="error").inc()
        return {"status": "error_logged", "error": str(e)}


def process_billing_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Verify a raw Stripe webhook and apply it.

    Raises:
        ValueError: Invalid payload or missing webhook secret
        stripe.SignatureVerificationError: Invalid signature
    """
    event = construct_webhook_event(payload, sig_header)
    return handle_billing_event(event, db)
