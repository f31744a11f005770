"""Stripe API calls: customers, checkout, portal, cancellation and webhook verification"""
import logging
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from timelens.core.config import settings
from timelens.core.errors import BillingProviderError, InvalidRequest, NotFoundError
from timelens.models.user import User
from timelens.services.plans import get_price_id_for_plan

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    # StripeObject is a dict subclass; check it first so keys like "items" don't hit dict methods
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, default)
    return default if value is None else value


# ============================================================================
# CUSTOMERS, CHECKOUT AND PORTAL
# ============================================================================

def create_stripe_customer(user_id: int, db: Session) -> str:
    """Return the user's Stripe customer id, creating the customer on first use"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")

    if user.stripe_customer_id:
        return user.stripe_customer_id

    try:
        customer = stripe.Customer.create(
            email=user.email,
            metadata={"user_id": str(user_id)}
        )
    except stripe.StripeError as e:
        logger.error(f"Failed to create Stripe customer for user {user_id}: {e}")
        raise BillingProviderError("Failed to create billing customer")

    user.stripe_customer_id = customer.id
    db.commit()
    logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
    return customer.id


def create_checkout_session(user_id: int, plan_type: str, success_url: str, cancel_url: str, db: Session) -> Dict:
    """Create a subscription Checkout Session for a paid plan"""
    price_id = get_price_id_for_plan(plan_type)
    if not price_id:
        raise InvalidRequest(f"Plan '{plan_type}' is not available for purchase")

    customer_id = create_stripe_customer(user_id, db)

    try:
        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"user_id": str(user_id), "plan_key": plan_type},
            subscription_data={"metadata": {"user_id": str(user_id), "plan_key": plan_type}},
        )
    except stripe.StripeError as e:
        logger.error(f"Failed to create checkout session for user {user_id}: {e}")
        raise BillingProviderError("Failed to create checkout session")

    return {"id": session.id, "url": session.url}


def get_customer_portal_url(user_id: int, return_url: str, db: Session) -> Optional[str]:
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.stripe_customer_id:
        return None
    try:
        session = stripe.billing_portal.Session.create(customer=user.stripe_customer_id, return_url=return_url)
        return session.url
    except stripe.StripeError as e:
        logger.error(f"Error creating portal session: {e}")
        return None


def request_subscription_cancellation(subscription_id: str) -> None:
    """Ask Stripe to cancel at the end of the current period.

    Local state is left alone; customer.subscription.deleted finalizes it.
    """
    try:
        stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        logger.error(f"Failed to request cancellation of {subscription_id}: {e}")
        raise BillingProviderError("Failed to request cancellation from billing provider")
    logger.info(f"Requested cancellation at period end for subscription {subscription_id}")


# ============================================================================
# WEBHOOK VERIFICATION
# ============================================================================

def construct_webhook_event(payload: bytes, sig_header: str):
    """Verify the Stripe signature and parse the event.

    Raises:
        ValueError: Webhook secret missing or payload malformed
        stripe.SignatureVerificationError: Signature does not match
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise ValueError("Webhook secret not configured")

    try:
        return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValueError("Invalid payload")
