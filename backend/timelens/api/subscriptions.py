"""Subscription, billing and Stripe webhook API routes"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from timelens.core.config import settings
from timelens.core.errors import InvalidRequest
from timelens.core.security import require_auth, require_csrf_new
from timelens.db.session import get_db
from timelens.schemas.subscriptions import CheckoutRequest
from timelens.services import subscription_service
from timelens.services.plans import list_plans
from timelens.services.stripe_service import create_checkout_session, get_customer_portal_url
from timelens.services.transaction_service import get_user_transactions, serialize_transaction
from timelens.services.webhook_service import process_billing_webhook

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
transactions_router = APIRouter(prefix="/api/transactions", tags=["transactions"])
logger = logging.getLogger(__name__)


@router.get("")
def get_subscription(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Current plan and status"""
    return subscription_service.get_user_subscription(user_id, db)


@router.get("/plans")
def get_subscription_plans():
    return {"plans": list_plans()}


@router.get("/history")
def get_subscription_history(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"subscriptions": subscription_service.get_subscription_history(user_id, db)}


@router.get("/can-upgrade")
def can_upgrade(plan: str = Query(...), user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return subscription_service.can_upgrade_to_plan(user_id, plan, db)


@router.get("/can-downgrade")
def can_downgrade(plan: str = Query(...), user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return subscription_service.can_downgrade_to_plan(user_id, plan, db)


@router.post("/cancel")
def cancel_subscription(user_id: int = Depends(require_csrf_new), db: Session = Depends(get_db)):
    """Request cancellation. Paid plans stay active until Stripe confirms."""
    return subscription_service.cancel_subscription(user_id, db)


@router.post("/create-checkout")
def create_subscription_checkout(
    checkout_request: CheckoutRequest,
    request: Request,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Create Stripe checkout session for an upgrade"""
    check = subscription_service.can_upgrade_to_plan(user_id, checkout_request.plan_key, db)
    if not check["allowed"]:
        raise InvalidRequest(check["reason"])

    frontend_url = settings.FRONTEND_URL or str(request.base_url).rstrip("/")
    return create_checkout_session(
        user_id,
        checkout_request.plan_key,
        success_url=f"{frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{frontend_url}/subscription",
        db=db
    )


@router.get("/portal")
def get_portal_url(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get Stripe customer portal URL"""
    portal_url = get_customer_portal_url(user_id, f"{settings.FRONTEND_URL}/subscription", db)
    if not portal_url:
        raise HTTPException(404, "No billing account for this user")
    return {"url": portal_url}


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    The body is read raw: signature verification needs the exact bytes.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        return process_billing_webhook(payload, sig_header, db)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, str(e))
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")


@transactions_router.get("")
def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    return {"transactions": [serialize_transaction(tx) for tx in get_user_transactions(user_id, db, limit=limit)]}
