"""Plan catalogue: daily limits, prices and ordering for free, basic and pro"""
from typing import Dict, List, Optional

from timelens.core.config import settings

UNLIMITED = -1

PLAN_ORDER = ["free", "basic", "pro"]

PLAN_LIMITS: Dict[str, Dict] = {
    "free": {
        "name": "Free",
        "daily_transformations": 2,
        "quality": "standard",
        "support": "community",
        "price_cents": 0,
        "features": [
            "Basic image transformations",
            "Standard quality output",
            "Community support",
        ],
    },
    "basic": {
        "name": "Basic",
        "daily_transformations": 50,
        "quality": "standard",
        "support": "email",
        "price_cents": 999,
        "features": [
            "50 transformations per day",
            "Standard quality output",
            "Email support",
            "All era themes",
        ],
    },
    "pro": {
        "name": "Pro",
        "daily_transformations": UNLIMITED,
        "quality": "premium",
        "support": "priority",
        "price_cents": 1999,
        "features": [
            "Unlimited transformations",
            "Premium quality output",
            "Priority support",
            "All era themes",
            "Advanced AI models",
        ],
    },
}


def is_valid_plan(plan_type: Optional[str]) -> bool:
    return plan_type in PLAN_LIMITS


def get_plan_limit(plan_type: str) -> int:
    """Daily transformation limit for a plan, -1 when unlimited"""
    return PLAN_LIMITS[plan_type]["daily_transformations"]


def is_unlimited(plan_type: str) -> bool:
    return get_plan_limit(plan_type) == UNLIMITED


def get_plan_price(plan_type: str) -> int:
    return PLAN_LIMITS[plan_type]["price_cents"]


def plan_rank(plan_type: str) -> int:
    return PLAN_ORDER.index(plan_type)


def is_upgrade(from_plan: str, to_plan: str) -> bool:
    return plan_rank(to_plan) > plan_rank(from_plan)


def is_downgrade(from_plan: str, to_plan: str) -> bool:
    return plan_rank(to_plan) < plan_rank(from_plan)


def get_plan_details(plan_type: str) -> Dict:
    plan = PLAN_LIMITS[plan_type]
    return {
        "key": plan_type,
        "name": plan["name"],
        "daily_transformations": plan["daily_transformations"],
        "unlimited": plan["daily_transformations"] == UNLIMITED,
        "quality": plan["quality"],
        "support": plan["support"],
        "price_cents": plan["price_cents"],
        "features": list(plan["features"]),
    }


def list_plans() -> List[Dict]:
    return [get_plan_details(plan_type) for plan_type in PLAN_ORDER]


def get_price_id_for_plan(plan_type: str) -> Optional[str]:
    """Stripe price id for a paid plan (None for free or when unconfigured)"""
    price_ids = {
        "basic": settings.STRIPE_BASIC_PRICE_ID,
        "pro": settings.STRIPE_PRO_PRICE_ID,
    }
    return price_ids.get(plan_type) or None


def get_plan_for_price_id(price_id: Optional[str]) -> Optional[str]:
    """Resolve a Stripe price id to a paid plan, None when it is not one of ours"""
    if not price_id:
        return None
    for plan_type in ("basic", "pro"):
        if get_price_id_for_plan(plan_type) == price_id:
            return plan_type
    return None
