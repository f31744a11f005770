"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from timelens.models.base import Base
from timelens.models.user import User
from timelens.models.subscription import Subscription
from timelens.models.usage_counter import UsageCounter
from timelens.models.transaction import Transaction
from timelens.models.transform_result import TransformResult
from timelens.models.billing_event import BillingEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Subscription", "UsageCounter",
    "Transaction", "TransformResult", "BillingEvent"
]
