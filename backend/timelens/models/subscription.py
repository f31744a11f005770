"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from timelens.models.base import Base


class Subscription(Base):
    """One billing-provider subscription lifecycle. The id is the Stripe subscription id."""
    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    plan_type = Column(String(20), nullable=False)  # 'basic', 'pro'
    status = Column(String(20), nullable=False)  # 'active', 'past_due', 'cancelled'
    start_date = Column(DateTime(timezone=True), nullable=False)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    # Provider timestamp of the newest event applied, used to drop stale out-of-order updates
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="subscriptions")

    __table_args__ = (
        Index('ix_subscriptions_user_status', 'user_id', 'status'),
    )
