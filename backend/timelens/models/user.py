"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from timelens.models.base import Base


class User(Base):
    """User accounts with their current plan and billing status"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Billing state, written only by the subscription service
    current_plan = Column(String(20), default="free", nullable=False)  # 'free', 'basic', 'pro'
    subscription_status = Column(String(20), default="active", nullable=False)  # 'active', 'past_due', 'cancelled'
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    subscription_start_date = Column(DateTime(timezone=True), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")
    usage_counters = relationship("UsageCounter", back_populates="user", cascade="all, delete-orphan")
    transform_results = relationship("TransformResult", back_populates="user", cascade="all, delete-orphan")
