"""UsageCounter model"""
from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from timelens.models.base import Base


class UsageCounter(Base):
    """Transformations consumed by one user on one calendar day (UTC)"""
    __tablename__ = "usage_counters"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_date = Column(Date, nullable=False, index=True)
    transformations_count = Column(Integer, default=0, nullable=False)
    daily_limit = Column(Integer, nullable=False)  # snapshot at creation, -1 = unlimited
    plan_type = Column(String(20), nullable=False)  # plan at creation
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="usage_counters")

    __table_args__ = (
        UniqueConstraint('user_id', 'usage_date', name='uq_usage_counters_user_date'),
        CheckConstraint('transformations_count >= 0', name='ck_usage_counters_count_non_negative'),
    )
