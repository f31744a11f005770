"""Transaction model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from datetime import datetime, timezone
from timelens.models.base import Base


class Transaction(Base):
    """Billing charge/failure/refund record. The id is the Stripe event id."""
    __tablename__ = "transactions"

    id = Column(String(255), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # No foreign key: invoices can arrive before their subscription is known locally
    subscription_id = Column(String(255), nullable=True, index=True)
    order_id = Column(String(255), nullable=True, index=True)  # Stripe invoice id
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String(20), nullable=False)  # 'pending', 'paid', 'failed', 'refunded'
    transaction_type = Column(String(30), nullable=False)  # 'subscription_start', 'recurring', 'upgrade', 'downgrade', 'refund'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_transactions_status_created', 'status', 'created_at'),
    )
