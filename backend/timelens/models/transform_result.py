"""TransformResult model"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from timelens.models.base import Base


class TransformResult(Base):
    """A completed transformation: the original upload and the generated image"""
    __tablename__ = "transform_results"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    original_key = Column(String(512), nullable=False)
    original_url = Column(String(1024), nullable=False)
    generated_key = Column(String(512), nullable=False)
    generated_url = Column(String(1024), nullable=False)
    era_theme = Column(String(50), nullable=False)  # theme name or 'custom'
    custom_prompt = Column(Text, nullable=True)
    used_fallback_prompt = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="transform_results")

    __table_args__ = (
        Index('ix_transform_results_user_created', 'user_id', 'created_at'),
    )
