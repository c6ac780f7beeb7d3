"""Canonical per-day account metrics."""

from sqlalchemy import JSON, Column, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func
import uuid

from database import Base


class SocialDailyMetric(Base):
    __tablename__ = "social_daily_metrics"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "platform", "social_account_id", "date", name="uq_social_daily_metrics_day"
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    platform = Column(String, nullable=False)
    social_account_id = Column(String, ForeignKey("social_accounts.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    followers = Column(Integer, nullable=True)
    impressions = Column(Integer, nullable=True)
    reach = Column(Integer, nullable=True)
    engagements = Column(Integer, nullable=True)
    likes = Column(Integer, nullable=True)
    comments = Column(Integer, nullable=True)
    shares = Column(Integer, nullable=True)
    saves = Column(Integer, nullable=True)
    views = Column(Integer, nullable=True)
    watch_time = Column(Float, nullable=True)  # minutes
    posts_count = Column(Integer, nullable=True)
    raw_json = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
