"""Canonical post record with a provider-agnostic metrics map."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.sql import func
import uuid

from database import Base


class SocialPost(Base):
    __tablename__ = "social_posts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "external_post_id", name="uq_social_posts_external"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    platform = Column(String, nullable=False)
    social_account_id = Column(String, ForeignKey("social_accounts.id"), nullable=False, index=True)
    external_post_id = Column(String, nullable=False)
    posted_at = Column(DateTime(timezone=True), nullable=True)
    caption = Column(Text, nullable=True)
    media_type = Column(String, nullable=True)
    url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    metrics_json = Column(JSON, nullable=False, default=dict)
    raw_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
