"""Connected social account with encrypted OAuth tokens."""

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


AUTH_STATUS_ACTIVE = "active"
AUTH_STATUS_EXPIRED = "expired"
AUTH_STATUS_REVOKED = "revoked"
AUTH_STATUS_PENDING = "pending"


class SocialAccount(Base):
    """One provider account (page, channel, profile, organization) of a tenant."""

    __tablename__ = "social_accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "external_account_id", name="uq_social_accounts_external"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    platform = Column(String, nullable=False)  # instagram, facebook, tiktok, youtube, twitter, linkedin
    external_account_id = Column(String, nullable=False)
    account_name = Column(String, nullable=True)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(String, nullable=True)
    auth_status = Column(String, nullable=False, default=AUTH_STATUS_ACTIVE)
    last_error = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    tenant = relationship("Tenant", back_populates="social_accounts")
