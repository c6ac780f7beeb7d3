"""Tenant model: an agency client whose social accounts are synced."""

from sqlalchemy import Boolean, Column, DateTime, String, true
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    social_accounts = relationship("SocialAccount", back_populates="tenant")
