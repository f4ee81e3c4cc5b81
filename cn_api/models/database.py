# ABOUTME: SQLAlchemy database models
# ABOUTME: Defines tables for api_keys, billing_tiers, api_usage, monthly_usage_summary and cn_products

import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, JSON, ForeignKey
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


class APIKey(Base):
    """API key record. Only the SHA-256 digest of the key is stored."""
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=_new_id)
    key_hash = Column(String(64), unique=True, nullable=False, index=True)
    client_name = Column(Text, nullable=False)
    tier = Column(String(50), nullable=False, default="basic")
    is_active = Column(Boolean, nullable=False, default=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True))

    usage = relationship("APIUsage", back_populates="api_key")


class BillingTier(Base):
    """Quota policy for a named tier."""
    __tablename__ = "billing_tiers"

    id = Column(Integer, primary_key=True)
    tier_name = Column(String(50), unique=True, nullable=False, index=True)
    monthly_call_limit = Column(Integer)
    price_monthly = Column(Float)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class APIUsage(Base):
    """Append-only log of calls made with an API key."""
    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True)
    api_key_id = Column(String(36), ForeignKey("api_keys.id"), nullable=False, index=True)
    endpoint = Column(Text, nullable=False)
    response_status = Column(Integer, nullable=False)
    billing_month = Column(String(7), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    api_key = relationship("APIKey", back_populates="usage")


class MonthlyUsageSummary(Base):
    """Per-key call counter for one billing month; authoritative for quotas."""
    __tablename__ = "monthly_usage_summary"

    # The composite key is the uniqueness constraint the counter upsert relies on
    api_key_id = Column(String(36), ForeignKey("api_keys.id"), primary_key=True)
    billing_month = Column(String(7), primary_key=True)
    total_calls = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class CNProduct(Base):
    """Child Nutrition product served by the catalog routes."""
    __tablename__ = "cn_products"

    id = Column(Integer, primary_key=True)
    cn_number = Column(String(20), unique=True, nullable=False, index=True)
    product_name = Column(Text, nullable=False)
    category = Column(Text, index=True)
    manufacturer = Column(Text, index=True)
    serving_size = Column(Text)
    nutrition_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
