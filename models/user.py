"""
User and subscription model
One row per photographer account; the subscription engine is the only writer of the billing columns
"""
from sqlalchemy import Column, String, Text, JSON, DateTime, Integer, Boolean
from sqlalchemy.sql import func
from core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, index=True)

    # Basic info
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    password_hash = Column(Text, nullable=True)

    # Subscription and billing
    plan = Column(String(50), default="free", nullable=False)  # free, basic, standard, professional
    subscription_status = Column(String(50), default="inactive", nullable=False)  # active, pending_cancellation, payment_failed, inactive
    subscription_id = Column(String(255), nullable=True)
    subscription_start_date = Column(DateTime(timezone=True), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)

    # Usage and limits
    upload_limit = Column(Integer, default=10)

    # Tolerance window before a cancellation takes effect
    pending_downgrade_date = Column(DateTime(timezone=True), nullable=True)
    pending_downgrade_reason = Column(Text, nullable=True)
    original_plan_before_downgrade = Column(String(50), nullable=True)

    # Support-granted access
    is_manual_activation = Column(Boolean, default=False, nullable=False)
    manual_activation_date = Column(DateTime(timezone=True), nullable=True)
    manual_activation_by = Column(String(255), nullable=True)

    # {"kind": "PurchaseApproved", "timestamp": "2025-01-01T00:00:00+00:00"}
    last_event = Column(JSON, nullable=True)

    # Optimistic concurrency for read-modify-write
    version = Column(Integer, default=1, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
