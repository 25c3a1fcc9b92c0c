from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..db import Base


def _money_column(**kw):
    return Column(Numeric(12, 2, asdecimal=False), **kw)


class Coupon(Base):
    __tablename__ = "coupon"
    id = Column(Integer, primary_key=True)
    code = Column(String(20), unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    discount_type = Column(String, nullable=False)  # 'percentage' | 'fixed_amount'
    discount_value = _money_column(nullable=False)
    max_discount_amount = _money_column()
    minimum_order_value = _money_column()
    maximum_order_value = _money_column()
    usage_limit = Column(Integer)
    usage_count = Column(Integer, nullable=False, default=0)
    user_usage_limit = Column(Integer)
    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=False, index=True)
    type = Column(String, nullable=False, default="public")
    allowed_users = Column(JSON, nullable=False, default=list)  # [user_id]
    applicable_assets = Column(JSON, nullable=False, default=list)  # [{asset_type, asset_id, is_active}]
    global_is_global = Column(Boolean, nullable=False, default=False)
    global_asset_types = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    is_publicly_visible = Column(Boolean, nullable=False, default=True)
    stackable = Column(Boolean, nullable=False, default=False)
    auto_apply = Column(Boolean, nullable=False, default=False)
    notify_on_expiration = Column(Boolean, nullable=False, default=False)
    notification_sent_at = Column(DateTime)
    partner_id = Column(String, index=True)
    created_by = Column(String)
    deleted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    usages = relationship("CouponUsage", back_populates="coupon")


class CouponUsage(Base):
    __tablename__ = "coupon_usage"
    id = Column(Integer, primary_key=True)
    coupon_id = Column(Integer, ForeignKey("coupon.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    booking_id = Column(String, nullable=False)
    booking_type = Column(String, nullable=False)  # activity | event | restaurant | vehicle | accommodation | package
    original_amount = _money_column(nullable=False)
    discount_amount = _money_column(nullable=False)
    final_amount = _money_column(nullable=False)
    applied_by = Column(String)
    applied_at = Column(DateTime, default=datetime.utcnow, index=True)
    status = Column(String, nullable=False, default="applied")  # applied | refunded | cancelled
    # Sincronizados por webhooks de pago
    payment_provider = Column(String)
    payment_reference = Column(String)
    payment_status = Column(String)
    synced_at = Column(DateTime)
    notes = Column(String)
    __table_args__ = (UniqueConstraint("booking_id", "booking_type", name="uq_usage_booking"),)

    coupon = relationship("Coupon", back_populates="usages")


class CouponAuditLog(Base):
    __tablename__ = "coupon_audit"
    id = Column(Integer, primary_key=True)
    coupon_id = Column(Integer, ForeignKey("coupon.id"), nullable=False, index=True)
    event = Column(String, nullable=False)
    at = Column(DateTime, default=datetime.utcnow)
    by_user = Column(String)
    notes = Column(String)


class CouponNotification(Base):
    __tablename__ = "coupon_notification"
    id = Column(Integer, primary_key=True)
    coupon_id = Column(Integer, ForeignKey("coupon.id"), nullable=False)
    user_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # expiration_warning
    title = Column(String)
    message = Column(String)
    sent_at = Column(DateTime, default=datetime.utcnow)
    __table_args__ = (
        UniqueConstraint("coupon_id", "user_id", "kind", name="uq_coupon_notification"),
    )
