import logging
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    CouponAlreadyApplied,
    CouponNotEligible,
    UsageLimitReached,
    UsageNotFound,
    UsageNotRefundable,
)
from ..models.coupon import Coupon, CouponUsage
from . import coupon_store
from .discount_engine import compute_discount, evaluate_coupon, utcnow

logger = logging.getLogger(__name__)


def _claim_slot(db: Session, coupon_id: int) -> bool:
    """
    Check-and-increment atómico: el UPDATE solo toca la fila si aún hay
    cupo. rowcount 0 significa que otra redención se llevó el último uso.
    """
    res = db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            (Coupon.usage_limit.is_(None)) | (Coupon.usage_count < Coupon.usage_limit),
        )
        .values(usage_count=Coupon.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    return bool(res.rowcount)


def redeem_coupon(
    db: Session,
    code: str,
    user_id: str,
    booking_id: str,
    booking_type: str,
    original_amount: float,
    applied_by: Optional[str] = None,
    asset_type: Optional[str] = None,
    asset_id: Optional[str] = None,
) -> CouponUsage:
    """
    Aplica un cupón a una reserva: revalida, reserva un uso de forma atómica
    y registra el CouponUsage. Todo en una sola transacción.
    """
    coupon = coupon_store.get_by_code(db, code)
    ctx = coupon_store.build_context(
        db, coupon, user_id=user_id, asset_type=asset_type, asset_id=asset_id,
        order_value=original_amount,
    )
    now = utcnow()
    eligibility = evaluate_coupon(coupon_store.to_rule(coupon), ctx, now=now)
    if not eligibility.is_eligible:
        raise CouponNotEligible(eligibility.reasons)
    calc = compute_discount(coupon_store.to_rule(coupon), original_amount)

    try:
        if not _claim_slot(db, coupon.id):
            db.rollback()
            raise UsageLimitReached()
        usage = CouponUsage(
            coupon_id=coupon.id,
            user_id=str(user_id),
            booking_id=str(booking_id),
            booking_type=booking_type,
            original_amount=calc.original_amount,
            discount_amount=calc.discount_amount,
            final_amount=calc.final_amount,
            applied_by=applied_by or str(user_id),
            applied_at=now,
            status="applied",
        )
        db.add(usage)
        db.flush()
    except IntegrityError:
        # uq_usage_booking: la reserva ya tiene cupón; el rollback deshace el +1
        db.rollback()
        raise CouponAlreadyApplied(f"booking {booking_type}:{booking_id} already has a coupon")

    coupon_store.audit(
        db,
        coupon.id,
        "applied",
        applied_by or str(user_id),
        f"booking:{booking_type}:{booking_id},disc={calc.discount_amount}",
    )
    db.commit()
    db.refresh(usage)
    logger.info(
        "coupon %s applied to %s:%s (user=%s discount=%.2f)",
        coupon.code, booking_type, booking_id, user_id, calc.discount_amount,
    )
    return usage


def get_usage(db: Session, usage_id: int) -> CouponUsage:
    usage = db.get(CouponUsage, usage_id)
    if usage is None:
        raise UsageNotFound()
    return usage


def refund_usage(db: Session, usage_id: int, reason: str, by_user: Optional[str] = None):
    usage = get_usage(db, usage_id)
    if usage.status != "applied":
        raise UsageNotRefundable(f"usage {usage_id} is {usage.status}")

    now = utcnow()
    usage.status = "refunded"
    usage.notes = f"{reason} - refunded at {now.isoformat(timespec='seconds')} by {by_user}"[:250]
    # nunca por debajo de 0
    db.execute(
        update(Coupon)
        .where(Coupon.id == usage.coupon_id)
        .values(
            usage_count=case((Coupon.usage_count > 0, Coupon.usage_count - 1), else_=0)
        )
        .execution_options(synchronize_session=False)
    )
    coupon_store.audit(
        db, usage.coupon_id, "refunded", by_user,
        f"booking:{usage.booking_type}:{usage.booking_id},reason={reason}",
    )
    db.commit()
    db.refresh(usage)
    logger.info("coupon usage %s refunded by %s", usage_id, by_user)
    return usage


def sync_usage_payment(
    db: Session,
    usage_id: int,
    provider: str,
    reference: str,
    status: Optional[str] = None,
) -> CouponUsage:
    """Metadatos que llegan por webhooks de pago; no altera montos."""
    usage = get_usage(db, usage_id)
    usage.payment_provider = provider
    usage.payment_reference = reference
    usage.payment_status = status
    usage.synced_at = utcnow()
    db.commit()
    db.refresh(usage)
    return usage
