import random
import string
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from .discount_engine import CouponRule, DiscountType, utcnow

_CODE_CHARS = string.ascii_uppercase + string.digits


def coupon_status(coupon: CouponRule, now: Optional[datetime] = None) -> Dict[str, str]:
    """Estado para paneles: deleted | inactive | expired | used_up | active."""
    now = now or utcnow()
    if coupon.deleted_at is not None:
        return {"status": "deleted", "message": "Coupon removed"}
    if not coupon.is_active:
        return {"status": "inactive", "message": "Coupon inactive"}
    if coupon.valid_until < now:
        return {"status": "expired", "message": "Coupon expired"}
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return {"status": "used_up", "message": "Usage limit reached"}
    return {"status": "active", "message": "Coupon active"}


def is_expiring_soon(valid_until: datetime, days: int = 3, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return now < valid_until <= now + timedelta(days=days)


def usage_rate(usage_count: int, usage_limit: Optional[int]) -> float:
    if not usage_limit:
        return 0.0
    return min(100.0, round(usage_count / usage_limit * 100.0, 2))


def generate_coupon_code(prefix: Optional[str] = None, length: int = 8) -> str:
    head = ""
    if prefix:
        head = prefix.strip().upper() + "-"
        length = max(4, length - len(prefix) - 1)
    return head + "".join(random.choices(_CODE_CHARS, k=length))


def describe_coupon(coupon: CouponRule, currency: str = "BRL") -> str:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        text = f"{coupon.discount_value:g}% off"
        if coupon.max_discount_amount is not None:
            text += f" (up to {currency} {coupon.max_discount_amount:.2f})"
    else:
        text = f"{currency} {coupon.discount_value:.2f} off"
    if coupon.minimum_order_value is not None:
        text += f" on orders from {currency} {coupon.minimum_order_value:.2f}"
    return text


def user_savings(usages: Iterable[Any]) -> Dict[str, Any]:
    """
    Ahorro acumulado de un usuario. Solo cuentan usos con status 'applied'
    (los reembolsados no ahorran nada).
    """
    applied = [u for u in usages if getattr(u, "status", None) == "applied"]
    total = round(sum(float(u.discount_amount or 0) for u in applied), 2)
    count = len(applied)
    return {
        "total_savings": total,
        "usage_count": count,
        "average_savings": round(total / count, 2) if count else 0.0,
        "last_used": max((u.applied_at for u in applied), default=None),
    }
