import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .discount_engine import CouponType, DiscountType, utcnow

CODE_RE = re.compile(r"^[A-Z0-9-]+$")
MAX_VALIDITY = timedelta(days=730)


def validate_code(code: Optional[str]) -> Optional[str]:
    if not code or not code.strip():
        return "coupon code is required"
    code = code.strip()
    if len(code) < 3:
        return "coupon code must have at least 3 characters"
    if len(code) > 20:
        return "coupon code must have at most 20 characters"
    if not CODE_RE.match(code.upper()):
        return "coupon code may only contain letters, digits and hyphens"
    return None


def validate_discount(
    discount_type: str, discount_value: Optional[float], max_discount_amount: Optional[float]
) -> Optional[str]:
    if discount_value is None or discount_value <= 0:
        return "discount value must be greater than zero"
    if discount_type == DiscountType.PERCENTAGE.value:
        if discount_value > 100:
            return "percentage discount cannot exceed 100%"
        if max_discount_amount is not None and max_discount_amount <= 0:
            return "maximum discount amount must be greater than zero"
    return None


def validate_date_range(
    valid_from: Optional[datetime],
    valid_until: Optional[datetime],
    now: Optional[datetime] = None,
    max_validity: timedelta = MAX_VALIDITY,
) -> Optional[str]:
    now = now or utcnow()
    if valid_until is None:
        return "end date is required"
    start = valid_from or now
    if start >= valid_until:
        return "start date must be before end date"
    if valid_until <= now:
        return "end date must be in the future"
    if valid_until - start > max_validity:
        return f"validity period cannot exceed {max_validity.days} days"
    return None


def validate_usage_limits(
    usage_limit: Optional[int], user_usage_limit: Optional[int]
) -> Optional[str]:
    if usage_limit is not None and usage_limit <= 0:
        return "total usage limit must be greater than zero"
    if user_usage_limit is not None and user_usage_limit <= 0:
        return "per-user usage limit must be greater than zero"
    if usage_limit and user_usage_limit and user_usage_limit > usage_limit:
        return "per-user usage limit cannot exceed the total usage limit"
    return None


def validate_order_limits(
    minimum_order_value: Optional[float], maximum_order_value: Optional[float]
) -> Optional[str]:
    if minimum_order_value is not None and minimum_order_value < 0:
        return "minimum order value cannot be negative"
    if maximum_order_value is not None and maximum_order_value <= 0:
        return "maximum order value must be greater than zero"
    if (
        minimum_order_value is not None
        and maximum_order_value is not None
        and minimum_order_value > maximum_order_value
    ):
        return "minimum order value cannot exceed maximum order value"
    return None


def validate_coupon_data(
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    max_validity: timedelta = MAX_VALIDITY,
    check_dates: bool = True,
) -> List[str]:
    """
    Reglas de alta/edición desde el panel. Devuelve la lista de errores
    (vacía si el cupón es válido); no lanza. Con check_dates=False se omite
    el rango de vigencia (edición que no toca fechas).
    """
    checks = [
        validate_code(data.get("code")),
        validate_discount(
            data.get("discount_type"), data.get("discount_value"), data.get("max_discount_amount")
        ),
        validate_date_range(data.get("valid_from"), data.get("valid_until"), now, max_validity)
        if check_dates
        else None,
        validate_usage_limits(data.get("usage_limit"), data.get("user_usage_limit")),
        validate_order_limits(data.get("minimum_order_value"), data.get("maximum_order_value")),
    ]
    errors = [e for e in checks if e]

    if not (data.get("name") or "").strip():
        errors.append("coupon name is required")
    if not (data.get("description") or "").strip():
        errors.append("coupon description is required")

    global_application = data.get("global_application") or {}
    if not global_application.get("is_global") and not data.get("applicable_assets"):
        errors.append("coupon must be global or have at least one applicable asset")

    if data.get("type") == CouponType.PRIVATE.value and not data.get("allowed_users"):
        errors.append("private coupons need at least one allowed user")

    return errors
