import csv
import io
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.coupon import Coupon, CouponUsage
from . import coupon_store
from .coupon_utils import usage_rate
from .discount_engine import utcnow

CSV_COLUMNS = [
    "applied_at",
    "code",
    "user_id",
    "booking_type",
    "booking_id",
    "original_amount",
    "discount_amount",
    "final_amount",
    "status",
    "payment_reference",
]


def _day_bounds(start: date, end: date):
    # rango inclusivo [start, end]
    return datetime.combine(start, time.min), datetime.combine(end + timedelta(days=1), time.min)


def coupon_stats(db: Session, coupon_id: int) -> Dict[str, Any]:
    c = coupon_store.get_coupon(db, coupon_id, include_deleted=True)
    usages = [u for u in c.usages if u.status == "applied"]
    total_discount = round(sum(u.discount_amount for u in usages), 2)
    total_order = round(sum(u.original_amount for u in usages), 2)
    return {
        "coupon_id": c.id,
        "code": c.code,
        "total_usages": len(usages),
        "unique_users": len({u.user_id for u in usages}),
        "total_discount_given": total_discount,
        "total_order_value": total_order,
        "average_discount": round(total_discount / len(usages), 2) if usages else 0.0,
        "refunded": sum(1 for u in c.usages if u.status == "refunded"),
        "usage_count": c.usage_count,
        "usage_limit": c.usage_limit,
        "usage_rate": usage_rate(c.usage_count, c.usage_limit),
    }


def _period_usages(
    db: Session, start: date, end: date, partner_id: Optional[str] = None
) -> List[CouponUsage]:
    lo, hi = _day_bounds(start, end)
    q = (
        select(CouponUsage)
        .join(Coupon, Coupon.id == CouponUsage.coupon_id)
        .where(CouponUsage.applied_at >= lo, CouponUsage.applied_at < hi)
        .order_by(CouponUsage.applied_at)
    )
    if partner_id:
        q = q.where(Coupon.partner_id == partner_id)
    return db.execute(q).scalars().all()


def usage_report(
    db: Session,
    start: date,
    end: date,
    partner_id: Optional[str] = None,
    include_refunded: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Resumen del período: totales, top 10 por usos, usos por día y por tipo
    de reserva. Las métricas de montos solo cuentan usos 'applied' salvo
    include_refunded.
    """
    now = now or utcnow()
    coupons = coupon_store.list_coupons(db, partner_id=partner_id, limit=10**6)["coupons"]
    active = sum(1 for c in coupons if c.is_active and c.valid_until >= now)
    expired = sum(1 for c in coupons if c.valid_until < now)

    statuses = ("applied", "refunded") if include_refunded else ("applied",)
    usages = [u for u in _period_usages(db, start, end, partner_id) if u.status in statuses]

    by_day: Dict[str, int] = {}
    by_type: Dict[str, int] = {}
    by_code: Dict[str, Dict[str, Any]] = {}
    for u in usages:
        d = u.applied_at.date().isoformat()
        by_day[d] = by_day.get(d, 0) + 1
        by_type[u.booking_type] = by_type.get(u.booking_type, 0) + 1
        agg = by_code.setdefault(
            u.coupon.code, {"code": u.coupon.code, "usages": 0, "discount_given": 0.0, "order_value": 0.0}
        )
        agg["usages"] += 1
        agg["discount_given"] = round(agg["discount_given"] + u.discount_amount, 2)
        agg["order_value"] = round(agg["order_value"] + u.original_amount, 2)

    total_usages = len(usages)
    total_discount = round(sum(u.discount_amount for u in usages), 2)
    total_order = round(sum(u.original_amount for u in usages), 2)
    top = sorted(by_code.values(), key=lambda a: a["usages"], reverse=True)[:10]

    return {
        "total_coupons": len(coupons),
        "active_coupons": active,
        "expired_coupons": expired,
        "total_usages": total_usages,
        "total_discount_given": total_discount,
        "total_order_value": total_order,
        "top_coupons": top,
        "usage_by_period": by_day,
        "usage_by_asset_type": by_type,
        "metrics": {
            "average_order_value": round(total_order / total_usages, 2) if total_usages else 0.0,
            "average_discount": round(total_discount / total_usages, 2) if total_usages else 0.0,
            "discount_rate": round(total_discount / total_order * 100, 2) if total_order else 0.0,
        },
        "period": {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "days_in_period": (end - start).days + 1,
        },
        "generated_at": now.isoformat(timespec="seconds"),
    }


def export_usages_csv(
    db: Session, start: date, end: date, partner_id: Optional[str] = None
) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(CSV_COLUMNS)
    for u in _period_usages(db, start, end, partner_id):
        w.writerow(
            [
                u.applied_at.isoformat(timespec="seconds"),
                u.coupon.code,
                u.user_id,
                u.booking_type,
                u.booking_id,
                f"{u.original_amount:.2f}",
                f"{u.discount_amount:.2f}",
                f"{u.final_amount:.2f}",
                u.status,
                u.payment_reference or "",
            ]
        )
    return buf.getvalue()
