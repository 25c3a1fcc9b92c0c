import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import CouponCodeTaken, CouponNotFound, CouponValidationFailed
from ..models.coupon import Coupon, CouponAuditLog, CouponUsage
from .coupon_utils import generate_coupon_code
from .coupon_validators import validate_coupon_data
from .discount_engine import (
    CUSTOMER_CLASS_TYPES,
    ApplicableAsset,
    CouponRule,
    CouponType,
    GlobalApplication,
    OrderContext,
    utcnow,
)

logger = logging.getLogger(__name__)

# Campos editables desde el panel (el resto lo maneja el sistema)
EDITABLE_FIELDS = (
    "name",
    "description",
    "discount_type",
    "discount_value",
    "max_discount_amount",
    "minimum_order_value",
    "maximum_order_value",
    "usage_limit",
    "user_usage_limit",
    "valid_from",
    "valid_until",
    "type",
    "allowed_users",
    "applicable_assets",
    "is_publicly_visible",
    "stackable",
    "auto_apply",
    "notify_on_expiration",
)

# Campos de vigencia: solo se revalidan si la edición los toca
DATE_FIELDS = {"valid_from", "valid_until"}

# Usos que no cuentan para límites por usuario ni historial
INACTIVE_USAGE_STATUSES = ("cancelled",)


def audit(db: Session, coupon_id: int, event: str, by_user: Optional[str], notes: str = ""):
    db.add(
        CouponAuditLog(
            coupon_id=coupon_id, event=event, at=utcnow(), by_user=by_user, notes=notes[:250]
        )
    )


def _max_validity() -> timedelta:
    return timedelta(days=settings.max_validity_days)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def get_coupon(db: Session, coupon_id: int, include_deleted: bool = False) -> Coupon:
    c = db.get(Coupon, coupon_id)
    if c is None or (c.deleted_at is not None and not include_deleted):
        raise CouponNotFound()
    return c


def get_by_code(db: Session, code: str) -> Coupon:
    code = normalize_code(code)
    c = db.execute(
        select(Coupon).where(func.upper(Coupon.code) == code, Coupon.deleted_at.is_(None))
    ).scalar_one_or_none()
    if c is None:
        raise CouponNotFound()
    return c


def list_coupons(
    db: Session,
    is_active: Optional[bool] = None,
    type: Optional[str] = None,
    asset_type: Optional[str] = None,
    partner_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    q = select(Coupon).where(Coupon.deleted_at.is_(None))
    if is_active is not None:
        q = q.where(Coupon.is_active == is_active)
    if type:
        q = q.where(Coupon.type == type)
    if partner_id:
        q = q.where(Coupon.partner_id == partner_id)
    rows = db.execute(q.order_by(Coupon.created_at.desc(), Coupon.id.desc())).scalars().all()

    # asset_type vive dentro de JSON: se filtra en Python
    if asset_type:
        rows = [
            c
            for c in rows
            if (c.global_is_global and asset_type in (c.global_asset_types or []))
            or any(a.get("asset_type") == asset_type for a in (c.applicable_assets or []))
        ]
    return {"total_count": len(rows), "coupons": rows[offset : offset + limit]}


def public_coupons(db: Session) -> List[Coupon]:
    return (
        db.execute(
            select(Coupon).where(
                Coupon.deleted_at.is_(None),
                Coupon.is_active.is_(True),
                Coupon.is_publicly_visible.is_(True),
                Coupon.type != CouponType.PRIVATE.value,
            )
        )
        .scalars()
        .all()
    )


def to_rule(c: Coupon) -> CouponRule:
    """Vista del motor de descuentos sobre una fila ORM."""
    return CouponRule(
        id=c.id,
        code=c.code,
        name=c.name or "",
        discount_type=c.discount_type,
        discount_value=c.discount_value,
        max_discount_amount=c.max_discount_amount,
        minimum_order_value=c.minimum_order_value,
        maximum_order_value=c.maximum_order_value,
        valid_from=c.valid_from,
        valid_until=c.valid_until,
        usage_limit=c.usage_limit,
        usage_count=c.usage_count or 0,
        user_usage_limit=c.user_usage_limit,
        type=c.type,
        allowed_users=frozenset(c.allowed_users or ()),
        applicable_assets=tuple(
            ApplicableAsset(
                asset_type=a["asset_type"],
                asset_id=str(a["asset_id"]),
                is_active=bool(a.get("is_active", True)),
            )
            for a in (c.applicable_assets or [])
        ),
        global_application=GlobalApplication(
            is_global=bool(c.global_is_global),
            asset_types=tuple(c.global_asset_types or ()),
        ),
        is_active=bool(c.is_active),
        stackable=bool(c.stackable),
        auto_apply=bool(c.auto_apply),
        notify_on_expiration=bool(c.notify_on_expiration),
        notification_sent_at=c.notification_sent_at,
        deleted_at=c.deleted_at,
    )


def _count_usages(db: Session, *conds) -> int:
    return db.execute(
        select(func.count(CouponUsage.id)).where(
            CouponUsage.status.notin_(INACTIVE_USAGE_STATUSES), *conds
        )
    ).scalar_one()


def build_context(
    db: Session,
    coupon: Coupon,
    user_id: Optional[str] = None,
    asset_type: Optional[str] = None,
    asset_id: Optional[str] = None,
    order_value: Optional[float] = None,
) -> OrderContext:
    """Arma el OrderContext con los conteos que el motor necesita para este cupón."""
    ctx = OrderContext(
        user_id=str(user_id) if user_id is not None else None,
        asset_type=asset_type,
        asset_id=str(asset_id) if asset_id is not None else None,
        order_value=order_value,
    )
    if user_id is None:
        return ctx
    if coupon.user_usage_limit is not None:
        ctx.user_usage_count = _count_usages(
            db, CouponUsage.coupon_id == coupon.id, CouponUsage.user_id == str(user_id)
        )
    if coupon.type in {t.value for t in CUSTOMER_CLASS_TYPES}:
        ctx.previous_bookings = _count_usages(db, CouponUsage.user_id == str(user_id))
    return ctx


def _coupon_data(c: Coupon) -> Dict[str, Any]:
    data = {f: getattr(c, f) for f in EDITABLE_FIELDS}
    data["code"] = c.code
    data["global_application"] = {
        "is_global": bool(c.global_is_global),
        "asset_types": list(c.global_asset_types or []),
    }
    return data


def _apply_data(c: Coupon, data: Dict[str, Any]):
    for f in EDITABLE_FIELDS:
        if f in data:
            setattr(c, f, data[f])
    if "applicable_assets" in data:
        c.applicable_assets = [dict(a) for a in data["applicable_assets"] or []]
    if "allowed_users" in data:
        c.allowed_users = [str(u) for u in data["allowed_users"] or []]
    ga = data.get("global_application")
    if ga is not None:
        c.global_is_global = bool(ga.get("is_global"))
        c.global_asset_types = list(ga.get("asset_types") or [])


def _ensure_code_free(db: Session, code: str, exclude_id: Optional[int] = None):
    q = select(Coupon.id).where(func.upper(Coupon.code) == code)
    if exclude_id is not None:
        q = q.where(Coupon.id != exclude_id)
    if db.execute(q).first() is not None:
        raise CouponCodeTaken(f"coupon code {code} already exists")


def create_coupon(db: Session, data: Dict[str, Any], by_user: Optional[str] = None) -> Coupon:
    data = dict(data)
    data["code"] = normalize_code(data.get("code") or "") or generate_coupon_code(
        length=settings.coupon_code_length
    )
    now = utcnow()
    errors = validate_coupon_data(data, now=now, max_validity=_max_validity())
    if errors:
        raise CouponValidationFailed(errors)
    _ensure_code_free(db, data["code"])

    c = Coupon(
        code=data["code"],
        usage_count=0,
        is_active=bool(data.get("is_active", True)),
        partner_id=data.get("partner_id"),
        created_by=by_user,
    )
    _apply_data(c, data)
    c.valid_from = data.get("valid_from") or now
    db.add(c)
    db.flush()
    audit(db, c.id, "created", by_user, f"code={c.code}")
    db.commit()
    db.refresh(c)
    logger.info("coupon %s created by %s", c.code, by_user)
    return c


def update_coupon(
    db: Session, coupon_id: int, changes: Dict[str, Any], by_user: Optional[str] = None
) -> Coupon:
    c = get_coupon(db, coupon_id)
    merged = _coupon_data(c)
    merged.update(changes)
    errors = validate_coupon_data(
        merged,
        now=utcnow(),
        max_validity=_max_validity(),
        check_dates=bool(DATE_FIELDS & set(changes)),
    )
    if errors:
        raise CouponValidationFailed(errors)
    _apply_data(c, changes)
    audit(db, c.id, "updated", by_user, "fields=" + ",".join(sorted(changes)))
    db.commit()
    db.refresh(c)
    return c


def toggle_status(db: Session, coupon_id: int, is_active: bool, by_user: Optional[str] = None):
    c = get_coupon(db, coupon_id)
    old = bool(c.is_active)
    c.is_active = is_active
    audit(
        db,
        c.id,
        "activated" if is_active else "deactivated",
        by_user,
        f"is_active:{old}->{is_active}",
    )
    db.commit()
    db.refresh(c)
    logger.info("coupon %s %s by %s", c.code, "activated" if is_active else "deactivated", by_user)
    return c


def soft_delete(db: Session, coupon_id: int, by_user: Optional[str] = None) -> Coupon:
    c = get_coupon(db, coupon_id)
    c.deleted_at = utcnow()
    c.is_active = False
    audit(db, c.id, "deleted", by_user)
    db.commit()
    logger.info("coupon %s deleted by %s", c.code, by_user)
    return c


def duplicate_coupon(
    db: Session, coupon_id: int, new_code: Optional[str] = None, by_user: Optional[str] = None
) -> Coupon:
    src = get_coupon(db, coupon_id)
    code = normalize_code(new_code or "") or generate_coupon_code(
        length=settings.coupon_code_length
    )
    _ensure_code_free(db, code)

    c = Coupon(
        code=code,
        usage_count=0,
        is_active=False,  # la copia arranca desactivada
        partner_id=src.partner_id,
        created_by=by_user,
    )
    _apply_data(c, _coupon_data(src))
    c.name = f"{src.name} (copy)"
    db.add(c)
    db.flush()
    audit(db, c.id, "created", by_user, f"duplicated_from={src.id}")
    db.commit()
    db.refresh(c)
    return c


def assign_users(
    db: Session, coupon_id: int, user_ids: Iterable[str], by_user: Optional[str] = None
) -> Coupon:
    c = get_coupon(db, coupon_id)
    current = list(c.allowed_users or [])
    added = [str(u) for u in user_ids if str(u) not in current]
    c.allowed_users = current + added
    audit(db, c.id, "users_assigned", by_user, "added=" + ",".join(added))
    db.commit()
    db.refresh(c)
    return c


def remove_users(
    db: Session, coupon_id: int, user_ids: Iterable[str], by_user: Optional[str] = None
) -> Coupon:
    c = get_coupon(db, coupon_id)
    drop = {str(u) for u in user_ids}
    c.allowed_users = [u for u in (c.allowed_users or []) if u not in drop]
    audit(db, c.id, "users_removed", by_user, "removed=" + ",".join(sorted(drop)))
    db.commit()
    db.refresh(c)
    return c


def update_assets(
    db: Session,
    coupon_id: int,
    applicable_assets: List[Dict[str, Any]],
    global_application: Optional[Dict[str, Any]] = None,
    by_user: Optional[str] = None,
) -> Coupon:
    c = get_coupon(db, coupon_id)
    is_global = bool((global_application or {}).get("is_global", c.global_is_global))
    if not is_global and not applicable_assets:
        raise CouponValidationFailed(
            ["coupon must be global or have at least one applicable asset"]
        )
    _apply_data(c, {"applicable_assets": applicable_assets, "global_application": global_application})
    audit(db, c.id, "assets_updated", by_user, f"assets={len(applicable_assets)},global={is_global}")
    db.commit()
    db.refresh(c)
    return c


_BULK_EVENTS = {"activate": "activated", "deactivate": "deactivated", "delete": "deleted"}


def bulk_update(
    db: Session, coupon_ids: Iterable[int], action: str, by_user: Optional[str] = None
) -> List[Dict[str, Any]]:
    if action not in _BULK_EVENTS:
        raise ValueError(f"unknown bulk action {action!r}")
    results = []
    now = utcnow()
    for cid in coupon_ids:
        c = db.get(Coupon, cid)
        if c is None or c.deleted_at is not None:
            results.append({"coupon_id": cid, "success": False, "error": CouponNotFound.code})
            continue
        if action == "delete":
            c.deleted_at = now
            c.is_active = False
        else:
            c.is_active = action == "activate"
        audit(db, c.id, _BULK_EVENTS[action], by_user, f"bulk:{action}")
        results.append({"coupon_id": cid, "success": True})
    db.commit()
    return results


def expiring_between(db: Session, start: datetime, end: datetime) -> List[Coupon]:
    return (
        db.execute(
            select(Coupon).where(
                Coupon.deleted_at.is_(None),
                Coupon.is_active.is_(True),
                Coupon.valid_until > start,
                Coupon.valid_until <= end,
            )
        )
        .scalars()
        .all()
    )


def usages_for_user(db: Session, user_id: str) -> List[CouponUsage]:
    return (
        db.execute(
            select(CouponUsage)
            .where(CouponUsage.user_id == str(user_id))
            .order_by(CouponUsage.applied_at.desc())
        )
        .scalars()
        .all()
    )
