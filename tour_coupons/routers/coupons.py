import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    CouponAlreadyApplied,
    CouponCodeTaken,
    CouponError,
    CouponNotEligible,
    CouponNotFound,
    CouponValidationFailed,
    UsageLimitReached,
    UsageNotFound,
    UsageNotRefundable,
)
from ..core.schemas import (
    ApplyBody,
    AssetsBody,
    AutoApplyBody,
    BulkStatusBody,
    CalculateBody,
    CouponCheck,
    CouponCreate,
    CouponOut,
    CouponUpdate,
    DuplicateBody,
    MultiCheck,
    PaymentSyncBody,
    RefundBody,
    StatusBody,
    UsageOut,
    UsersBody,
)
from ..db import get_db
from ..services import coupon_store, coupon_usage, expiration
from ..services.coupon_utils import coupon_status, describe_coupon, is_expiring_soon, user_savings
from ..services.discount_engine import (
    REASON_NOT_APPLICABLE,
    best_automatic,
    combine,
    compute_discount,
    evaluate_coupon,
    evaluate_one,
    is_applicable,
    optimize_combination,
    order_bound_reasons,
    utcnow,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coupons", tags=["coupons"])

_STATUS = {
    CouponNotFound: 404,
    UsageNotFound: 404,
    CouponCodeTaken: 409,
    CouponAlreadyApplied: 409,
    UsageLimitReached: 409,
    UsageNotRefundable: 409,
    CouponNotEligible: 409,
    CouponValidationFailed: 422,
}


def _http(e: CouponError) -> HTTPException:
    status = _STATUS.get(type(e), 400)
    detail = {"code": e.code, "message": e.message}
    if isinstance(e, CouponValidationFailed):
        detail["errors"] = e.errors
    if isinstance(e, CouponNotEligible):
        detail["reasons"] = e.reasons
    return HTTPException(status_code=status, detail=detail)


def _user(x_user: Optional[str] = Header(default=None, alias="X-User")) -> Optional[str]:
    return x_user


def _coupon_summary(c, discount_amount=None, final_amount=None) -> dict:
    return {
        "id": c.id,
        "code": c.code,
        "name": c.name,
        "description": describe_coupon(coupon_store.to_rule(c), settings.currency),
        "discount_type": c.discount_type,
        "discount_value": c.discount_value,
        "stackable": bool(c.stackable),
        "discount_amount": discount_amount,
        "final_amount": final_amount,
        "valid_until": c.valid_until,
    }


# ---------- administración ----------


@router.post("", response_model=CouponOut)
def create_coupon(body: CouponCreate, db: Session = Depends(get_db), by_user=Depends(_user)):
    try:
        return coupon_store.create_coupon(db, body.model_dump(), by_user=by_user)
    except CouponError as e:
        raise _http(e)


@router.get("")
def list_coupons(
    is_active: Optional[bool] = None,
    type: Optional[str] = None,
    asset_type: Optional[str] = None,
    partner_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    res = coupon_store.list_coupons(
        db, is_active=is_active, type=type, asset_type=asset_type, partner_id=partner_id,
        limit=limit, offset=offset,
    )
    now = utcnow()
    return {
        "total_count": res["total_count"],
        "coupons": [
            dict(
                CouponOut.model_validate(c).model_dump(),
                status=coupon_status(coupon_store.to_rule(c), now)["status"],
                expiring_soon=is_expiring_soon(c.valid_until, settings.expiration_notice_days, now),
            )
            for c in res["coupons"]
        ],
    }


@router.get("/code/{code}", response_model=CouponOut)
def get_coupon_by_code(code: str, db: Session = Depends(get_db)):
    try:
        return coupon_store.get_by_code(db, code)
    except CouponError as e:
        raise _http(e)


@router.get("/notifications/{user_id}")
def list_notifications(user_id: str, db: Session = Depends(get_db)):
    return [
        {
            "coupon_id": n.coupon_id,
            "kind": n.kind,
            "title": n.title,
            "message": n.message,
            "sent_at": n.sent_at,
        }
        for n in expiration.notifications_for_user(db, user_id)
    ]


@router.get("/users/{user_id}/savings")
def savings(user_id: str, db: Session = Depends(get_db)):
    return dict(user_savings(coupon_store.usages_for_user(db, user_id)), user_id=user_id)


@router.get("/{coupon_id}", response_model=CouponOut)
def get_coupon(coupon_id: int, db: Session = Depends(get_db)):
    try:
        return coupon_store.get_coupon(db, coupon_id)
    except CouponError as e:
        raise _http(e)


@router.patch("/{coupon_id}", response_model=CouponOut)
def update_coupon(
    coupon_id: int, body: CouponUpdate, db: Session = Depends(get_db), by_user=Depends(_user)
):
    try:
        return coupon_store.update_coupon(
            db, coupon_id, body.model_dump(exclude_unset=True), by_user=by_user
        )
    except CouponError as e:
        raise _http(e)


@router.post("/{coupon_id}/status", response_model=CouponOut)
def set_status(
    coupon_id: int, body: StatusBody, db: Session = Depends(get_db), by_user=Depends(_user)
):
    try:
        return coupon_store.toggle_status(db, coupon_id, body.is_active, by_user=by_user)
    except CouponError as e:
        raise _http(e)


@router.delete("/{coupon_id}")
def delete_coupon(coupon_id: int, db: Session = Depends(get_db), by_user=Depends(_user)):
    try:
        c = coupon_store.soft_delete(db, coupon_id, by_user=by_user)
    except CouponError as e:
        raise _http(e)
    return {"id": c.id, "deleted": True}


@router.post("/{coupon_id}/duplicate", response_model=CouponOut)
def duplicate_coupon(
    coupon_id: int, body: DuplicateBody, db: Session = Depends(get_db), by_user=Depends(_user)
):
    try:
        return coupon_store.duplicate_coupon(db, coupon_id, body.new_code, by_user=by_user)
    except CouponError as e:
        raise _http(e)


@router.post("/{coupon_id}/users", response_model=CouponOut)
def assign_users(
    coupon_id: int, body: UsersBody, db: Session = Depends(get_db), by_user=Depends(_user)
):
    try:
        return coupon_store.assign_users(db, coupon_id, body.user_ids, by_user=by_user)
    except CouponError as e:
        raise _http(e)


@router.delete("/{coupon_id}/users", response_model=CouponOut)
def remove_users(
    coupon_id: int,
    user_ids: List[str] = Query(..., min_length=1),
    db: Session = Depends(get_db),
    by_user=Depends(_user),
):
    try:
        return coupon_store.remove_users(db, coupon_id, user_ids, by_user=by_user)
    except CouponError as e:
        raise _http(e)


@router.put("/{coupon_id}/assets", response_model=CouponOut)
def update_assets(
    coupon_id: int, body: AssetsBody, db: Session = Depends(get_db), by_user=Depends(_user)
):
    data = body.model_dump()
    try:
        return coupon_store.update_assets(
            db, coupon_id, data["applicable_assets"], data["global_application"], by_user=by_user
        )
    except CouponError as e:
        raise _http(e)


@router.post("/bulk-status")
def bulk_status(body: BulkStatusBody, db: Session = Depends(get_db), by_user=Depends(_user)):
    return {"results": coupon_store.bulk_update(db, body.coupon_ids, body.action, by_user=by_user)}


# ---------- checkout ----------


@router.post("/validate")
def validate_coupon(body: CouponCheck, db: Session = Depends(get_db)):
    """
    Validación en tiempo real para el formulario de reserva. Un cupón
    inexistente o inelegible responde 200 con is_valid=false.
    """
    try:
        c = coupon_store.get_by_code(db, body.code)
    except CouponNotFound:
        return {"is_valid": False, "message": "coupon not found", "reasons": ["coupon not found"], "coupon": None}

    rule = coupon_store.to_rule(c)
    ctx = coupon_store.build_context(
        db, c, user_id=body.user_id, asset_type=body.asset_type, asset_id=body.asset_id,
        order_value=body.order_value,
    )
    eligibility = evaluate_coupon(rule, ctx, now=utcnow())
    if not eligibility.is_eligible:
        return {"is_valid": False, "message": eligibility.reason, "reasons": eligibility.reasons, "coupon": None}

    discount_amount, final_amount = 0.0, body.order_value or 0.0
    if body.order_value is not None:
        calc = compute_discount(rule, body.order_value)
        discount_amount, final_amount = calc.discount_amount, calc.final_amount
    return {
        "is_valid": True,
        "message": "coupon is valid",
        "reasons": [],
        "coupon": _coupon_summary(c, discount_amount, final_amount),
    }


@router.post("/calculate")
def calculate_discount(body: CalculateBody, db: Session = Depends(get_db)):
    try:
        c = coupon_store.get_by_code(db, body.code)
    except CouponError as e:
        raise _http(e)
    rule = coupon_store.to_rule(c)

    if body.asset_type and not is_applicable(rule, body.asset_type, body.asset_id):
        raise HTTPException(
            status_code=409,
            detail={"code": "COUPON_NOT_APPLICABLE", "message": REASON_NOT_APPLICABLE},
        )
    bounds = order_bound_reasons(rule, body.order_value)
    if bounds:
        raise HTTPException(
            status_code=409, detail={"code": "COUPON_ORDER_LIMITS", "message": ", ".join(bounds)}
        )

    calc = compute_discount(rule, body.order_value)
    return {
        "original_amount": calc.original_amount,
        "discount_amount": calc.discount_amount,
        "final_amount": calc.final_amount,
        "discount_percentage": calc.discount_percentage,
        "max_discount_reached": calc.max_discount_reached,
        "savings": calc.discount_amount,
    }


@router.post("/validate-multiple")
def validate_multiple(body: MultiCheck, db: Session = Depends(get_db)):
    """
    Valida varios códigos para el mismo pedido. Los conflictos de
    acumulación se informan; elegir qué cupón aplicar queda del lado del
    cliente.
    """
    now = utcnow()
    evaluations = []
    results = []
    for code in body.codes:
        try:
            c = coupon_store.get_by_code(db, code)
        except CouponNotFound:
            results.append(
                {"code": code, "is_valid": False, "reasons": ["coupon not found"], "stackable": False, "discount_amount": 0.0}
            )
            continue
        # contexto por cupón: los conteos por usuario dependen del cupón
        ctx = coupon_store.build_context(
            db, c, user_id=body.user_id, asset_type=body.asset_type, asset_id=body.asset_id,
            order_value=body.order_value,
        )
        e = evaluate_one(coupon_store.to_rule(c), ctx, now=now)
        evaluations.append(e)
        results.append(
            {
                "code": e.code,
                "is_valid": e.is_valid,
                "reasons": e.eligibility.reasons,
                "stackable": e.coupon.stackable,
                "discount_amount": e.discount_amount,
            }
        )

    multi = combine(evaluations, body.order_value)
    suggestion = None
    if multi.has_conflicts and body.order_value is not None:
        # sugerencia, no selección: el cliente decide qué aplica
        codes, discount, final = optimize_combination([e.coupon for e in multi.valid], body.order_value)
        suggestion = {
            "codes": [c.code for c in codes],
            "total_discount": discount,
            "final_amount": final,
        }
    return {
        "validation_results": results,
        "valid_codes": [e.code for e in multi.valid],
        "conflicts": multi.conflicts,
        "has_conflicts": multi.has_conflicts,
        "total_discount": multi.total_discount,
        "final_amount": multi.final_amount,
        "order_value": multi.order_value,
        "suggestion": suggestion,
    }


@router.post("/auto-apply")
def auto_apply(body: AutoApplyBody, db: Session = Depends(get_db)):
    now = utcnow()
    evaluations = []
    for c in coupon_store.public_coupons(db):
        if not c.auto_apply:
            continue
        ctx = coupon_store.build_context(
            db, c, user_id=body.user_id, asset_type=body.asset_type, asset_id=body.asset_id,
            order_value=body.order_value,
        )
        best = best_automatic([coupon_store.to_rule(c)], ctx, now=now)
        if best is not None:
            evaluations.append((c, best))
    if not evaluations:
        return {"coupon": None}
    # mayor descuento; ante empate el primero
    c, best = max(evaluations, key=lambda pair: pair[1].discount_amount)
    return {
        "coupon": _coupon_summary(c, best.discount_amount, best.calculation.final_amount),
        "discount_percentage": best.calculation.discount_percentage,
    }


@router.post("/apply")
def apply_coupon(body: ApplyBody, db: Session = Depends(get_db), by_user=Depends(_user)):
    try:
        usage = coupon_usage.redeem_coupon(
            db,
            code=body.code,
            user_id=body.user_id,
            booking_id=body.booking_id,
            booking_type=body.booking_type,
            original_amount=body.original_amount,
            applied_by=by_user,
            asset_type=body.asset_type,
            asset_id=body.asset_id,
        )
    except CouponError as e:
        logger.info("coupon %s rejected for booking %s: %s", body.code, body.booking_id, e.message)
        raise _http(e)
    # usage_id es la clave de éxito del middleware de idempotencia
    return dict(UsageOut.model_validate(usage).model_dump(), usage_id=usage.id)


@router.post("/usages/{usage_id}/refund", response_model=UsageOut)
def refund_usage(
    usage_id: int, body: RefundBody, db: Session = Depends(get_db), by_user=Depends(_user)
):
    try:
        return coupon_usage.refund_usage(db, usage_id, body.reason, by_user=by_user)
    except CouponError as e:
        raise _http(e)


@router.post("/usages/{usage_id}/payment", response_model=UsageOut)
def sync_payment(usage_id: int, body: PaymentSyncBody, db: Session = Depends(get_db)):
    try:
        return coupon_usage.sync_usage_payment(
            db, usage_id, body.provider, body.reference, body.status
        )
    except CouponError as e:
        raise _http(e)
