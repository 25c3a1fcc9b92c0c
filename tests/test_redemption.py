import pytest

from tour_coupons.core.exceptions import CouponAlreadyApplied, UsageLimitReached
from tour_coupons.db import SessionLocal
from tour_coupons.models.coupon import CouponAuditLog
from tour_coupons.services import coupon_store
from tour_coupons.services.coupon_usage import redeem_coupon


def _usage_count(client, coupon_id):
    return client.get(f"/coupons/{coupon_id}").json()["usage_count"]


def test_apply_records_usage(client, make_coupon, apply_coupon, db):
    c = make_coupon()
    st, js = apply_coupon("test10", "B-1", amount=129)
    assert st == 200
    assert js["usage_id"] == js["id"]
    assert js["discount_amount"] == 12.9
    assert js["final_amount"] == 116.1
    assert js["status"] == "applied"
    assert js["applied_by"] == "u1"
    assert _usage_count(client, c["id"]) == 1

    events = [a.event for a in db.query(CouponAuditLog).filter_by(coupon_id=c["id"]).order_by(CouponAuditLog.id)]
    assert events == ["created", "applied"]


def test_usage_limit_blocks_next_redemption(client, make_coupon, apply_coupon):
    c = make_coupon(usage_limit=1)
    assert apply_coupon("TEST10", "B-1")[0] == 200
    st, js = apply_coupon("TEST10", "B-2", user_id="u2")
    assert st == 409
    assert js["detail"]["code"] == "COUPON_NOT_ELIGIBLE"
    assert "usage limit reached" in js["detail"]["reasons"]
    assert _usage_count(client, c["id"]) == 1


def test_stale_read_cannot_oversell(make_coupon):
    make_coupon(code="ONCE", usage_limit=1)

    # la sesión A leyó el cupón con cupo libre antes de que B lo consumiera
    db_a = SessionLocal()
    db_b = SessionLocal()
    try:
        # referencia fuerte: el identity map guarda la fila vieja mientras viva
        stale = coupon_store.get_by_code(db_a, "ONCE")
        assert stale.usage_count == 0
        redeem_coupon(db_b, "ONCE", "u2", "B-2", "activity", 100)
        with pytest.raises(UsageLimitReached):
            redeem_coupon(db_a, "ONCE", "u1", "B-1", "activity", 100)
    finally:
        db_a.close()
        db_b.close()

    db = SessionLocal()
    try:
        c = coupon_store.get_by_code(db, "ONCE")
        assert c.usage_count == 1
        assert len(c.usages) == 1
    finally:
        db.close()


def test_claim_is_atomic(make_coupon, db):
    from tour_coupons.services.coupon_usage import _claim_slot

    c = make_coupon(code="TWO", usage_limit=2)
    assert _claim_slot(db, c["id"]) is True
    assert _claim_slot(db, c["id"]) is True
    assert _claim_slot(db, c["id"]) is False
    db.commit()
    assert coupon_store.get_coupon(db, c["id"]).usage_count == 2


def test_same_booking_twice(client, make_coupon, apply_coupon, db):
    c = make_coupon()
    assert apply_coupon("TEST10", "B-1")[0] == 200
    st, js = apply_coupon("TEST10", "B-1")
    assert st == 409 and js["detail"]["code"] == "COUPON_ALREADY_APPLIED"
    # el rollback deshace el incremento
    assert _usage_count(client, c["id"]) == 1

    with pytest.raises(CouponAlreadyApplied):
        redeem_coupon(db, "TEST10", "u1", "B-1", "activity", 50)


def test_per_user_limit(make_coupon, apply_coupon):
    make_coupon(user_usage_limit=1)
    assert apply_coupon("TEST10", "B-1")[0] == 200
    st, js = apply_coupon("TEST10", "B-2")
    assert st == 409 and js["detail"]["reasons"] == ["user usage limit reached"]
    assert apply_coupon("TEST10", "B-3", user_id="u2")[0] == 200


def test_first_purchase_only(make_coupon, apply_coupon):
    make_coupon(code="WELCOME", type="first_purchase")
    assert apply_coupon("WELCOME", "B-1", user_id="new")[0] == 200
    st, js = apply_coupon("WELCOME", "B-2", user_id="new")
    assert st == 409 and js["detail"]["reasons"] == ["coupon valid only for first purchase"]


def test_apply_checks_asset(make_coupon, apply_coupon):
    make_coupon()
    st, js = apply_coupon("TEST10", "B-1", asset_type="events", asset_id="e1")
    assert st == 409 and js["detail"]["reasons"] == ["coupon not applicable to this item"]
    st, js = apply_coupon("NOPE", "B-1")
    assert st == 404


def test_refund_releases_slot(client, make_coupon, apply_coupon):
    c = make_coupon(usage_limit=1)
    _, usage = apply_coupon("TEST10", "B-1")

    r = client.post(f"/coupons/usages/{usage['usage_id']}/refund", json={"reason": "booking cancelled"}, headers={"X-User": "ops"})
    assert r.status_code == 200
    assert r.json()["status"] == "refunded"
    assert _usage_count(client, c["id"]) == 0

    r = client.post(f"/coupons/usages/{usage['usage_id']}/refund", json={"reason": "again"})
    assert r.status_code == 409 and r.json()["detail"]["code"] == "USAGE_NOT_REFUNDABLE"
    r = client.post("/coupons/usages/999/refund", json={"reason": "x"})
    assert r.status_code == 404

    # el cupo liberado se puede volver a usar
    assert apply_coupon("TEST10", "B-2", user_id="u2")[0] == 200


def test_payment_sync(client, make_coupon, apply_coupon):
    make_coupon()
    _, usage = apply_coupon("TEST10", "B-1")
    r = client.post(
        f"/coupons/usages/{usage['usage_id']}/payment",
        json={"provider": "stripe", "reference": "pi_123", "status": "succeeded"},
    )
    assert r.status_code == 200
    js = r.json()
    assert (js["payment_provider"], js["payment_reference"], js["payment_status"]) == ("stripe", "pi_123", "succeeded")
    assert js["final_amount"] == usage["final_amount"]

    r = client.post(f"/coupons/usages/{usage['usage_id']}/payment", json={"provider": "paypal", "reference": "x"})
    assert r.status_code == 422


def test_user_savings(client, make_coupon, apply_coupon):
    make_coupon()
    apply_coupon("TEST10", "B-1", amount=100)
    apply_coupon("TEST10", "B-2", amount=300)
    js = client.get("/coupons/users/u1/savings").json()
    assert js["user_id"] == "u1"
    assert js["total_savings"] == 40.0
    assert js["usage_count"] == 2
    assert js["average_savings"] == 20.0
