from datetime import timedelta

from tour_coupons.models.coupon import Coupon
from tour_coupons.services.discount_engine import utcnow


def _post(client, path, json, **kw):
    r = client.post(path, json=json, **kw)
    return r.status_code, r.json()


def _expire(db, coupon_id):
    row = db.get(Coupon, coupon_id)
    row.valid_from = utcnow() - timedelta(days=10)
    row.valid_until = utcnow() - timedelta(days=1)
    db.commit()


# ---------- administración ----------


def test_create_and_fetch(client, make_coupon):
    c = make_coupon(code="test10")
    assert c["code"] == "TEST10"
    assert c["usage_count"] == 0
    assert c["global_is_global"] is True

    r = client.get("/coupons/code/Test10")
    assert r.status_code == 200 and r.json()["id"] == c["id"]
    r = client.get(f"/coupons/{c['id']}")
    assert r.status_code == 200 and r.json()["name"] == "Test 10"


def test_create_generates_code(make_coupon):
    c = make_coupon(code=None)
    assert len(c["code"]) == 8 and c["code"].isalnum()


def test_create_rejects_invalid_and_duplicate(client, make_coupon, coupon_payload):
    make_coupon()
    st, js = _post(client, "/coupons", coupon_payload(code="test10"))
    assert st == 409 and js["detail"]["code"] == "COUPON_CODE_TAKEN"

    st, js = _post(client, "/coupons", coupon_payload(code="BAD150", discount_value=150))
    assert st == 422
    assert js["detail"]["code"] == "COUPON_INVALID_DATA"
    assert "percentage discount cannot exceed 100%" in js["detail"]["errors"]

    st, js = _post(client, "/coupons", coupon_payload(code="PRIV", type="private"))
    assert st == 422
    assert js["detail"]["errors"] == ["private coupons need at least one allowed user"]


def test_update_status_and_soft_delete(client, make_coupon):
    c = make_coupon()
    r = client.patch(f"/coupons/{c['id']}", json={"name": "Renamed", "stackable": True})
    assert r.status_code == 200
    assert r.json()["name"] == "Renamed" and r.json()["stackable"] is True

    r = client.patch(f"/coupons/{c['id']}", json={"discount_value": 150})
    assert r.status_code == 422

    st, js = _post(client, f"/coupons/{c['id']}/status", {"is_active": False})
    assert st == 200 and js["is_active"] is False
    assert client.get("/coupons", params={"is_active": False}).json()["total_count"] == 1
    assert client.get("/coupons", params={"is_active": True}).json()["total_count"] == 0

    r = client.delete(f"/coupons/{c['id']}", headers={"X-User": "admin"})
    assert r.status_code == 200 and r.json() == {"id": c["id"], "deleted": True}
    r = client.get(f"/coupons/{c['id']}")
    assert r.status_code == 404 and r.json()["detail"]["code"] == "COUPON_NOT_FOUND"
    assert client.get("/coupons/code/TEST10").status_code == 404


def test_rename_expired_coupon(client, make_coupon, db):
    c = make_coupon()
    _expire(db, c["id"])
    r = client.patch(f"/coupons/{c['id']}", json={"name": "Renamed"})
    assert r.status_code == 200 and r.json()["name"] == "Renamed"

    # tocar las fechas sí revalida la vigencia
    r = client.patch(f"/coupons/{c['id']}", json={"valid_until": (utcnow() - timedelta(hours=1)).isoformat()})
    assert r.status_code == 422
    assert r.json()["detail"]["errors"] == ["end date must be in the future"]

    r = client.patch(f"/coupons/{c['id']}", json={"valid_until": (utcnow() + timedelta(days=5)).isoformat()})
    assert r.status_code == 200


def test_duplicate_starts_inactive(client, make_coupon):
    c = make_coupon()
    st, js = _post(client, f"/coupons/{c['id']}/duplicate", {"new_code": "test10-b"})
    assert st == 200
    assert js["code"] == "TEST10-B"
    assert js["name"] == "Test 10 (copy)"
    assert js["is_active"] is False
    assert js["discount_value"] == c["discount_value"]

    st, js = _post(client, f"/coupons/{c['id']}/duplicate", {"new_code": "TEST10"})
    assert st == 409


def test_private_users(client, make_coupon):
    c = make_coupon(code="VIP", type="private", allowed_users=["u1"])
    st, js = _post(client, f"/coupons/{c['id']}/users", {"user_ids": ["u2", "u1"]})
    assert st == 200 and js["allowed_users"] == ["u1", "u2"]

    r = client.delete(f"/coupons/{c['id']}/users", params={"user_ids": ["u1"]})
    assert r.status_code == 200 and r.json()["allowed_users"] == ["u2"]


def test_assets(client, make_coupon):
    c = make_coupon()
    r = client.put(
        f"/coupons/{c['id']}/assets",
        json={"applicable_assets": [], "global_application": {"is_global": False}},
    )
    assert r.status_code == 422

    r = client.put(
        f"/coupons/{c['id']}/assets",
        json={
            "applicable_assets": [{"asset_type": "events", "asset_id": "e1"}],
            "global_application": {"is_global": False},
        },
    )
    assert r.status_code == 200
    js = r.json()
    assert js["global_is_global"] is False
    assert js["applicable_assets"] == [{"asset_type": "events", "asset_id": "e1", "is_active": True}]


def test_list_filters(client, make_coupon):
    make_coupon()
    make_coupon(
        code="EVT5",
        global_application={"is_global": True, "asset_types": ["events"]},
        partner_id="p1",
    )
    res = client.get("/coupons").json()
    assert res["total_count"] == 2
    assert {c["status"] for c in res["coupons"]} == {"active"}
    assert all(c["expiring_soon"] is False for c in res["coupons"])

    res = client.get("/coupons", params={"asset_type": "events"}).json()
    assert [c["code"] for c in res["coupons"]] == ["EVT5"]
    res = client.get("/coupons", params={"partner_id": "p1"}).json()
    assert res["total_count"] == 1


def test_bulk_status(client, make_coupon):
    c = make_coupon()
    st, js = _post(client, "/coupons/bulk-status", {"coupon_ids": [c["id"], 9999], "action": "deactivate"})
    assert st == 200
    assert js["results"] == [
        {"coupon_id": c["id"], "success": True},
        {"coupon_id": 9999, "success": False, "error": "COUPON_NOT_FOUND"},
    ]
    assert client.get(f"/coupons/{c['id']}").json()["is_active"] is False


# ---------- checkout ----------


def test_validate(client, make_coupon, db):
    c = make_coupon(minimum_order_value=100)

    st, js = _post(client, "/coupons/validate", {"code": "NOPE"})
    assert st == 200 and js["is_valid"] is False and js["message"] == "coupon not found"

    st, js = _post(client, "/coupons/validate", {"code": "test10", "order_value": 200})
    assert st == 200 and js["is_valid"] is True
    assert js["coupon"]["discount_amount"] == 20.0
    assert js["coupon"]["final_amount"] == 180.0
    assert js["coupon"]["description"] == "10% off on orders from BRL 100.00"

    st, js = _post(client, "/coupons/validate", {"code": "TEST10", "order_value": 50})
    assert st == 200 and js["is_valid"] is False
    assert js["reasons"] == ["minimum order value not met"]

    _expire(db, c["id"])
    # el reloj del cliente no cuenta: siempre se valida con la hora del servidor
    earlier = utcnow() - timedelta(days=5)
    st, js = _post(client, "/coupons/validate", {"code": "TEST10", "now": earlier.isoformat()})
    assert st == 200 and js["is_valid"] is False
    assert "coupon has expired" in js["reasons"]


def test_validate_private(client, make_coupon):
    make_coupon(code="VIP", type="private", allowed_users=["u1"])
    st, js = _post(client, "/coupons/validate", {"code": "VIP", "user_id": "u9"})
    assert js["is_valid"] is False and js["message"] == "user not authorized for this coupon"
    st, js = _post(client, "/coupons/validate", {"code": "VIP"})
    assert js["is_valid"] is False
    st, js = _post(client, "/coupons/validate", {"code": "VIP", "user_id": "u1"})
    assert js["is_valid"] is True


def test_calculate(client, make_coupon):
    make_coupon(code="CAP20", discount_value=20, max_discount_amount=15, minimum_order_value=50)

    st, js = _post(client, "/coupons/calculate", {"code": "CAP20", "order_value": 100})
    assert st == 200
    assert js["discount_amount"] == 15.0 and js["final_amount"] == 85.0
    assert js["discount_percentage"] == 15.0
    assert js["max_discount_reached"] is True

    st, js = _post(client, "/coupons/calculate", {"code": "CAP20", "order_value": 100, "asset_type": "events"})
    assert st == 409 and js["detail"]["code"] == "COUPON_NOT_APPLICABLE"

    st, js = _post(client, "/coupons/calculate", {"code": "CAP20", "order_value": 10})
    assert st == 409 and js["detail"]["code"] == "COUPON_ORDER_LIMITS"

    st, js = _post(client, "/coupons/calculate", {"code": "NOPE", "order_value": 10})
    assert st == 404

    st, js = _post(client, "/coupons/calculate", {"code": "CAP20", "order_value": -1})
    assert st == 422


def test_validate_multiple_reports_conflict(client, make_coupon):
    make_coupon(code="TEN")
    make_coupon(code="FIX30", discount_type="fixed_amount", discount_value=30)

    st, js = _post(client, "/coupons/validate-multiple", {"codes": ["TEN", "FIX30", "NOPE"], "order_value": 200})
    assert st == 200
    assert js["has_conflicts"] is True
    assert "multiple non-stackable coupons selected" in js["conflicts"]
    assert js["valid_codes"] == ["TEN", "FIX30"]
    assert js["validation_results"][2] == {
        "code": "NOPE",
        "is_valid": False,
        "reasons": ["coupon not found"],
        "stackable": False,
        "discount_amount": 0.0,
    }
    assert js["suggestion"] == {"codes": ["FIX30"], "total_discount": 30.0, "final_amount": 170.0}


def test_validate_multiple_stackable(client, make_coupon):
    make_coupon(code="S10", stackable=True)
    make_coupon(code="S20", discount_type="fixed_amount", discount_value=20, stackable=True)

    st, js = _post(client, "/coupons/validate-multiple", {"codes": ["S10", "S20"], "order_value": 100})
    assert st == 200
    assert js["has_conflicts"] is False and js["conflicts"] == []
    assert js["total_discount"] == 30.0 and js["final_amount"] == 70.0
    assert js["suggestion"] is None


def test_auto_apply(client, make_coupon):
    body = {"user_id": "u1", "asset_type": "activities", "asset_id": "a1", "order_value": 200}
    st, js = _post(client, "/coupons/auto-apply", body)
    assert st == 200 and js == {"coupon": None}

    make_coupon(code="AUTO5", discount_value=5, auto_apply=True)
    make_coupon(code="AUTO30", discount_type="fixed_amount", discount_value=30, auto_apply=True)
    make_coupon(code="MANUAL", discount_value=50)
    make_coupon(code="VIPAUTO", discount_value=90, auto_apply=True, type="private", allowed_users=["u1"])

    st, js = _post(client, "/coupons/auto-apply", body)
    assert st == 200
    assert js["coupon"]["code"] == "AUTO30"
    assert js["coupon"]["discount_amount"] == 30.0
    assert js["discount_percentage"] == 15.0

    st, js = _post(client, "/coupons/auto-apply", dict(body, asset_type="events"))
    assert js == {"coupon": None}
