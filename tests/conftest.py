import os
import tempfile
from datetime import timedelta

import pytest

# La base de pruebas se fija antes de importar la app
_TMP = tempfile.mkdtemp(prefix="tour_coupons_")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP, "test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from fastapi.testclient import TestClient  # noqa: E402

from tour_coupons.db import Base, SessionLocal, engine  # noqa: E402
from tour_coupons.main import app  # noqa: E402
from tour_coupons.services.discount_engine import utcnow  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def coupon_payload():
    def _payload(**overrides):
        data = {
            "code": "TEST10",
            "name": "Test 10",
            "description": "10% off activities",
            "discount_type": "percentage",
            "discount_value": 10,
            "valid_until": (utcnow() + timedelta(days=30)).isoformat(),
            "global_application": {"is_global": True, "asset_types": ["activities"]},
        }
        data.update(overrides)
        return data

    return _payload


@pytest.fixture
def make_coupon(client, coupon_payload):
    def _make(**overrides):
        r = client.post("/coupons", json=coupon_payload(**overrides), headers={"X-User": "admin"})
        assert r.status_code == 200, r.text
        return r.json()

    return _make


@pytest.fixture
def apply_coupon(client):
    def _apply(code, booking_id, user_id="u1", amount=200.0, **extra):
        body = {
            "code": code,
            "user_id": user_id,
            "booking_id": booking_id,
            "booking_type": "activity",
            "original_amount": amount,
        }
        body.update(extra)
        r = client.post("/coupons/apply", json=body)
        return r.status_code, r.json()

    return _apply
