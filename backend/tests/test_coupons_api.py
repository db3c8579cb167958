import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from localmarket.core.config import settings
from localmarket.core.security import create_access_token
from localmarket.db.base import Base
from localmarket.db.session import get_session
from localmarket.main import app
from localmarket.models import AccountType, BenefitKind, Business, Coupon, CouponAudience, Product, User
from localmarket.services import coupons as coupons_service


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def make_test_client() -> tuple[TestClient, async_sessionmaker]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    return TestClient(app), SessionLocal


def create_user_token(
    session_factory: async_sessionmaker, *, email: str, account_type: AccountType = AccountType.customer
) -> tuple[str, UUID]:
    async def _create() -> tuple[str, UUID]:
        async with session_factory() as session:
            user = User(email=email, name="User", account_type=account_type)
            session.add(user)
            await session.commit()
            return create_access_token(str(user.id)), user.id

    return asyncio.run(_create())


def create_coupon(session_factory: async_sessionmaker, *, code: str, **overrides) -> UUID:
    values = {
        "code": code,
        "description": f"{code} coupon",
        "benefit_kind": BenefitKind.fixed_discount,
        "benefit_value": Decimal("5.00"),
        "active": True,
    }
    values.update(overrides)

    async def _create() -> UUID:
        async with session_factory() as session:
            coupon = Coupon(**values)
            session.add(coupon)
            await session.commit()
            return coupon.id

    return asyncio.run(_create())


def seed_business_with_product(session_factory: async_sessionmaker, owner_id: UUID) -> tuple[UUID, UUID]:
    async def _seed() -> tuple[UUID, UUID]:
        async with session_factory() as session:
            business = Business(owner_id=owner_id, name="Corner Bakery")
            session.add(business)
            await session.flush()
            product = Product(business_id=business.id, name="Sourdough", is_active=True)
            session.add(product)
            await session.commit()
            return business.id, product.id

    return asyncio.run(_seed())


def test_validate_reports_reasons_and_summary() -> None:
    client, SessionLocal = make_test_client()
    token, _ = create_user_token(SessionLocal, email="v@example.com")
    merchant_id = create_user_token(SessionLocal, email="shop@example.com", account_type=AccountType.merchant)[1]
    business_id, product_id = seed_business_with_product(SessionLocal, merchant_id)
    create_coupon(
        SessionLocal,
        code="BREAD5",
        target_business_id=business_id,
        target_product_id=product_id,
        max_redemptions=10,
    )
    create_coupon(SessionLocal, code="SELLERS", audience=CouponAudience.merchants)

    ok = client.post("/api/v1/coupons/validate", json={"code": "bread5"}, headers=auth_headers(token))
    assert ok.status_code == 200, ok.text
    body = ok.json()
    assert body["valid"] is True
    assert body["reasons"] == []
    assert body["coupon"]["code"] == "BREAD5"
    assert body["coupon"]["target_business_name"] == "Corner Bakery"
    assert body["coupon"]["target_product_name"] == "Sourdough"
    assert body["coupon"]["global_remaining"] == 10
    assert body["coupon"]["user_remaining"] == 1

    wrong = client.post("/api/v1/coupons/validate", json={"code": "SELLERS"}, headers=auth_headers(token))
    assert wrong.status_code == 200
    assert wrong.json()["valid"] is False
    assert wrong.json()["reason"] == "wrong_audience"
    assert wrong.json()["message"] == "This coupon is exclusive to merchants"

    missing = client.post("/api/v1/coupons/validate", json={"code": "NOPE"}, headers=auth_headers(token))
    assert missing.status_code == 200
    assert missing.json()["reason"] == "coupon_not_found"
    assert missing.json()["coupon"] is None


def test_coupon_endpoints_require_authentication() -> None:
    client, _ = make_test_client()

    res = client.post("/api/v1/coupons/validate", json={"code": "ANY"})
    assert res.status_code == 401
    assert res.json() == {"detail": "Not authenticated", "code": None}

    bad = client.post("/api/v1/coupons/redeem", json={"code": "ANY"}, headers=auth_headers("not-a-jwt"))
    assert bad.status_code == 401


def test_redeem_discount_then_consume_benefit() -> None:
    client, SessionLocal = make_test_client()
    token, _ = create_user_token(SessionLocal, email="r@example.com")
    create_coupon(SessionLocal, code="FIVEOFF")

    redeemed = client.post("/api/v1/coupons/redeem", json={"code": "fiveoff"}, headers=auth_headers(token))
    assert redeemed.status_code == 200, redeemed.text
    body = redeemed.json()
    assert body["code"] == "FIVEOFF"
    assert body["benefit"]["kind"] == "fixed_discount"
    assert Decimal(str(body["benefit"]["value"])) == Decimal("5.00")
    assert body["new_premium_until"] is None
    benefit_id = body["benefit"]["active_benefit_id"]
    assert benefit_id

    listed = client.get("/api/v1/benefits", headers=auth_headers(token))
    assert listed.status_code == 200
    assert [b["id"] for b in listed.json()] == [benefit_id]

    mine = client.get("/api/v1/coupons/mine", headers=auth_headers(token))
    assert mine.status_code == 200
    assert mine.json()[0]["coupon"]["code"] == "FIVEOFF"
    assert mine.json()[0]["status"] == "active"

    order_id = str(uuid.uuid4())
    first = client.post(f"/api/v1/benefits/{benefit_id}/consume", json={"order_id": order_id}, headers=auth_headers(token))
    assert first.status_code == 200, first.text
    assert first.json() == {"ok": True}

    second = client.post(
        f"/api/v1/benefits/{benefit_id}/consume", json={"order_id": str(uuid.uuid4())}, headers=auth_headers(token)
    )
    assert second.status_code == 409
    assert second.json()["code"] == "already_consumed"

    mine_after = client.get("/api/v1/coupons/mine", headers=auth_headers(token)).json()
    assert mine_after[0]["status"] == "consumed"
    assert mine_after[0]["linked_order_id"] == order_id
    assert client.get("/api/v1/benefits", headers=auth_headers(token)).json() == []


def test_redeem_premium_days_extends_subscription() -> None:
    client, SessionLocal = make_test_client()
    token, _ = create_user_token(SessionLocal, email="p@example.com", account_type=AccountType.merchant)
    create_coupon(SessionLocal, code="SUMMER7", benefit_kind=BenefitKind.free_premium_days, benefit_value=Decimal("7"))

    before = datetime.now(timezone.utc)
    redeemed = client.post("/api/v1/coupons/redeem", json={"code": "SUMMER7"}, headers=auth_headers(token))
    assert redeemed.status_code == 200, redeemed.text
    new_until = datetime.fromisoformat(redeemed.json()["new_premium_until"])
    assert before + timedelta(days=7) <= new_until <= datetime.now(timezone.utc) + timedelta(days=7)
    assert redeemed.json()["benefit"]["active_benefit_id"] is None

    status_res = client.get("/api/v1/subscription", headers=auth_headers(token))
    assert status_res.status_code == 200
    status_body = status_res.json()
    assert status_body["is_premium"] is True
    assert status_body["plan_id"] == settings.premium_plan_id
    assert status_body["subscription_status"] == "active"
    assert status_body["days_remaining"] == 7

    cancelled = client.post("/api/v1/subscription/cancel", headers=auth_headers(token))
    assert cancelled.status_code == 200
    assert cancelled.json()["subscription_status"] == "cancelled"
    assert cancelled.json()["is_premium"] is True

    again = client.post("/api/v1/subscription/cancel", headers=auth_headers(token))
    assert again.status_code == 400
    assert again.json()["code"] == "subscription_not_active"


def test_redeem_failures_use_error_envelope() -> None:
    client, SessionLocal = make_test_client()
    token, _ = create_user_token(SessionLocal, email="f@example.com")
    other, _ = create_user_token(SessionLocal, email="g@example.com")
    create_coupon(SessionLocal, code="SINGLE", max_redemptions=1)

    assert client.post("/api/v1/coupons/redeem", json={"code": "SINGLE"}, headers=auth_headers(token)).status_code == 200

    exhausted = client.post("/api/v1/coupons/redeem", json={"code": "SINGLE"}, headers=auth_headers(other))
    assert exhausted.status_code == 400
    assert exhausted.json()["code"] == "redemption_limit_reached"
    assert exhausted.json()["detail"] == "This coupon has reached its redemption limit"
    assert exhausted.json()["reasons"] == ["redemption_limit_reached"]

    repeat = client.post("/api/v1/coupons/redeem", json={"code": "SINGLE"}, headers=auth_headers(token))
    assert repeat.status_code == 400
    assert repeat.json()["code"] == "per_user_limit_reached"

    missing = client.post("/api/v1/coupons/redeem", json={"code": "GHOST"}, headers=auth_headers(token))
    assert missing.status_code == 404
    assert missing.json()["code"] == "coupon_not_found"

    invalid = client.post("/api/v1/coupons/redeem", json={"code": ""}, headers=auth_headers(token))
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "validation_error"


def test_consume_unknown_benefit_is_404() -> None:
    client, SessionLocal = make_test_client()
    token, _ = create_user_token(SessionLocal, email="u@example.com")

    res = client.post(
        f"/api/v1/benefits/{uuid.uuid4()}/consume", json={"order_id": str(uuid.uuid4())}, headers=auth_headers(token)
    )
    assert res.status_code == 404
    assert res.json()["code"] == "benefit_not_found"


def test_admin_coupon_management() -> None:
    client, SessionLocal = make_test_client()
    admin_token, _ = create_user_token(SessionLocal, email="admin@example.com", account_type=AccountType.admin)
    user_token, _ = create_user_token(SessionLocal, email="user@example.com")

    payload = {
        "code": " spring10 ",
        "description": "Spring sale",
        "benefit_kind": "percentage_discount",
        "benefit_value": "10",
        "max_redemptions": 2,
    }
    forbidden = client.post("/api/v1/coupons/admin", json=payload, headers=auth_headers(user_token))
    assert forbidden.status_code == 403

    created = client.post("/api/v1/coupons/admin", json=payload, headers=auth_headers(admin_token))
    assert created.status_code == 201, created.text
    coupon = created.json()
    assert coupon["code"] == "SPRING10"
    assert coupon["audience"] == "both"
    assert coupon["max_redemptions_per_user"] == 1
    assert coupon["redemptions_so_far"] == 0

    duplicate = client.post(
        "/api/v1/coupons/admin", json={**payload, "code": "Spring10"}, headers=auth_headers(admin_token)
    )
    assert duplicate.status_code == 409

    fractional = client.post(
        "/api/v1/coupons/admin",
        json={**payload, "code": "HALFDAY", "benefit_kind": "free_premium_days", "benefit_value": "1.5"},
        headers=auth_headers(admin_token),
    )
    assert fractional.status_code == 400

    listed = client.get("/api/v1/coupons/admin", headers=auth_headers(admin_token))
    assert listed.status_code == 200
    assert [c["code"] for c in listed.json()] == ["SPRING10"]

    assert client.post("/api/v1/coupons/redeem", json={"code": "SPRING10"}, headers=auth_headers(user_token)).status_code == 200

    lowered = client.patch(
        f"/api/v1/coupons/admin/{coupon['id']}", json={"max_redemptions": 1}, headers=auth_headers(admin_token)
    )
    assert lowered.status_code == 200
    assert lowered.json()["max_redemptions"] == 1

    disabled = client.patch(
        f"/api/v1/coupons/admin/{coupon['id']}", json={"active": False}, headers=auth_headers(admin_token)
    )
    assert disabled.status_code == 200
    assert disabled.json()["active"] is False
    assert disabled.json()["max_redemptions"] == 1

    refused_delete = client.delete(f"/api/v1/coupons/admin/{coupon['id']}", headers=auth_headers(admin_token))
    assert refused_delete.status_code == 409

    unused_id = create_coupon(SessionLocal, code="UNUSED")
    deleted = client.delete(f"/api/v1/coupons/admin/{unused_id}", headers=auth_headers(admin_token))
    assert deleted.status_code == 204

    async def _remaining() -> list[str]:
        async with SessionLocal() as session:
            return list((await session.execute(select(Coupon.code))).scalars().all())

    assert asyncio.run(_remaining()) == ["SPRING10"]


def test_admin_cannot_lower_limit_below_redemptions() -> None:
    client, SessionLocal = make_test_client()
    admin_token, _ = create_user_token(SessionLocal, email="admin@example.com", account_type=AccountType.admin)
    coupon_id = create_coupon(SessionLocal, code="BUSY", max_redemptions=5, redemptions_so_far=3)

    res = client.patch(f"/api/v1/coupons/admin/{coupon_id}", json={"max_redemptions": 2}, headers=auth_headers(admin_token))
    assert res.status_code == 400

    missing = client.patch(f"/api/v1/coupons/admin/{uuid.uuid4()}", json={"active": False}, headers=auth_headers(admin_token))
    assert missing.status_code == 404


def test_database_errors_are_generalised(monkeypatch) -> None:
    client, SessionLocal = make_test_client()
    token, _ = create_user_token(SessionLocal, email="db@example.com")

    async def broken_validate(*args, **kwargs):
        raise OperationalError("SELECT coupons", {}, Exception("connection lost"))

    monkeypatch.setattr(coupons_service, "validate_coupon", broken_validate)

    res = client.post("/api/v1/coupons/validate", json={"code": "ANY"}, headers=auth_headers(token))
    assert res.status_code == 500
    assert res.json() == {"detail": "Internal server error", "code": "internal_error"}


def test_health_and_metrics() -> None:
    client, SessionLocal = make_test_client()
    token, _ = create_user_token(SessionLocal, email="m@example.com")

    assert client.get("/api/v1/health").json() == {"status": "ok"}

    client.post("/api/v1/coupons/validate", json={"code": "NOPE"}, headers=auth_headers(token))
    snapshot = client.get("/api/v1/metrics").json()
    assert snapshot["coupon_validations"] == 1
    assert snapshot["coupon_validations_invalid"] == 1


def test_admin_premium_days_are_capped() -> None:
    client, SessionLocal = make_test_client()
    admin_token, _ = create_user_token(SessionLocal, email="admin@example.com", account_type=AccountType.admin)
    payload = {"description": "Decade of premium", "benefit_kind": "free_premium_days"}

    too_long = client.post(
        "/api/v1/coupons/admin",
        json={**payload, "code": "FOREVER", "benefit_value": str(coupons_service.MAX_PREMIUM_DAYS + 1)},
        headers=auth_headers(admin_token),
    )
    assert too_long.status_code == 400
    assert str(coupons_service.MAX_PREMIUM_DAYS) in too_long.json()["detail"]

    at_cap = client.post(
        "/api/v1/coupons/admin",
        json={**payload, "code": "DECADE", "benefit_value": str(coupons_service.MAX_PREMIUM_DAYS)},
        headers=auth_headers(admin_token),
    )
    assert at_cap.status_code == 201, at_cap.text


def test_admin_create_racing_on_the_same_code_returns_conflict(monkeypatch: pytest.MonkeyPatch) -> None:
    client, SessionLocal = make_test_client()
    admin_token, _ = create_user_token(SessionLocal, email="admin@example.com", account_type=AccountType.admin)
    create_coupon(SessionLocal, code="RACE10")

    async def lookup_misses(*args, **kwargs):
        return None

    # The other admin's insert lands after this request's existence check.
    monkeypatch.setattr(coupons_service, "get_coupon_by_code", lookup_misses)

    resp = client.post(
        "/api/v1/coupons/admin",
        json={
            "code": "race10",
            "description": "Second copy",
            "benefit_kind": "fixed_discount",
            "benefit_value": "5",
        },
        headers=auth_headers(admin_token),
    )
    assert resp.status_code == 409
    assert resp.json()["detail"] == "A coupon with this code already exists"

    monkeypatch.undo()
    listed = client.get("/api/v1/coupons/admin", headers=auth_headers(admin_token))
    assert listed.status_code == 200
    assert [c["code"] for c in listed.json()] == ["RACE10"]
