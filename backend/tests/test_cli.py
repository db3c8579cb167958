import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from localmarket import cli
from localmarket.core.config import settings
from localmarket.db.base import Base
from localmarket.models import BenefitKind, Business, Coupon, CouponAudience, Product, SubscriptionStatus, User


@pytest.fixture
def cli_sessions(monkeypatch: pytest.MonkeyPatch) -> async_sessionmaker:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    monkeypatch.setattr(cli, "SessionLocal", SessionLocal)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    return SessionLocal


def test_sweep_premium_command(cli_sessions: async_sessionmaker, capsys: pytest.CaptureFixture[str]) -> None:
    now = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

    async def _seed() -> None:
        async with cli_sessions() as session:
            user = User(
                email="expired@example.com",
                plan_id=settings.premium_plan_id,
                subscription_status=SubscriptionStatus.active,
                premium_until=now - timedelta(days=1),
            )
            session.add(user)
            await session.flush()
            business = Business(owner_id=user.id, name="Kiosk")
            session.add(business)
            await session.flush()
            session.add(Product(business_id=business.id, name="Coffee", is_active=True))
            await session.commit()

    asyncio.run(_seed())

    cli.main(["sweep-premium", "--now", "2026-06-01T12:00:00"])

    output = json.loads(capsys.readouterr().out.strip())
    assert output == {"users_reconciled": 1, "products_deactivated": 1, "failures": 0}


def test_create_coupon_command(cli_sessions: async_sessionmaker, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(
        [
            "create-coupon",
            "--code",
            "welcome",
            "--description",
            "Two free weeks",
            "--kind",
            "free_premium_days",
            "--value",
            "14",
            "--audience",
            "merchants",
            "--max-redemptions",
            "100",
        ]
    )
    assert "Created coupon WELCOME" in capsys.readouterr().out

    async def _load() -> Coupon:
        async with cli_sessions() as session:
            return (await session.execute(select(Coupon))).scalar_one()

    coupon = asyncio.run(_load())
    assert coupon.benefit_kind == BenefitKind.free_premium_days
    assert coupon.benefit_value == Decimal("14")
    assert coupon.audience == CouponAudience.merchants
    assert coupon.max_redemptions == 100
    assert coupon.max_redemptions_per_user == 1

    with pytest.raises(SystemExit, match="already exists"):
        cli.main(
            ["create-coupon", "--code", "WELCOME", "--description", "Again", "--kind", "fixed_discount", "--value", "5"]
        )


def test_invalid_inputs_exit() -> None:
    with pytest.raises(SystemExit, match="Invalid ISO datetime"):
        cli._parse_datetime("yesterday")

    args = cli._build_parser().parse_args(
        ["create-coupon", "--code", "X", "--description", "d", "--kind", "fixed_discount", "--value", "5"]
    )
    with pytest.raises(SystemExit, match="Invalid coupon"):
        cli._coupon_payload(args)
