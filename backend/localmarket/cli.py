import argparse
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import HTTPException
from pydantic import ValidationError

from localmarket.core.config import settings
from localmarket.core.logging_config import configure_logging
from localmarket.db.session import SessionLocal
from localmarket.models.coupons import BenefitKind, CouponAudience
from localmarket.schemas.coupons import CouponCreate
from localmarket.services import coupons as coupons_service
from localmarket.services import subscriptions as subscriptions_service


def _parse_datetime(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise SystemExit(f"Invalid ISO datetime: {raw}")
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def sweep_premium(now: datetime | None = None) -> subscriptions_service.SweepResult:
    result = await subscriptions_service.sweep_expired_premium(SessionLocal, now=now)
    print(
        json.dumps(
            {
                "users_reconciled": result.users_reconciled,
                "products_deactivated": result.products_deactivated,
                "failures": result.failures,
            }
        )
    )
    return result


async def create_coupon(payload: CouponCreate) -> None:
    async with SessionLocal() as session:
        try:
            coupon = await coupons_service.create_coupon(session, payload=payload)
        except HTTPException as exc:
            raise SystemExit(str(exc.detail))
    print(f"Created coupon {coupon.code} ({coupon.id})")


def _add_sweep_command(subparsers) -> None:
    sweep = subparsers.add_parser("sweep-premium", help="Downgrade every expired premium account")
    sweep.add_argument("--now", help="Reference time (ISO 8601); defaults to the current time")


def _add_coupon_command(subparsers) -> None:
    coupon = subparsers.add_parser("create-coupon", help="Create a coupon")
    coupon.add_argument("--code", required=True)
    coupon.add_argument("--description", required=True)
    coupon.add_argument("--kind", required=True, choices=[k.value for k in BenefitKind])
    coupon.add_argument("--value", required=True, help="Percentage, amount, or number of premium days")
    coupon.add_argument("--audience", default=CouponAudience.both.value, choices=[a.value for a in CouponAudience])
    coupon.add_argument("--max-redemptions", type=int)
    coupon.add_argument("--per-user", type=int, default=1)
    coupon.add_argument("--valid-from")
    coupon.add_argument("--valid-until")
    coupon.add_argument("--inactive", action="store_true", help="Create the coupon disabled")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LocalMarket maintenance commands")
    subparsers = parser.add_subparsers(dest="command")
    _add_sweep_command(subparsers)
    _add_coupon_command(subparsers)
    return parser


def _coupon_payload(args: argparse.Namespace) -> CouponCreate:
    try:
        return CouponCreate(
            code=args.code,
            description=args.description,
            benefit_kind=BenefitKind(args.kind),
            benefit_value=Decimal(args.value),
            audience=CouponAudience(args.audience),
            max_redemptions=args.max_redemptions,
            max_redemptions_per_user=args.per_user,
            valid_from=_parse_datetime(args.valid_from),
            valid_until=_parse_datetime(args.valid_until),
            active=not args.inactive,
        )
    except (ValidationError, ArithmeticError) as exc:
        raise SystemExit(f"Invalid coupon: {exc}")


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "sweep-premium":
        asyncio.run(sweep_premium(_parse_datetime(args.now)))
        return True

    if args.command == "create-coupon":
        asyncio.run(create_coupon(_coupon_payload(args)))
        return True

    return False


def main(argv: list[str] | None = None) -> None:
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
