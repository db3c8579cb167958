from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from localmarket.core import metrics
from localmarket.core.config import settings
from localmarket.models.business import Business, Product
from localmarket.models.coupons import (
    DISCOUNT_KINDS,
    ActiveBenefit,
    BenefitKind,
    Coupon,
    CouponAudience,
    CouponRedemption,
    RedemptionStatus,
)
from localmarket.models.user import AccountType, User
from localmarket.schemas.coupons import CouponCreate, CouponUpdate
from localmarket.services import subscriptions
from localmarket.services.subscriptions import ensure_utc

logger = logging.getLogger(__name__)


class CouponRejection(str, enum.Enum):
    """Why a coupon cannot be redeemed, in the order the checks run."""

    coupon_not_found = "coupon_not_found"
    coupon_disabled = "coupon_disabled"
    not_yet_available = "not_yet_available"
    expired = "expired"
    redemption_limit_reached = "redemption_limit_reached"
    wrong_audience = "wrong_audience"
    per_user_limit_reached = "per_user_limit_reached"


_REJECTION_MESSAGES = {
    CouponRejection.coupon_not_found: "Coupon not found",
    CouponRejection.coupon_disabled: "This coupon has been disabled",
    CouponRejection.not_yet_available: "This coupon is not available yet",
    CouponRejection.expired: "This coupon has expired",
    CouponRejection.redemption_limit_reached: "This coupon has reached its redemption limit",
    CouponRejection.wrong_audience: "This coupon is not available for your account type",
    CouponRejection.per_user_limit_reached: "You have already redeemed this coupon the maximum number of times",
}

MAX_PREMIUM_DAYS = 3650

_AUDIENCE_BY_ACCOUNT = {
    AccountType.customer: CouponAudience.customers,
    AccountType.merchant: CouponAudience.merchants,
}


def describe_rejection(reason: CouponRejection, coupon: Coupon | None = None) -> str:
    if reason == CouponRejection.wrong_audience and coupon is not None:
        if coupon.audience == CouponAudience.merchants:
            return "This coupon is exclusive to merchants"
        if coupon.audience == CouponAudience.customers:
            return "This coupon is exclusive to customers"
    return _REJECTION_MESSAGES[reason]


def primary_reason(reasons: list[CouponRejection]) -> CouponRejection:
    """The reason surfaced to the caller.

    Checks run in declaration order and the first failure wins, except that a
    user who has already used up their own allowance is told so even when the
    coupon is also exhausted globally.
    """
    if CouponRejection.per_user_limit_reached in reasons:
        return CouponRejection.per_user_limit_reached
    return reasons[0]


class CouponRejectedError(Exception):
    def __init__(self, reasons: list[CouponRejection], message: str) -> None:
        super().__init__(message)
        self.reasons = list(reasons)
        self.reason = primary_reason(self.reasons)
        self.message = message


class BenefitError(Exception):
    code = "benefit_error"
    message = "Benefit cannot be used"

    def __init__(self, benefit_id: UUID) -> None:
        super().__init__(f"{self.message}: {benefit_id}")
        self.benefit_id = benefit_id


class BenefitNotFoundError(BenefitError):
    code = "benefit_not_found"
    message = "Benefit not found"


class BenefitAlreadyConsumedError(BenefitError):
    code = "already_consumed"
    message = "Benefit was already used"


class BenefitExpiredError(BenefitError):
    code = "benefit_expired"
    message = "Benefit has expired"


@dataclass(frozen=True)
class UserContext:
    user_id: UUID
    account_type: AccountType

    @classmethod
    def from_user(cls, user: User) -> UserContext:
        return cls(user_id=user.id, account_type=user.account_type)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def premium_days(coupon: Coupon) -> int:
    return int(Decimal(coupon.benefit_value))


def benefit_expiry(coupon: Coupon, now: datetime) -> datetime | None:
    """Expiry stamped on a redemption.

    Premium days always run from the redemption moment and ignore the coupon's
    own `valid_until`; discount benefits inherit `valid_until` (or never expire).
    """
    if coupon.benefit_kind == BenefitKind.free_premium_days:
        return now + timedelta(days=premium_days(coupon))
    return ensure_utc(coupon.valid_until)


async def get_coupon_by_code(session: AsyncSession, *, code: str, for_update: bool = False) -> Coupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    stmt = select(Coupon).where(func.upper(Coupon.code) == cleaned)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def _count_user_redemptions(session: AsyncSession, *, coupon_id: UUID, user_id: UUID) -> int:
    return int(
        (
            await session.execute(
                select(func.count())
                .select_from(CouponRedemption)
                .where(CouponRedemption.coupon_id == coupon_id, CouponRedemption.user_id == user_id)
            )
        ).scalar_one()
    )


@dataclass(frozen=True)
class CouponValidation:
    coupon: Coupon | None
    reasons: list[CouponRejection] = field(default_factory=list)
    global_remaining: int | None = None
    user_remaining: int | None = None

    @property
    def valid(self) -> bool:
        return not self.reasons

    @property
    def reason(self) -> CouponRejection | None:
        return primary_reason(self.reasons) if self.reasons else None

    @property
    def message(self) -> str | None:
        if not self.reasons:
            return None
        return describe_rejection(primary_reason(self.reasons), self.coupon)


async def _evaluate(
    session: AsyncSession, *, coupon: Coupon, context: UserContext, now: datetime
) -> CouponValidation:
    reasons: list[CouponRejection] = []
    if not coupon.active:
        reasons.append(CouponRejection.coupon_disabled)

    valid_from = ensure_utc(coupon.valid_from)
    if valid_from is not None and now < valid_from:
        reasons.append(CouponRejection.not_yet_available)

    valid_until = ensure_utc(coupon.valid_until)
    if valid_until is not None and now > valid_until:
        reasons.append(CouponRejection.expired)

    global_remaining: int | None = None
    if coupon.max_redemptions is not None:
        global_remaining = max(0, int(coupon.max_redemptions) - int(coupon.redemptions_so_far or 0))
        if global_remaining <= 0:
            reasons.append(CouponRejection.redemption_limit_reached)

    if coupon.audience != CouponAudience.both and _AUDIENCE_BY_ACCOUNT.get(context.account_type) != coupon.audience:
        reasons.append(CouponRejection.wrong_audience)

    used = await _count_user_redemptions(session, coupon_id=coupon.id, user_id=context.user_id)
    user_remaining = max(0, int(coupon.max_redemptions_per_user) - used)
    if user_remaining <= 0:
        reasons.append(CouponRejection.per_user_limit_reached)

    return CouponValidation(
        coupon=coupon,
        reasons=reasons,
        global_remaining=global_remaining,
        user_remaining=user_remaining,
    )


async def validate_coupon(
    session: AsyncSession, *, code: str, context: UserContext, now: datetime | None = None
) -> CouponValidation:
    """Run the redemption checks without taking locks or writing anything."""
    now = ensure_utc(now) or _now()
    coupon = await get_coupon_by_code(session, code=code)
    if coupon is None:
        result = CouponValidation(coupon=None, reasons=[CouponRejection.coupon_not_found])
    else:
        result = await _evaluate(session, coupon=coupon, context=context, now=now)

    metrics.record_coupon_validated(result.valid)
    if not result.valid:
        logger.info(
            "coupon_invalid",
            extra={
                "coupon_code": normalize_code(code),
                "user_id": str(context.user_id),
                "reasons": [reason.value for reason in result.reasons],
            },
        )
    return result


@dataclass(frozen=True)
class RedemptionResult:
    redemption: CouponRedemption
    coupon: Coupon
    benefit: ActiveBenefit | None
    new_premium_until: datetime | None


async def _apply_lock_timeout(session: AsyncSession) -> None:
    timeout_ms = int(settings.coupon_lock_timeout_ms or 0)
    if timeout_ms <= 0 or session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))


async def redeem_coupon(
    session: AsyncSession, *, code: str, context: UserContext, now: datetime | None = None
) -> RedemptionResult:
    """Atomically redeem `code` for the user and apply its benefit.

    The coupon row is locked for the whole transaction, so concurrent
    redeemers of one coupon are serialized and always see the latest counters.
    Raises CouponRejectedError (after rolling back) when any check fails.
    """
    now = ensure_utc(now) or _now()
    cleaned = normalize_code(code)
    try:
        await _apply_lock_timeout(session)
        coupon = await get_coupon_by_code(session, code=cleaned, for_update=True)
        if coupon is None:
            validation = CouponValidation(coupon=None, reasons=[CouponRejection.coupon_not_found])
        else:
            validation = await _evaluate(session, coupon=coupon, context=context, now=now)
        if not validation.valid:
            raise CouponRejectedError(validation.reasons, validation.message or "")

        expires_at = benefit_expiry(coupon, now)
        redemption = CouponRedemption(
            coupon_id=coupon.id,
            user_id=context.user_id,
            redeemed_at=now,
            benefit_expires_at=expires_at,
            status=RedemptionStatus.active,
        )
        session.add(redemption)
        coupon.redemptions_so_far = int(coupon.redemptions_so_far or 0) + 1
        session.add(coupon)
        await session.flush()

        benefit: ActiveBenefit | None = None
        new_premium_until: datetime | None = None
        if coupon.benefit_kind == BenefitKind.free_premium_days:
            new_premium_until = await subscriptions.extend_premium(
                session, user_id=context.user_id, days=premium_days(coupon), now=now
            )
        elif coupon.benefit_kind in DISCOUNT_KINDS:
            benefit = ActiveBenefit(
                user_id=context.user_id,
                source_redemption_id=redemption.id,
                benefit_kind=coupon.benefit_kind,
                description=coupon.description,
                value=coupon.benefit_value,
                expires_at=expires_at,
                active=True,
            )
            session.add(benefit)

        await session.commit()
    except CouponRejectedError as exc:
        await session.rollback()
        metrics.record_coupon_rejected(exc.reason.value)
        logger.info(
            "coupon_rejected",
            extra={"coupon_code": cleaned, "user_id": str(context.user_id), "reason": exc.reason.value},
        )
        raise
    except Exception:
        await session.rollback()
        raise

    metrics.record_coupon_redeemed()
    logger.info(
        "coupon_redeemed",
        extra={
            "coupon_code": coupon.code,
            "user_id": str(context.user_id),
            "redemption_id": str(redemption.id),
            "benefit_kind": coupon.benefit_kind.value,
            "redemptions_so_far": coupon.redemptions_so_far,
        },
    )
    return RedemptionResult(
        redemption=redemption,
        coupon=coupon,
        benefit=benefit,
        new_premium_until=new_premium_until,
    )


async def _unconsumable_reason(
    session: AsyncSession, *, benefit_id: UUID, user_id: UUID | None, now: datetime
) -> BenefitError:
    stmt = select(ActiveBenefit).where(ActiveBenefit.id == benefit_id)
    if user_id is not None:
        stmt = stmt.where(ActiveBenefit.user_id == user_id)
    benefit = (await session.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()
    if benefit is None:
        return BenefitNotFoundError(benefit_id)
    if not benefit.active:
        return BenefitAlreadyConsumedError(benefit_id)
    expires_at = ensure_utc(benefit.expires_at)
    if expires_at is not None and expires_at <= now:
        return BenefitExpiredError(benefit_id)
    return BenefitAlreadyConsumedError(benefit_id)


async def consume_benefit(
    session: AsyncSession,
    *,
    benefit_id: UUID,
    order_id: UUID,
    user_id: UUID | None = None,
    now: datetime | None = None,
) -> ActiveBenefit:
    """Apply a discount benefit to an order exactly once.

    The deactivation is a conditional update on `active = true`; when it
    touches no row the benefit was already used (or is missing/expired) and
    nothing is written.
    """
    now = ensure_utc(now) or _now()
    conditions = [
        ActiveBenefit.id == benefit_id,
        ActiveBenefit.active.is_(True),
        or_(ActiveBenefit.expires_at.is_(None), ActiveBenefit.expires_at > now),
    ]
    if user_id is not None:
        conditions.append(ActiveBenefit.user_id == user_id)

    try:
        result = await session.execute(
            update(ActiveBenefit)
            .where(*conditions)
            .values(active=False, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise await _unconsumable_reason(session, benefit_id=benefit_id, user_id=user_id, now=now)

        benefit = (
            await session.execute(
                select(ActiveBenefit).where(ActiveBenefit.id == benefit_id).execution_options(populate_existing=True)
            )
        ).scalar_one()
        await session.execute(
            update(CouponRedemption)
            .where(
                CouponRedemption.id == benefit.source_redemption_id,
                CouponRedemption.status == RedemptionStatus.active,
            )
            .values(status=RedemptionStatus.consumed, linked_order_id=order_id, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except BenefitError as exc:
        await session.rollback()
        logger.info("benefit_not_consumed", extra={"benefit_id": str(benefit_id), "reason": exc.code})
        raise
    except Exception:
        await session.rollback()
        raise

    metrics.record_benefit_consumed()
    logger.info("benefit_consumed", extra={"benefit_id": str(benefit_id), "order_id": str(order_id)})
    return benefit


async def list_user_redemptions(session: AsyncSession, *, user_id: UUID) -> list[CouponRedemption]:
    result = await session.execute(
        select(CouponRedemption)
        .where(CouponRedemption.user_id == user_id)
        .order_by(CouponRedemption.redeemed_at.desc())
    )
    return list(result.scalars().all())


async def list_active_benefits(
    session: AsyncSession, *, user_id: UUID, now: datetime | None = None
) -> list[ActiveBenefit]:
    now = ensure_utc(now) or _now()
    result = await session.execute(
        select(ActiveBenefit)
        .where(
            ActiveBenefit.user_id == user_id,
            ActiveBenefit.active.is_(True),
            or_(ActiveBenefit.expires_at.is_(None), ActiveBenefit.expires_at > now),
        )
        .order_by(ActiveBenefit.expires_at.asc().nulls_last(), ActiveBenefit.created_at.desc())
    )
    return list(result.scalars().all())


async def _validate_targets(session: AsyncSession, *, business_id: UUID | None, product_id: UUID | None) -> None:
    if business_id is not None and await session.get(Business, business_id) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Target business does not exist")
    if product_id is not None:
        product = await session.get(Product, product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Target product does not exist")
        if business_id is not None and product.business_id != business_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Target product does not belong to the target business"
            )


async def create_coupon(session: AsyncSession, *, payload: CouponCreate, created_by: User | None = None) -> Coupon:
    code = normalize_code(payload.code)
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon code is required")
    if await get_coupon_by_code(session, code=code) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A coupon with this code already exists")

    value = Decimal(payload.benefit_value)
    if payload.benefit_kind == BenefitKind.free_premium_days and value != value.to_integral_value():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Premium days must be a whole number")
    if payload.benefit_kind == BenefitKind.free_premium_days and value > MAX_PREMIUM_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Premium days cannot exceed {MAX_PREMIUM_DAYS}"
        )
    if payload.benefit_kind == BenefitKind.percentage_discount and value > 100:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Percentage cannot exceed 100")
    if payload.valid_from and payload.valid_until and ensure_utc(payload.valid_until) < ensure_utc(payload.valid_from):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="valid_until must be after valid_from")
    await _validate_targets(session, business_id=payload.target_business_id, product_id=payload.target_product_id)

    coupon = Coupon(
        code=code,
        description=payload.description.strip(),
        benefit_kind=payload.benefit_kind,
        benefit_value=value,
        audience=payload.audience,
        target_business_id=payload.target_business_id,
        target_product_id=payload.target_product_id,
        max_redemptions=payload.max_redemptions,
        redemptions_so_far=0,
        max_redemptions_per_user=payload.max_redemptions_per_user,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        active=payload.active,
        created_by_id=created_by.id if created_by else None,
    )
    session.add(coupon)
    try:
        await session.commit()
    except IntegrityError:
        # Another admin created the same code between the lookup and the insert.
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A coupon with this code already exists")
    await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_code": code, "benefit_kind": coupon.benefit_kind.value})
    return coupon


async def list_coupons(session: AsyncSession) -> list[Coupon]:
    result = await session.execute(select(Coupon).order_by(Coupon.created_at.desc(), Coupon.code))
    return list(result.scalars().all())


async def _lock_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    coupon = (
        await session.execute(
            select(Coupon).where(Coupon.id == coupon_id).with_for_update().execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return coupon


async def update_coupon(session: AsyncSession, *, coupon_id: UUID, payload: CouponUpdate) -> Coupon:
    """Administrative edit; only `active`, `max_redemptions` and `valid_until` are mutable."""
    changes = payload.model_dump(exclude_unset=True)
    try:
        coupon = await _lock_coupon(session, coupon_id)
        if "max_redemptions" in changes:
            limit = changes["max_redemptions"]
            if limit is not None and limit < int(coupon.redemptions_so_far or 0):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="max_redemptions cannot be lower than the redemptions already made",
                )
            coupon.max_redemptions = limit
        if "valid_until" in changes:
            coupon.valid_until = changes["valid_until"]
        if "active" in changes and changes["active"] is not None:
            coupon.active = bool(changes["active"])
        session.add(coupon)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(coupon)
    logger.info("coupon_updated", extra={"coupon_id": str(coupon_id), "fields": sorted(changes)})
    return coupon


async def delete_coupon(session: AsyncSession, *, coupon_id: UUID) -> None:
    try:
        coupon = await _lock_coupon(session, coupon_id)
        redeemed = int(
            (
                await session.execute(
                    select(func.count()).select_from(CouponRedemption).where(CouponRedemption.coupon_id == coupon_id)
                )
            ).scalar_one()
        )
        if redeemed:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Coupon has redemptions; deactivate it instead",
            )
        await session.delete(coupon)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("coupon_deleted", extra={"coupon_id": str(coupon_id)})
