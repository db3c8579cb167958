from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from localmarket.core import metrics
from localmarket.core.config import settings
from localmarket.models.business import Business, Product
from localmarket.models.user import SubscriptionStatus, User

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    if not dt:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def is_premium_active(user: User, *, now: datetime | None = None) -> bool:
    """Premium access ends at `premium_until`, whatever `plan_id` still says."""
    if user.plan_id != settings.premium_plan_id:
        return False
    until = ensure_utc(user.premium_until)
    if until is None:
        return False
    return until > (ensure_utc(now) or _now())


def stacked_premium_expiry(current: datetime | None, *, days: int, now: datetime) -> datetime:
    """Extend from the later of `now` and the current expiry, never from a past date."""
    current = ensure_utc(current)
    base = current if current is not None and current > now else now
    return base + timedelta(days=days)


async def _lock_user(session: AsyncSession, user_id: UUID) -> User | None:
    return (
        await session.execute(
            select(User).where(User.id == user_id).with_for_update().execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def extend_premium(session: AsyncSession, *, user_id: UUID, days: int, now: datetime) -> datetime:
    """Grant `days` of premium inside the caller's transaction; returns the new expiry.

    The caller owns the transaction and commits it.
    """
    user = await _lock_user(session, user_id)
    if user is None:
        raise LookupError(f"user {user_id} does not exist")

    new_until = stacked_premium_expiry(user.premium_until, days=days, now=now)
    logger.info(
        "premium_extended",
        extra={
            "user_id": str(user_id),
            "previous_until": ensure_utc(user.premium_until),
            "premium_until": new_until,
            "days": days,
        },
    )
    user.plan_id = settings.premium_plan_id
    user.subscription_status = SubscriptionStatus.active
    user.subscribed_at = user.subscribed_at or now
    user.premium_until = new_until
    session.add(user)
    return new_until


class SubscriptionNotActiveError(Exception):
    code = "subscription_not_active"

    def __init__(self, user_id: UUID) -> None:
        super().__init__("No active premium subscription")
        self.user_id = user_id


@dataclass(frozen=True)
class ReconciliationResult:
    reconciled: bool
    deactivated_products: int = 0


def _premium_lapsed(user: User, now: datetime) -> bool:
    until = ensure_utc(user.premium_until)
    return user.plan_id == settings.premium_plan_id and until is not None and until < now


async def reconcile_expired_premium(
    session: AsyncSession, *, user_id: UUID, now: datetime | None = None
) -> ReconciliationResult:
    """Downgrade a lapsed premium account and deactivate the products of every business it owns."""
    now = ensure_utc(now) or _now()

    user = (await session.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None or not _premium_lapsed(user, now):
        return ReconciliationResult(reconciled=False)

    try:
        user = await _lock_user(session, user_id)
        # Another request may have reconciled or extended it while we waited for the lock.
        if user is None or not _premium_lapsed(user, now):
            await session.commit()
            return ReconciliationResult(reconciled=False)

        owned_businesses = select(Business.id).where(Business.owner_id == user_id)
        result = await session.execute(
            update(Product)
            .where(Product.business_id.in_(owned_businesses), Product.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        deactivated = int(result.rowcount or 0)

        expired_at = ensure_utc(user.premium_until)
        user.plan_id = None
        user.subscription_status = None
        user.subscribed_at = None
        user.premium_until = None
        session.add(user)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    metrics.record_premium_reconciled(deactivated)
    logger.info(
        "premium_reconciled",
        extra={"user_id": str(user_id), "expired_at": expired_at, "deactivated_products": deactivated},
    )
    return ReconciliationResult(reconciled=True, deactivated_products=deactivated)


@dataclass(frozen=True)
class SweepResult:
    users_reconciled: int
    products_deactivated: int
    failures: int


async def sweep_expired_premium(
    session_factory: async_sessionmaker[AsyncSession], *, now: datetime | None = None
) -> SweepResult:
    """Reconcile every lapsed premium account, one transaction per user."""
    now = ensure_utc(now) or _now()
    async with session_factory() as session:
        user_ids = (
            (
                await session.execute(
                    select(User.id).where(
                        User.plan_id == settings.premium_plan_id,
                        User.premium_until.is_not(None),
                        User.premium_until < now,
                    )
                )
            )
            .scalars()
            .all()
        )

    users_reconciled = 0
    products_deactivated = 0
    failures = 0
    for user_id in user_ids:
        async with session_factory() as session:
            try:
                outcome = await reconcile_expired_premium(session, user_id=user_id, now=now)
            except SQLAlchemyError:
                failures += 1
                logger.exception("premium_sweep_user_failed", extra={"user_id": str(user_id)})
                continue
        if outcome.reconciled:
            users_reconciled += 1
            products_deactivated += outcome.deactivated_products

    logger.info(
        "premium_sweep_finished",
        extra={
            "candidates": len(user_ids),
            "users_reconciled": users_reconciled,
            "products_deactivated": products_deactivated,
            "failures": failures,
        },
    )
    return SweepResult(users_reconciled=users_reconciled, products_deactivated=products_deactivated, failures=failures)


@dataclass(frozen=True)
class SubscriptionState:
    user: User
    is_premium: bool
    days_remaining: int | None
    deactivated_products: int


async def get_subscription_status(
    session: AsyncSession, *, user_id: UUID, now: datetime | None = None
) -> SubscriptionState:
    now = ensure_utc(now) or _now()
    outcome = await reconcile_expired_premium(session, user_id=user_id, now=now)
    user = (
        await session.execute(select(User).where(User.id == user_id).execution_options(populate_existing=True))
    ).scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    premium = is_premium_active(user, now=now)
    days_remaining = None
    if premium:
        remaining = ensure_utc(user.premium_until) - now
        days_remaining = math.ceil(remaining.total_seconds() / 86400)
    return SubscriptionState(
        user=user,
        is_premium=premium,
        days_remaining=days_remaining,
        deactivated_products=outcome.deactivated_products,
    )


async def cancel_subscription(session: AsyncSession, *, user_id: UUID, now: datetime | None = None) -> User:
    """Stop renewal; premium stays usable until `premium_until`."""
    now = ensure_utc(now) or _now()
    try:
        user = await _lock_user(session, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        if not is_premium_active(user, now=now) or user.subscription_status != SubscriptionStatus.active:
            raise SubscriptionNotActiveError(user_id)
        user.subscription_status = SubscriptionStatus.cancelled
        session.add(user)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(
        "subscription_cancelled",
        extra={"user_id": str(user_id), "premium_until": ensure_utc(user.premium_until)},
    )
    return user
