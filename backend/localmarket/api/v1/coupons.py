from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from localmarket.core.config import settings
from localmarket.core.dependencies import get_current_user, require_admin
from localmarket.core.errors import APIError
from localmarket.core.rate_limit import client_identifier, per_identifier_limiter
from localmarket.db.session import get_session
from localmarket.models.coupons import Coupon, CouponRedemption
from localmarket.models.user import User
from localmarket.schemas.coupons import (
    CouponCreate,
    CouponRead,
    CouponRedeemRequest,
    CouponRedeemResponse,
    CouponSummary,
    CouponUpdate,
    CouponValidateRequest,
    CouponValidationResponse,
    RedeemedBenefit,
    RedemptionRead,
)
from localmarket.services import coupons as coupons_service

router = APIRouter(prefix="/coupons", tags=["coupons"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]
AdminDep = Annotated[User, Depends(require_admin)]

coupon_rate_limit = per_identifier_limiter(
    client_identifier, settings.coupon_rate_limit_per_minute, window_seconds=60
)


def _to_summary(
    coupon: Coupon, validation: coupons_service.CouponValidation | None = None
) -> CouponSummary:
    summary = CouponSummary.model_validate(coupon, from_attributes=True)
    return summary.model_copy(
        update={
            "target_business_name": coupon.target_business.name if coupon.target_business else None,
            "target_product_name": coupon.target_product.name if coupon.target_product else None,
            "global_remaining": validation.global_remaining if validation else None,
            "user_remaining": validation.user_remaining if validation else None,
        }
    )


def _rejection_error(exc: coupons_service.CouponRejectedError) -> APIError:
    status_code = (
        status.HTTP_404_NOT_FOUND
        if exc.reason == coupons_service.CouponRejection.coupon_not_found
        else status.HTTP_400_BAD_REQUEST
    )
    return APIError(
        status_code=status_code,
        detail=exc.message,
        code=exc.reason.value,
        reasons=[reason.value for reason in exc.reasons],
    )


@router.post("/validate", dependencies=[Depends(coupon_rate_limit)])
async def validate_coupon(
    payload: CouponValidateRequest,
    session: SessionDep,
    current_user: CurrentUserDep,
) -> CouponValidationResponse:
    result = await coupons_service.validate_coupon(
        session, code=payload.code, context=coupons_service.UserContext.from_user(current_user)
    )
    return CouponValidationResponse(
        valid=result.valid,
        reason=result.reason.value if result.reason else None,
        reasons=[reason.value for reason in result.reasons],
        message=result.message,
        coupon=_to_summary(result.coupon, result) if result.coupon else None,
    )


@router.post("/redeem", dependencies=[Depends(coupon_rate_limit)])
async def redeem_coupon(
    payload: CouponRedeemRequest,
    session: SessionDep,
    current_user: CurrentUserDep,
) -> CouponRedeemResponse:
    try:
        result = await coupons_service.redeem_coupon(
            session, code=payload.code, context=coupons_service.UserContext.from_user(current_user)
        )
    except coupons_service.CouponRejectedError as exc:
        raise _rejection_error(exc) from exc

    return CouponRedeemResponse(
        redemption_id=result.redemption.id,
        code=result.coupon.code,
        benefit=RedeemedBenefit(
            kind=result.coupon.benefit_kind,
            value=result.coupon.benefit_value,
            expires_at=result.redemption.benefit_expires_at,
            active_benefit_id=result.benefit.id if result.benefit else None,
        ),
        new_premium_until=result.new_premium_until,
    )


def _to_redemption_read(redemption: CouponRedemption) -> RedemptionRead:
    base = RedemptionRead.model_validate(redemption, from_attributes=True)
    return base.model_copy(update={"coupon": _to_summary(redemption.coupon) if redemption.coupon else None})


@router.get("/mine")
async def my_redemptions(session: SessionDep, current_user: CurrentUserDep) -> list[RedemptionRead]:
    redemptions = await coupons_service.list_user_redemptions(session, user_id=current_user.id)
    return [_to_redemption_read(r) for r in redemptions]


@router.get("/admin")
async def admin_list_coupons(session: SessionDep, _: AdminDep) -> list[CouponRead]:
    coupons = await coupons_service.list_coupons(session)
    return [CouponRead.model_validate(c, from_attributes=True) for c in coupons]


@router.post("/admin", status_code=status.HTTP_201_CREATED)
async def admin_create_coupon(payload: CouponCreate, session: SessionDep, admin: AdminDep) -> CouponRead:
    coupon = await coupons_service.create_coupon(session, payload=payload, created_by=admin)
    return CouponRead.model_validate(coupon, from_attributes=True)


@router.patch("/admin/{coupon_id}")
async def admin_update_coupon(
    coupon_id: UUID, payload: CouponUpdate, session: SessionDep, _: AdminDep
) -> CouponRead:
    coupon = await coupons_service.update_coupon(session, coupon_id=coupon_id, payload=payload)
    return CouponRead.model_validate(coupon, from_attributes=True)


@router.delete("/admin/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_coupon(coupon_id: UUID, session: SessionDep, _: AdminDep) -> Response:
    await coupons_service.delete_coupon(session, coupon_id=coupon_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
