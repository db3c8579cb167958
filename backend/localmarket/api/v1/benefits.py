from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from localmarket.core.dependencies import get_current_user
from localmarket.core.errors import APIError
from localmarket.db.session import get_session
from localmarket.models.user import User
from localmarket.schemas.coupons import BenefitRead, ConsumeBenefitRequest
from localmarket.services import coupons as coupons_service

router = APIRouter(prefix="/benefits", tags=["benefits"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]

_BENEFIT_ERROR_STATUS = {
    coupons_service.BenefitNotFoundError: status.HTTP_404_NOT_FOUND,
    coupons_service.BenefitAlreadyConsumedError: status.HTTP_409_CONFLICT,
    coupons_service.BenefitExpiredError: status.HTTP_409_CONFLICT,
}


@router.get("")
async def list_benefits(session: SessionDep, current_user: CurrentUserDep) -> list[BenefitRead]:
    benefits = await coupons_service.list_active_benefits(session, user_id=current_user.id)
    return [BenefitRead.model_validate(b, from_attributes=True) for b in benefits]


@router.post("/{benefit_id}/consume")
async def consume_benefit(
    benefit_id: UUID,
    payload: ConsumeBenefitRequest,
    session: SessionDep,
    current_user: CurrentUserDep,
) -> dict[str, bool]:
    try:
        await coupons_service.consume_benefit(
            session, benefit_id=benefit_id, order_id=payload.order_id, user_id=current_user.id
        )
    except coupons_service.BenefitError as exc:
        raise APIError(
            status_code=_BENEFIT_ERROR_STATUS.get(type(exc), status.HTTP_409_CONFLICT),
            detail=exc.message,
            code=exc.code,
        ) from exc
    return {"ok": True}
