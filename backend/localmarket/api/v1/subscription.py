from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from localmarket.core.dependencies import get_current_user
from localmarket.core.errors import APIError
from localmarket.db.session import get_session
from localmarket.models.user import User
from localmarket.schemas.subscription import SubscriptionRead
from localmarket.services import subscriptions as subscriptions_service

router = APIRouter(prefix="/subscription", tags=["subscription"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]


@router.get("")
async def subscription_status(session: SessionDep, current_user: CurrentUserDep) -> SubscriptionRead:
    state = await subscriptions_service.get_subscription_status(session, user_id=current_user.id)
    return SubscriptionRead(
        is_premium=state.is_premium,
        plan_id=state.user.plan_id,
        subscription_status=state.user.subscription_status,
        subscribed_at=state.user.subscribed_at,
        premium_until=state.user.premium_until,
        days_remaining=state.days_remaining,
        deactivated_products=state.deactivated_products,
    )


@router.post("/cancel")
async def cancel_subscription(session: SessionDep, current_user: CurrentUserDep) -> SubscriptionRead:
    try:
        user = await subscriptions_service.cancel_subscription(session, user_id=current_user.id)
    except subscriptions_service.SubscriptionNotActiveError as exc:
        raise APIError(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc), code=exc.code) from exc
    return SubscriptionRead(
        is_premium=subscriptions_service.is_premium_active(user),
        plan_id=user.plan_id,
        subscription_status=user.subscription_status,
        subscribed_at=user.subscribed_at,
        premium_until=user.premium_until,
    )
