from datetime import datetime

from pydantic import BaseModel

from localmarket.models.user import SubscriptionStatus


class SubscriptionRead(BaseModel):
    is_premium: bool
    plan_id: int | None = None
    subscription_status: SubscriptionStatus | None = None
    subscribed_at: datetime | None = None
    premium_until: datetime | None = None
    days_remaining: int | None = None
    deactivated_products: int = 0
