from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from localmarket.models.coupons import BenefitKind, CouponAudience, RedemptionStatus


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)


class CouponRedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)


class CouponSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    description: str
    benefit_kind: BenefitKind
    benefit_value: Decimal
    audience: CouponAudience
    target_business_id: UUID | None = None
    target_business_name: str | None = None
    target_product_id: UUID | None = None
    target_product_name: str | None = None
    valid_until: datetime | None = None
    global_remaining: int | None = None
    user_remaining: int | None = None


class CouponValidationResponse(BaseModel):
    valid: bool
    reason: str | None = None
    reasons: list[str] = Field(default_factory=list)
    message: str | None = None
    coupon: CouponSummary | None = None


class BenefitRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    benefit_kind: BenefitKind
    description: str | None = None
    value: Decimal
    expires_at: datetime | None = None
    active: bool
    created_at: datetime | None = None
    consumed_at: datetime | None = None


class RedemptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    redeemed_at: datetime
    benefit_expires_at: datetime | None = None
    status: RedemptionStatus
    linked_order_id: UUID | None = None
    consumed_at: datetime | None = None
    coupon: CouponSummary | None = None


class RedeemedBenefit(BaseModel):
    kind: BenefitKind
    value: Decimal
    expires_at: datetime | None = None
    active_benefit_id: UUID | None = None


class CouponRedeemResponse(BaseModel):
    redemption_id: UUID
    code: str
    benefit: RedeemedBenefit
    new_premium_until: datetime | None = None


class ConsumeBenefitRequest(BaseModel):
    order_id: UUID


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str
    benefit_kind: BenefitKind
    benefit_value: Decimal
    audience: CouponAudience
    target_business_id: UUID | None = None
    target_product_id: UUID | None = None
    max_redemptions: int | None = None
    redemptions_so_far: int
    max_redemptions_per_user: int
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    active: bool
    created_at: datetime
    updated_at: datetime


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=40)
    description: str = Field(min_length=1, max_length=500)
    benefit_kind: BenefitKind
    benefit_value: Decimal = Field(gt=0)
    audience: CouponAudience = CouponAudience.both
    target_business_id: UUID | None = None
    target_product_id: UUID | None = None
    max_redemptions: int | None = Field(default=None, ge=1)
    max_redemptions_per_user: int = Field(default=1, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    active: bool = True


class CouponUpdate(BaseModel):
    active: bool | None = None
    max_redemptions: int | None = Field(default=None, ge=1)
    valid_until: datetime | None = None
