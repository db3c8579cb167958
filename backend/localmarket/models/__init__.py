from localmarket.db.base import Base  # noqa: F401
from localmarket.models.user import AccountType, SubscriptionStatus, User  # noqa: F401
from localmarket.models.business import Business, Product  # noqa: F401
from localmarket.models.coupons import (  # noqa: F401
    ActiveBenefit,
    BenefitKind,
    Coupon,
    CouponAudience,
    CouponRedemption,
    RedemptionStatus,
)

__all__ = [
    "Base",
    "AccountType",
    "SubscriptionStatus",
    "User",
    "Business",
    "Product",
    "ActiveBenefit",
    "BenefitKind",
    "Coupon",
    "CouponAudience",
    "CouponRedemption",
    "RedemptionStatus",
]
