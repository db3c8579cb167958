import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from localmarket.db.base import Base
from localmarket.models.business import Business, Product
from localmarket.models.user import User


class BenefitKind(str, enum.Enum):
    percentage_discount = "percentage_discount"
    fixed_discount = "fixed_discount"
    free_shipping = "free_shipping"
    free_premium_days = "free_premium_days"


DISCOUNT_KINDS = frozenset(
    {BenefitKind.percentage_discount, BenefitKind.fixed_discount, BenefitKind.free_shipping}
)


class CouponAudience(str, enum.Enum):
    customers = "customers"
    merchants = "merchants"
    both = "both"


class RedemptionStatus(str, enum.Enum):
    active = "active"
    consumed = "consumed"


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint(
            "max_redemptions IS NULL OR redemptions_so_far <= max_redemptions",
            name="redemptions_within_limit",
        ),
        CheckConstraint("max_redemptions_per_user >= 1", name="per_user_limit_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    benefit_kind: Mapped[BenefitKind] = mapped_column(Enum(BenefitKind, native_enum=False), nullable=False)
    benefit_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    audience: Mapped[CouponAudience] = mapped_column(
        Enum(CouponAudience, native_enum=False), nullable=False, default=CouponAudience.both
    )
    target_business_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="SET NULL"), nullable=True
    )
    target_product_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    max_redemptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redemptions_so_far: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_redemptions_per_user: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    target_business: Mapped[Business | None] = relationship("Business", lazy="selectin")
    target_product: Mapped[Product | None] = relationship("Product", lazy="selectin")


Index("ux_coupons_code_upper", func.upper(Coupon.code), unique=True)


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"
    __table_args__ = (Index("ix_coupon_redemptions_coupon_user", "coupon_id", "user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("coupons.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    benefit_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[RedemptionStatus] = mapped_column(
        Enum(RedemptionStatus, native_enum=False), nullable=False, default=RedemptionStatus.active
    )
    # Orders live outside this service; the id is recorded as given.
    linked_order_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    coupon: Mapped[Coupon] = relationship("Coupon", lazy="selectin")
    user: Mapped[User] = relationship("User", lazy="raise")


class ActiveBenefit(Base):
    __tablename__ = "active_benefits"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    source_redemption_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("coupon_redemptions.id"), nullable=False, unique=True
    )
    benefit_kind: Mapped[BenefitKind] = mapped_column(Enum(BenefitKind, native_enum=False), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    redemption: Mapped[CouponRedemption] = relationship("CouponRedemption", lazy="selectin")
