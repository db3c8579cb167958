"""users, businesses, products, coupons, redemptions and benefits

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    account_type = sa.Enum("customer", "merchant", "admin", name="accounttype", native_enum=False)
    subscription_status = sa.Enum("active", "cancelled", name="subscriptionstatus", native_enum=False)
    benefit_kind = sa.Enum(
        "percentage_discount",
        "fixed_discount",
        "free_shipping",
        "free_premium_days",
        name="benefitkind",
        native_enum=False,
    )
    coupon_audience = sa.Enum("customers", "merchants", "both", name="couponaudience", native_enum=False)
    redemption_status = sa.Enum("active", "consumed", name="redemptionstatus", native_enum=False)

    op.create_table(
        "users",
        sa.Column("id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("account_type", account_type, nullable=False),
        sa.Column("plan_id", sa.Integer(), nullable=True),
        sa.Column("subscription_status", subscription_status, nullable=True),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("premium_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_premium_until", "users", ["premium_until"], unique=False)

    op.create_table(
        "businesses",
        sa.Column("id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("owner_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], name="fk_businesses_owner_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_businesses"),
    )
    op.create_index("ix_businesses_owner_id", "businesses", ["owner_id"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("business_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ["business_id"], ["businesses.id"], name="fk_products_business_id_businesses", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_products"),
    )
    op.create_index("ix_products_business_id", "products", ["business_id"], unique=False)

    op.create_table(
        "coupons",
        sa.Column("id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("code", sa.String(length=40), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("benefit_kind", benefit_kind, nullable=False),
        sa.Column("benefit_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("audience", coupon_audience, nullable=False, server_default="both"),
        sa.Column("target_business_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("target_product_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("redemptions_so_far", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_redemptions_per_user", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "max_redemptions IS NULL OR redemptions_so_far <= max_redemptions",
            name="ck_coupons_redemptions_within_limit",
        ),
        sa.CheckConstraint("max_redemptions_per_user >= 1", name="ck_coupons_per_user_limit_positive"),
        sa.ForeignKeyConstraint(
            ["target_business_id"],
            ["businesses.id"],
            name="fk_coupons_target_business_id_businesses",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["target_product_id"],
            ["products.id"],
            name="fk_coupons_target_product_id_products",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], name="fk_coupons_created_by_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_coupons"),
    )
    op.create_index("ux_coupons_code_upper", "coupons", [sa.text("upper(code)")], unique=True)

    op.create_table(
        "coupon_redemptions",
        sa.Column("id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("coupon_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("benefit_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", redemption_status, nullable=False, server_default="active"),
        sa.Column("linked_order_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"], name="fk_coupon_redemptions_coupon_id_coupons"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_coupon_redemptions_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_coupon_redemptions"),
    )
    op.create_index("ix_coupon_redemptions_user_id", "coupon_redemptions", ["user_id"], unique=False)
    op.create_index(
        "ix_coupon_redemptions_coupon_user", "coupon_redemptions", ["coupon_id", "user_id"], unique=False
    )

    op.create_table(
        "active_benefits",
        sa.Column("id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("source_redemption_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("benefit_kind", benefit_kind, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("value", sa.Numeric(10, 2), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_active_benefits_user_id_users"),
        sa.ForeignKeyConstraint(
            ["source_redemption_id"],
            ["coupon_redemptions.id"],
            name="fk_active_benefits_source_redemption_id_coupon_redemptions",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_active_benefits"),
        sa.UniqueConstraint("source_redemption_id", name="uq_active_benefits_source_redemption_id"),
    )
    op.create_index("ix_active_benefits_user_id", "active_benefits", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_active_benefits_user_id", table_name="active_benefits")
    op.drop_table("active_benefits")
    op.drop_index("ix_coupon_redemptions_coupon_user", table_name="coupon_redemptions")
    op.drop_index("ix_coupon_redemptions_user_id", table_name="coupon_redemptions")
    op.drop_table("coupon_redemptions")
    op.drop_index("ux_coupons_code_upper", table_name="coupons")
    op.drop_table("coupons")
    op.drop_index("ix_products_business_id", table_name="products")
    op.drop_table("products")
    op.drop_index("ix_businesses_owner_id", table_name="businesses")
    op.drop_table("businesses")
    op.drop_index("ix_users_premium_until", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
