"""initial budget engine schema

Revision ID: 202510010900
Revises:
Create Date: 2025-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202510010900"
down_revision = None
branch_labels = None
depends_on = None

ADJUSTMENT_KIND = sa.Enum("increase", "decrease", name="adjustmentkind")
ADJUSTMENT_STATUS = sa.Enum("pending", "applied", "cancelled", name="adjustmentstatus")
CATEGORY_ACTION = sa.Enum(
    "created",
    "renamed_from",
    "renamed_to",
    "merged_source",
    "merged_target",
    "merge_undone",
    "deleted",
    "restored",
    "updated",
    "limit_adjusted",
    name="categoryaction",
)
TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "personal_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("categories", sa.JSON(), nullable=False),
        sa.Column("global_settings", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("version >= 1", name="ck_personal_budget_version_positive"),
    )
    op.create_index(
        "ix_personal_budgets_household", "personal_budgets", ["household_id"]
    )
    op.create_index(
        "uq_personal_budget_one_active",
        "personal_budgets",
        ["household_id"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "monthly_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("personal_budget_id", sa.Integer()),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("categories", sa.JSON(), nullable=False),
        sa.Column("original_categories", sa.JSON(), nullable=False),
        sa.Column("global_settings", sa.JSON(), nullable=False),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("adjustment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("source_budget_version", sa.Integer()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "household_id", "year", "month", name="uq_monthly_budget_household_month"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_monthly_budget_month"),
        sa.CheckConstraint(
            "adjustment_count >= 0", name="ck_monthly_budget_adjustments_positive"
        ),
    )

    op.create_table(
        "scheduled_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column("current_limit_cents", sa.Integer(), nullable=False),
        sa.Column("new_limit_cents", sa.Integer(), nullable=False),
        sa.Column("kind", ADJUSTMENT_KIND, nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("effective_year", sa.Integer(), nullable=False),
        sa.Column("effective_month", sa.Integer(), nullable=False),
        sa.Column("status", ADJUSTMENT_STATUS, nullable=False),
        sa.Column("category_metadata", sa.JSON(none_as_null=True)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("applied_at", sa.DateTime()),
        sa.Column("cancelled_at", sa.DateTime()),
        sa.CheckConstraint("new_limit_cents >= 0", name="ck_adjustment_new_limit_positive"),
        sa.CheckConstraint(
            "effective_month BETWEEN 1 AND 12", name="ck_adjustment_effective_month"
        ),
    )
    op.create_index(
        "ix_adjustments_household_effective_status",
        "scheduled_adjustments",
        ["household_id", "effective_year", "effective_month", "status"],
    )
    op.create_index(
        "uq_adjustment_pending_category_month",
        "scheduled_adjustments",
        ["household_id", "category_name", "effective_year", "effective_month"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "category_adjustment_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column("adjustment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_increased_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "total_decreased_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("first_adjusted_at", sa.DateTime()),
        sa.Column("last_adjusted_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint(
            "household_id", "category_name", name="uq_adjustment_history_category"
        ),
    )

    op.create_table(
        "category_merge_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("source_name", sa.String(length=100), nullable=False),
        sa.Column("target_name", sa.String(length=100), nullable=False),
        sa.Column("merged_transaction_ids", sa.JSON(), nullable=False),
        sa.Column("source_definitions", sa.JSON(), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("last_event_id", sa.Integer()),
        sa.Column("undone_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_merge_records_household", "category_merge_records", ["household_id"]
    )

    op.create_table(
        "category_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column("action", CATEGORY_ACTION, nullable=False),
        sa.Column("merge_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_category_events_household_name",
        "category_events",
        ["household_id", "category_name"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_household_date", "transactions", ["household_id", "date"]
    )
    op.create_index(
        "ix_transactions_household_category",
        "transactions",
        ["household_id", "category_name"],
    )

    op.create_table(
        "alert_views",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("alert_id", sa.String(length=200), nullable=False),
        sa.Column("viewed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "household_id", "user_id", "alert_id", name="uq_alert_view_user_alert"
        ),
    )


def downgrade():
    op.drop_table("alert_views")
    op.drop_index("ix_transactions_household_category", table_name="transactions")
    op.drop_index("ix_transactions_household_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_category_events_household_name", table_name="category_events")
    op.drop_table("category_events")
    op.drop_index("ix_merge_records_household", table_name="category_merge_records")
    op.drop_table("category_merge_records")
    op.drop_table("category_adjustment_history")
    op.drop_index(
        "uq_adjustment_pending_category_month", table_name="scheduled_adjustments"
    )
    op.drop_index(
        "ix_adjustments_household_effective_status", table_name="scheduled_adjustments"
    )
    op.drop_table("scheduled_adjustments")
    op.drop_table("monthly_budgets")
    op.drop_index("uq_personal_budget_one_active", table_name="personal_budgets")
    op.drop_index("ix_personal_budgets_household", table_name="personal_budgets")
    op.drop_table("personal_budgets")
    bind = op.get_bind()
    for enum in (TRANSACTION_TYPE, CATEGORY_ACTION, ADJUSTMENT_STATUS, ADJUSTMENT_KIND):
        enum.drop(bind, checkfirst=True)
