from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class AdjustmentKind(str, Enum):
    increase = "increase"
    decrease = "decrease"


class AdjustmentStatus(str, Enum):
    pending = "pending"
    applied = "applied"
    cancelled = "cancelled"


class CategoryAction(str, Enum):
    created = "created"
    renamed_from = "renamed_from"
    renamed_to = "renamed_to"
    merged_source = "merged_source"
    merged_target = "merged_target"
    merge_undone = "merge_undone"
    deleted = "deleted"
    restored = "restored"
    updated = "updated"
    limit_adjusted = "limit_adjusted"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class PersonalBudget(Base, TimestampMixin):
    __tablename__ = "personal_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # name -> CategoryConfig dict; always reassigned, never mutated in place
    categories: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    global_settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("version >= 1", name="ck_personal_budget_version_positive"),
        Index("ix_personal_budgets_household", "household_id"),
        Index(
            "uq_personal_budget_one_active",
            "household_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class MonthlyBudget(Base, TimestampMixin):
    __tablename__ = "monthly_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Plain column, not a foreign key: deleting the baseline leaves snapshots be.
    personal_budget_id: Mapped[Optional[int]] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    categories: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    original_categories: Mapped[dict] = mapped_column(
        JSON, nullable=False, default=dict
    )
    global_settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    adjustment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_budget_version: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint(
            "household_id", "year", "month", name="uq_monthly_budget_household_month"
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_monthly_budget_month"),
        CheckConstraint(
            "adjustment_count >= 0", name="ck_monthly_budget_adjustments_positive"
        ),
    )


class ScheduledAdjustment(Base):
    __tablename__ = "scheduled_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    current_limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    new_limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[AdjustmentKind] = mapped_column(SAEnum(AdjustmentKind), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    effective_year: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AdjustmentStatus] = mapped_column(
        SAEnum(AdjustmentStatus), nullable=False, default=AdjustmentStatus.pending
    )
    # Set only when the adjustment introduces a brand-new category.
    category_metadata: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    @property
    def amount_cents(self) -> int:
        return abs(self.new_limit_cents - self.current_limit_cents)

    __table_args__ = (
        CheckConstraint(
            "new_limit_cents >= 0", name="ck_adjustment_new_limit_positive"
        ),
        CheckConstraint(
            "effective_month BETWEEN 1 AND 12", name="ck_adjustment_effective_month"
        ),
        Index(
            "ix_adjustments_household_effective_status",
            "household_id",
            "effective_year",
            "effective_month",
            "status",
        ),
        Index(
            "uq_adjustment_pending_category_month",
            "household_id",
            "category_name",
            "effective_year",
            "effective_month",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )


class CategoryAdjustmentHistory(Base, TimestampMixin):
    __tablename__ = "category_adjustment_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    adjustment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_increased_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_decreased_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    first_adjusted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_adjusted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    @property
    def net_change_cents(self) -> int:
        return self.total_increased_cents - self.total_decreased_cents

    __table_args__ = (
        UniqueConstraint(
            "household_id", "category_name", name="uq_adjustment_history_category"
        ),
    )


class CategoryMergeRecord(Base):
    __tablename__ = "category_merge_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    source_name: Mapped[str] = mapped_column(String(100), nullable=False)
    target_name: Mapped[str] = mapped_column(String(100), nullable=False)
    merged_transaction_ids: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list
    )
    # {"personal": {budget_id: config}, "monthly": {snapshot_id: config}}
    source_definitions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    last_event_id: Mapped[Optional[int]] = mapped_column(Integer)
    undone_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (Index("ix_merge_records_household", "household_id"),)


class CategoryEvent(Base):
    __tablename__ = "category_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[CategoryAction] = mapped_column(
        SAEnum(CategoryAction), nullable=False
    )
    merge_id: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_category_events_household_name", "household_id", "category_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_transactions_household_date", "household_id", "date"),
        Index(
            "ix_transactions_household_category", "household_id", "category_name"
        ),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class AlertView(Base):
    __tablename__ = "alert_views"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    alert_id: Mapped[str] = mapped_column(String(200), nullable=False)
    viewed_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "household_id", "user_id", "alert_id", name="uq_alert_view_user_alert"
        ),
    )
