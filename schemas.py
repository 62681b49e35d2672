from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AdjustmentKind, AdjustmentStatus, TransactionType

DEFAULT_CATEGORY_COLOR = "#3B82F6"
DEFAULT_WARNING_THRESHOLD = 80


class CategoryConfig(BaseModel):
    monthly_limit_cents: int = Field(..., ge=0)
    warning_threshold: int = Field(default=DEFAULT_WARNING_THRESHOLD, ge=0, le=100)
    is_active: bool = True
    color: str = Field(default=DEFAULT_CATEGORY_COLOR, max_length=9)
    description: str = Field(default="", max_length=500)


class GlobalSettings(BaseModel):
    currency: str = Field(default="USD", min_length=3, max_length=3)
    warning_notifications: bool = True
    email_alerts: bool = False
    active_category_names: list[str] = Field(default_factory=list)


class PersonalBudgetIn(BaseModel):
    # Emptiness is checked by the service so it surfaces as a ValidationError.
    name: str = Field(..., max_length=120)
    categories: dict[str, CategoryConfig]
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)
    notes: Optional[str] = None


class PersonalBudgetPatch(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    categories: Optional[dict[str, CategoryConfig]] = None
    global_settings: Optional[GlobalSettings] = None
    notes: Optional[str] = None


class BudgetMetadataIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = None


class ResetOptions(BaseModel):
    include_monthly: bool = False
    include_transactions: bool = False
    confirm: bool = False


class CategoryLimitIn(BaseModel):
    category_name: str = Field(..., min_length=1, max_length=100)
    new_limit_cents: int
    notes: Optional[str] = None


class AdjustmentIn(BaseModel):
    category_name: str = Field(..., min_length=1, max_length=100)
    current_limit_cents: int = Field(..., ge=0)
    new_limit_cents: int
    reason: Optional[str] = Field(default=None, max_length=500)
    effective_year: Optional[int] = Field(default=None, ge=1970, le=3000)
    effective_month: Optional[int] = Field(default=None, ge=1, le=12)


class CategoryCreateIn(BaseModel):
    name: str = Field(..., max_length=100)
    color: str = Field(default=DEFAULT_CATEGORY_COLOR, max_length=9)
    monthly_limit_cents: int = Field(default=0, ge=0)
    warning_threshold: int = Field(default=DEFAULT_WARNING_THRESHOLD, ge=0, le=100)
    description: str = Field(default="", max_length=500)
    schedule_for_next_month: bool = False


class CategoryRenameIn(BaseModel):
    new_name: str = Field(..., max_length=100)


class CategoryMergeIn(BaseModel):
    source_name: str = Field(..., min_length=1, max_length=100)
    target_name: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(default=None, max_length=500)


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category_name: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = Field(default=None, max_length=200)


class AlertViewIn(BaseModel):
    alert_ids: list[str] = Field(..., min_length=1)


class PersonalBudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    household_id: int
    name: str
    version: int
    categories: dict[str, CategoryConfig]
    global_settings: GlobalSettings
    is_active: bool
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime


class MonthlyBudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    household_id: int
    personal_budget_id: Optional[int]
    year: int
    month: int
    categories: dict[str, CategoryConfig]
    original_categories: dict[str, CategoryConfig]
    global_settings: GlobalSettings
    is_locked: bool
    adjustment_count: int
    source_budget_version: Optional[int]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime


class AdjustmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_name: str
    current_limit_cents: int
    new_limit_cents: int
    amount_cents: int
    kind: AdjustmentKind
    reason: Optional[str]
    effective_year: int
    effective_month: int
    status: AdjustmentStatus
    created_at: datetime
    applied_at: Optional[datetime]


class MergeRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_name: str
    target_name: str
    merged_transaction_ids: list[int]
    reason: Optional[str]
    undone_at: Optional[datetime]
    created_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    type: TransactionType
    amount_cents: int
    category_name: str
    note: Optional[str]
