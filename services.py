from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Optional, Union

from rapidfuzz.distance import Levenshtein
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import analysis
from config import get_settings
from errors import (
    ConflictError,
    ConsistencyError,
    LockedStateError,
    NotFoundError,
    ValidationError,
)
from models import (
    AdjustmentKind,
    AdjustmentStatus,
    AlertView,
    CategoryAction,
    CategoryAdjustmentHistory,
    CategoryEvent,
    CategoryMergeRecord,
    MonthlyBudget,
    PersonalBudget,
    ScheduledAdjustment,
    Transaction,
    TransactionType,
    utcnow,
)
from periods import (
    Period,
    add_months,
    format_month,
    local_today,
    month_end,
    month_key,
    month_start,
    next_month,
    validate_month,
)
from saga import Saga
from schemas import (
    BudgetMetadataIn,
    CategoryConfig,
    CategoryCreateIn,
    GlobalSettings,
    PersonalBudgetIn,
    PersonalBudgetPatch,
    ResetOptions,
    TransactionIn,
)

logger = logging.getLogger(__name__)


def get_current_household_id() -> int:
    return get_settings().default_household_id


def get_current_user_id() -> int:
    return get_settings().default_user_id


@dataclass(frozen=True)
class NoActiveBudget:
    """Returned instead of a budget when the household has no active baseline."""

    household_id: int


@dataclass(frozen=True)
class ResetResult:
    budgets_deleted: int
    monthly_budgets_deleted: Optional[int] = None
    transactions_deleted: Optional[int] = None


@dataclass(frozen=True)
class AdjustmentSummary:
    effective_year: int
    effective_month: int
    effective_label: str
    adjustment_count: int
    total_increase_cents: int
    total_decrease_cents: int
    net_change_cents: int
    adjustments: list[ScheduledAdjustment] = field(default_factory=list)


@dataclass(frozen=True)
class CategoryView:
    name: str
    monthly_limit_cents: int
    warning_threshold: int
    is_active: bool
    color: str
    description: str
    scheduled_for: Optional[str] = None


@dataclass(frozen=True)
class RenameResult:
    old_name: str
    new_name: str
    transactions_updated: int
    personal_budgets_updated: int
    monthly_budgets_updated: int


@dataclass(frozen=True)
class MergeResult:
    merge_id: int
    source_name: str
    target_name: str
    transactions_updated: int
    personal_budgets_updated: int
    monthly_budgets_updated: int


@dataclass(frozen=True)
class UndoMergeResult:
    merge_id: int
    transactions_reverted: int
    personal_budgets_restored: int
    monthly_budgets_restored: int


BudgetOrMissing = Union[PersonalBudget, NoActiveBudget]
SnapshotOrMissing = Union[MonthlyBudget, NoActiveBudget]


def _clean_name(name: Optional[str], what: str = "Category name") -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError(f"{what} must not be empty")
    return cleaned


def _validate_limit(value: int, what: str = "Limit") -> None:
    if value < 0:
        raise ValidationError(f"{what} must not be negative", {"value": value})


def _find_key(categories: dict, name: str) -> Optional[str]:
    if name in categories:
        return name
    lowered = name.lower()
    for key in categories:
        if key.lower() == lowered:
            return key
    return None


def _suggestion(name: str, candidates: list[str], max_distance: int = 2) -> str:
    lowered = name.lower()
    scored = [
        (Levenshtein.distance(lowered, candidate.lower()), candidate)
        for candidate in candidates
    ]
    scored = [item for item in scored if item[0] <= max_distance]
    if not scored:
        return ""
    return f" Did you mean '{min(scored)[1]}'?"


def _rename_key(categories: dict, old: str, new: str) -> dict:
    return {
        (new if key.lower() == old.lower() else key): copy.deepcopy(value)
        for key, value in categories.items()
    }


def _rename_listed(settings: dict, old: str, new: str) -> dict:
    updated = copy.deepcopy(settings)
    names = updated.get("active_category_names") or []
    updated["active_category_names"] = [
        new if n.lower() == old.lower() else n for n in names
    ]
    return updated


def _is_listed(settings: dict, name: str) -> bool:
    lowered = name.lower()
    return any(n.lower() == lowered for n in settings.get("active_category_names") or [])


def _unlist(settings: dict, name: str) -> dict:
    updated = copy.deepcopy(settings)
    names = updated.get("active_category_names") or []
    updated["active_category_names"] = [n for n in names if n.lower() != name.lower()]
    return updated


def _list(settings: dict, name: str) -> dict:
    updated = copy.deepcopy(settings)
    names = list(updated.get("active_category_names") or [])
    if name not in names:
        names.append(name)
    updated["active_category_names"] = names
    return updated


def _bump_version(budget: PersonalBudget) -> None:
    budget.version = PersonalBudget.version + 1


def _apply_limit(
    categories: dict, name: str, new_limit_cents: int, metadata: Optional[dict]
) -> dict:
    updated = copy.deepcopy(categories)
    key = _find_key(updated, name)
    if key is None:
        config = dict(metadata or {})
        config["monthly_limit_cents"] = new_limit_cents
        updated[name] = CategoryConfig(**config).model_dump()
    else:
        updated[key] = {**updated[key], "monthly_limit_cents": new_limit_cents}
    return updated


def _view(name: str, config: dict) -> CategoryView:
    return CategoryView(name=name, **CategoryConfig.model_validate(config).model_dump())


def _category_maps(session: Session, household_id: int) -> list[dict]:
    # Active baseline first, then older baselines, then the newest snapshots.
    budgets = session.scalars(
        select(PersonalBudget.categories)
        .where(PersonalBudget.household_id == household_id)
        .order_by(PersonalBudget.is_active.desc(), PersonalBudget.id.desc())
    ).all()
    snapshots = session.scalars(
        select(MonthlyBudget.categories)
        .where(MonthlyBudget.household_id == household_id)
        .order_by(MonthlyBudget.year.desc(), MonthlyBudget.month.desc())
    ).all()
    return [categories or {} for categories in [*budgets, *snapshots]]


def known_category_names(session: Session, household_id: int) -> dict[str, str]:
    """Lower-cased name -> stored name for every category any budget defines.

    When spellings differ between budgets the active baseline's wins.
    """
    known: dict[str, str] = {}
    for categories in _category_maps(session, household_id):
        for name in categories:
            known.setdefault(name.lower(), name)
    return known


def resolve_category_key(
    session: Session, household_id: int, name: str
) -> Optional[str]:
    """Stored spelling for ``name``: an exact key anywhere beats a
    case-insensitive match, which prefers the active baseline."""
    maps = _category_maps(session, household_id)
    if any(name in categories for categories in maps):
        return name
    lowered = name.lower()
    for categories in maps:
        for key in categories:
            if key.lower() == lowered:
                return key
    return None


def record_category_event(
    session: Session,
    household_id: int,
    name: str,
    action: CategoryAction,
    merge_id: Optional[int] = None,
) -> CategoryEvent:
    """Log a change to a category; merge undo refuses once newer events exist."""
    event = CategoryEvent(
        household_id=household_id,
        category_name=name,
        action=action,
        merge_id=merge_id,
    )
    session.add(event)
    session.flush()
    return event


def _changed_categories(before: dict, after: dict) -> list[str]:
    """Names added, removed, re-cased or re-configured between two category maps."""
    old = {key.lower(): (key, config) for key, config in before.items()}
    new = {key.lower(): (key, config) for key, config in after.items()}
    return [
        (new.get(lowered) or old[lowered])[0]
        for lowered in sorted(old.keys() | new.keys())
        if old.get(lowered) != new.get(lowered)
    ]


class PersonalBudgetService:
    def __init__(self, session: Session, household_id: Optional[int] = None) -> None:
        self.session = session
        self.household_id = household_id or get_current_household_id()

    def get(self, budget_id: int) -> PersonalBudget:
        budget = self.session.get(PersonalBudget, budget_id)
        if not budget or budget.household_id != self.household_id:
            raise NotFoundError("Personal budget not found", {"budget_id": budget_id})
        return budget

    def get_active(self) -> BudgetOrMissing:
        budget = self.session.scalar(
            select(PersonalBudget).where(
                PersonalBudget.household_id == self.household_id,
                PersonalBudget.is_active.is_(True),
            )
        )
        return budget or NoActiveBudget(self.household_id)

    def list_history(self) -> list[PersonalBudget]:
        stmt = (
            select(PersonalBudget)
            .where(PersonalBudget.household_id == self.household_id)
            .order_by(PersonalBudget.created_at.desc(), PersonalBudget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def _clean_categories(self, categories: dict[str, CategoryConfig]) -> dict:
        if not categories:
            raise ValidationError("A budget needs at least one category")
        cleaned: dict[str, dict] = {}
        seen: set[str] = set()
        for raw_name, config in categories.items():
            name = _clean_name(raw_name)
            if name.lower() in seen:
                raise ValidationError(
                    "Category names must be unique", {"category": name}
                )
            seen.add(name.lower())
            cleaned[name] = config.model_dump()
        return cleaned

    def _clean_settings(self, settings: GlobalSettings, categories: dict) -> dict:
        dumped = settings.model_dump()
        dumped["currency"] = dumped["currency"].upper()
        if not dumped["active_category_names"]:
            dumped["active_category_names"] = [
                name for name, config in categories.items() if config["is_active"]
            ]
        return dumped

    def create(self, data: PersonalBudgetIn) -> PersonalBudget:
        name = _clean_name(data.name, "Budget name")
        categories = self._clean_categories(data.categories)
        settings = self._clean_settings(data.global_settings, categories)
        activate = isinstance(self.get_active(), NoActiveBudget)

        budget = PersonalBudget(
            household_id=self.household_id,
            name=name,
            version=1,
            categories=categories,
            global_settings=settings,
            is_active=activate,
            notes=data.notes,
        )
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError:
            # Another request activated a budget first; keep this one as history.
            self.session.rollback()
            budget.is_active = False
            self.session.add(budget)
            self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"personal_budget_created: household={self.household_id} "
            f"budget={budget.id} active={budget.is_active}"
        )
        return budget

    def update(self, budget_id: int, patch: PersonalBudgetPatch) -> PersonalBudget:
        budget = self.get(budget_id)
        name = (
            _clean_name(patch.name, "Budget name")
            if patch.name is not None
            else budget.name
        )
        categories = (
            self._clean_categories(patch.categories)
            if patch.categories is not None
            else copy.deepcopy(budget.categories)
        )
        if patch.global_settings is not None:
            settings = self._clean_settings(patch.global_settings, categories)
        else:
            settings = copy.deepcopy(budget.global_settings)

        changed = _changed_categories(budget.categories, categories)
        budget.name = name
        budget.categories = categories
        budget.global_settings = settings
        if "notes" in patch.model_fields_set:
            budget.notes = patch.notes
        _bump_version(budget)
        for category in changed:
            record_category_event(
                self.session, self.household_id, category, CategoryAction.updated
            )
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update_metadata(self, budget_id: int, data: BudgetMetadataIn) -> PersonalBudget:
        budget = self.get(budget_id)
        if data.name is not None:
            budget.name = _clean_name(data.name, "Budget name")
        if "notes" in data.model_fields_set:
            budget.notes = data.notes
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def set_active(self, budget_id: int) -> PersonalBudget:
        budget = self.get(budget_id)
        if budget.is_active:
            return budget

        self.session.execute(
            update(PersonalBudget)
            .where(
                PersonalBudget.household_id == self.household_id,
                PersonalBudget.is_active.is_(True),
                PersonalBudget.id != budget.id,
            )
            .values(is_active=False)
        )
        budget.is_active = True
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "Another budget was activated concurrently", {"budget_id": budget_id}
            ) from exc
        self.session.refresh(budget)
        logger.info(
            f"personal_budget_activated: household={self.household_id} budget={budget.id}"
        )
        return budget

    def delete(self, budget_id: int, confirm_active: bool = False) -> None:
        budget = self.get(budget_id)
        if budget.is_active and not confirm_active:
            raise ConflictError(
                "Deleting the active budget requires confirmation",
                {"budget_id": budget_id},
            )
        self.session.delete(budget)
        self.session.commit()
        logger.info(
            f"personal_budget_deleted: household={self.household_id} budget={budget_id}"
        )

    def reset_all(self, options: ResetOptions) -> ResetResult:
        if not options.confirm:
            raise ValidationError("Resetting all budgets requires confirmation")

        budgets_deleted = self._delete_all(PersonalBudget)
        monthly_deleted = (
            self._delete_all(MonthlyBudget) if options.include_monthly else None
        )
        transactions_deleted = (
            self._delete_all(Transaction) if options.include_transactions else None
        )
        logger.warning(
            f"budgets_reset: household={self.household_id} budgets={budgets_deleted} "
            f"monthly={monthly_deleted} transactions={transactions_deleted}"
        )
        return ResetResult(
            budgets_deleted=budgets_deleted,
            monthly_budgets_deleted=monthly_deleted,
            transactions_deleted=transactions_deleted,
        )

    def _delete_all(self, model) -> int:
        result = self.session.execute(
            delete(model)
            .where(model.household_id == self.household_id)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount or 0


class MonthlyBudgetService:
    def __init__(self, session: Session, household_id: Optional[int] = None) -> None:
        self.session = session
        self.household_id = household_id or get_current_household_id()

    def get(self, year: int, month: int) -> Optional[MonthlyBudget]:
        return self.session.scalar(
            select(MonthlyBudget)
            .where(
                MonthlyBudget.household_id == self.household_id,
                MonthlyBudget.year == year,
                MonthlyBudget.month == month,
            )
            .execution_options(populate_existing=True)
        )

    def get_by_id(self, monthly_budget_id: int) -> MonthlyBudget:
        snapshot = self.session.get(
            MonthlyBudget, monthly_budget_id, populate_existing=True
        )
        if not snapshot or snapshot.household_id != self.household_id:
            raise NotFoundError(
                "Monthly budget not found", {"monthly_budget_id": monthly_budget_id}
            )
        return snapshot

    def get_or_create(self, year: int, month: int) -> SnapshotOrMissing:
        validate_month(year, month)
        existing = self.get(year, month)
        if existing:
            return existing

        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, NoActiveBudget):
            return active

        snapshot = MonthlyBudget(
            household_id=self.household_id,
            personal_budget_id=active.id,
            year=year,
            month=month,
            categories=copy.deepcopy(active.categories),
            original_categories=copy.deepcopy(active.categories),
            global_settings=copy.deepcopy(active.global_settings),
            is_locked=False,
            adjustment_count=0,
            source_budget_version=active.version,
        )
        self.session.add(snapshot)
        try:
            self.session.commit()
        except IntegrityError:
            # Lost the race for this month; the winner's snapshot is authoritative.
            self.session.rollback()
            existing = self.get(year, month)
            if existing is None:
                raise
            return existing
        logger.info(
            f"monthly_budget_created: household={self.household_id} "
            f"month={year:04d}-{month:02d} source_version={snapshot.source_budget_version}"
        )
        return snapshot

    def list_for_year(self, year: int) -> list[MonthlyBudget]:
        stmt = (
            select(MonthlyBudget)
            .where(
                MonthlyBudget.household_id == self.household_id,
                MonthlyBudget.year == year,
            )
            .order_by(MonthlyBudget.month)
        )
        return self.session.scalars(stmt).all()

    def list_recent(self, limit: int = 12) -> list[MonthlyBudget]:
        stmt = (
            select(MonthlyBudget)
            .where(MonthlyBudget.household_id == self.household_id)
            .order_by(MonthlyBudget.year.desc(), MonthlyBudget.month.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def write_categories(
        self, snapshot: MonthlyBudget, categories: dict, notes: Optional[str] = None
    ) -> None:
        """Guarded write: succeeds only if the snapshot is unlocked and unchanged
        since it was read, and bumps adjustment_count in the same statement.
        On failure the session is rolled back before raising."""
        values: dict[str, Any] = {
            "categories": categories,
            "adjustment_count": MonthlyBudget.adjustment_count + 1,
            "updated_at": utcnow(),
        }
        if notes:
            values["notes"] = notes
        result = self.session.execute(
            update(MonthlyBudget)
            .where(
                MonthlyBudget.id == snapshot.id,
                MonthlyBudget.is_locked.is_(False),
                MonthlyBudget.adjustment_count == snapshot.adjustment_count,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.session.expire(snapshot)
            return

        self.session.refresh(snapshot)
        locked = snapshot.is_locked
        label = format_month(snapshot.year, snapshot.month)
        details = {"monthly_budget_id": snapshot.id}
        self.session.rollback()
        if locked:
            raise LockedStateError(f"{label} is locked", details)
        raise ConflictError("Monthly budget was modified concurrently, retry", details)

    def update_category_limit(
        self,
        monthly_budget_id: int,
        category_name: str,
        new_limit_cents: int,
        notes: Optional[str] = None,
    ) -> MonthlyBudget:
        snapshot = self.get_by_id(monthly_budget_id)
        if snapshot.is_locked:
            raise LockedStateError(
                f"{format_month(snapshot.year, snapshot.month)} is locked",
                {"monthly_budget_id": snapshot.id},
            )
        _validate_limit(new_limit_cents, "New limit")
        name = _clean_name(category_name)
        key = _find_key(snapshot.categories, name)
        if key is None:
            raise NotFoundError(
                f"Category '{name}' is not part of this month's budget."
                + _suggestion(name, list(snapshot.categories)),
                {"monthly_budget_id": snapshot.id},
            )

        categories = _apply_limit(snapshot.categories, key, new_limit_cents, None)
        self.write_categories(snapshot, categories, notes)
        record_category_event(
            self.session, self.household_id, key, CategoryAction.limit_adjusted
        )
        self.session.commit()
        self.session.refresh(snapshot)
        logger.info(
            f"monthly_limit_updated: household={self.household_id} "
            f"month={snapshot.year:04d}-{snapshot.month:02d} category={key} "
            f"limit_cents={new_limit_cents}"
        )
        return snapshot

    def _require(self, year: int, month: int) -> MonthlyBudget:
        snapshot = self.get_or_create(year, month)
        if isinstance(snapshot, NoActiveBudget):
            raise NotFoundError(
                "No monthly budget exists and there is no active budget to derive one",
                {"year": year, "month": month},
            )
        return snapshot

    def lock(self, year: int, month: int) -> MonthlyBudget:
        snapshot = self._require(year, month)
        snapshot.is_locked = True
        self.session.commit()
        self.session.refresh(snapshot)
        logger.info(
            f"monthly_budget_locked: household={self.household_id} "
            f"month={year:04d}-{month:02d}"
        )
        return snapshot

    def unlock(self, year: int, month: int) -> MonthlyBudget:
        snapshot = self._require(year, month)
        snapshot.is_locked = False
        self.session.commit()
        self.session.refresh(snapshot)
        logger.info(
            f"monthly_budget_unlocked: household={self.household_id} "
            f"month={year:04d}-{month:02d}"
        )
        return snapshot

    @staticmethod
    def total_monthly_limit(snapshot: MonthlyBudget) -> int:
        return sum(
            int(config.get("monthly_limit_cents", 0))
            for config in snapshot.categories.values()
            if config.get("is_active", True)
        )


class AdjustmentService:
    def __init__(self, session: Session, household_id: Optional[int] = None) -> None:
        self.session = session
        self.household_id = household_id or get_current_household_id()

    def get(self, adjustment_id: int) -> ScheduledAdjustment:
        adjustment = self.session.get(ScheduledAdjustment, adjustment_id)
        if not adjustment or adjustment.household_id != self.household_id:
            raise NotFoundError(
                "Scheduled adjustment not found", {"adjustment_id": adjustment_id}
            )
        return adjustment

    def schedule(
        self,
        category_name: str,
        current_limit_cents: int,
        new_limit_cents: int,
        reason: Optional[str] = None,
        *,
        effective_year: Optional[int] = None,
        effective_month: Optional[int] = None,
        category_metadata: Optional[dict] = None,
        today: Optional[date] = None,
    ) -> ScheduledAdjustment:
        name = _clean_name(category_name)
        _validate_limit(current_limit_cents, "Current limit")
        _validate_limit(new_limit_cents, "New limit")
        if category_metadata is None and new_limit_cents == current_limit_cents:
            raise ValidationError(
                "New limit equals the current limit", {"category": name}
            )

        today = today or local_today()
        if effective_year is None and effective_month is None:
            year, month = next_month(today)
        elif effective_year is None or effective_month is None:
            raise ValidationError("Both effective year and month are required")
        else:
            year, month = effective_year, effective_month
            validate_month(year, month)
            if month_key(year, month) <= month_key(today.year, today.month):
                raise ValidationError(
                    "Adjustments must take effect in a future month",
                    {"effective": f"{year:04d}-{month:02d}"},
                )

        duplicate = self.session.scalar(
            select(ScheduledAdjustment.id).where(
                ScheduledAdjustment.household_id == self.household_id,
                func.lower(ScheduledAdjustment.category_name) == name.lower(),
                ScheduledAdjustment.effective_year == year,
                ScheduledAdjustment.effective_month == month,
                ScheduledAdjustment.status == AdjustmentStatus.pending,
            )
        )
        if duplicate:
            raise ConflictError(
                f"An adjustment for '{name}' is already scheduled for "
                f"{format_month(year, month)}",
                {"adjustment_id": duplicate},
            )

        adjustment = ScheduledAdjustment(
            household_id=self.household_id,
            category_name=name,
            current_limit_cents=current_limit_cents,
            new_limit_cents=new_limit_cents,
            kind=(
                AdjustmentKind.increase
                if new_limit_cents >= current_limit_cents
                else AdjustmentKind.decrease
            ),
            reason=reason,
            effective_year=year,
            effective_month=month,
            status=AdjustmentStatus.pending,
            category_metadata=category_metadata,
        )
        self.session.add(adjustment)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                f"An adjustment for '{name}' is already scheduled for "
                f"{format_month(year, month)}"
            ) from exc
        self.session.refresh(adjustment)
        logger.info(
            f"adjustment_scheduled: household={self.household_id} id={adjustment.id} "
            f"category={name} effective={year:04d}-{month:02d} "
            f"limit_cents={current_limit_cents}->{new_limit_cents}"
        )
        return adjustment

    def cancel(self, adjustment_id: int) -> ScheduledAdjustment:
        adjustment = self.get(adjustment_id)
        result = self.session.execute(
            update(ScheduledAdjustment)
            .where(
                ScheduledAdjustment.id == adjustment.id,
                ScheduledAdjustment.status == AdjustmentStatus.pending,
            )
            .values(status=AdjustmentStatus.cancelled, cancelled_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise ConflictError(
                "Only pending adjustments can be cancelled",
                {"adjustment_id": adjustment_id, "status": adjustment.status.value},
            )
        self.session.commit()
        self.session.refresh(adjustment)
        return adjustment

    def cancel_all_for_month(self, year: int, month: int) -> int:
        result = self.session.execute(
            update(ScheduledAdjustment)
            .where(
                ScheduledAdjustment.household_id == self.household_id,
                ScheduledAdjustment.effective_year == year,
                ScheduledAdjustment.effective_month == month,
                ScheduledAdjustment.status == AdjustmentStatus.pending,
            )
            .values(status=AdjustmentStatus.cancelled, cancelled_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount or 0

    def _for_month(
        self, year: int, month: int, status: AdjustmentStatus
    ) -> list[ScheduledAdjustment]:
        stmt = (
            select(ScheduledAdjustment)
            .where(
                ScheduledAdjustment.household_id == self.household_id,
                ScheduledAdjustment.effective_year == year,
                ScheduledAdjustment.effective_month == month,
                ScheduledAdjustment.status == status,
            )
            .order_by(ScheduledAdjustment.category_name, ScheduledAdjustment.id)
        )
        return self.session.scalars(stmt).all()

    def pending_for_month(self, year: int, month: int) -> list[ScheduledAdjustment]:
        return self._for_month(year, month, AdjustmentStatus.pending)

    def applied_for_month(self, year: int, month: int) -> list[ScheduledAdjustment]:
        return self._for_month(year, month, AdjustmentStatus.applied)

    def list_pending(self) -> list[ScheduledAdjustment]:
        stmt = (
            select(ScheduledAdjustment)
            .where(
                ScheduledAdjustment.household_id == self.household_id,
                ScheduledAdjustment.status == AdjustmentStatus.pending,
            )
            .order_by(
                ScheduledAdjustment.effective_year,
                ScheduledAdjustment.effective_month,
                ScheduledAdjustment.category_name,
            )
        )
        return self.session.scalars(stmt).all()

    def next_month_summary(self, today: Optional[date] = None) -> AdjustmentSummary:
        today = today or local_today()
        year, month = next_month(today)
        adjustments = self.pending_for_month(year, month)
        increase = sum(
            a.amount_cents for a in adjustments if a.kind == AdjustmentKind.increase
        )
        decrease = sum(
            a.amount_cents for a in adjustments if a.kind == AdjustmentKind.decrease
        )
        return AdjustmentSummary(
            effective_year=year,
            effective_month=month,
            effective_label=format_month(year, month),
            adjustment_count=len(adjustments),
            total_increase_cents=increase,
            total_decrease_cents=decrease,
            net_change_cents=increase - decrease,
            adjustments=list(adjustments),
        )

    def _due_criteria(self, today: date) -> tuple:
        return (
            ScheduledAdjustment.household_id == self.household_id,
            ScheduledAdjustment.status == AdjustmentStatus.pending,
            or_(
                ScheduledAdjustment.effective_year < today.year,
                and_(
                    ScheduledAdjustment.effective_year == today.year,
                    ScheduledAdjustment.effective_month <= today.month,
                ),
            ),
        )

    def count_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        return int(
            self.session.scalar(
                select(func.count(ScheduledAdjustment.id)).where(
                    *self._due_criteria(today)
                )
            )
            or 0
        )

    def auto_apply_due_adjustments(self, today: Optional[date] = None) -> int:
        """Apply every pending adjustment whose month has arrived.

        Safe to call from any number of concurrent requests: each adjustment is
        claimed with a conditional pending -> applied update, so only one caller
        ever writes its limit. Adjustments targeting a locked month, or a month
        that has no snapshot and no active budget to derive one, stay pending.
        """
        today = today or local_today()
        due = self.session.scalars(
            select(ScheduledAdjustment)
            .where(*self._due_criteria(today))
            .order_by(
                ScheduledAdjustment.effective_year,
                ScheduledAdjustment.effective_month,
                ScheduledAdjustment.id,
            )
        ).all()
        if not due:
            return 0

        monthly = MonthlyBudgetService(self.session, self.household_id)
        applied = sum(1 for adjustment in due if self.apply_one(adjustment, monthly))
        if applied:
            logger.info(
                f"adjustments_applied: household={self.household_id} count={applied} "
                f"due={len(due)}"
            )
        return applied

    def apply_one(
        self, adjustment: ScheduledAdjustment, monthly: MonthlyBudgetService
    ) -> bool:
        adjustment_id = adjustment.id
        name = adjustment.category_name
        year, month = adjustment.effective_year, adjustment.effective_month
        new_limit = adjustment.new_limit_cents
        kind = adjustment.kind
        amount = adjustment.amount_cents
        metadata = adjustment.category_metadata

        snapshot = monthly.get_or_create(year, month)
        if isinstance(snapshot, NoActiveBudget):
            logger.warning(
                f"adjustment_skipped: id={adjustment_id} reason=no_active_budget "
                f"month={year:04d}-{month:02d}"
            )
            return False
        if snapshot.is_locked:
            logger.info(
                f"adjustment_skipped: id={adjustment_id} reason=locked "
                f"month={year:04d}-{month:02d}"
            )
            return False

        claimed = self.session.execute(
            update(ScheduledAdjustment)
            .where(
                ScheduledAdjustment.id == adjustment_id,
                ScheduledAdjustment.status == AdjustmentStatus.pending,
            )
            .values(status=AdjustmentStatus.applied, applied_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            return False

        try:
            monthly.write_categories(
                snapshot, _apply_limit(snapshot.categories, name, new_limit, metadata)
            )
            if get_settings().adjustments_update_baseline:
                self._carry_into_baseline(name, new_limit, metadata)
            self._record_history(name, kind, amount)
            record_category_event(
                self.session, self.household_id, name, CategoryAction.limit_adjusted
            )
            self.session.commit()
        except (LockedStateError, ConflictError) as exc:
            self.session.rollback()
            logger.warning(f"adjustment_deferred: id={adjustment_id} reason={exc}")
            return False
        self.session.expire(adjustment)
        return True

    def _carry_into_baseline(
        self, name: str, new_limit_cents: int, metadata: Optional[dict]
    ) -> None:
        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, NoActiveBudget):
            return
        is_new = _find_key(active.categories, name) is None
        if is_new and not metadata:
            return
        active.categories = _apply_limit(active.categories, name, new_limit_cents, metadata)
        if is_new:
            active.global_settings = _list(active.global_settings, name)
        _bump_version(active)

    def _record_history(self, name: str, kind: AdjustmentKind, amount: int) -> None:
        now = utcnow()
        history = self.category_history(name)
        increase = amount if kind == AdjustmentKind.increase else 0
        decrease = amount if kind == AdjustmentKind.decrease else 0
        if history is None:
            self.session.add(
                CategoryAdjustmentHistory(
                    household_id=self.household_id,
                    category_name=name,
                    adjustment_count=1,
                    total_increased_cents=increase,
                    total_decreased_cents=decrease,
                    first_adjusted_at=now,
                    last_adjusted_at=now,
                )
            )
            return
        history.adjustment_count = CategoryAdjustmentHistory.adjustment_count + 1
        history.total_increased_cents = (
            CategoryAdjustmentHistory.total_increased_cents + increase
        )
        history.total_decreased_cents = (
            CategoryAdjustmentHistory.total_decreased_cents + decrease
        )
        history.last_adjusted_at = now

    def category_history(self, name: str) -> Optional[CategoryAdjustmentHistory]:
        return self.session.scalar(
            select(CategoryAdjustmentHistory).where(
                CategoryAdjustmentHistory.household_id == self.household_id,
                CategoryAdjustmentHistory.category_name == name,
            )
        )

    def most_adjusted(self, limit: int = 5) -> list[CategoryAdjustmentHistory]:
        stmt = (
            select(CategoryAdjustmentHistory)
            .where(CategoryAdjustmentHistory.household_id == self.household_id)
            .order_by(
                CategoryAdjustmentHistory.adjustment_count.desc(),
                CategoryAdjustmentHistory.category_name,
            )
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


class CategoryService:
    """Category lifecycle across baselines, snapshots and transactions.

    Rename, merge and undo touch several entity types, so they run as a saga
    inside one session: each step flushes, and a failing step unwinds the
    completed ones before the session is rolled back.
    """

    def __init__(self, session: Session, household_id: Optional[int] = None) -> None:
        self.session = session
        self.household_id = household_id or get_current_household_id()

    def _budgets(self) -> list[PersonalBudget]:
        stmt = (
            select(PersonalBudget)
            .where(PersonalBudget.household_id == self.household_id)
            .order_by(PersonalBudget.id)
        )
        return self.session.scalars(stmt).all()

    def _snapshots(self) -> list[MonthlyBudget]:
        stmt = (
            select(MonthlyBudget)
            .where(MonthlyBudget.household_id == self.household_id)
            .order_by(MonthlyBudget.year, MonthlyBudget.month)
        )
        return self.session.scalars(stmt).all()

    def _active_budget(self) -> PersonalBudget:
        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, NoActiveBudget):
            raise NotFoundError("No active budget; create one first")
        return active

    def _require_known(self, name: str) -> str:
        actual = resolve_category_key(self.session, self.household_id, name)
        if actual is None:
            known = known_category_names(self.session, self.household_id)
            raise NotFoundError(
                f"Category '{name}' does not exist."
                + _suggestion(name, list(known.values()))
            )
        return actual

    def _pending_additions(self) -> list[ScheduledAdjustment]:
        pending = self.session.scalars(
            select(ScheduledAdjustment).where(
                ScheduledAdjustment.household_id == self.household_id,
                ScheduledAdjustment.status == AdjustmentStatus.pending,
            )
        ).all()
        return [a for a in pending if a.category_metadata]

    def _record_event(
        self, name: str, action: CategoryAction, merge_id: Optional[int] = None
    ) -> CategoryEvent:
        return record_category_event(
            self.session, self.household_id, name, action, merge_id
        )

    def _run_saga(self, saga: Saga) -> dict[str, Any]:
        try:
            results = saga.run()
            self.session.commit()
        except ConsistencyError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise ConsistencyError(
                f"{saga.name} could not be committed", original_error=exc
            ) from exc
        return results

    def list_categories(self, include_inactive: bool = False) -> list[CategoryView]:
        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, NoActiveBudget):
            return []
        views = [
            _view(name, config)
            for name, config in active.categories.items()
        ]
        if not include_inactive:
            views = [view for view in views if view.is_active]
        return sorted(views, key=lambda view: view.name.lower())

    def create(self, data: CategoryCreateIn, today: Optional[date] = None) -> CategoryView:
        name = _clean_name(data.name)
        active = self._active_budget()
        existing = _find_key(active.categories, name)
        if existing is not None:
            if active.categories[existing].get("is_active", True):
                raise ConflictError(f"Category '{existing}' already exists")
            raise ConflictError(
                f"Category '{existing}' exists but is inactive; restore it instead"
            )
        for pending in self._pending_additions():
            if pending.category_name.lower() == name.lower():
                raise ConflictError(
                    f"Category '{pending.category_name}' is already scheduled to be "
                    f"added in {format_month(pending.effective_year, pending.effective_month)}"
                )

        config = CategoryConfig(
            monthly_limit_cents=data.monthly_limit_cents,
            warning_threshold=data.warning_threshold,
            is_active=True,
            color=data.color,
            description=data.description,
        )
        view = CategoryView(name=name, **config.model_dump())

        if data.schedule_for_next_month:
            adjustment = AdjustmentService(self.session, self.household_id).schedule(
                name,
                0,
                data.monthly_limit_cents,
                reason="New category",
                category_metadata=config.model_dump(exclude={"monthly_limit_cents"}),
                today=today,
            )
            self._record_event(name, CategoryAction.created)
            self.session.commit()
            return replace(
                view,
                scheduled_for=(
                    f"{adjustment.effective_year:04d}-{adjustment.effective_month:02d}"
                ),
            )

        categories = copy.deepcopy(active.categories)
        categories[name] = config.model_dump()
        active.categories = categories
        active.global_settings = _list(active.global_settings, name)
        _bump_version(active)
        self._record_event(name, CategoryAction.created)
        self.session.commit()
        logger.info(f"category_created: household={self.household_id} category={name}")
        return view

    # rename

    def rename(self, old_name: str, new_name: str) -> RenameResult:
        old = self._require_known(_clean_name(old_name))
        new = _clean_name(new_name, "New category name")
        if old == new:
            raise ValidationError("New name must differ from the current name")
        clash = known_category_names(self.session, self.household_id).get(new.lower())
        if clash is not None and clash.lower() != old.lower():
            raise ConflictError(f"Category '{clash}' already exists")
        for pending in self._pending_additions():
            if (
                pending.category_name.lower() == new.lower()
                and pending.category_name.lower() != old.lower()
            ):
                raise ConflictError(
                    f"Category '{pending.category_name}' is already scheduled to be added"
                )

        saga = (
            Saga("rename_category")
            .step(
                "transactions",
                lambda: self._move_transactions(old, new),
                lambda ids: self._move_transaction_ids(ids, old),
            )
            .step(
                "personal_budgets",
                lambda: self._rename_in_budgets(old, new),
                self._restore_budgets,
            )
            .step(
                "monthly_budgets",
                lambda: self._rename_in_snapshots(old, new),
                self._restore_snapshots,
            )
            .step(
                "adjustments",
                lambda: self._rename_adjustments(old, new),
                lambda ids: self._rename_adjustments_back(ids, old),
            )
            .step("events", lambda: self._record_rename_events(old, new))
        )
        results = self._run_saga(saga)
        logger.info(
            f"category_renamed: household={self.household_id} from={old} to={new} "
            f"transactions={len(results['transactions'])}"
        )
        return RenameResult(
            old_name=old,
            new_name=new,
            transactions_updated=len(results["transactions"]),
            personal_budgets_updated=len(results["personal_budgets"]),
            monthly_budgets_updated=len(results["monthly_budgets"]),
        )

    def _move_transactions(self, from_name: str, to_name: str) -> list[int]:
        ids = list(
            self.session.scalars(
                select(Transaction.id)
                .where(
                    Transaction.household_id == self.household_id,
                    func.lower(Transaction.category_name) == from_name.lower(),
                )
                .order_by(Transaction.id)
            )
        )
        self._move_transaction_ids(ids, to_name)
        return ids

    def _move_transaction_ids(self, ids: Optional[list[int]], to_name: str) -> None:
        if not ids:
            return
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.household_id == self.household_id,
                Transaction.id.in_(ids),
            )
            .values(category_name=to_name, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()

    def _budget_state(self, budget: PersonalBudget) -> dict:
        return {
            "categories": copy.deepcopy(budget.categories),
            "global_settings": copy.deepcopy(budget.global_settings),
            "version": budget.version,
        }

    def _snapshot_state(self, snapshot: MonthlyBudget) -> dict:
        return {
            "categories": copy.deepcopy(snapshot.categories),
            "original_categories": copy.deepcopy(snapshot.original_categories),
            "global_settings": copy.deepcopy(snapshot.global_settings),
        }

    def _rename_in_budgets(self, old: str, new: str) -> dict[int, dict]:
        previous: dict[int, dict] = {}
        for budget in self._budgets():
            listed = _is_listed(budget.global_settings, old)
            if _find_key(budget.categories, old) is None and not listed:
                continue
            previous[budget.id] = self._budget_state(budget)
            budget.categories = _rename_key(budget.categories, old, new)
            budget.global_settings = _rename_listed(budget.global_settings, old, new)
            _bump_version(budget)
        self.session.flush()
        return previous

    def _rename_in_snapshots(self, old: str, new: str) -> dict[int, dict]:
        # Locks guard limits, not names: locked months are renamed too.
        previous: dict[int, dict] = {}
        for snapshot in self._snapshots():
            if (
                _find_key(snapshot.categories, old) is None
                and _find_key(snapshot.original_categories, old) is None
            ):
                continue
            previous[snapshot.id] = self._snapshot_state(snapshot)
            snapshot.categories = _rename_key(snapshot.categories, old, new)
            snapshot.original_categories = _rename_key(
                snapshot.original_categories, old, new
            )
            snapshot.global_settings = _rename_listed(snapshot.global_settings, old, new)
        self.session.flush()
        return previous

    def _restore_budgets(self, previous: Optional[dict[int, dict]]) -> None:
        for budget_id, state in (previous or {}).items():
            budget = self.session.get(PersonalBudget, budget_id)
            if budget is None:
                continue
            budget.categories = state["categories"]
            budget.global_settings = state["global_settings"]
            budget.version = state["version"]
        self.session.flush()

    def _restore_snapshots(self, previous: Optional[dict[int, dict]]) -> None:
        for snapshot_id, state in (previous or {}).items():
            snapshot = self.session.get(MonthlyBudget, snapshot_id)
            if snapshot is None:
                continue
            snapshot.categories = state["categories"]
            snapshot.original_categories = state["original_categories"]
            snapshot.global_settings = state["global_settings"]
        self.session.flush()

    def _rename_adjustments(self, old: str, new: str) -> dict[str, list[int]]:
        adjustment_ids = list(
            self.session.scalars(
                select(ScheduledAdjustment.id).where(
                    ScheduledAdjustment.household_id == self.household_id,
                    func.lower(ScheduledAdjustment.category_name) == old.lower(),
                )
            )
        )
        history_ids = list(
            self.session.scalars(
                select(CategoryAdjustmentHistory.id).where(
                    CategoryAdjustmentHistory.household_id == self.household_id,
                    CategoryAdjustmentHistory.category_name == old,
                )
            )
        )
        renamed = {"adjustments": adjustment_ids, "history": history_ids}
        self._rename_adjustments_back(renamed, new)
        return renamed

    def _rename_adjustments_back(
        self, renamed: Optional[dict[str, list[int]]], name: str
    ) -> None:
        if not renamed:
            return
        if renamed["adjustments"]:
            self.session.execute(
                update(ScheduledAdjustment)
                .where(ScheduledAdjustment.id.in_(renamed["adjustments"]))
                .values(category_name=name)
                .execution_options(synchronize_session="fetch")
            )
        if renamed["history"]:
            self.session.execute(
                update(CategoryAdjustmentHistory)
                .where(CategoryAdjustmentHistory.id.in_(renamed["history"]))
                .values(category_name=name)
                .execution_options(synchronize_session="fetch")
            )
        self.session.flush()

    def _record_rename_events(self, old: str, new: str) -> None:
        self._record_event(old, CategoryAction.renamed_from)
        self._record_event(new, CategoryAction.renamed_to)

    # merge

    def merge(
        self, source_name: str, target_name: str, reason: Optional[str] = None
    ) -> MergeResult:
        source = _clean_name(source_name, "Source category")
        target = _clean_name(target_name, "Target category")
        if source.lower() == target.lower():
            raise ConflictError("Cannot merge a category into itself")
        source = self._require_known(source)
        target = self._require_known(target)

        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, PersonalBudget):
            target_key = _find_key(active.categories, target)
            target_config = active.categories[target_key] if target_key else None
            if target_config is not None and not target_config.get("is_active", True):
                raise ConflictError(
                    f"Target category '{target}' is inactive; restore it first"
                )

        saga = (
            Saga("merge_categories")
            .step(
                "transactions",
                lambda: self._move_transactions(source, target),
                lambda ids: self._move_transaction_ids(ids, source),
            )
            .step(
                "personal_budgets",
                lambda: self._deactivate_in_budgets(source),
                self._restore_budgets,
            )
            .step(
                "monthly_budgets",
                lambda: self._deactivate_in_snapshots(source),
                self._restore_snapshots,
            )
            .step(
                "record",
                lambda: self._record_merge(source, target, reason, saga.results),
                self._discard_merge,
            )
        )
        results = self._run_saga(saga)
        record = results["record"]
        logger.info(
            f"category_merged: household={self.household_id} merge={record.id} "
            f"source={source} target={target} transactions={len(results['transactions'])}"
        )
        return MergeResult(
            merge_id=record.id,
            source_name=source,
            target_name=target,
            transactions_updated=len(results["transactions"]),
            personal_budgets_updated=len(results["personal_budgets"]),
            monthly_budgets_updated=len(results["monthly_budgets"]),
        )

    def _deactivate_in_budgets(self, name: str) -> dict[int, dict]:
        previous: dict[int, dict] = {}
        for budget in self._budgets():
            key = _find_key(budget.categories, name)
            if key is None:
                continue
            previous[budget.id] = {**self._budget_state(budget), "key": key}
            categories = copy.deepcopy(budget.categories)
            categories[key]["is_active"] = False
            budget.categories = categories
            budget.global_settings = _unlist(budget.global_settings, key)
            _bump_version(budget)
        self.session.flush()
        return previous

    def _deactivate_in_snapshots(self, name: str) -> dict[int, dict]:
        previous: dict[int, dict] = {}
        for snapshot in self._snapshots():
            key = _find_key(snapshot.categories, name)
            if key is None:
                continue
            previous[snapshot.id] = {**self._snapshot_state(snapshot), "key": key}
            categories = copy.deepcopy(snapshot.categories)
            categories[key]["is_active"] = False
            snapshot.categories = categories
            snapshot.global_settings = _unlist(snapshot.global_settings, key)
        self.session.flush()
        return previous

    @staticmethod
    def _source_definitions(previous_states: dict[int, dict]) -> dict[str, dict]:
        return {
            str(owner_id): {
                "key": previous["key"],
                "config": previous["categories"][previous["key"]],
                "listed": _is_listed(previous["global_settings"], previous["key"]),
            }
            for owner_id, previous in previous_states.items()
        }

    def _record_merge(
        self, source: str, target: str, reason: Optional[str], results: dict[str, Any]
    ) -> CategoryMergeRecord:
        record = CategoryMergeRecord(
            household_id=self.household_id,
            source_name=source,
            target_name=target,
            merged_transaction_ids=list(results["transactions"]),
            source_definitions={
                "personal": self._source_definitions(results["personal_budgets"]),
                "monthly": self._source_definitions(results["monthly_budgets"]),
            },
            reason=reason,
        )
        self.session.add(record)
        self.session.flush()
        self._record_event(source, CategoryAction.merged_source, record.id)
        last = self._record_event(target, CategoryAction.merged_target, record.id)
        record.last_event_id = last.id
        self.session.flush()
        return record

    def _discard_merge(self, record: Optional[CategoryMergeRecord]) -> None:
        if record is None:
            return
        self.session.execute(
            delete(CategoryEvent)
            .where(CategoryEvent.merge_id == record.id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(record)
        self.session.flush()

    def get_merge(self, merge_id: int) -> CategoryMergeRecord:
        record = self.session.get(CategoryMergeRecord, merge_id)
        if not record or record.household_id != self.household_id:
            raise NotFoundError("Merge record not found", {"merge_id": merge_id})
        return record

    def merge_history(self) -> list[CategoryMergeRecord]:
        stmt = (
            select(CategoryMergeRecord)
            .where(CategoryMergeRecord.household_id == self.household_id)
            .order_by(CategoryMergeRecord.created_at.desc(), CategoryMergeRecord.id.desc())
        )
        return self.session.scalars(stmt).all()

    def undo_merge(self, merge_id: int) -> UndoMergeResult:
        record = self.get_merge(merge_id)
        if record.undone_at is not None:
            raise ConflictError("Merge was already undone", {"merge_id": merge_id})

        touched_since = self.session.scalar(
            select(func.count(CategoryEvent.id)).where(
                CategoryEvent.household_id == self.household_id,
                func.lower(CategoryEvent.category_name).in_(
                    [record.source_name.lower(), record.target_name.lower()]
                ),
                CategoryEvent.id > (record.last_event_id or 0),
            )
        )
        if touched_since:
            raise ConflictError(
                "Categories changed after the merge; it can no longer be undone",
                {"merge_id": merge_id},
            )

        source, target = record.source_name, record.target_name
        definitions = copy.deepcopy(record.source_definitions or {})
        saga = (
            Saga("undo_merge")
            .step(
                "transactions",
                lambda: self._revert_transactions(record),
                lambda ids: self._move_transaction_ids(ids, target),
            )
            .step(
                "personal_budgets",
                lambda: self._restore_definitions(
                    PersonalBudget, definitions.get("personal", {}), source
                ),
                self._restore_budgets,
            )
            .step(
                "monthly_budgets",
                lambda: self._restore_definitions(
                    MonthlyBudget, definitions.get("monthly", {}), source
                ),
                self._restore_snapshots,
            )
            .step(
                "record",
                lambda: self._mark_undone(record),
                lambda _: self._unmark_undone(record),
            )
        )
        results = self._run_saga(saga)
        logger.info(
            f"category_merge_undone: household={self.household_id} merge={merge_id} "
            f"transactions={len(results['transactions'])}"
        )
        return UndoMergeResult(
            merge_id=merge_id,
            transactions_reverted=len(results["transactions"]),
            personal_budgets_restored=len(results["personal_budgets"]),
            monthly_budgets_restored=len(results["monthly_budgets"]),
        )

    def _revert_transactions(self, record: CategoryMergeRecord) -> list[int]:
        recorded = list(record.merged_transaction_ids or [])
        if not recorded:
            return []
        # Transactions re-categorized since the merge keep their new category.
        ids = list(
            self.session.scalars(
                select(Transaction.id).where(
                    Transaction.household_id == self.household_id,
                    Transaction.id.in_(recorded),
                    Transaction.category_name == record.target_name,
                )
            )
        )
        self._move_transaction_ids(ids, record.source_name)
        return ids

    def _restore_definitions(self, model, definitions: dict, source: str) -> dict[int, dict]:
        previous: dict[int, dict] = {}
        for raw_id, entry in definitions.items():
            owner = self.session.get(model, int(raw_id))
            if owner is None or owner.household_id != self.household_id:
                continue
            if model is PersonalBudget:
                previous[owner.id] = self._budget_state(owner)
            else:
                previous[owner.id] = self._snapshot_state(owner)
            key = entry.get("key", source)
            categories = copy.deepcopy(owner.categories)
            categories[key] = entry["config"]
            owner.categories = categories
            if entry.get("listed"):
                owner.global_settings = _list(owner.global_settings, key)
            if model is PersonalBudget:
                _bump_version(owner)
        self.session.flush()
        return previous

    def _mark_undone(self, record: CategoryMergeRecord) -> None:
        record.undone_at = utcnow()
        self._record_event(record.source_name, CategoryAction.merge_undone, record.id)
        self._record_event(record.target_name, CategoryAction.merge_undone, record.id)

    def _unmark_undone(self, record: CategoryMergeRecord) -> None:
        record.undone_at = None
        self.session.execute(
            delete(CategoryEvent)
            .where(
                CategoryEvent.merge_id == record.id,
                CategoryEvent.action == CategoryAction.merge_undone,
            )
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()

    # delete / restore

    def _budgets_defining(
        self, name: str
    ) -> tuple[str, list[tuple[PersonalBudget, str]]]:
        """Resolve ``name`` and pair every baseline defining it with its own
        spelling of the key."""
        cleaned = _clean_name(name)
        budgets = self._budgets()
        ordered = sorted(budgets, key=lambda budget: not budget.is_active)
        spelling = None
        if any(cleaned in budget.categories for budget in ordered):
            spelling = cleaned
        else:
            for budget in ordered:
                spelling = _find_key(budget.categories, cleaned)
                if spelling is not None:
                    break
        if spelling is None:
            raise NotFoundError(f"Category '{cleaned}' does not exist")
        owners = [(budget, _find_key(budget.categories, spelling)) for budget in budgets]
        return spelling, [(budget, key) for budget, key in owners if key is not None]

    def count_transactions(self, name: str) -> int:
        return int(
            self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.household_id == self.household_id,
                    func.lower(Transaction.category_name) == name.lower(),
                )
            )
            or 0
        )

    def delete(self, name: str, hard: bool = False) -> None:
        spelling, owners = self._budgets_defining(name)
        if hard:
            referenced = self.count_transactions(spelling)
            if referenced:
                raise ConflictError(
                    f"Category '{spelling}' is used by {referenced} transactions; "
                    "deactivate or merge it instead",
                    {"transactions": referenced},
                )
            for budget, key in owners:
                categories = copy.deepcopy(budget.categories)
                del categories[key]
                budget.categories = categories
                budget.global_settings = _unlist(budget.global_settings, key)
                _bump_version(budget)
            self.session.execute(
                update(ScheduledAdjustment)
                .where(
                    ScheduledAdjustment.household_id == self.household_id,
                    func.lower(ScheduledAdjustment.category_name) == spelling.lower(),
                    ScheduledAdjustment.status == AdjustmentStatus.pending,
                )
                .values(status=AdjustmentStatus.cancelled, cancelled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        else:
            for budget, key in owners:
                categories = copy.deepcopy(budget.categories)
                categories[key]["is_active"] = False
                budget.categories = categories
                budget.global_settings = _unlist(budget.global_settings, key)
                _bump_version(budget)
        self._record_event(spelling, CategoryAction.deleted)
        self.session.commit()
        logger.info(
            f"category_deleted: household={self.household_id} category={spelling} "
            f"hard={hard} budgets={len(owners)}"
        )

    def restore(self, name: str) -> CategoryView:
        spelling, owners = self._budgets_defining(name)
        for budget, key in owners:
            if budget.is_active and key != spelling and budget.categories[key].get(
                "is_active", True
            ):
                raise ConflictError(
                    f"An active category named '{key}' already exists"
                )
        lowered = spelling.lower()
        for pending in self._pending_additions():
            if (
                pending.category_name != spelling
                and pending.category_name.lower() == lowered
            ):
                raise ConflictError(
                    f"Category '{pending.category_name}' is scheduled to be added"
                )

        for budget, key in owners:
            categories = copy.deepcopy(budget.categories)
            categories[key]["is_active"] = True
            budget.categories = categories
            budget.global_settings = _list(budget.global_settings, key)
            _bump_version(budget)
        self._record_event(spelling, CategoryAction.restored)
        self.session.commit()
        budget, key = next(
            ((b, k) for b, k in owners if b.is_active), owners[0]
        )
        return _view(key, budget.categories[key])


class TransactionService:
    def __init__(self, session: Session, household_id: Optional[int] = None) -> None:
        self.session = session
        self.household_id = household_id or get_current_household_id()

    def resolve_category_name(self, raw_name: str) -> str:
        name = _clean_name(raw_name)
        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, PersonalBudget):
            key = _find_key(active.categories, name)
            if key is not None:
                return key
        known = known_category_names(self.session, self.household_id)
        if name.lower() in known:
            return known[name.lower()]

        close = sorted(
            actual
            for lowered, actual in known.items()
            if Levenshtein.distance(name.lower(), lowered) <= 1
        )
        if len(close) == 1:
            return close[0]
        if len(close) > 1:
            raise ValidationError(
                f"Category '{name}' is ambiguous", {"candidates": ", ".join(close)}
            )
        raise ValidationError(
            f"Category '{name}' does not exist in any budget."
            + _suggestion(name, list(known.values()))
        )

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            household_id=self.household_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            category_name=self.resolve_category_name(data.category_name),
            note=(data.note or "").strip() or None,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.household_id != self.household_id:
            raise NotFoundError("Transaction not found", {"transaction_id": transaction_id})
        return txn

    def list_for_period(
        self, period: Period, category_name: Optional[str] = None
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.household_id == self.household_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if category_name:
            stmt = stmt.where(Transaction.category_name == category_name)
        return self.session.scalars(stmt).all()

    def for_month(self, year: int, month: int) -> list[Transaction]:
        period = Period(
            f"{year:04d}-{month:02d}", month_start(year, month), month_end(year, month)
        )
        return self.list_for_period(period)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


class AnalysisService:
    def __init__(self, session: Session, household_id: Optional[int] = None) -> None:
        self.session = session
        self.household_id = household_id or get_current_household_id()

    def _baseline_for(self, snapshot: MonthlyBudget) -> Optional[PersonalBudget]:
        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, PersonalBudget):
            return active
        if snapshot.personal_budget_id is None:
            return None
        # No active baseline left; fall back to the one the month was derived from.
        budget = self.session.get(PersonalBudget, snapshot.personal_budget_id)
        if budget is None or budget.household_id != self.household_id:
            return None
        return budget

    def compare_month(
        self, year: int, month: int
    ) -> Union[analysis.ComparisonSummary, NoActiveBudget]:
        snapshot = MonthlyBudgetService(self.session, self.household_id).get_or_create(
            year, month
        )
        if isinstance(snapshot, NoActiveBudget):
            return snapshot
        baseline = self._baseline_for(snapshot)
        if baseline is None:
            return NoActiveBudget(self.household_id)
        return analysis.compare(
            snapshot.categories,
            baseline.categories,
            baseline_label=baseline.name,
            month_label=format_month(year, month),
            currency=snapshot.global_settings.get("currency", "USD"),
        )

    def compare_month_to_original(
        self, year: int, month: int
    ) -> Union[analysis.ComparisonSummary, NoActiveBudget]:
        snapshot = MonthlyBudgetService(self.session, self.household_id).get_or_create(
            year, month
        )
        if isinstance(snapshot, NoActiveBudget):
            return snapshot
        return analysis.compare(
            snapshot.categories,
            snapshot.original_categories,
            baseline_label=f"Start of {format_month(year, month)}",
            month_label=format_month(year, month),
            currency=snapshot.global_settings.get("currency", "USD"),
        )

    def performance_for_month(
        self, year: int, month: int
    ) -> Union[analysis.PerformanceAnalysis, NoActiveBudget]:
        snapshot = MonthlyBudgetService(self.session, self.household_id).get_or_create(
            year, month
        )
        if isinstance(snapshot, NoActiveBudget):
            return snapshot
        transactions = TransactionService(self.session, self.household_id).for_month(
            year, month
        )
        settings = snapshot.global_settings or {}
        return analysis.analyze_performance(
            transactions,
            month,
            year,
            snapshot.categories,
            currency=settings.get("currency", "USD"),
            warning_notifications=settings.get("warning_notifications", True),
        )

    def spending_trend(self, months: int = 6, today: Optional[date] = None) -> list[dict]:
        """Expense totals per month, oldest first, ending with the current month."""
        today = today or local_today()
        trend = []
        for offset in range(months - 1, -1, -1):
            year, month = add_months(today.year, today.month, -offset)
            spent = self.session.scalar(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.household_id == self.household_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(
                        month_start(year, month), month_end(year, month)
                    ),
                )
            )
            trend.append(
                {
                    "year": year,
                    "month": month,
                    "label": format_month(year, month),
                    "spent_cents": int(spent or 0),
                }
            )
        return trend

    def category_accuracy(
        self, start: date, end: date
    ) -> Union[list[analysis.CategoryAccuracy], NoActiveBudget]:
        if end < start:
            raise ValidationError("Start date must be before end date")
        active = PersonalBudgetService(self.session, self.household_id).get_active()
        if isinstance(active, NoActiveBudget):
            return active
        first, last = month_key(start.year, start.month), month_key(end.year, end.month)
        snapshots = self.session.scalars(
            select(MonthlyBudget).where(
                MonthlyBudget.household_id == self.household_id,
                (MonthlyBudget.year * 12 + MonthlyBudget.month - 1).between(first, last),
            )
        ).all()
        transactions = self.session.scalars(
            select(Transaction).where(
                Transaction.household_id == self.household_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
            )
        ).all()
        return analysis.category_accuracy(
            transactions, active.categories, snapshots, start, end
        )


class AlertViewService:
    def __init__(
        self,
        session: Session,
        household_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.household_id = household_id or get_current_household_id()
        self.user_id = user_id or get_current_user_id()

    def viewed_ids(self) -> set[str]:
        rows = self.session.scalars(
            select(AlertView.alert_id).where(
                AlertView.household_id == self.household_id,
                AlertView.user_id == self.user_id,
            )
        )
        return set(rows)

    def mark_viewed(self, alert_ids: list[str]) -> int:
        """Record alerts as viewed; returns how many were newly marked."""
        fresh = sorted({a.strip() for a in alert_ids if a.strip()} - self.viewed_ids())
        marked = 0
        for alert_id in fresh:
            self.session.add(
                AlertView(
                    household_id=self.household_id,
                    user_id=self.user_id,
                    alert_id=alert_id,
                )
            )
            try:
                self.session.commit()
            except IntegrityError:
                # Marked by a concurrent request; already viewed either way.
                self.session.rollback()
                continue
            marked += 1
        return marked

    def unviewed(self, alerts: list[analysis.Alert]) -> list[analysis.Alert]:
        viewed = self.viewed_ids()
        return [alert for alert in alerts if alert.id not in viewed]

    def clear(self) -> int:
        """Forget every viewed alert for this user; returns how many were removed."""
        result = self.session.execute(
            delete(AlertView).where(
                AlertView.household_id == self.household_id,
                AlertView.user_id == self.user_id,
            )
        )
        self.session.commit()
        logger.info(
            f"alert_views_cleared: household={self.household_id} user={self.user_id} "
            f"removed={result.rowcount}"
        )
        return result.rowcount
