from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, NotFoundError, ValidationError
from models import MonthlyBudget, PersonalBudget, TransactionType
from schemas import (
    BudgetMetadataIn,
    CategoryConfig,
    GlobalSettings,
    PersonalBudgetIn,
    PersonalBudgetPatch,
    ResetOptions,
    TransactionIn,
)
from services import (
    MonthlyBudgetService,
    NoActiveBudget,
    PersonalBudgetService,
    TransactionService,
)


def _budget_in(name: str = "Household", **limits: int) -> PersonalBudgetIn:
    limits = limits or {"Groceries": 150_000, "Transport": 60_000}
    return PersonalBudgetIn(
        name=name,
        categories={
            category: CategoryConfig(monthly_limit_cents=cents)
            for category, cents in limits.items()
        },
    )


def _active_count(session: Session, household_id: int = 1) -> int:
    return session.scalar(
        select(func.count(PersonalBudget.id)).where(
            PersonalBudget.household_id == household_id,
            PersonalBudget.is_active.is_(True),
        )
    )


def test_first_budget_auto_activates_and_later_ones_stay_inactive() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = PersonalBudgetService(session)
        first = service.create(_budget_in("Base"))
        second = service.create(_budget_in("Lean", Groceries=100_000))

        assert first.is_active is True
        assert first.version == 1
        assert second.is_active is False
        assert service.get_active().id == first.id
        assert first.global_settings["active_category_names"] == [
            "Groceries",
            "Transport",
        ]


def test_create_rejects_empty_name_and_empty_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = PersonalBudgetService(session)
        with pytest.raises(ValidationError):
            service.create(_budget_in("   "))
        with pytest.raises(ValidationError):
            service.create(PersonalBudgetIn(name="Empty", categories={}))
        with pytest.raises(ValidationError, match="unique"):
            service.create(
                PersonalBudgetIn(
                    name="Dupes",
                    categories={
                        "Food": CategoryConfig(monthly_limit_cents=1),
                        "food ": CategoryConfig(monthly_limit_cents=2),
                    },
                )
            )
        assert isinstance(service.get_active(), NoActiveBudget)


def test_set_active_keeps_exactly_one_active_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = PersonalBudgetService(session)
        budgets = [service.create(_budget_in(f"Plan {i}")) for i in range(3)]

        for budget in [budgets[2], budgets[1], budgets[1], budgets[0]]:
            service.set_active(budget.id)
            assert _active_count(session) == 1
            assert service.get_active().id == budget.id


def test_households_are_isolated() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        mine = PersonalBudgetService(session, household_id=1).create(_budget_in())
        theirs = PersonalBudgetService(session, household_id=2).create(_budget_in())

        assert mine.is_active and theirs.is_active
        with pytest.raises(NotFoundError):
            PersonalBudgetService(session, household_id=2).get(mine.id)


def test_update_bumps_version_and_leaves_snapshots_alone() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = PersonalBudgetService(session)
        budget = service.create(_budget_in())
        june = MonthlyBudgetService(session).get_or_create(2025, 6)

        updated = service.update(
            budget.id,
            PersonalBudgetPatch(
                categories={
                    "Groceries": CategoryConfig(monthly_limit_cents=200_000),
                    "Transport": CategoryConfig(monthly_limit_cents=60_000),
                }
            ),
        )

        assert updated.version == 2
        assert updated.categories["Groceries"]["monthly_limit_cents"] == 200_000
        session.refresh(june)
        assert june.categories["Groceries"]["monthly_limit_cents"] == 150_000
        assert june.source_budget_version == 1


def test_update_metadata_does_not_bump_version() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = PersonalBudgetService(session)
        budget = service.create(_budget_in())

        renamed = service.update_metadata(
            budget.id, BudgetMetadataIn(name="Family plan", notes="2025 edition")
        )

        assert renamed.name == "Family plan"
        assert renamed.notes == "2025 edition"
        assert renamed.version == 1


def test_global_settings_are_normalized() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = PersonalBudgetService(session).create(
            PersonalBudgetIn(
                name="Euro",
                categories={
                    "Rent": CategoryConfig(monthly_limit_cents=90_000),
                    "Hobby": CategoryConfig(monthly_limit_cents=5_000, is_active=False),
                },
                global_settings=GlobalSettings(currency="eur"),
            )
        )

        assert budget.global_settings["currency"] == "EUR"
        assert budget.global_settings["active_category_names"] == ["Rent"]


def test_delete_active_requires_confirmation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = PersonalBudgetService(session)
        budget = service.create(_budget_in())
        MonthlyBudgetService(session).get_or_create(2025, 6)

        with pytest.raises(ConflictError):
            service.delete(budget.id)

        service.delete(budget.id, confirm_active=True)

        assert isinstance(service.get_active(), NoActiveBudget)
        # Snapshots are independent copies and survive their baseline.
        assert session.scalar(select(func.count(MonthlyBudget.id))) == 1
        assert isinstance(
            MonthlyBudgetService(session).get_or_create(2025, 7), NoActiveBudget
        )


def test_reset_all_reports_counts_per_entity_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = PersonalBudgetService(session)
        service.create(_budget_in("One"))
        service.create(_budget_in("Two"))
        MonthlyBudgetService(session).get_or_create(2025, 5)
        MonthlyBudgetService(session).get_or_create(2025, 6)
        TransactionService(session).create(
            TransactionIn(
                date=date(2025, 6, 3),
                type=TransactionType.expense,
                amount_cents=4_200,
                category_name="Groceries",
            )
        )

        with pytest.raises(ValidationError):
            service.reset_all(ResetOptions(include_monthly=True))

        result = service.reset_all(ResetOptions(include_monthly=True, confirm=True))

        assert result.budgets_deleted == 2
        assert result.monthly_budgets_deleted == 2
        assert result.transactions_deleted is None
        assert isinstance(service.get_active(), NoActiveBudget)

        again = service.reset_all(
            ResetOptions(include_monthly=True, include_transactions=True, confirm=True)
        )
        assert again.budgets_deleted == 0
        assert again.monthly_budgets_deleted == 0
        assert again.transactions_deleted == 1
