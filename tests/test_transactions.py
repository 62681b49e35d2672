from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import analysis
from database import Base
from errors import NotFoundError, ValidationError
from models import TransactionType
from periods import Period
from schemas import CategoryConfig, PersonalBudgetIn, TransactionIn
from services import AlertViewService, PersonalBudgetService, TransactionService


def _baseline(session: Session, household_id: int = 1):
    return PersonalBudgetService(session, household_id).create(
        PersonalBudgetIn(
            name="Household",
            categories={
                "Groceries": CategoryConfig(monthly_limit_cents=100_000),
                "Dining": CategoryConfig(monthly_limit_cents=40_000),
                "Cat": CategoryConfig(monthly_limit_cents=5_000),
                "Car": CategoryConfig(monthly_limit_cents=20_000),
            },
        )
    )


def _expense(day: date, category: str, amount: int = 1_000) -> TransactionIn:
    return TransactionIn(
        date=day,
        type=TransactionType.expense,
        amount_cents=amount,
        category_name=category,
    )


def test_category_names_are_resolved_against_known_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _baseline(session)
        service = TransactionService(session)

        assert service.resolve_category_name(" groceries ") == "Groceries"
        assert service.resolve_category_name("Dinning") == "Dining"
        with pytest.raises(ValidationError, match="ambiguous"):
            service.resolve_category_name("Cap")
        with pytest.raises(ValidationError, match="does not exist"):
            service.resolve_category_name("Electronics")
        with pytest.raises(ValidationError):
            service.resolve_category_name("   ")


def test_create_stores_the_canonical_name() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _baseline(session)
        service = TransactionService(session)

        txn = service.create(_expense(date(2025, 5, 3), "DINING"))

        assert txn.category_name == "Dining"
        assert txn.note is None
        assert service.get(txn.id).amount_cents == 1_000


def test_list_for_period_and_delete() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _baseline(session)
        service = TransactionService(session)
        early = service.create(_expense(date(2025, 5, 1), "Dining"))
        late = service.create(_expense(date(2025, 5, 31), "Groceries"))
        service.create(_expense(date(2025, 6, 1), "Dining"))
        may = Period("2025-05", date(2025, 5, 1), date(2025, 5, 31))

        assert [t.id for t in service.list_for_period(may)] == [late.id, early.id]
        assert [t.id for t in service.list_for_period(may, "Dining")] == [early.id]
        assert len(service.for_month(2025, 6)) == 1

        service.delete(early.id)

        with pytest.raises(NotFoundError):
            service.get(early.id)


def test_transactions_are_scoped_to_their_household() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _baseline(session, household_id=1)
        txn = TransactionService(session, household_id=1).create(
            _expense(date(2025, 5, 3), "Dining")
        )
        other = TransactionService(session, household_id=2)

        with pytest.raises(NotFoundError):
            other.get(txn.id)
        with pytest.raises(ValidationError):
            other.resolve_category_name("Dining")


def _alert(alert_id: str) -> analysis.Alert:
    return analysis.Alert(
        id=alert_id,
        category="Dining",
        kind=analysis.AlertKind.warning,
        severity="medium",
        message="",
        amount_cents=0,
        percentage=0.0,
    )


def test_alert_views_are_tracked_per_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = AlertViewService(session, household_id=1, user_id=1)
        bob = AlertViewService(session, household_id=1, user_id=2)
        first = "warning:Dining:2025-05:80"
        second = "exceeded:Dining:2025-05:100"

        assert alice.mark_viewed([first, first, "  "]) == 1
        assert alice.mark_viewed([first, second]) == 1

        assert alice.viewed_ids() == {first, second}
        assert bob.viewed_ids() == set()
        alerts = [_alert(first), _alert(second)]
        assert alice.unviewed(alerts) == []
        assert [a.id for a in bob.unviewed(alerts)] == [first, second]


def test_names_resolve_to_the_active_budget_spelling() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = PersonalBudgetService(session)
        budgets.create(
            PersonalBudgetIn(
                name="Last year",
                categories={"dining": CategoryConfig(monthly_limit_cents=30_000)},
            )
        )
        current = budgets.create(
            PersonalBudgetIn(
                name="This year",
                categories={"Dining": CategoryConfig(monthly_limit_cents=40_000)},
            )
        )
        budgets.set_active(current.id)
        service = TransactionService(session)

        txn = service.create(_expense(date(2025, 5, 3), "DINING", 12_000))
        # An exact key from an older budget still maps onto the active spelling.
        older = service.create(_expense(date(2025, 5, 4), "dining", 3_000))

        assert txn.category_name == "Dining"
        assert older.category_name == "Dining"
        result = analysis.analyze_performance(
            service.for_month(2025, 5), 5, 2025, current.categories
        )
        assert result.categories[0].actual_cents == 15_000


def test_clearing_viewed_alerts_only_touches_one_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = AlertViewService(session, household_id=1, user_id=1)
        bob = AlertViewService(session, household_id=1, user_id=2)
        alice.mark_viewed(["warning:Dining:2025-05:80", "exceeded:Dining:2025-05:100"])
        bob.mark_viewed(["warning:Dining:2025-05:80"])

        assert alice.clear() == 2

        assert alice.viewed_ids() == set()
        assert bob.viewed_ids() == {"warning:Dining:2025-05:80"}
        assert alice.clear() == 0
