from datetime import date
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import analysis
from analysis import AccuracyZone, AlertKind, ComparisonStatus, PerformanceStatus
from database import Base
from errors import ValidationError
from models import TransactionType
from schemas import CategoryConfig, GlobalSettings, PersonalBudgetIn, TransactionIn
from services import (
    AnalysisService,
    MonthlyBudgetService,
    NoActiveBudget,
    PersonalBudgetService,
    TransactionService,
)


def _txn(day: date, amount: int, category: str, kind: str = "expense"):
    return SimpleNamespace(
        date=day, amount_cents=amount, category_name=category, type=kind
    )


def _config(limit: int, threshold: int = 80, active: bool = True) -> dict:
    return CategoryConfig(
        monthly_limit_cents=limit, warning_threshold=threshold, is_active=active
    ).model_dump()


def test_status_and_alerts_are_independent() -> None:
    result = analysis.analyze_performance(
        [_txn(date(2025, 5, 4), 950, "Groceries")],
        5,
        2025,
        {"Groceries": _config(1_000)},
    )

    groceries = result.categories[0]
    assert groceries.status == PerformanceStatus.under
    assert groceries.percent_used == pytest.approx(95.0)
    assert groceries.variance_cents == -50
    [alert] = result.alerts
    assert alert.kind == AlertKind.warning
    assert alert.severity == "medium"
    assert alert.id == "warning:Groceries:2025-05:80"
    assert "95%" in alert.message


def test_exceeded_and_on_target() -> None:
    transactions = [
        _txn(date(2025, 5, 2), 500, "Dining"),
        _txn(date(2025, 5, 3), 300, "Transport"),
        _txn(date(2025, 5, 9), 20, "Pets"),
        _txn(date(2025, 5, 9), 10, "Books"),
        _txn(date(2025, 5, 9), 10, "Gifts"),
    ]
    result = analysis.analyze_performance(
        transactions,
        5,
        2025,
        {
            "Dining": _config(400),
            "Transport": _config(300),
            "Pets": _config(0),
            "Books": _config(1_000),
            "Gifts": _config(50, active=False),
        },
        currency="EUR",
    )

    by_name = {c.category: c for c in result.categories}
    assert set(by_name) == {"Books", "Dining", "Pets", "Transport"}
    assert by_name["Dining"].status == PerformanceStatus.over
    assert by_name["Transport"].status == PerformanceStatus.on_target
    assert by_name["Books"].status == PerformanceStatus.under

    alerts = {a.category: a for a in result.alerts}
    assert set(alerts) == {"Dining", "Pets", "Transport"}
    assert alerts["Dining"].kind == AlertKind.exceeded
    assert alerts["Dining"].severity == "high"
    assert alerts["Dining"].amount_cents == 100
    assert alerts["Dining"].id == "exceeded:Dining:2025-05:100"
    assert "4.00 EUR" in alerts["Dining"].message
    assert alerts["Pets"].kind == AlertKind.exceeded
    assert alerts["Transport"].kind == AlertKind.exceeded


def test_alert_ids_are_stable_across_runs() -> None:
    transactions = [_txn(date(2025, 5, 4), 900, "Groceries")]
    config = {"Groceries": _config(1_000, threshold=75)}

    first = analysis.analyze_performance(transactions, 5, 2025, config)
    second = analysis.analyze_performance(transactions, 5, 2025, config)

    assert [a.id for a in first.alerts] == [a.id for a in second.alerts]
    assert first.alerts[0].id == "warning:Groceries:2025-05:75"


def test_notifications_disabled_suppresses_alerts() -> None:
    result = analysis.analyze_performance(
        [_txn(date(2025, 5, 4), 5_000, "Groceries")],
        5,
        2025,
        {"Groceries": _config(1_000)},
        warning_notifications=False,
    )

    assert result.categories[0].status == PerformanceStatus.over
    assert result.alerts == []


def test_totals_savings_rate_and_other_months() -> None:
    transactions = [
        _txn(date(2025, 5, 1), 5_000, "Salary", kind="income"),
        _txn(date(2025, 5, 4), 950, "Groceries"),
        _txn(date(2025, 5, 8), 500, "Dining"),
        _txn(date(2025, 4, 30), 7_000, "Groceries"),
        _txn(date(2025, 6, 1), 7_000, "Dining"),
    ]
    result = analysis.analyze_performance(
        transactions,
        5,
        2025,
        {"Groceries": _config(1_000), "Dining": _config(600)},
    )

    assert result.month_label == "May 2025"
    assert result.total_budgeted_cents == 1_600
    assert result.total_spent_cents == 1_450
    assert result.total_variance_cents == -150
    assert result.total_income_cents == 5_000
    assert result.savings_rate == pytest.approx(71.0)
    assert result.income_expense_ratio == pytest.approx(5_000 / 1_450)


def test_no_income_and_no_spending() -> None:
    result = analysis.analyze_performance([], 5, 2025, {"Groceries": _config(1_000)})

    assert result.savings_rate == 0.0
    assert result.income_expense_ratio == 0.0
    assert result.categories[0].percent_used == 0.0
    assert result.alerts == []


def test_compare_classifies_each_category() -> None:
    summary = analysis.compare(
        {
            "Groceries": _config(1_200),
            "Dining": _config(400),
            "Pets": _config(100),
            "Old": _config(50, active=False),
        },
        {
            "Groceries": _config(1_000),
            "Dining": _config(500),
            "Transport": _config(300),
            "Old": _config(50, active=False),
            "Books": _config(200),
        },
        baseline_label="Household",
        month_label="May 2025",
    )

    by_name = {c.category: c for c in summary.comparisons}
    assert list(by_name) == ["Books", "Dining", "Groceries", "Pets", "Transport"]
    assert by_name["Groceries"].status == ComparisonStatus.increased
    assert by_name["Groceries"].difference_percentage == pytest.approx(20.0)
    assert by_name["Dining"].status == ComparisonStatus.decreased
    assert by_name["Dining"].difference_cents == -100
    assert by_name["Pets"].status == ComparisonStatus.added
    assert by_name["Pets"].difference_percentage == 0.0
    assert by_name["Transport"].status == ComparisonStatus.removed
    assert by_name["Transport"].monthly_limit_cents == 0
    assert summary.total_categories == 5
    assert summary.active_categories == 3
    assert summary.adjusted_categories == 2
    assert summary.added_categories == 1
    assert summary.removed_categories == 2
    assert summary.unchanged_categories == 0
    assert summary.total_baseline_limit_cents == 2_000
    assert summary.total_monthly_limit_cents == 1_700
    assert summary.total_difference_cents == -300


def _household(session: Session):
    return PersonalBudgetService(session).create(
        PersonalBudgetIn(
            name="Household",
            categories={
                "Groceries": CategoryConfig(monthly_limit_cents=100_000),
                "Dining": CategoryConfig(monthly_limit_cents=40_000),
            },
            global_settings=GlobalSettings(currency="eur"),
        )
    )


def test_compare_month_against_baseline_and_month_start() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _household(session)
        months = MonthlyBudgetService(session)
        may = months.get_or_create(2025, 5)
        months.update_category_limit(may.id, "Dining", 55_000)
        service = AnalysisService(session)

        against_baseline = service.compare_month(2025, 5)
        against_start = service.compare_month_to_original(2025, 5)

        assert against_baseline.baseline_label == "Household"
        assert against_baseline.currency == "EUR"
        assert against_baseline.adjusted_categories == 1
        assert against_baseline.total_difference_cents == 15_000
        assert against_start.month_label == "May 2025"
        dining = next(c for c in against_start.comparisons if c.category == "Dining")
        assert dining.status == ComparisonStatus.increased
        assert dining.baseline_limit_cents == 40_000


def test_compare_month_without_any_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = AnalysisService(session)

        assert isinstance(service.compare_month(2025, 5), NoActiveBudget)
        assert isinstance(service.performance_for_month(2025, 5), NoActiveBudget)


def test_performance_for_month_uses_stored_transactions() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _household(session)
        transactions = TransactionService(session)
        for day, amount in ((2, 30_000), (9, 20_000)):
            transactions.create(
                TransactionIn(
                    date=date(2025, 5, day),
                    type=TransactionType.expense,
                    amount_cents=amount,
                    category_name="Dining",
                )
            )

        result = AnalysisService(session).performance_for_month(2025, 5)

        dining = next(c for c in result.categories if c.category == "Dining")
        assert dining.actual_cents == 50_000
        assert dining.status == PerformanceStatus.over
        assert [a.id for a in result.alerts] == ["exceeded:Dining:2025-05:100"]


def test_spending_trend_covers_recent_months() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _household(session)
        transactions = TransactionService(session)
        for day in (date(2024, 12, 20), date(2025, 2, 3), date(2025, 2, 4)):
            transactions.create(
                TransactionIn(
                    date=day,
                    type=TransactionType.expense,
                    amount_cents=1_000,
                    category_name="Groceries",
                )
            )

        trend = AnalysisService(session).spending_trend(
            months=3, today=date(2025, 2, 14)
        )

        assert [(row["year"], row["month"]) for row in trend] == [
            (2024, 12),
            (2025, 1),
            (2025, 2),
        ]
        assert [row["spent_cents"] for row in trend] == [1_000, 0, 2_000]


def test_on_target_band_follows_warning_threshold() -> None:
    status = analysis.performance_status

    assert status(999, 1_000, 80) == PerformanceStatus.under
    assert status(1_000, 1_000, 80) == PerformanceStatus.on_target
    assert status(1_200, 1_000, 80) == PerformanceStatus.on_target
    assert status(1_201, 1_000, 80) == PerformanceStatus.over
    assert status(1_100, 1_000, 95) == PerformanceStatus.over
    assert status(0, 0, 80) == PerformanceStatus.on_target
    assert status(1, 0, 80) == PerformanceStatus.over

    result = analysis.analyze_performance(
        [_txn(date(2025, 5, 4), 1_100, "Groceries")],
        5,
        2025,
        {"Groceries": _config(1_000)},
    )

    assert result.categories[0].status == PerformanceStatus.on_target
    assert [a.kind for a in result.alerts] == [AlertKind.exceeded]


def test_accuracy_zones() -> None:
    zone = analysis.accuracy_zone

    assert zone(100) == AccuracyZone.bullseye
    assert zone(96) == AccuracyZone.bullseye
    assert zone(95.5) == AccuracyZone.ring1
    assert zone(81) == AccuracyZone.ring1
    assert zone(103) == AccuracyZone.ring1
    assert zone(105) == AccuracyZone.ring1
    assert zone(105.1) == AccuracyZone.bust
    assert zone(61) == AccuracyZone.ring2
    assert zone(60.5) == AccuracyZone.ring3
    assert zone(30) == AccuracyZone.ring4
    assert zone(20) == AccuracyZone.ring5
    assert zone(0.5) == AccuracyZone.ring5
    assert zone(50, is_unused=True) == AccuracyZone.unused
    assert analysis.months_between(date(2024, 11, 15), date(2025, 2, 1)) == 4


def _month(year: int, month: int, categories: dict) -> SimpleNamespace:
    return SimpleNamespace(year=year, month=month, categories=categories)


def test_category_accuracy_averages_over_the_range() -> None:
    snapshots = [
        _month(2025, 3, {"Groceries": _config(1_000), "Dining": _config(400)}),
        _month(2025, 4, {"Groceries": _config(1_000), "Dining": _config(400)}),
        _month(2025, 5, {"Groceries": _config(9_999)}),
    ]
    baseline = {
        "Groceries": _config(1_200),
        "Dining": _config(400),
        "Pets": _config(100),
        "Gifts": _config(300),
        "Misc": _config(0),
        "Old": _config(50, active=False),
    }
    transactions = [
        _txn(date(2025, 3, 5), 900, "Groceries"),
        _txn(date(2025, 4, 30), 1_100, "Groceries"),
        _txn(date(2025, 2, 28), 700, "Groceries"),
        _txn(date(2025, 3, 9), 300, "Dining"),
        _txn(date(2025, 5, 1), 500, "Dining"),
        _txn(date(2025, 4, 2), 300, "pets"),
        _txn(date(2025, 4, 3), 50, "Misc"),
        _txn(date(2025, 3, 1), 5_000, "Salary", kind="income"),
    ]

    rows = analysis.category_accuracy(
        transactions, baseline, snapshots, date(2025, 3, 1), date(2025, 4, 30)
    )

    by_name = {row.category: row for row in rows}
    assert list(by_name) == ["Dining", "Gifts", "Groceries", "Misc", "Pets"]

    groceries = by_name["Groceries"]
    assert groceries.months_in_range == 2
    assert groceries.total_budgeted_cents == 2_000
    assert groceries.total_spent_cents == 2_000
    assert groceries.accuracy_percentage == pytest.approx(100.0)
    assert groceries.zone == AccuracyZone.bullseye
    assert groceries.is_over_budget is False

    dining = by_name["Dining"]
    assert dining.budget_average_cents == pytest.approx(400.0)
    assert dining.actual_average_cents == pytest.approx(150.0)
    assert dining.variance_cents == pytest.approx(-250.0)
    assert dining.variance_percentage == pytest.approx(-62.5)
    assert dining.zone == AccuracyZone.ring4

    pets = by_name["Pets"]
    assert pets.total_budgeted_cents == 200
    assert pets.accuracy_percentage == pytest.approx(150.0)
    assert pets.is_over_budget is True
    assert pets.zone == AccuracyZone.bust
    assert pets.zone_label == "Over budget"

    assert by_name["Gifts"].is_unused is True
    assert by_name["Gifts"].zone == AccuracyZone.unused
    assert by_name["Gifts"].total_budgeted_cents == 600
    assert by_name["Misc"].accuracy_percentage == 0.0
    assert by_name["Misc"].zone == AccuracyZone.bust


def test_category_accuracy_reads_stored_months() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = AnalysisService(session)
        assert isinstance(
            service.category_accuracy(date(2025, 5, 1), date(2025, 5, 31)),
            NoActiveBudget,
        )

        _household(session)
        months = MonthlyBudgetService(session)
        may = months.get_or_create(2025, 5)
        months.update_category_limit(may.id, "Dining", 50_000)
        TransactionService(session).create(
            TransactionIn(
                date=date(2025, 5, 12),
                type=TransactionType.expense,
                amount_cents=45_000,
                category_name="Dining",
            )
        )

        rows = service.category_accuracy(date(2025, 5, 1), date(2025, 5, 31))

        by_name = {row.category: row for row in rows}
        assert by_name["Dining"].total_budgeted_cents == 50_000
        assert by_name["Dining"].accuracy_percentage == pytest.approx(90.0)
        assert by_name["Dining"].zone == AccuracyZone.ring1
        assert by_name["Groceries"].zone == AccuracyZone.unused
        with pytest.raises(ValidationError):
            service.category_accuracy(date(2025, 5, 31), date(2025, 5, 1))
