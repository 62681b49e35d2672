"""Budget comparison and budget-vs-actual analysis.

Everything here is a pure function over plain category maps and transaction
rows, so the same code serves the HTTP layer, the services and the tests.
Category maps are ``name -> CategoryConfig`` dicts as stored on budgets.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Iterable, Mapping

from periods import format_month
from schemas import DEFAULT_WARNING_THRESHOLD


class ComparisonStatus(str, Enum):
    increased = "increased"
    decreased = "decreased"
    unchanged = "unchanged"
    added = "added"
    removed = "removed"


class PerformanceStatus(str, Enum):
    under = "under"
    on_target = "onTarget"
    over = "over"


class AlertKind(str, Enum):
    warning = "warning"
    exceeded = "exceeded"


ALERT_SEVERITY = {AlertKind.warning: "medium", AlertKind.exceeded: "high"}


@dataclass(frozen=True)
class CategoryComparison:
    category: str
    baseline_limit_cents: int
    monthly_limit_cents: int
    difference_cents: int
    difference_percentage: float
    status: ComparisonStatus
    is_active: bool


@dataclass(frozen=True)
class ComparisonSummary:
    comparisons: list[CategoryComparison]
    total_categories: int
    active_categories: int
    adjusted_categories: int
    added_categories: int
    removed_categories: int
    unchanged_categories: int
    total_baseline_limit_cents: int
    total_monthly_limit_cents: int
    total_difference_cents: int
    baseline_label: str = ""
    month_label: str = ""
    currency: str = "USD"


@dataclass(frozen=True)
class CategoryPerformance:
    category: str
    budgeted_cents: int
    actual_cents: int
    variance_cents: int
    variance_percentage: float
    percent_used: float
    warning_threshold: int
    status: PerformanceStatus


@dataclass(frozen=True)
class Alert:
    id: str
    category: str
    kind: AlertKind
    severity: str
    message: str
    amount_cents: int
    percentage: float


@dataclass(frozen=True)
class PerformanceAnalysis:
    year: int
    month: int
    month_label: str
    total_budgeted_cents: int
    total_spent_cents: int
    total_variance_cents: int
    total_income_cents: int
    savings_rate: float
    income_expense_ratio: float
    categories: list[CategoryPerformance] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)


def _active_limit(config: Mapping[str, Any] | None) -> int:
    if not config or not config.get("is_active", True):
        return 0
    return int(config.get("monthly_limit_cents", 0))


def _is_active(config: Mapping[str, Any] | None) -> bool:
    return bool(config) and bool(config.get("is_active", True))


def percentage_change(difference: int, baseline: int) -> float:
    if baseline <= 0:
        return 0.0
    return difference / baseline * 100


def compare(
    monthly_categories: Mapping[str, Mapping[str, Any]],
    baseline_categories: Mapping[str, Mapping[str, Any]],
    *,
    baseline_label: str = "",
    month_label: str = "",
    currency: str = "USD",
) -> ComparisonSummary:
    names = sorted(set(monthly_categories) | set(baseline_categories))
    comparisons: list[CategoryComparison] = []
    counts: dict[ComparisonStatus, int] = defaultdict(int)
    active_count = 0

    for name in names:
        monthly = monthly_categories.get(name)
        baseline = baseline_categories.get(name)
        in_monthly = _is_active(monthly)
        in_baseline = _is_active(baseline)
        if not in_monthly and not in_baseline:
            continue

        monthly_limit = _active_limit(monthly)
        baseline_limit = _active_limit(baseline)
        difference = monthly_limit - baseline_limit
        if in_monthly and not in_baseline:
            status = ComparisonStatus.added
        elif in_baseline and not in_monthly:
            status = ComparisonStatus.removed
        elif difference > 0:
            status = ComparisonStatus.increased
        elif difference < 0:
            status = ComparisonStatus.decreased
        else:
            status = ComparisonStatus.unchanged

        counts[status] += 1
        if in_monthly:
            active_count += 1
        comparisons.append(
            CategoryComparison(
                category=name,
                baseline_limit_cents=baseline_limit,
                monthly_limit_cents=monthly_limit,
                difference_cents=difference,
                difference_percentage=percentage_change(difference, baseline_limit),
                status=status,
                is_active=in_monthly,
            )
        )

    total_baseline = sum(_active_limit(c) for c in baseline_categories.values())
    total_monthly = sum(_active_limit(c) for c in monthly_categories.values())
    return ComparisonSummary(
        comparisons=comparisons,
        total_categories=len(comparisons),
        active_categories=active_count,
        adjusted_categories=counts[ComparisonStatus.increased]
        + counts[ComparisonStatus.decreased],
        added_categories=counts[ComparisonStatus.added],
        removed_categories=counts[ComparisonStatus.removed],
        unchanged_categories=counts[ComparisonStatus.unchanged],
        total_baseline_limit_cents=total_baseline,
        total_monthly_limit_cents=total_monthly,
        total_difference_cents=total_monthly - total_baseline,
        baseline_label=baseline_label,
        month_label=month_label,
        currency=currency,
    )


def performance_status(
    actual_cents: int,
    budgeted_cents: int,
    warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
) -> PerformanceStatus:
    """Spending up to ``100 - warning_threshold`` percent past the limit is on target.

    The band is inclusive at both ends: a threshold of 80 keeps 100%..120% of
    the limit on target. Alerts are computed separately.
    """
    if actual_cents < budgeted_cents:
        return PerformanceStatus.under
    if actual_cents * 100 <= budgeted_cents * (200 - warning_threshold):
        return PerformanceStatus.on_target
    return PerformanceStatus.over


def alert_id(kind: AlertKind, category: str, year: int, month: int, threshold: int) -> str:
    """Stable across recomputation so a "viewed" mark keeps matching."""
    return f"{kind.value}:{category}:{year:04d}-{month:02d}:{threshold}"


def _money(cents: int, currency: str) -> str:
    return f"{cents / 100:,.2f} {currency}"


def _build_alert(
    perf: CategoryPerformance, year: int, month: int, currency: str
) -> Alert | None:
    if perf.actual_cents <= 0:
        return None
    if perf.budgeted_cents <= 0 or perf.percent_used >= 100:
        kind = AlertKind.exceeded
        threshold = 100
        message = (
            f"Budget exceeded for {perf.category}. Spent "
            f"{_money(perf.actual_cents, currency)} of "
            f"{_money(perf.budgeted_cents, currency)} budget."
        )
        amount = perf.variance_cents
    elif perf.percent_used >= perf.warning_threshold:
        kind = AlertKind.warning
        threshold = perf.warning_threshold
        message = (
            f"Budget warning for {perf.category}. You've spent "
            f"{round(perf.percent_used)}% of your budget."
        )
        amount = perf.actual_cents
    else:
        return None
    return Alert(
        id=alert_id(kind, perf.category, year, month, threshold),
        category=perf.category,
        kind=kind,
        severity=ALERT_SEVERITY[kind],
        message=message,
        amount_cents=amount,
        percentage=perf.percent_used,
    )


def _txn_type(txn: Any) -> str:
    value = txn.type
    return getattr(value, "value", value)


def analyze_performance(
    transactions: Iterable[Any],
    month: int,
    year: int,
    budget_config: Mapping[str, Mapping[str, Any]],
    *,
    currency: str = "USD",
    warning_notifications: bool = True,
) -> PerformanceAnalysis:
    spent_by_category: dict[str, int] = defaultdict(int)
    income = 0
    for txn in transactions:
        if txn.date.year != year or txn.date.month != month:
            continue
        kind = _txn_type(txn)
        if kind == "expense":
            spent_by_category[txn.category_name.lower()] += int(txn.amount_cents)
        elif kind == "income":
            income += int(txn.amount_cents)

    categories: list[CategoryPerformance] = []
    for name in sorted(budget_config):
        config = budget_config[name]
        if not _is_active(config):
            continue
        budgeted = int(config.get("monthly_limit_cents", 0))
        actual = spent_by_category.get(name.lower(), 0)
        variance = actual - budgeted
        threshold = int(config.get("warning_threshold", DEFAULT_WARNING_THRESHOLD))
        categories.append(
            CategoryPerformance(
                category=name,
                budgeted_cents=budgeted,
                actual_cents=actual,
                variance_cents=variance,
                variance_percentage=percentage_change(variance, budgeted),
                percent_used=(actual / budgeted * 100) if budgeted > 0 else 0.0,
                warning_threshold=threshold,
                status=performance_status(actual, budgeted, threshold),
            )
        )

    total_budgeted = sum(c.budgeted_cents for c in categories)
    total_spent = sum(c.actual_cents for c in categories)
    savings_rate = (income - total_spent) / income * 100 if income > 0 else 0.0
    ratio = income / total_spent if total_spent > 0 else 0.0

    alerts: list[Alert] = []
    if warning_notifications:
        for perf in categories:
            alert = _build_alert(perf, year, month, currency)
            if alert:
                alerts.append(alert)

    return PerformanceAnalysis(
        year=year,
        month=month,
        month_label=format_month(year, month),
        total_budgeted_cents=total_budgeted,
        total_spent_cents=total_spent,
        total_variance_cents=total_spent - total_budgeted,
        total_income_cents=income,
        savings_rate=savings_rate,
        income_expense_ratio=ratio,
        categories=categories,
        alerts=alerts,
    )


def compare_to_original(snapshot: Any, **labels: Any) -> ComparisonSummary:
    """Compare a monthly budget against its own month-start copy."""
    return compare(snapshot.categories, snapshot.original_categories, **labels)


class AccuracyZone(str, Enum):
    bullseye = "bullseye"
    ring1 = "ring1"
    ring2 = "ring2"
    ring3 = "ring3"
    ring4 = "ring4"
    ring5 = "ring5"
    bust = "bust"
    unused = "unused"


ZONE_LABELS = {
    AccuracyZone.bullseye: "Perfect tracking",
    AccuracyZone.ring1: "Excellent budgeting",
    AccuracyZone.ring2: "Good control",
    AccuracyZone.ring3: "Needs attention",
    AccuracyZone.ring4: "Poor accuracy",
    AccuracyZone.ring5: "Significantly under",
    AccuracyZone.bust: "Over budget",
    AccuracyZone.unused: "No activity",
}

# Inclusive lower bound of each zone at or below 100% of the budget.
ZONE_FLOORS = (
    (96.0, AccuracyZone.bullseye),
    (81.0, AccuracyZone.ring1),
    (61.0, AccuracyZone.ring2),
    (41.0, AccuracyZone.ring3),
    (21.0, AccuracyZone.ring4),
)
BUST_ABOVE = 105.0


@dataclass(frozen=True)
class CategoryAccuracy:
    category: str
    budget_average_cents: float
    actual_average_cents: float
    accuracy_percentage: float
    variance_cents: float
    variance_percentage: float
    is_over_budget: bool
    is_unused: bool
    months_in_range: int
    total_budgeted_cents: int
    total_spent_cents: int
    zone: AccuracyZone
    zone_label: str


def months_between(start: date, end: date) -> int:
    """Calendar months touched by ``start..end``, both ends included."""
    return (end.year - start.year) * 12 + end.month - start.month + 1


def accuracy_zone(accuracy_percentage: float, is_unused: bool = False) -> AccuracyZone:
    if is_unused:
        return AccuracyZone.unused
    if accuracy_percentage > BUST_ABOVE:
        return AccuracyZone.bust
    if accuracy_percentage > 100:
        return AccuracyZone.ring1
    for floor, zone in ZONE_FLOORS:
        if accuracy_percentage >= floor:
            return zone
    return AccuracyZone.ring5


def category_accuracy(
    transactions: Iterable[Any],
    baseline_categories: Mapping[str, Mapping[str, Any]],
    snapshots: Iterable[Any],
    start: date,
    end: date,
) -> list[CategoryAccuracy]:
    """How closely spending tracked the budget, per active baseline category.

    Budgeted totals come from the monthly budgets inside the range. A category
    no month budgeted for falls back to its baseline limit times the number of
    months. Spending with no budget at all counts as a bust.
    """
    months = months_between(start, end)
    first, last = (start.year, start.month), (end.year, end.month)
    in_range = [s for s in snapshots if first <= (s.year, s.month) <= last]

    spent_by_category: dict[str, int] = defaultdict(int)
    for txn in transactions:
        if _txn_type(txn) != "expense" or not start <= txn.date <= end:
            continue
        spent_by_category[txn.category_name.lower()] += int(txn.amount_cents)

    results: list[CategoryAccuracy] = []
    for name in sorted(baseline_categories):
        config = baseline_categories[name]
        if not _is_active(config):
            continue
        lowered = name.lower()
        total_budgeted = 0
        for snapshot in in_range:
            for key, month_config in (snapshot.categories or {}).items():
                if key.lower() == lowered:
                    total_budgeted += _active_limit(month_config)
        if total_budgeted == 0:
            total_budgeted = _active_limit(config) * months
        total_spent = spent_by_category.get(lowered, 0)

        budget_average = total_budgeted / months if months > 0 else 0.0
        actual_average = total_spent / months if months > 0 else 0.0
        variance = actual_average - budget_average
        accuracy = actual_average / budget_average * 100 if budget_average > 0 else 0.0
        is_unused = total_spent == 0
        if budget_average <= 0 and not is_unused:
            zone = AccuracyZone.bust
        else:
            zone = accuracy_zone(accuracy, is_unused)
        results.append(
            CategoryAccuracy(
                category=name,
                budget_average_cents=budget_average,
                actual_average_cents=actual_average,
                accuracy_percentage=accuracy,
                variance_cents=variance,
                variance_percentage=(
                    variance / budget_average * 100 if budget_average > 0 else 0.0
                ),
                is_over_budget=actual_average > budget_average,
                is_unused=is_unused,
                months_in_range=months,
                total_budgeted_cents=total_budgeted,
                total_spent_cents=total_spent,
                zone=zone,
                zone_label=ZONE_LABELS[zone],
            )
        )
    return results
