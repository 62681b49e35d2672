import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from errors import (
    BudgetEngineError,
    ConflictError,
    ConsistencyError,
    LockedStateError,
    NotFoundError,
    ValidationError,
)
from periods import Period, resolve_period
from scheduler import RolloverManager
from schemas import (
    AdjustmentIn,
    AdjustmentOut,
    AlertViewIn,
    BudgetMetadataIn,
    CategoryCreateIn,
    CategoryLimitIn,
    CategoryMergeIn,
    CategoryRenameIn,
    MergeRecordOut,
    MonthlyBudgetOut,
    PersonalBudgetIn,
    PersonalBudgetOut,
    PersonalBudgetPatch,
    ResetOptions,
    TransactionIn,
    TransactionOut,
)
from services import (
    AdjustmentService,
    AlertViewService,
    AnalysisService,
    CategoryService,
    MonthlyBudgetService,
    NoActiveBudget,
    PersonalBudgetService,
    TransactionService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Budgets")
rollover = RolloverManager()

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (LockedStateError, 423),
    (ConsistencyError, 500),
)


@app.exception_handler(BudgetEngineError)
async def budget_error_handler(request: Request, exc: BudgetEngineError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    if status >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc!r}")
    return JSONResponse(
        status_code=status,
        content={
            "error": type(exc).__name__,
            "detail": exc.message,
            "context": {k: str(v) for k, v in exc.details.items()},
        },
    )


def household_id(x_household_id: Optional[int] = Header(default=None)) -> int:
    return x_household_id or get_settings().default_household_id


def user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    return x_user_id or get_settings().default_user_id


def rolled_over_db(
    household: int = Depends(household_id), db: Session = Depends(get_db)
) -> Session:
    """Session for read paths; applies any adjustment whose month has arrived."""
    rollover.apply(db, household)
    return db


def period_from_request(request: Request) -> Period:
    params = request.query_params
    try:
        return resolve_period(params.get("period"), params.get("start"), params.get("end"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _missing(result: NoActiveBudget) -> dict:
    return {"status": "no_active_budget", "household_id": result.household_id}


# personal budgets


@app.get("/api/budgets/active")
def api_active_budget(
    household: int = Depends(household_id), db: Session = Depends(rolled_over_db)
):
    budget = PersonalBudgetService(db, household).get_active()
    if isinstance(budget, NoActiveBudget):
        return _missing(budget)
    return PersonalBudgetOut.model_validate(budget)


@app.get("/api/budgets")
def api_budget_history(
    household: int = Depends(household_id), db: Session = Depends(get_db)
):
    budgets = PersonalBudgetService(db, household).list_history()
    return [PersonalBudgetOut.model_validate(b) for b in budgets]


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    data: PersonalBudgetIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    budget = PersonalBudgetService(db, household).create(data)
    return PersonalBudgetOut.model_validate(budget)


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    patch: PersonalBudgetPatch,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    budget = PersonalBudgetService(db, household).update(budget_id, patch)
    return PersonalBudgetOut.model_validate(budget)


@app.patch("/api/budgets/{budget_id}/metadata")
def api_update_budget_metadata(
    budget_id: int,
    data: BudgetMetadataIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    budget = PersonalBudgetService(db, household).update_metadata(budget_id, data)
    return PersonalBudgetOut.model_validate(budget)


@app.post("/api/budgets/{budget_id}/activate")
def api_activate_budget(
    budget_id: int,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    budget = PersonalBudgetService(db, household).set_active(budget_id)
    rollover.forget(household)
    return PersonalBudgetOut.model_validate(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: int,
    confirm_active: bool = False,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    PersonalBudgetService(db, household).delete(budget_id, confirm_active=confirm_active)


@app.post("/api/budgets/reset")
def api_reset_budgets(
    options: ResetOptions,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    result = PersonalBudgetService(db, household).reset_all(options)
    rollover.forget(household)
    return asdict(result)


# monthly budgets


@app.get("/api/months/{year}/{month}")
def api_monthly_budget(
    year: int,
    month: int,
    household: int = Depends(household_id),
    db: Session = Depends(rolled_over_db),
):
    service = MonthlyBudgetService(db, household)
    snapshot = service.get_or_create(year, month)
    if isinstance(snapshot, NoActiveBudget):
        return _missing(snapshot)
    payload = MonthlyBudgetOut.model_validate(snapshot).model_dump(mode="json")
    payload["total_limit_cents"] = service.total_monthly_limit(snapshot)
    return payload


@app.get("/api/months/{year}")
def api_monthly_budgets_for_year(
    year: int,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    snapshots = MonthlyBudgetService(db, household).list_for_year(year)
    return [MonthlyBudgetOut.model_validate(s) for s in snapshots]


@app.put("/api/monthly-budgets/{monthly_budget_id}/limit")
def api_update_category_limit(
    monthly_budget_id: int,
    data: CategoryLimitIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    snapshot = MonthlyBudgetService(db, household).update_category_limit(
        monthly_budget_id, data.category_name, data.new_limit_cents, data.notes
    )
    return MonthlyBudgetOut.model_validate(snapshot)


@app.post("/api/months/{year}/{month}/lock")
def api_lock_month(
    year: int,
    month: int,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    snapshot = MonthlyBudgetService(db, household).lock(year, month)
    return MonthlyBudgetOut.model_validate(snapshot)


@app.post("/api/months/{year}/{month}/unlock")
def api_unlock_month(
    year: int,
    month: int,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    snapshot = MonthlyBudgetService(db, household).unlock(year, month)
    rollover.forget(household)
    return MonthlyBudgetOut.model_validate(snapshot)


@app.get("/api/months/{year}/{month}/comparison")
def api_comparison(
    year: int,
    month: int,
    household: int = Depends(household_id),
    db: Session = Depends(rolled_over_db),
):
    result = AnalysisService(db, household).compare_month(year, month)
    if isinstance(result, NoActiveBudget):
        return _missing(result)
    return result


@app.get("/api/months/{year}/{month}/comparison/original")
def api_comparison_to_original(
    year: int,
    month: int,
    household: int = Depends(household_id),
    db: Session = Depends(rolled_over_db),
):
    result = AnalysisService(db, household).compare_month_to_original(year, month)
    if isinstance(result, NoActiveBudget):
        return _missing(result)
    return result


@app.get("/api/months/{year}/{month}/performance")
def api_performance(
    year: int,
    month: int,
    unviewed_only: bool = False,
    household: int = Depends(household_id),
    user: int = Depends(user_id),
    db: Session = Depends(rolled_over_db),
):
    result = AnalysisService(db, household).performance_for_month(year, month)
    if isinstance(result, NoActiveBudget):
        return _missing(result)
    payload = asdict(result)
    if unviewed_only:
        alerts = AlertViewService(db, household, user).unviewed(result.alerts)
        payload["alerts"] = [asdict(alert) for alert in alerts]
    return payload


@app.get("/api/trend")
def api_spending_trend(
    months: int = 6,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    months = min(max(months, 1), 24)
    return AnalysisService(db, household).spending_trend(months)


@app.post("/api/alerts/viewed")
def api_mark_alerts_viewed(
    data: AlertViewIn,
    household: int = Depends(household_id),
    user: int = Depends(user_id),
    db: Session = Depends(get_db),
):
    marked = AlertViewService(db, household, user).mark_viewed(data.alert_ids)
    return {"marked": marked}


@app.delete("/api/alerts/viewed")
def api_clear_viewed_alerts(
    household: int = Depends(household_id),
    user: int = Depends(user_id),
    db: Session = Depends(get_db),
):
    return {"cleared": AlertViewService(db, household, user).clear()}


@app.get("/api/accuracy")
def api_category_accuracy(
    start: date,
    end: date,
    household: int = Depends(household_id),
    db: Session = Depends(rolled_over_db),
):
    result = AnalysisService(db, household).category_accuracy(start, end)
    if isinstance(result, NoActiveBudget):
        return _missing(result)
    return [asdict(item) for item in result]


# adjustments


@app.get("/api/adjustments/pending")
def api_pending_adjustments(
    household: int = Depends(household_id), db: Session = Depends(rolled_over_db)
):
    adjustments = AdjustmentService(db, household).list_pending()
    return [AdjustmentOut.model_validate(a) for a in adjustments]


@app.get("/api/adjustments/next-month")
def api_next_month_summary(
    household: int = Depends(household_id), db: Session = Depends(rolled_over_db)
):
    summary = AdjustmentService(db, household).next_month_summary()
    return {
        "effective_year": summary.effective_year,
        "effective_month": summary.effective_month,
        "effective_label": summary.effective_label,
        "adjustment_count": summary.adjustment_count,
        "total_increase_cents": summary.total_increase_cents,
        "total_decrease_cents": summary.total_decrease_cents,
        "net_change_cents": summary.net_change_cents,
        "adjustments": [AdjustmentOut.model_validate(a) for a in summary.adjustments],
    }


@app.get("/api/adjustments/history")
def api_most_adjusted(
    limit: int = 5,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    rows = AdjustmentService(db, household).most_adjusted(min(max(limit, 1), 50))
    return [
        {
            "category_name": row.category_name,
            "adjustment_count": row.adjustment_count,
            "total_increased_cents": row.total_increased_cents,
            "total_decreased_cents": row.total_decreased_cents,
            "net_change_cents": row.net_change_cents,
            "last_adjusted_at": row.last_adjusted_at,
        }
        for row in rows
    ]


@app.post("/api/adjustments", status_code=201)
def api_schedule_adjustment(
    data: AdjustmentIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    adjustment = AdjustmentService(db, household).schedule(
        data.category_name,
        data.current_limit_cents,
        data.new_limit_cents,
        data.reason,
        effective_year=data.effective_year,
        effective_month=data.effective_month,
    )
    return AdjustmentOut.model_validate(adjustment)


@app.post("/api/adjustments/{adjustment_id}/cancel")
def api_cancel_adjustment(
    adjustment_id: int,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    adjustment = AdjustmentService(db, household).cancel(adjustment_id)
    return AdjustmentOut.model_validate(adjustment)


# categories


@app.get("/api/categories")
def api_categories(
    include_inactive: bool = False,
    household: int = Depends(household_id),
    db: Session = Depends(rolled_over_db),
):
    return CategoryService(db, household).list_categories(include_inactive)


@app.post("/api/categories", status_code=201)
def api_create_category(
    data: CategoryCreateIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, household).create(data)


@app.post("/api/categories/merge")
def api_merge_categories(
    data: CategoryMergeIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    result = CategoryService(db, household).merge(
        data.source_name, data.target_name, data.reason
    )
    return asdict(result)


@app.post("/api/categories/{name}/rename")
def api_rename_category(
    name: str,
    data: CategoryRenameIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    return asdict(CategoryService(db, household).rename(name, data.new_name))


@app.delete("/api/categories/{name}", status_code=204)
def api_delete_category(
    name: str,
    hard: bool = False,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, household).delete(name, hard=hard)


@app.post("/api/categories/{name}/restore")
def api_restore_category(
    name: str,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, household).restore(name)


@app.get("/api/merges")
def api_merge_history(
    household: int = Depends(household_id), db: Session = Depends(get_db)
):
    records = CategoryService(db, household).merge_history()
    return [MergeRecordOut.model_validate(r) for r in records]


@app.post("/api/merges/{merge_id}/undo")
def api_undo_merge(
    merge_id: int,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    return asdict(CategoryService(db, household).undo_merge(merge_id))


# transactions


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    category: Optional[str] = None,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    items = TransactionService(db, household).list_for_period(period, category)
    return {
        "period": {"slug": period.slug, "start": period.start, "end": period.end},
        "items": [TransactionOut.model_validate(txn) for txn in items],
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, household).create(data)
    return TransactionOut.model_validate(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    household: int = Depends(household_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, household).delete(transaction_id)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
