import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base, get_db

BUDGET = {
    "name": "Household",
    "categories": {
        "Groceries": {"monthly_limit_cents": 150_000},
        "Dining": {"monthly_limit_cents": 40_000},
    },
}


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_db
    main.rollover._settled.clear()
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
        main.rollover._settled.clear()


def test_missing_budget_is_reported_not_raised(client) -> None:
    response = client.get("/api/budgets/active")

    assert response.status_code == 200
    assert response.json() == {"status": "no_active_budget", "household_id": 1}
    assert client.get("/api/months/2025/5").json()["status"] == "no_active_budget"


def test_budget_and_month_flow(client) -> None:
    created = client.post("/api/budgets", json=BUDGET)
    assert created.status_code == 201
    assert created.json()["is_active"] is True
    assert created.json()["version"] == 1

    month = client.get("/api/months/2025/5").json()
    assert month["total_limit_cents"] == 190_000
    assert month["is_locked"] is False

    assert client.post("/api/months/2025/5/lock").json()["is_locked"] is True
    locked = client.put(
        f"/api/monthly-budgets/{month['id']}/limit",
        json={"category_name": "Dining", "new_limit_cents": 45_000},
    )
    assert locked.status_code == 423
    assert locked.json()["error"] == "LockedStateError"

    client.post("/api/months/2025/5/unlock")
    updated = client.put(
        f"/api/monthly-budgets/{month['id']}/limit",
        json={"category_name": "Dining", "new_limit_cents": 45_000},
    )
    assert updated.status_code == 200
    assert updated.json()["categories"]["Dining"]["monthly_limit_cents"] == 45_000
    assert updated.json()["adjustment_count"] == 1
    original = updated.json()["original_categories"]
    assert original["Dining"]["monthly_limit_cents"] == 40_000


def test_error_mapping(client) -> None:
    client.post("/api/budgets", json=BUDGET)

    empty = client.post("/api/budgets", json={**BUDGET, "name": "  "})
    assert empty.status_code == 400
    assert empty.json()["error"] == "ValidationError"

    missing = client.patch("/api/budgets/999/metadata", json={"name": "Other"})
    assert missing.status_code == 404
    assert missing.json()["context"] == {"budget_id": "999"}

    merge = client.post(
        "/api/categories/merge",
        json={"source_name": "Dining", "target_name": "dining"},
    )
    assert merge.status_code == 409


def test_schedule_adjustment_twice_conflicts(client) -> None:
    client.post("/api/budgets", json=BUDGET)
    payload = {
        "category_name": "Dining",
        "current_limit_cents": 40_000,
        "new_limit_cents": 50_000,
        "reason": "more dinners out",
    }

    first = client.post("/api/adjustments", json=payload)
    second = client.post("/api/adjustments", json=payload)

    assert first.status_code == 201
    assert first.json()["status"] == "pending"
    assert first.json()["amount_cents"] == 10_000
    assert second.status_code == 409
    assert [a["id"] for a in client.get("/api/adjustments/pending").json()] == [
        first.json()["id"]
    ]


def test_category_endpoints(client) -> None:
    client.post("/api/budgets", json=BUDGET)

    created = client.post(
        "/api/categories", json={"name": "Pets", "monthly_limit_cents": 5_000}
    )
    assert created.status_code == 201
    renamed = client.post("/api/categories/Pets/rename", json={"new_name": "Animals"})
    assert renamed.json()["new_name"] == "Animals"
    assert client.delete("/api/categories/Animals").status_code == 204

    names = [c["name"] for c in client.get("/api/categories").json()]
    assert names == ["Dining", "Groceries"]
    restored = client.post("/api/categories/animals/restore")
    assert restored.json()["name"] == "Animals"


def test_category_accuracy_and_clearing_viewed_alerts(client) -> None:
    assert client.get(
        "/api/accuracy", params={"start": "2025-05-01", "end": "2025-05-31"}
    ).json() == {"status": "no_active_budget", "household_id": 1}
    client.post("/api/budgets", json=BUDGET)
    client.post(
        "/api/transactions",
        json={
            "date": "2025-05-03",
            "type": "expense",
            "amount_cents": 40_000,
            "category_name": "Dining",
        },
    )

    accuracy = client.get(
        "/api/accuracy", params={"start": "2025-05-01", "end": "2025-05-31"}
    ).json()

    assert [row["category"] for row in accuracy] == ["Dining", "Groceries"]
    assert accuracy[0]["zone"] == "bullseye"
    assert accuracy[0]["accuracy_percentage"] == 100.0
    assert accuracy[1]["zone"] == "unused"
    assert accuracy[1]["zone_label"] == "No activity"

    client.post("/api/alerts/viewed", json={"alert_ids": ["a", "b"]})
    assert client.delete("/api/alerts/viewed").json() == {"cleared": 2}
    assert client.delete("/api/alerts/viewed").json() == {"cleared": 0}
