from datetime import date, timedelta

from conftest import auth_headers, register_token


def create_budget(client, token, **overrides):
    payload = {
        "name": "Groceries",
        "amount": 400,
        "category": "Food",
        "period": "monthly",
        "startDate": "2024-03-01",
        "endDate": "2024-03-31",
    }
    payload.update(overrides)
    return client.post("/api/budgets", json=payload, headers=auth_headers(token))


def spend(client, token, amount, category="Food", day="2024-03-15"):
    response = client.post(
        "/api/transactions",
        json={"amount": amount, "type": "expense", "category": category, "date": day},
        headers=auth_headers(token),
    )
    assert response.status_code == 201


def test_budget_spending_and_status(client):
    token = register_token(client)
    spend(client, token, 150)
    spend(client, token, 100, day="2024-03-20")
    spend(client, token, 500, category="Housing")
    spend(client, token, 75, day="2024-04-02")

    response = create_budget(client, token)

    assert response.status_code == 201
    budget = response.get_json()["budget"]
    assert budget["currentSpending"] == 250.0
    assert budget["percentUsed"] == 62
    assert budget["status"] == "warning"

    spend(client, token, 200, day="2024-03-25")
    fetched = client.get(f"/api/budgets/{budget['id']}", headers=auth_headers(token)).get_json()["budget"]
    assert fetched["percentUsed"] == 112
    assert fetched["status"] == "exceeded"


def test_budget_validation(client):
    token = register_token(client)

    missing = client.post("/api/budgets", json={"name": "x"}, headers=auth_headers(token))
    assert missing.status_code == 400

    bad_period = create_budget(client, token, period="fortnightly")
    assert bad_period.get_json() == {"error": "Period must be monthly, yearly, weekly, or custom"}

    backwards = create_budget(client, token, endDate="2024-02-01")
    assert backwards.get_json() == {"error": "End date must be after start date"}

    custom = create_budget(client, token, period="custom", endDate=None)
    assert custom.get_json() == {"error": "Custom budgets require an end date"}


def test_budget_name_unique_per_period(client):
    token = register_token(client)
    assert create_budget(client, token).status_code == 201

    duplicate = create_budget(client, token)
    assert duplicate.status_code == 400

    assert create_budget(client, token, period="yearly", endDate="2024-12-31").status_code == 201


def test_budget_update_list_and_delete(client):
    token = register_token(client)
    headers = auth_headers(token)
    budget = create_budget(client, token).get_json()["budget"]
    create_budget(client, token, name="Fun", category="Entertainment")

    updated = client.put(f"/api/budgets/{budget['id']}", json={"amount": 500}, headers=headers)
    assert updated.status_code == 200
    assert updated.get_json()["budget"]["amount"] == 500

    listed = client.get("/api/budgets?category=Food", headers=headers).get_json()
    assert listed["totalCount"] == 1

    assert client.delete(f"/api/budgets/{budget['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/budgets/{budget['id']}", headers=headers).status_code == 404


def test_budget_progress_lists_active_budgets(client):
    token = register_token(client)
    today = date.today()
    create_budget(
        client,
        token,
        name="Current",
        startDate=(today - timedelta(days=5)).isoformat(),
        endDate=(today + timedelta(days=4)).isoformat(),
        period="custom",
    )
    create_budget(client, token, name="Old")

    response = client.get("/api/budgets/progress", headers=auth_headers(token))

    (progress,) = response.get_json()["budgets"]
    assert progress["name"] == "Current"
    assert progress["daysInPeriod"] == 10
    assert progress["daysRemaining"] == 5
    assert progress["remaining"] == 400.0
    assert progress["dailyBudget"] == 80.0


def test_renew_recurring_budget(client):
    token = register_token(client)
    headers = auth_headers(token)
    one_off = create_budget(client, token).get_json()["budget"]
    recurring = create_budget(client, token, name="Rent", isRecurring=True).get_json()["budget"]

    refused = client.post(f"/api/budgets/{one_off['id']}/renew", headers=headers)
    assert refused.status_code == 400
    assert refused.get_json() == {"error": "Budget is not recurring"}

    renewed = client.post(f"/api/budgets/{recurring['id']}/renew", headers=headers)
    assert renewed.status_code == 201
    budget = renewed.get_json()["budget"]
    assert budget["start_date"] == "2024-04-01"
    assert budget["end_date"] == "2024-04-30"
    assert budget["is_recurring"] is True


def test_shared_budget_is_mirrored(client, partners):
    alice, bob = partners

    created = create_budget(client, alice, isShared=True).get_json()["budget"]

    (twin,) = client.get("/api/budgets", headers=auth_headers(bob)).get_json()["budgets"]
    assert twin["shared_from"] == created["id"]
    assert twin["name"] == "Groceries"

    client.put(f"/api/budgets/{created['id']}", json={"amount": 650}, headers=auth_headers(alice))
    twin = client.get(f"/api/budgets/{twin['id']}", headers=auth_headers(bob)).get_json()["budget"]
    assert twin["amount"] == 650


def future(days=200):
    return (date.today() + timedelta(days=days)).isoformat()


def create_goal(client, token, **overrides):
    payload = {"name": "Vacation", "targetAmount": 1000, "targetDate": future(), "category": "Travel"}
    payload.update(overrides)
    return client.post("/api/goals", json=payload, headers=auth_headers(token))


def test_goal_create_and_progress(client):
    token = register_token(client)

    response = create_goal(client, token, currentAmount=250)

    assert response.status_code == 201
    goal = response.get_json()["goal"]
    assert goal["progress_percentage"] == 25
    assert goal["remaining_amount"] == 750.0
    assert goal["days_remaining"] == 200
    assert goal["daily_amount_needed"] == 3.75
    assert goal["is_completed"] is False
    assert goal["contributions"] == []


def test_goal_validation(client):
    token = register_token(client)

    missing = client.post("/api/goals", json={"name": "x"}, headers=auth_headers(token))
    assert missing.get_json() == {"error": "Name, target amount, target date, and category are required"}

    past = create_goal(client, token, targetDate="2020-01-01")
    assert past.status_code == 400
    assert past.get_json() == {"error": "Target date must be in the future"}


def test_goal_contributions_complete_goal(client):
    token = register_token(client)
    headers = auth_headers(token)
    goal = create_goal(client, token).get_json()["goal"]

    first = client.post(
        f"/api/goals/{goal['id']}/contribute",
        json={"amount": 400, "date": "2024-05-01", "note": "bonus"},
        headers=headers,
    )
    assert first.get_json()["message"] == "Contribution added successfully"

    second = client.post(
        f"/api/goals/{goal['id']}/contribute", json={"amount": 600, "date": "2024-06-01"}, headers=headers
    )
    assert second.get_json()["message"] == "Congratulations! Goal completed!"
    completed = second.get_json()["goal"]
    assert completed["current_amount"] == 1000
    assert completed["is_completed"] is True
    assert completed["completion_date"]

    detail = client.get(f"/api/goals/{goal['id']}", headers=headers).get_json()["goal"]
    assert detail["total_contributions"] == 2
    assert detail["average_contribution"] == 500.0
    assert detail["largest_contribution"] == 600
    assert [item["date"] for item in detail["recent_contributions"]] == ["2024-06-01", "2024-05-01"]

    invalid = client.post(f"/api/goals/{goal['id']}/contribute", json={"amount": 5}, headers=headers)
    assert invalid.get_json() == {"error": "Amount and date are required"}


def test_goal_update_auto_completes(client):
    token = register_token(client)
    goal = create_goal(client, token).get_json()["goal"]

    response = client.put(f"/api/goals/{goal['id']}", json={"currentAmount": 1200}, headers=auth_headers(token))

    updated = response.get_json()["goal"]
    assert updated["is_completed"] is True
    assert updated["progress_percentage"] == 100
    assert updated["remaining_amount"] == 0


def test_shared_goal_contributions_reach_partner(client, partners):
    alice, bob = partners
    goal = create_goal(client, alice, isShared=True).get_json()["goal"]
    (twin,) = client.get("/api/goals", headers=auth_headers(bob)).get_json()["goals"]

    client.post(
        f"/api/goals/{twin['id']}/contribute",
        json={"amount": 300, "date": "2024-05-01"},
        headers=auth_headers(bob),
    )

    original = client.get(f"/api/goals/{goal['id']}", headers=auth_headers(alice)).get_json()["goal"]
    assert original["current_amount"] == 300
    assert len(original["contributions"]) == 1

    assert client.delete(f"/api/goals/{goal['id']}", headers=auth_headers(alice)).status_code == 200
    assert client.get("/api/goals", headers=auth_headers(bob)).get_json()["totalCount"] == 0
