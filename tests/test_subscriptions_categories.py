from datetime import date, timedelta

from financemate.finance import add_months

from conftest import auth_headers, register_token


def days_from_today(days):
    return (date.today() + timedelta(days=days)).isoformat()


def create_subscription(client, token, **overrides):
    payload = {
        "name": "Streaming",
        "amount": 10,
        "billingCycle": "monthly",
        "startDate": days_from_today(-40),
        "category": "Entertainment",
    }
    payload.update(overrides)
    response = client.post("/api/subscriptions", json=payload, headers=auth_headers(token))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["subscription"]


def test_subscription_next_billing_date_and_annual_cost(client):
    token = register_token(client)

    subscription = create_subscription(client, token)

    next_billing = date.fromisoformat(subscription["next_billing_date"])
    assert date.today() <= next_billing <= date.today() + timedelta(days=31)
    assert subscription["annual_cost"] == 120.0

    weekly = create_subscription(client, token, name="Box", amount=5, billingCycle="weekly", startDate=days_from_today(-10))
    assert weekly["next_billing_date"] == days_from_today(4)
    assert weekly["annual_cost"] == 260.0


def test_subscription_validation(client):
    token = register_token(client)

    missing = client.post("/api/subscriptions", json={"name": "x"}, headers=auth_headers(token))
    assert missing.status_code == 400
    assert missing.get_json() == {"error": "Name, amount, billing cycle, and start date are required"}

    cycle = client.post(
        "/api/subscriptions",
        json={"name": "x", "amount": 3, "billingCycle": "daily", "startDate": "2024-01-01"},
        headers=auth_headers(token),
    )
    assert cycle.status_code == 400


def test_upcoming_subscriptions(client):
    token = register_token(client)
    create_subscription(client, token, name="Soon", nextBillingDate=days_from_today(3))
    create_subscription(client, token, name="Later", startDate=days_from_today(20))

    response = client.get("/api/subscriptions/upcoming?days=7", headers=auth_headers(token))

    (upcoming,) = response.get_json()["subscriptions"]
    assert upcoming["name"] == "Soon"
    assert upcoming["days_until_renewal"] == 3

    listed = client.get("/api/subscriptions?upcomingRenewal=7", headers=auth_headers(token)).get_json()
    assert [sub["name"] for sub in listed["subscriptions"]] == ["Soon"]


def test_record_payment_advances_billing_date(client):
    token = register_token(client)
    due = date.today() + timedelta(days=3)
    subscription = create_subscription(client, token, nextBillingDate=due.isoformat())

    response = client.post(f"/api/subscriptions/{subscription['id']}/payment", headers=auth_headers(token))

    assert response.status_code == 200
    updated = response.get_json()["subscription"]
    assert updated["last_billing_date"] == due.isoformat()
    assert updated["next_billing_date"] == add_months(due, 1).isoformat()


def test_subscription_stats(client):
    token = register_token(client)
    create_subscription(client, token)
    create_subscription(client, token, name="Cloud", amount=60, billingCycle="annual", category="Software")
    create_subscription(client, token, name="Old gym", amount=30, endDate=days_from_today(-1))

    stats = client.get("/api/subscriptions/stats", headers=auth_headers(token)).get_json()["stats"]

    assert stats["totalCount"] == 2
    assert stats["totalAnnual"] == 180.0
    assert stats["totalMonthly"] == 15.0
    assert stats["categoryBreakdown"]["Software"] == {"count": 1, "monthlyCost": 5.0, "annualCost": 60.0}
    assert [sub["name"] for sub in stats["mostExpensive"]] == ["Streaming", "Cloud"]


def test_subscription_update_delete_and_ownership(client):
    alice = register_token(client, "alice@example.com")
    mallory = register_token(client, "mallory@example.com", first_name="Mallory")
    subscription = create_subscription(client, alice)

    assert client.get(f"/api/subscriptions/{subscription['id']}", headers=auth_headers(mallory)).status_code == 404

    updated = client.put(
        f"/api/subscriptions/{subscription['id']}",
        json={"amount": 12.5, "billingCycle": "quarterly"},
        headers=auth_headers(alice),
    ).get_json()["subscription"]
    assert updated["amount"] == 12.5
    assert updated["annual_cost"] == 50.0

    assert client.delete(f"/api/subscriptions/{subscription['id']}", headers=auth_headers(mallory)).status_code == 404
    assert client.delete(f"/api/subscriptions/{subscription['id']}", headers=auth_headers(alice)).status_code == 200


def test_system_categories_are_public(client):
    response = client.get("/api/categories/system")

    assert response.status_code == 200
    categories = response.get_json()["categories"]
    assert len(categories) == 14
    assert all(category["user_id"] is None for category in categories)


def test_category_usage_stats(client):
    token = register_token(client)
    headers = auth_headers(token)
    for amount, day in ((20, "2024-01-05"), (30, "2024-02-07")):
        client.post(
            "/api/transactions",
            json={"amount": amount, "type": "expense", "category": "Food & Drinks", "date": day},
            headers=headers,
        )

    categories = client.get("/api/categories?sortBy=usageCount&sortOrder=desc", headers=headers).get_json()["categories"]

    assert len(categories) == 14
    food = categories[0]
    assert food["name"] == "Food & Drinks"
    assert food["isSystem"] is True
    assert food["usageCount"] == 2
    assert food["totalAmount"] == 50.0
    assert food["lastUsed"] == "2024-02-07"

    income = client.get("/api/categories?type=income", headers=headers).get_json()["categories"]
    assert {category["type"] for category in income} == {"income"}


def test_custom_category_lifecycle(client):
    token = register_token(client)
    headers = auth_headers(token)

    duplicate = client.post("/api/categories", json={"name": "food & drinks"}, headers=headers)
    assert duplicate.status_code == 400

    created = client.post("/api/categories", json={"name": "Pets", "color": "#123456"}, headers=headers)
    assert created.status_code == 201
    category = created.get_json()["category"]
    assert category["type"] == "expense"

    client.post(
        "/api/transactions",
        json={"amount": 15, "type": "expense", "category": "Pets", "date": "2024-03-01"},
        headers=headers,
    )
    renamed = client.put(f"/api/categories/{category['id']}", json={"name": "Animals"}, headers=headers)
    assert renamed.get_json()["category"]["name"] == "Animals"
    (transaction,) = client.get("/api/transactions", headers=headers).get_json()["transactions"]
    assert transaction["category"] == "Animals"

    deleted = client.delete(
        f"/api/categories/{category['id']}", json={"replacementCategory": "Shopping"}, headers=headers
    )
    assert deleted.status_code == 200
    (transaction,) = client.get("/api/transactions", headers=headers).get_json()["transactions"]
    assert transaction["category"] == "Shopping"


def test_system_categories_cannot_be_edited(client):
    token = register_token(client)
    system = client.get("/api/categories/system").get_json()["categories"][0]

    edit = client.put(f"/api/categories/{system['id']}", json={"name": "Mine"}, headers=auth_headers(token))
    assert edit.status_code == 404
    assert edit.get_json() == {"error": "Category not found or cannot be edited"}

    remove = client.delete(f"/api/categories/{system['id']}", headers=auth_headers(token))
    assert remove.status_code == 404


def shared_pair_categories(client, alice, bob):
    (original,) = client.get("/api/transactions", headers=auth_headers(alice)).get_json()["transactions"]
    (twin,) = client.get("/api/transactions", headers=auth_headers(bob)).get_json()["transactions"]
    assert twin["shared_from"] == original["id"]
    return original["category"], twin["category"]


def test_category_rename_keeps_shared_pair_in_sync(client, partners):
    alice, bob = partners
    category = client.post("/api/categories", json={"name": "Rent"}, headers=auth_headers(alice)).get_json()["category"]
    client.post(
        "/api/transactions",
        json={"amount": 900, "type": "expense", "category": "Rent", "date": "2024-03-01", "isShared": True},
        headers=auth_headers(alice),
    )

    client.put(f"/api/categories/{category['id']}", json={"name": "Housing costs"}, headers=auth_headers(alice))

    assert shared_pair_categories(client, alice, bob) == ("Housing costs", "Housing costs")


def test_category_replacement_keeps_shared_pair_in_sync(client, partners):
    alice, bob = partners
    category = client.post("/api/categories", json={"name": "Rent"}, headers=auth_headers(alice)).get_json()["category"]
    client.post(
        "/api/transactions",
        json={"amount": 900, "type": "expense", "category": "Rent", "date": "2024-03-01", "isShared": True},
        headers=auth_headers(alice),
    )

    response = client.delete(
        f"/api/categories/{category['id']}", json={"replacementCategory": "housing"}, headers=auth_headers(alice)
    )

    assert response.status_code == 200
    assert shared_pair_categories(client, alice, bob) == ("Housing", "Housing")


def test_category_replacement_must_exist(client):
    token = register_token(client)
    headers = auth_headers(token)
    category = client.post("/api/categories", json={"name": "Pets"}, headers=headers).get_json()["category"]
    client.post(
        "/api/transactions",
        json={"amount": 15, "type": "expense", "category": "Pets", "date": "2024-03-01"},
        headers=headers,
    )

    missing = client.delete(
        f"/api/categories/{category['id']}", json={"replacementCategory": "NoSuchCategory"}, headers=headers
    )
    assert missing.status_code == 404
    assert missing.get_json() == {"error": "Replacement category not found"}

    itself = client.delete(f"/api/categories/{category['id']}", json={"replacementCategory": "Pets"}, headers=headers)
    assert itself.status_code == 404

    (transaction,) = client.get("/api/transactions", headers=headers).get_json()["transactions"]
    assert transaction["category"] == "Pets"
    categories = client.get("/api/categories", headers=headers).get_json()["categories"]
    assert "Pets" in {item["name"] for item in categories}
