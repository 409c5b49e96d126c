"""
Transaction endpoints: CRUD, filtering, bulk operations and helpers.
"""
from decimal import Decimal


def create_transaction(client, **overrides):
    payload = {
        "type": "expense",
        "amount": "42.50",
        "description": "Groceries",
        "date": "2024-05-10T12:00:00",
    }
    payload.update(overrides)
    response = client.post("/api/transactions/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_get_and_delete(client):
    account = client.post("/api/accounts/", json={"name": "Checking", "type": "checking"}).json()
    tx = create_transaction(
        client,
        account_id=account["id"],
        tags=[" food ", "", "weekly"],
        attachments=["https://files.example.com/receipt.png"],
        metadata={"source": "manual"},
    )

    assert tx["tags"] == ["food", "weekly"]
    assert tx["attachments"] == ["https://files.example.com/receipt.png"]
    assert tx["metadata"] == {"source": "manual"}
    assert Decimal(tx["amount"]) == Decimal("42.50")

    fetched = client.get(f"/api/transactions/{tx['id']}").json()
    assert fetched["account_id"] == account["id"]

    assert client.delete(f"/api/transactions/{tx['id']}").status_code == 204
    assert client.get(f"/api/transactions/{tx['id']}").status_code == 404


def test_aware_dates_are_stored_as_utc(client):
    tx = create_transaction(client, date="2024-05-10T12:00:00-03:00")
    assert tx["date"].startswith("2024-05-10T15:00:00")


def test_transactions_are_private(client, other_user_headers):
    tx = create_transaction(client)

    assert client.get(f"/api/transactions/{tx['id']}", headers=other_user_headers).status_code == 404
    assert client.delete(f"/api/transactions/{tx['id']}", headers=other_user_headers).status_code == 404
    listing = client.get("/api/transactions/", headers=other_user_headers).json()
    assert listing["meta"]["total"] == 0


def test_references_must_belong_to_user(client, other_user_headers):
    foreign = client.post(
        "/api/accounts/", json={"name": "Theirs", "type": "checking"}, headers=other_user_headers
    ).json()
    response = client.post("/api/transactions/", json={
        "type": "expense",
        "amount": "10",
        "description": "Sneaky",
        "date": "2024-05-10T12:00:00",
        "account_id": foreign["id"],
    })
    assert response.status_code == 404


def test_validation_errors(client):
    base = {"type": "expense", "amount": "10", "description": "Coffee", "date": "2024-05-10T12:00:00"}

    assert client.post("/api/transactions/", json={**base, "amount": "0"}).status_code == 422
    assert client.post("/api/transactions/", json={**base, "type": "gift"}).status_code == 422
    assert client.post("/api/transactions/", json={**base, "description": ""}).status_code == 422
    missing_rule = client.post("/api/transactions/", json={**base, "is_recurring": True})
    assert missing_rule.status_code == 400


def test_list_filters_sorting_and_pagination(client):
    create_transaction(client, description="Salary", type="income", amount="5000", date="2024-05-01T09:00:00")
    create_transaction(client, description="Rent", amount="1500", date="2024-05-02T09:00:00", tags=["home"])
    create_transaction(client, description="Cinema", amount="40", date="2024-05-03T09:00:00", location="Downtown Mall")

    page = client.get("/api/transactions/?page=1&limit=2").json()
    assert [t["description"] for t in page["data"]] == ["Cinema", "Rent"]
    assert page["meta"] == {
        "total": 3, "page": 1, "limit": 2, "total_pages": 2, "has_next": True, "has_prev": False,
    }

    expenses = client.get("/api/transactions/?type=expense&sort_by=amount&sort_order=asc").json()
    assert [t["description"] for t in expenses["data"]] == ["Cinema", "Rent"]

    by_amount = client.get("/api/transactions/?min_amount=100&max_amount=2000").json()
    assert [t["description"] for t in by_amount["data"]] == ["Rent"]

    by_tag = client.get("/api/transactions/?tags=home").json()
    assert [t["description"] for t in by_tag["data"]] == ["Rent"]

    by_location = client.get("/api/transactions/?search=mall").json()
    assert [t["description"] for t in by_location["data"]] == ["Cinema"]

    assert client.get("/api/transactions/?limit=500").status_code == 422


def test_update_keeps_required_fields(client):
    tx = create_transaction(client, tags=["a"])

    response = client.patch(f"/api/transactions/{tx['id']}", json={"description": None, "tags": [], "amount": "15"})
    assert response.status_code == 200
    updated = response.json()
    assert updated["description"] == "Groceries"
    assert updated["tags"] == []
    assert Decimal(updated["amount"]) == Decimal("15")


def test_stats_and_search(client):
    create_transaction(client, description="Salary", type="income", amount="1000")
    create_transaction(client, description="Bakery", amount="200")
    create_transaction(client, description="Bakery again", amount="100")

    stats = client.get("/api/transactions/stats").json()
    assert Decimal(str(stats["total_income"])) == Decimal("1000")
    assert Decimal(str(stats["total_expenses"])) == Decimal("300")
    assert Decimal(str(stats["net_amount"])) == Decimal("700")
    assert stats["transaction_count"] == 3

    results = client.get("/api/transactions/search?q=bakery").json()
    assert {t["description"] for t in results} == {"Bakery", "Bakery again"}


def test_bulk_categorize_and_delete_only_touch_own_rows(client, other_user_headers):
    category = client.post("/api/categories/", json={"name": "Food"}).json()
    mine = create_transaction(client)
    theirs = client.post("/api/transactions/", json={
        "type": "expense", "amount": "5", "description": "Theirs", "date": "2024-05-10T12:00:00",
    }, headers=other_user_headers).json()

    response = client.post("/api/transactions/bulk/categorize", json={
        "transaction_ids": [mine["id"], theirs["id"]],
        "category_id": category["id"],
    })
    assert response.json() == {"updated": 1}
    assert client.get(f"/api/transactions/{mine['id']}").json()["category_id"] == category["id"]

    response = client.post("/api/transactions/bulk/delete", json={"transaction_ids": [mine["id"], theirs["id"]]})
    assert response.json() == {"deleted": 1}
    assert client.get(f"/api/transactions/{theirs['id']}", headers=other_user_headers).status_code == 200


def test_check_duplicate(client):
    create_transaction(client, description="Netflix", amount="39.90", date="2024-05-10T12:00:00")

    matches = client.post("/api/transactions/check-duplicate", json={
        "type": "expense", "amount": "39.90", "description": "netflix", "date": "2024-05-11T08:00:00",
    }).json()
    assert len(matches) == 1

    far_away = client.post("/api/transactions/check-duplicate", json={
        "type": "expense", "amount": "39.90", "description": "netflix", "date": "2024-05-20T08:00:00",
    }).json()
    assert far_away == []


def test_suggest_category(client):
    client.post("/api/categories/initialize-defaults")

    response = client.post("/api/transactions/suggest-category", json={
        "description": "UBER *TRIP", "type": "expense",
    })
    assert response.status_code == 200
    body = response.json()
    assert body["method"] == "keyword"
    assert body["category_name"] == "Taxi & Rideshare"
