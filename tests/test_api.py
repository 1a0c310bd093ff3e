from datetime import date


def _register(client, email, role=None, password="secret1"):
    payload = {"name": email.split("@")[0], "email": email, "password": password}
    if role:
        payload["role"] = role
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 201, response.text
    body = response.json()
    return body["user"], {"Authorization": f"Bearer {body['token']}"}


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_unknown_route(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.json() == {"message": "Route not found"}


def test_protected_routes_require_token(client):
    for method, path in [
        ("get", "/api/transactions"),
        ("get", "/api/transactions/stats"),
        ("get", "/api/categories"),
        ("get", "/api/users/me"),
        ("get", "/api/analytics/chart"),
    ]:
        response = getattr(client, method)(path)
        assert response.status_code == 401, path
        assert response.json() == {"message": "Unauthorized"}

    bad = client.get("/api/transactions", headers={"Authorization": "Bearer forged"})
    assert bad.status_code == 401


def test_register_and_login(client):
    user, _ = _register(client, "alice@example.com")
    assert user["role"] == "user"
    assert "password_hash" not in user

    duplicate = client.post(
        "/api/auth/register",
        json={"name": "Alice", "email": "alice@example.com", "password": "secret1"},
    )
    assert duplicate.status_code == 400
    assert duplicate.json() == {"message": "Email already used"}

    ok = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret1"})
    assert ok.status_code == 200
    assert ok.json()["user"]["id"] == user["id"]

    wrong = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "badpass"})
    unknown = client.post("/api/auth/login", json={"email": "zed@example.com", "password": "secret1"})
    assert wrong.status_code == unknown.status_code == 400
    assert wrong.json() == unknown.json() == {"message": "Invalid credentials"}


def test_token_of_deleted_user_is_rejected(client):
    _, admin = _register(client, "admin@example.com", role="admin")
    user, headers = _register(client, "gone@example.com")
    assert client.delete(f"/api/users/me/{user['id']}", headers=admin).status_code == 200
    assert client.get("/api/transactions", headers=headers).status_code == 401


def test_transaction_lifecycle(client):
    _, admin = _register(client, "admin@example.com", role="admin")
    _, headers = _register(client, "alice@example.com")
    category = client.post("/api/categories", json={"name": "Food"}, headers=admin).json()["data"]

    created = client.post(
        "/api/transactions",
        json={"amount": 50.00, "type": "expense", "categoryId": category["id"], "date": "2025-01-15"},
        headers=headers,
    )
    assert created.status_code == 201, created.text
    txn = created.json()["data"]

    fetched = client.get(f"/api/transactions/{txn['id']}", headers=headers).json()["data"]
    assert fetched["amount"] == 50.0
    assert fetched["type"] == "expense"
    assert fetched["categoryId"] == category["id"]
    assert fetched["category"]["name"] == "Food"
    assert fetched["date"] == "2025-01-15"

    updated = client.put(
        f"/api/transactions/{txn['id']}", json={"notes": "with friends"}, headers=headers
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["notes"] == "with friends"
    assert updated.json()["data"]["amount"] == 50.0

    deleted = client.delete(f"/api/transactions/{txn['id']}", headers=headers)
    assert deleted.status_code == 200
    assert client.get(f"/api/transactions/{txn['id']}", headers=headers).status_code == 404


def test_invalid_transaction_payload(client):
    _, headers = _register(client, "alice@example.com")
    response = client.post(
        "/api/transactions", json={"amount": 0, "type": "expense"}, headers=headers
    )
    assert response.status_code == 400
    assert "amount" in response.json()["message"]

    listing = client.get("/api/transactions", headers=headers).json()
    assert listing["meta"]["total"] == 0

    bad_range = client.get(
        "/api/transactions?dateFrom=2025-02-01&dateTo=2025-01-01", headers=headers
    )
    assert bad_range.status_code == 400


def test_read_only_cannot_create(client):
    _, headers = _register(client, "viewer@example.com", role="read-only")
    response = client.post(
        "/api/transactions", json={"amount": 10, "type": "income"}, headers=headers
    )
    assert response.status_code == 403
    assert client.get("/api/transactions", headers=headers).json()["meta"]["total"] == 0


def test_list_query_parameters(client):
    _, headers = _register(client, "alice@example.com")
    for amount, kind, description in [
        (5, "expense", "coffee"),
        (25, "expense", "books"),
        (500, "income", "salary"),
    ]:
        client.post(
            "/api/transactions",
            json={"amount": amount, "type": kind, "description": description},
            headers=headers,
        )

    body = client.get(
        "/api/transactions?sortBy=amount&sortDir=asc&perPage=1", headers=headers
    ).json()
    # perPage is clamped to the minimum page size.
    assert body["meta"] == {"page": 1, "perPage": 5, "total": 3, "totalPages": 1}
    assert [t["amount"] for t in body["data"]] == [5.0, 25.0, 500.0]

    expenses = client.get("/api/transactions?type=expense&q=BOOK", headers=headers).json()
    assert [t["description"] for t in expenses["data"]] == ["books"]

    ranged = client.get("/api/transactions?minAmount=10&maxAmount=100", headers=headers).json()
    assert ranged["meta"]["total"] == 1


def test_stats_cached_and_invalidated(client):
    _, headers = _register(client, "alice@example.com")
    today = date.today().isoformat()
    client.post(
        "/api/transactions",
        json={"amount": 30, "type": "expense", "date": today},
        headers=headers,
    )

    first = client.get("/api/transactions/stats", headers=headers).json()
    second = client.get("/api/transactions/stats", headers=headers).json()
    assert first["cached"] is False
    assert second["cached"] is True
    assert first["data"] == second["data"]
    assert first["data"]["incomeVsExpense"] == [{"type": "expense", "total": 30.0}]

    client.post(
        "/api/transactions",
        json={"amount": 70, "type": "income", "date": today},
        headers=headers,
    )
    third = client.get("/api/transactions/stats", headers=headers).json()
    assert third["cached"] is False
    assert third["data"]["monthTotals"] == [
        {"month": today[:7], "income": 70.0, "expense": 30.0}
    ]

    chart = client.get("/api/analytics/chart", headers=headers).json()
    assert chart["monthlyTrends"] == [{"month": today[:7], "total": 100.0}]
    assert chart["categoryDistribution"] == [{"category": "Uncategorized", "total": 100.0}]


def test_admin_stats_for_other_user(client):
    _, admin = _register(client, "admin@example.com", role="admin")
    alice, alice_headers = _register(client, "alice@example.com")
    client.post("/api/transactions", json={"amount": 12, "type": "income"}, headers=alice_headers)

    response = client.get(f"/api/transactions/stats?userId={alice['id']}", headers=admin)
    assert response.status_code == 200
    assert response.json()["data"]["incomeVsExpense"] == [{"type": "income", "total": 12.0}]

    missing = client.get("/api/transactions/stats?userId=9999", headers=admin)
    assert missing.status_code == 404


def test_categories_endpoints(client):
    _, admin = _register(client, "admin@example.com", role="admin")
    _, headers = _register(client, "alice@example.com")

    forbidden = client.post("/api/categories", json={"name": "Food"}, headers=headers)
    assert forbidden.status_code == 403
    assert forbidden.json() == {"message": "Only admin can create categories."}

    food = client.post("/api/categories", json={"name": "Food"}, headers=admin).json()["data"]
    dup = client.post("/api/categories", json={"name": "food"}, headers=admin)
    assert dup.status_code == 400

    listing = client.get("/api/categories", headers=headers).json()
    assert listing == {"data": [{"id": food["id"], "name": "Food"}], "cached": False}
    assert client.get("/api/categories", headers=headers).json()["cached"] is True

    renamed = client.put(f"/api/categories/{food['id']}", json={"name": "Meals"}, headers=admin)
    assert renamed.json()["data"]["name"] == "Meals"
    assert client.get("/api/categories", headers=headers).json()["data"][0]["name"] == "Meals"

    assert client.delete(f"/api/categories/{food['id']}", headers=admin).status_code == 200
    assert client.get("/api/categories", headers=headers).json()["data"] == []


def test_role_management(client):
    _, admin = _register(client, "admin@example.com", role="admin")
    alice, alice_headers = _register(client, "alice@example.com")
    bob, _ = _register(client, "bob@example.com")

    denied = client.put(f"/api/users/me/{bob['id']}", json={"role": "admin"}, headers=alice_headers)
    assert denied.status_code == 403
    users = client.get("/api/users/me", headers=admin).json()
    roles = {u["id"]: u["role"] for u in users["data"]}
    assert roles[bob["id"]] == "user"
    assert users["meta"]["total"] == 3

    granted = client.put(f"/api/users/me/{bob['id']}", json={"role": "admin"}, headers=admin)
    assert granted.status_code == 200
    assert granted.json()["data"]["role"] == "admin"

    invalid = client.put(f"/api/users/me/{bob['id']}", json={"role": "root"}, headers=admin)
    assert invalid.status_code == 400
    assert invalid.json() == {"message": "Invalid role."}

    assert client.get("/api/users/me", headers=alice_headers).status_code == 403


def test_delete_user_cascades(client):
    _, admin = _register(client, "admin@example.com", role="admin")
    alice, alice_headers = _register(client, "alice@example.com")
    for amount in (10, 20):
        client.post(
            "/api/transactions", json={"amount": amount, "type": "expense"}, headers=alice_headers
        )

    response = client.delete(f"/api/users/me/{alice['id']}", headers=admin)
    assert response.status_code == 200

    remaining = client.get(f"/api/transactions?userId={alice['id']}", headers=admin).json()
    assert remaining["meta"]["total"] == 0
    assert client.delete(f"/api/users/me/{alice['id']}", headers=admin).status_code == 404


def test_oversized_numbers_are_bad_requests(client):
    _, headers = _register(client, "alice@example.com")
    client.post("/api/transactions", json={"amount": 5, "type": "expense"}, headers=headers)

    huge_page = client.get("/api/transactions?page=10000000000000000000", headers=headers)
    assert huge_page.status_code == 200
    assert huge_page.json()["data"] == []
    assert huge_page.json()["meta"]["total"] == 1

    for query in [
        "minAmount=100000000000000000000",
        "maxAmount=1e30",
        "maxAmount=-1e30",
        "categoryId=10000000000000000000",
        "userId=10000000000000000000",
    ]:
        response = client.get(f"/api/transactions?{query}", headers=headers)
        assert response.status_code == 400, query
        assert "out of range" in response.json()["message"]

    not_a_number = client.get("/api/transactions?minAmount=NaN", headers=headers)
    assert not_a_number.status_code == 400

    for path in [
        "/api/transactions/10000000000000000000",
        "/api/transactions/stats?userId=10000000000000000000",
        "/api/analytics/chart?userId=10000000000000000000",
    ]:
        assert client.get(path, headers=headers).status_code == 400, path


def test_date_filters_reject_trailing_text(client):
    _, headers = _register(client, "alice@example.com")
    response = client.get("/api/transactions?dateFrom=2025-01-15junk", headers=headers)
    assert response.status_code == 400
    assert "dateFrom" in response.json()["message"]
