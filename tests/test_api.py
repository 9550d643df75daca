from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from library_api.api import create_app
from library_api.services import LibraryServices


@pytest.fixture
def client(services):
    app = create_app(services.settings, services)
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(services, user):
    return {"Authorization": f"Bearer {services.tokens.create_access_token(user)}"}


@pytest.fixture
def member_headers(services, member):
    return auth_headers(services, member)


@pytest.fixture
def admin_headers(services, admin):
    return auth_headers(services, admin)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "healthy"
    assert body["data"]["database"] is True


# --- Auth ---
def test_register_and_login(client):
    payload = {"email": "reader@example.com", "password": "secret1", "first_name": "Rea", "last_name": "Der"}
    response = client.post("/auth/register", json=payload)
    assert response.status_code == 201
    assert response.json()["data"]["user"]["email"] == "reader@example.com"

    response = client.post("/auth/login", json={"email": "reader@example.com", "password": "secret1"})
    assert response.status_code == 200
    token = response.json()["data"]["token"]

    me = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["first_name"] == "Rea"


def test_register_validation_errors(client):
    payload = {"email": "not-an-email", "password": "123", "first_name": "R", "last_name": "Der"}
    response = client.post("/auth/register", json=payload)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    fields = {error["field"] for error in body["errors"]}
    assert {"email", "password", "first_name"} <= fields


def test_duplicate_registration(client, member):
    payload = {"email": "ada@example.com", "password": "secret1", "first_name": "Ada", "last_name": "Two"}
    response = client.post("/auth/register", json=payload)
    assert response.status_code == 400
    assert response.json()["message"] == "User already exists"


def test_login_with_wrong_password(client, member):
    response = client.post("/auth/login", json={"email": "ada@example.com", "password": "nope"})
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid credentials", "data": None}


def test_register_admin(client):
    payload = {"email": "boss@example.com", "password": "secret1", "first_name": "Big",
               "last_name": "Boss", "registration_code": "wrong"}
    assert client.post("/auth/register-admin", json=payload).status_code == 403

    payload["registration_code"] = "letmein"
    response = client.post("/auth/register-admin", json=payload)
    assert response.status_code == 201
    assert response.json()["data"]["user"]["role"] == "ADMIN"


# --- Access control ---
def test_missing_or_bad_token(client):
    assert client.get("/users/me").status_code == 401
    response = client.get("/users/me", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token"


def test_admin_routes_reject_members(client, member_headers):
    assert client.get("/users", headers=member_headers).status_code == 403
    assert client.post("/authors", json={"name": "Someone"}, headers=member_headers).status_code == 403
    assert client.get("/analytics/revenue", headers=member_headers).status_code == 403


def test_user_management(client, services, admin_headers, member, admin):
    response = client.get("/users", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["total"] == 2

    response = client.patch(f"/users/{member.id}", json={"last_name": "Byron"}, headers=admin_headers)
    assert response.json()["data"]["last_name"] == "Byron"

    response = client.post(f"/users/{member.id}/toggle-status", json={"is_active": False}, headers=admin_headers)
    assert response.json()["data"]["is_active"] is False

    response = client.post(f"/users/{admin.id}/toggle-status", json={"is_active": False}, headers=admin_headers)
    assert response.status_code == 400

    assert client.delete(f"/users/{member.id}", headers=admin_headers).status_code == 204
    assert client.get(f"/users/{member.id}", headers=admin_headers).status_code == 404


# --- Catalog ---
def test_catalog_flow(client, admin_headers):
    author = client.post("/authors", json={"name": "Ursula K. Le Guin"}, headers=admin_headers)
    category = client.post("/categories", json={"name": "Fantasy"}, headers=admin_headers)
    assert author.status_code == category.status_code == 201

    payload = {
        "isbn": "978-0-306-40615-7",
        "title": "A Wizard of Earthsea",
        "total_copies": 2,
        "author_ids": [author.json()["data"]["id"]],
        "category_ids": [category.json()["data"]["id"]],
    }
    created = client.post("/books", json=payload, headers=admin_headers)
    assert created.status_code == 201
    book_id = created.json()["data"]["id"]
    assert created.json()["data"]["isbn"] == "9780306406157"

    listing = client.get("/books", params={"search": "earthsea"}).json()["data"]
    assert listing["total"] == 1
    assert listing["books"][0]["available_copies"] == 2

    updated = client.put(f"/books/{book_id}", json={"total_copies": 4}, headers=admin_headers)
    assert updated.json()["data"]["total_copies"] == 4

    assert client.delete(f"/books/{book_id}", headers=admin_headers).status_code == 204
    assert client.get(f"/books/{book_id}").status_code == 404


def test_book_validation(client, admin_headers):
    payload = {"isbn": "abc", "title": "", "total_copies": 0, "author_ids": [], "category_ids": []}
    response = client.post("/books", json=payload, headers=admin_headers)
    assert response.status_code == 400
    assert {"isbn", "title", "total_copies"} <= {e["field"] for e in response.json()["errors"]}


def test_pagination_bounds(client):
    response = client.get("/books", params={"limit": 1000})
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "limit"
    assert client.get("/books", params={"page": 0}).status_code == 400


# --- Borrowing ---
def test_borrow_and_return(client, member_headers, book, clock):
    response = client.post("/borrow", json={"book_id": book.id}, headers=member_headers)
    assert response.status_code == 201
    assert response.json()["data"]["book"]["title"] == "Dune"

    again = client.post("/borrow", json={"book_id": book.id}, headers=member_headers)
    assert again.status_code == 400

    clock.advance(days=20)
    response = client.post("/borrow/return", json={"book_id": book.id}, headers=member_headers)
    assert response.status_code == 200
    assert response.json()["data"]["fine"] == 6.0
    assert "Fine of 6.00" in response.json()["message"]

    history = client.get("/borrow/history", headers=member_headers).json()["data"]
    assert history["total"] == 1
    assert history["records"][0]["return_date"] is not None


def test_borrow_errors(client, member_headers):
    assert client.post("/borrow", json={"book_id": "missing"}, headers=member_headers).status_code == 404
    response = client.post("/borrow/return", json={"book_id": "missing"}, headers=member_headers)
    assert response.status_code == 404


def test_members_only_see_their_own_history(client, make_member, member_headers, admin_headers):
    other = make_member()
    response = client.get("/borrow/history", params={"user_id": other.id}, headers=member_headers)
    assert response.status_code == 403
    response = client.get("/borrow/history", params={"user_id": other.id}, headers=admin_headers)
    assert response.status_code == 200


# --- Payments ---
def test_payment_flow(client, services, member, member_headers, admin_headers):
    created = client.post("/payments", json={"amount": 15, "type": "DEPOSIT"}, headers=member_headers)
    assert created.status_code == 201
    payment_id = created.json()["data"]["id"]

    assert client.patch(f"/payments/{payment_id}/status", json={"status": "COMPLETED"},
                        headers=member_headers).status_code == 403
    response = client.patch(f"/payments/{payment_id}/status", json={"status": "COMPLETED"},
                            headers=admin_headers)
    assert response.json()["data"]["status"] == "COMPLETED"

    invoice = client.get(f"/payments/{payment_id}/invoice", headers=member_headers).json()["data"]
    assert invoice["user"]["email"] == "ada@example.com"

    stats = client.get(f"/payments/stats/{member.id}", headers=member_headers).json()["data"]
    assert stats["total_collected"] == 15.0
    assert client.get("/payments/stats", headers=admin_headers).json()["data"]["successful_payments"] == 1

    history = client.get("/payments/history", headers=member_headers).json()["data"]
    assert [p["id"] for p in history["payments"]] == [payment_id]


def test_payment_validation_and_ownership(client, services, make_member, member_headers):
    response = client.post("/payments", json={"amount": -1, "type": "FINE"}, headers=member_headers)
    assert response.status_code == 400

    other = make_member()
    foreign = services.payments.create_payment(other.id, 5, "DEPOSIT")
    assert client.get(f"/payments/{foreign.id}/invoice", headers=member_headers).status_code == 403
    assert client.get(f"/payments/stats/{other.id}", headers=member_headers).status_code == 403


# --- Analytics ---
def test_analytics(client, admin_headers, member, book):
    response = client.get("/analytics/reports/monthly/2026/3", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["month"] == "March"

    assert client.get("/analytics/reports/monthly/2026/13", headers=admin_headers).status_code == 400
    ranking = client.get("/analytics/books/most-borrowed", headers=admin_headers).json()["data"]
    assert ranking[0]["id"] == book.id
    activity = client.get("/analytics/users/activity", headers=admin_headers).json()["data"]
    assert activity["active_users"] == 2
    revenue = client.get("/analytics/revenue", headers=admin_headers).json()["data"]
    assert revenue["collection_rate"] == 0.0


# --- Errors and rate limiting ---
def test_unknown_route_uses_envelope(client):
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_unexpected_errors_are_hidden(services, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("secret detail")

    monkeypatch.setattr(services.books, "list_books", boom)
    app = create_app(services.settings, services)
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/books")

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Internal server error", "data": None}


def test_rate_limit(settings, clock):
    limited = replace(settings, api_rate_limit=2)
    app = create_app(limited, LibraryServices(limited, clock=clock))
    with TestClient(app) as client:
        assert client.get("/books").status_code == 200
        assert client.get("/books").status_code == 200
        response = client.get("/books")
        assert response.status_code == 429
        assert response.json()["success"] is False
        assert "Retry-After" in response.headers
        assert client.get("/health").status_code == 200
