from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from library_api.api import create_app


@pytest.fixture
def client(settings, services):
    app = create_app(settings, services=services)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers(client):
    resp = client.post("/api/auth/register", json={
        "first_name": "Libby", "last_name": "Rarian", "email": "libby@example.com", "password": "s3cret!",
    })
    assert resp.status_code == 201
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def _create_author(client, headers, first="Ursula", last="Le Guin"):
    resp = client.post("/api/authors", json={"first_name": first, "last_name": last}, headers=headers)
    assert resp.status_code == 201
    return resp.json()


def _create_book(client, headers, author_id, isbn="9780306406157", copies=1):
    resp = client.post("/api/books", json={
        "isbn": isbn, "title": "The Dispossessed", "author_id": author_id, "total_copies": copies,
    }, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _create_member(client, headers, email="ada@example.com"):
    resp = client.post("/api/members", json={
        "first_name": "Ada", "last_name": "Lovelace", "email": email, "phone_number": "+44 20 7946 0000",
    }, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["books"] == 0
    assert body["open_loans"] == 0


def test_endpoints_require_token(client):
    resp = client.get("/api/books")
    assert resp.status_code == 401
    assert resp.json()["code"] == "not_authenticated"
    assert resp.headers["www-authenticate"] == "Bearer"

    resp = client.get("/api/books", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401


def test_login_flow(client, auth_headers):
    resp = client.post("/api/auth/login", json={"email": "libby@example.com", "password": "s3cret!"})
    assert resp.status_code == 200
    assert resp.json()["full_name"] == "Libby Rarian"

    resp = client.post("/api/auth/login", json={"email": "libby@example.com", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid email or password"


def test_register_duplicate(client, auth_headers):
    resp = client.post("/api/auth/register", json={
        "first_name": "Libby", "last_name": "Again", "email": "libby@example.com", "password": "s3cret!",
    })
    assert resp.status_code == 400
    assert resp.json()["code"] == "duplicate"


def test_book_crud(client, auth_headers):
    author = _create_author(client, auth_headers)
    book = _create_book(client, auth_headers, author["id"], isbn="978-0-306-40615-7", copies=2)
    assert book["isbn"] == "9780306406157"
    assert book["author_name"] == "Ursula Le Guin"
    assert book["available_copies"] == 2

    assert client.get(f"/api/books/{book['id']}", headers=auth_headers).json()["title"] == "The Dispossessed"
    assert client.get("/api/books/isbn/9780306406157", headers=auth_headers).json()["id"] == book["id"]
    assert len(client.get(f"/api/books/author/{author['id']}", headers=auth_headers).json()) == 1

    resp = client.put(f"/api/books/{book['id']}", json={"title": "The Dispossessed: An Ambiguous Utopia",
                                                       "total_copies": 4}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["total_copies"] == 4
    assert resp.json()["available_copies"] == 4

    assert client.get(f"/api/authors/{author['id']}", headers=auth_headers).json()["book_count"] == 1

    assert client.delete(f"/api/books/{book['id']}", headers=auth_headers).status_code == 204
    resp = client.get(f"/api/books/{book['id']}", headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["code"] == "book_not_found"


def test_create_book_validation(client, auth_headers):
    author = _create_author(client, auth_headers)
    resp = client.post("/api/books", json={"isbn": "9780306406158", "title": "Bad", "author_id": author["id"],
                                           "total_copies": 1}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid ISBN format."

    resp = client.post("/api/books", json={"isbn": "9780306406157", "title": "Orphan", "author_id": 999,
                                           "total_copies": 1}, headers=auth_headers)
    assert resp.status_code == 400

    _create_book(client, auth_headers, author["id"])
    resp = client.post("/api/books", json={"isbn": "9780306406157", "title": "Again", "author_id": author["id"],
                                           "total_copies": 1}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "duplicate"

    resp = client.get("/api/books/isbn/9780134686097", headers=auth_headers)
    assert resp.status_code == 404


def test_loan_lifecycle(client, auth_headers, clock):
    author = _create_author(client, auth_headers)
    book = _create_book(client, auth_headers, author["id"])
    ada = _create_member(client, auth_headers)
    grace = _create_member(client, auth_headers, email="grace@example.com")
    due = (clock.now + timedelta(days=7)).isoformat()

    resp = client.post("/api/loans", json={"book_id": book["id"], "member_id": ada["id"], "due_date": due},
                       headers=auth_headers)
    assert resp.status_code == 201
    loan = resp.json()
    assert loan["book_title"] == "The Dispossessed"
    assert loan["member_name"] == "Ada Lovelace"
    assert loan["status"] == "OPEN"

    resp = client.post("/api/loans", json={"book_id": book["id"], "member_id": grace["id"], "due_date": due},
                       headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "no_copy_available"

    assert client.get("/api/books/available", headers=auth_headers).json() == []
    assert client.get(f"/api/members/{ada['id']}", headers=auth_headers).json()["active_loans_count"] == 1

    renew_to = (clock.now + timedelta(days=9)).isoformat()
    resp = client.post(f"/api/loans/{loan['id']}/renew", json={"due_date": renew_to}, headers=auth_headers)
    assert resp.status_code == 200

    clock.advance(days=12)
    overdue = client.get("/api/loans", params={"overdue": True}, headers=auth_headers).json()
    assert [item["id"] for item in overdue] == [loan["id"]]
    assert overdue[0]["days_overdue"] == 3

    resp = client.post(f"/api/loans/{loan['id']}/return", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["late_fee"] == "1.50"
    assert resp.json()["status"] == "RETURNED"

    resp = client.post(f"/api/loans/{loan['id']}/return", headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "already_returned"

    audit = client.get(f"/api/books/{book['id']}/audit", headers=auth_headers).json()
    assert audit["consistent"] is True
    assert audit["available_copies"] == 1


def test_loan_errors(client, auth_headers, clock):
    author = _create_author(client, auth_headers)
    book = _create_book(client, auth_headers, author["id"])
    member = _create_member(client, auth_headers)

    resp = client.post("/api/loans", json={"book_id": book["id"], "member_id": member["id"],
                                           "due_date": (clock.now - timedelta(days=1)).isoformat()},
                       headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_due_date"

    resp = client.post("/api/loans", json={"book_id": 999, "member_id": member["id"]}, headers=auth_headers)
    assert resp.status_code == 404

    assert client.get("/api/loans/999", headers=auth_headers).status_code == 404


def test_reducing_copies_below_open_loans(client, auth_headers):
    author = _create_author(client, auth_headers)
    book = _create_book(client, auth_headers, author["id"])
    member = _create_member(client, auth_headers)
    client.post("/api/loans", json={"book_id": book["id"], "member_id": member["id"]}, headers=auth_headers)

    resp = client.put(f"/api/books/{book['id']}", json={"title": "Renamed", "total_copies": 0},
                      headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "below_open_loan_count"
    # the title change is rolled back with the refused adjustment
    assert client.get(f"/api/books/{book['id']}", headers=auth_headers).json()["title"] == "The Dispossessed"

    assert client.delete(f"/api/books/{book['id']}", headers=auth_headers).status_code == 409


def test_member_deactivation(client, auth_headers):
    author = _create_author(client, auth_headers)
    book = _create_book(client, auth_headers, author["id"])
    member = _create_member(client, auth_headers)
    assert member["membership_number"] == f"MEM-{member['id']:06d}"
    client.post("/api/loans", json={"book_id": book["id"], "member_id": member["id"]}, headers=auth_headers)

    resp = client.put(f"/api/members/{member['id']}", json={"is_active": False}, headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "member_has_open_loans"

    resp = client.put(f"/api/members/{member['id']}", params={"force": True}, json={"is_active": False},
                      headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False
    assert client.get("/api/members", params={"active": True}, headers=auth_headers).json() == []


def test_author_in_use_cannot_be_deleted(client, auth_headers):
    author = _create_author(client, auth_headers)
    _create_book(client, auth_headers, author["id"])
    resp = client.delete(f"/api/authors/{author['id']}", headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "in_use"

    other = _create_author(client, auth_headers, "George", "Eliot")
    assert client.delete(f"/api/authors/{other['id']}", headers=auth_headers).status_code == 204
    assert client.get(f"/api/authors/{other['id']}", headers=auth_headers).status_code == 404


def test_consistency_fault_returns_500(client, auth_headers, services, caplog):
    author = _create_author(client, auth_headers)
    book = _create_book(client, auth_headers, author["id"])
    services.availability.reserve_copy(book["id"])

    with caplog.at_level("ERROR"):
        resp = client.get(f"/api/books/{book['id']}/audit", headers=auth_headers)
    assert resp.status_code == 500
    assert resp.json()["code"] == "invariant_violation"
    assert "mismatch" in caplog.text


def test_malformed_email_rejected(client, auth_headers):
    resp = client.post("/api/auth/register", json={
        "first_name": "No", "last_name": "Domain", "email": "nodomain@", "password": "s3cret!",
    })
    assert resp.status_code == 422

    resp = client.post("/api/members", json={
        "first_name": "Ada", "last_name": "Lovelace", "email": "ada.example.com", "phone_number": "+44 20 7946 0000",
    }, headers=auth_headers)
    assert resp.status_code == 422


def test_names_must_contain_letters(client, auth_headers):
    resp = client.post("/api/authors", json={"first_name": "123", "last_name": "Le Guin"}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid"

    resp = client.post("/api/members", json={
        "first_name": "Ada", "last_name": "42", "email": "ada@example.com", "phone_number": "+44 20 7946 0000",
    }, headers=auth_headers)
    assert resp.status_code == 400


def test_member_update_is_all_or_nothing(client, auth_headers):
    ada = _create_member(client, auth_headers)
    _create_member(client, auth_headers, email="grace@example.com")

    resp = client.put(f"/api/members/{ada['id']}", json={"is_active": False, "email": "grace@example.com"},
                      headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "duplicate"

    stored = client.get(f"/api/members/{ada['id']}", headers=auth_headers).json()
    assert stored["is_active"] is True
    assert stored["email"] == "ada@example.com"

    resp = client.put(f"/api/members/{ada['id']}", json={"is_active": False, "email": "ada@lovelace.org"},
                      headers=auth_headers)
    assert resp.status_code == 200
    assert (resp.json()["is_active"], resp.json()["email"]) == (False, "ada@lovelace.org")
