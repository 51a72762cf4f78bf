"""
Request authorization pipeline: session resolution, public routes, redirects
and server-side permission enforcement.
"""

import base64
import datetime
from urllib.parse import parse_qs, urlparse

import pytest
from flask import g
from sqlalchemy.exc import OperationalError

from models import Ticket
from session_store import SessionData
from tests.conftest import ADMIN_PASSWORD


def _login_target(response):
    location = urlparse(response.headers["Location"])
    return location.path, parse_qs(location.query).get("from", [None])[0]


class TestUnauthenticated:
    @pytest.mark.parametrize("path", ["/", "/tickets", "/tickets/new", "/users", "/roles", "/profile"])
    def test_protected_pages_redirect_to_login(self, client, path):
        response = client.get(path)
        assert response.status_code == 302
        assert _login_target(response) == ("/login", path)

    def test_query_string_is_preserved(self, client):
        response = client.get("/tickets?status=open")
        assert _login_target(response) == ("/login", "/tickets?status=open")

    def test_api_gets_json_401(self, client):
        response = client.get("/api/tickets")
        assert response.status_code == 401
        assert response.get_json() == {"success": False, "error": "Not authenticated"}

    def test_handler_does_not_run(self, app, client):
        client.post("/tickets/new", data={"title": "sneaky"})
        with app.app_context():
            assert Ticket.query.count() == 0

    @pytest.mark.parametrize("path", ["/login", "/healthz"])
    def test_public_routes_are_reachable(self, client, path):
        assert client.get(path).status_code == 200

    def test_auth_api_is_public(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.get_json()["success"] is False


class TestCookieFailures:
    def test_cookie_does_not_expose_identity(self, admin_client):
        token = admin_client.get_cookie("ticketing_session").value
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        assert "@" not in token
        assert b"admin@example.com" not in raw
        assert b"Administrator" not in raw

    def test_tampered_cookie_is_treated_as_absent(self, admin_client):
        token = admin_client.get_cookie("ticketing_session").value
        mid = len(token) // 2
        token = token[:mid] + ("A" if token[mid] != "A" else "B") + token[mid + 1:]
        admin_client.set_cookie("ticketing_session", token)
        response = admin_client.get("/users")
        assert response.status_code == 302
        assert _login_target(response) == ("/login", "/users")

    def test_expired_cookie_is_treated_as_absent(self, app, client):
        store = app.extensions["session_store"]
        issued = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(
            seconds=store.lifetime_seconds + 60
        )
        token = store.encode(SessionData(user_id="1", role="admin", name="Administrator"), now=issued)
        client.set_cookie("ticketing_session", token)
        response = client.get("/tickets")
        assert response.status_code == 302
        assert _login_target(response) == ("/login", "/tickets")

    def test_garbage_cookie_never_errors(self, client):
        client.set_cookie("ticketing_session", "not-a-token")
        assert client.get("/").status_code == 302
        assert client.get("/api/tickets").status_code == 401

    def test_logout_locks_protected_routes_again(self, admin_client):
        assert admin_client.get("/tickets").status_code == 200
        admin_client.post("/logout")
        response = admin_client.get("/tickets")
        assert response.status_code == 302
        assert _login_target(response) == ("/login", "/tickets")


class TestAuthenticated:
    def test_identity_is_attached_to_request(self, app, make_user, login):
        user_id = make_user("tess", password="tech-pass-1", role="technician")
        client = app.test_client()
        login(client, "tess", "tech-pass-1")
        with client:
            client.get("/")
            assert g.user_id == str(user_id)
            assert g.role == "technician"
            assert g.identity.name == "Tess"

    def test_dashboard_renders(self, admin_client):
        response = admin_client.get("/")
        assert response.status_code == 200
        assert b"Welcome, Administrator" in response.data


class TestTicketPermissions:
    def test_read_only_role_can_list_but_not_create(self, app, make_role, make_user, login):
        make_role("ticket-viewer", {"tickets": ["read"]})
        make_user("vic", password="viewer-pass", role="ticket-viewer")
        client = app.test_client()
        assert login(client, "vic", "viewer-pass").status_code == 200

        assert client.get("/tickets").status_code == 200
        assert client.get("/api/tickets").status_code == 200

        denied_page = client.post("/tickets/new", data={"title": "Printer jam"})
        assert denied_page.status_code == 403
        assert b"Access Denied" in denied_page.data

        denied_api = client.post("/api/tickets", json={"title": "Printer jam"})
        assert denied_api.status_code == 403
        assert denied_api.get_json()["success"] is False

        with app.app_context():
            assert Ticket.query.count() == 0

    def test_employee_can_create(self, app, make_user, login):
        make_user("erin", password="emp-pass-1", role="employee")
        client = app.test_client()
        login(client, "erin", "emp-pass-1")
        response = client.post("/tickets/new", data={"title": "Laptop will not boot", "priority": "high"})
        assert response.status_code == 302
        assert response.headers["Location"] == "/tickets"
        created = client.post("/api/tickets", json={"title": "VPN access"})
        assert created.status_code == 201
        listing = client.get("/api/tickets").get_json()["data"]
        assert [ticket["title"] for ticket in listing] == ["VPN access", "Laptop will not boot"]
        assert listing[1]["priority"] == "high"

    def test_missing_title_is_rejected(self, admin_client):
        response = admin_client.post("/api/tickets", json={"title": "  "})
        assert response.status_code == 400

    def test_unknown_role_is_denied_everything(self, app, make_user, login):
        make_user("orphan", password="orphan-pass", role="retired-role")
        client = app.test_client()
        assert login(client, "orphan", "orphan-pass").status_code == 200
        assert client.get("/tickets").status_code == 403
        assert client.get("/").status_code == 200

    def test_storage_failure_fails_closed(self, app, admin_client, monkeypatch):
        table = app.extensions["permission_table"]

        def broken_loader():
            raise OperationalError("SELECT", {}, Exception("db down"))

        monkeypatch.setattr(table, "_loader", broken_loader)
        table.invalidate()
        response = admin_client.post("/api/tickets", json={"title": "should not exist"})
        assert response.status_code == 503
        monkeypatch.undo()
        table.invalidate()
        with app.app_context():
            assert Ticket.query.count() == 0


def test_admin_password_fixture_matches_seed(client, login):
    assert login(client, "admin@example.com", ADMIN_PASSWORD).status_code == 200
