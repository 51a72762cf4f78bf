"""
Shared fixtures: an application on in-memory SQLite with the built-in roles
seeded and a default admin account.
"""

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from models import Role, RolePermission, User, db

SECRET = "test-session-secret-0123456789-abcdefghij"
ADMIN_PASSWORD = "admin-pass-123"


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": SECRET,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "LOG_DIR": str(tmp_path / "logs"),
            "AUTH_COOKIE_SECURE": False,
            "DEFAULT_ADMIN_PASSWORD": ADMIN_PASSWORD,
        }
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(username, password="secret-pass", role="employee", email=None, name=None, active=True):
        with app.app_context():
            user = User(
                username=username,
                email=email or f"{username}@example.com",
                name=name or username.title(),
                password_hash=generate_password_hash(password),
                role=role,
                is_active=active,
            )
            db.session.add(user)
            db.session.commit()
            return user.id

    return _make_user


@pytest.fixture
def make_role(app):
    def _make_role(slug, grants, active=True):
        with app.app_context():
            role = Role(slug=slug, name=slug.title(), is_system=False, is_active=active)
            for resource, actions in grants.items():
                perm = RolePermission(resource=resource)
                perm.set_actions(actions)
                role.permissions.append(perm)
            db.session.add(role)
            db.session.commit()
            app.extensions["permission_table"].invalidate()
            return role.id

    return _make_role


def api_login(client, username, password):
    return client.post("/api/auth/login", json={"usernameOrEmail": username, "password": password})


@pytest.fixture
def login():
    return api_login


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    response = api_login(client, "admin", ADMIN_PASSWORD)
    assert response.status_code == 200
    return client
