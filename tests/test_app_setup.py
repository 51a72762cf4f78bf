import pytest

from app import _engine_options, create_app, load_config
from errors import ConfigurationError
from models import User
from tests.conftest import SECRET


class TestStartup:
    def test_missing_secret_is_fatal(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SESSION_SECRET", raising=False)
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            create_app({"SQLALCHEMY_DATABASE_URI": "sqlite://", "LOG_DIR": str(tmp_path)})

    def test_short_secret_is_fatal(self, tmp_path):
        with pytest.raises(ConfigurationError):
            create_app({"SECRET_KEY": "short", "SQLALCHEMY_DATABASE_URI": "sqlite://", "LOG_DIR": str(tmp_path)})

    def test_unreachable_store_is_fatal(self, tmp_path):
        with pytest.raises(ConfigurationError):
            create_app(
                {
                    "SECRET_KEY": SECRET,
                    "SQLALCHEMY_DATABASE_URI": "sqlite:////nonexistent-dir/ticketing.db",
                    "LOG_DIR": str(tmp_path),
                }
            )

    def test_no_admin_without_password(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DEFAULT_ADMIN_PASSWORD", raising=False)
        app = create_app({"SECRET_KEY": SECRET, "SQLALCHEMY_DATABASE_URI": "sqlite://", "LOG_DIR": str(tmp_path)})
        with app.app_context():
            assert User.query.count() == 0

    def test_cookie_secure_follows_environment(self, monkeypatch):
        monkeypatch.delenv("AUTH_COOKIE_SECURE", raising=False)
        monkeypatch.setenv("APP_ENV", "production")
        assert load_config()["AUTH_COOKIE_SECURE"] is True
        monkeypatch.setenv("APP_ENV", "development")
        assert load_config()["AUTH_COOKIE_SECURE"] is False
        monkeypatch.setenv("AUTH_COOKIE_SECURE", "true")
        assert load_config()["SESSION_COOKIE_SECURE"] is True

    def test_store_queries_are_time_bounded(self):
        postgres = _engine_options("postgresql://desk@db/desk", 5)["connect_args"]
        assert postgres["connect_timeout"] == 5
        assert "statement_timeout=5000" in postgres["options"]
        assert "lock_timeout=5000" in postgres["options"]
        mysql = _engine_options("mysql+pymysql://desk@db/desk", 3)["connect_args"]
        assert mysql["read_timeout"] == 3
        assert mysql["write_timeout"] == 3
        assert _engine_options("sqlite:///desk.db", 5) == {"connect_args": {"timeout": 5}}

    def test_bad_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("PERMISSION_CACHE_SECONDS", "soon")
        assert load_config()["PERMISSION_CACHE_SECONDS"] == 30

    def test_page_views_are_logged(self, app, admin_client, tmp_path):
        admin_client.get("/tickets?status=open")
        with open(tmp_path / "logs" / "app.log") as handle:
            content = handle.read()
        assert "page_view user=admin" in content
        assert "url=/tickets?status=open" in content

    def test_healthz_is_public(self, client):
        assert client.get("/healthz").get_json() == {"status": "ok"}


class TestCli:
    def test_check_roles(self, app):
        result = app.test_cli_runner().invoke(args=["check-roles"])
        assert result.exit_code == 0
        assert "admin: Administrator (system)" in result.output
        assert "  tickets: create, read" in result.output

    def test_seed_roles_is_idempotent(self, app):
        result = app.test_cli_runner().invoke(args=["seed-roles"])
        assert result.exit_code == 0
        assert "Seeded 0 new role(s)" in result.output

    def test_create_user(self, app, client, login):
        result = app.test_cli_runner().invoke(
            args=[
                "create-user",
                "--username", "ops",
                "--email", "ops@example.com",
                "--name", "Ops",
                "--role", "technician",
                "--password", "ops-pass-1",
            ]
        )
        assert result.exit_code == 0, result.output
        assert "Created user ops with role technician." in result.output
        assert login(client, "ops", "ops-pass-1").status_code == 200

    def test_create_user_rejects_unknown_role(self, app):
        result = app.test_cli_runner().invoke(
            args=[
                "create-user",
                "--username", "ops",
                "--email", "ops@example.com",
                "--name", "Ops",
                "--role", "ghost",
                "--password", "ops-pass-1",
            ]
        )
        assert result.exit_code != 0
        assert "Selected role does not exist." in result.output
