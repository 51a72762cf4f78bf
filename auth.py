import datetime
from functools import wraps

from flask import current_app, g, jsonify, redirect, request, url_for
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from audit import log_audit
from errors import InvalidCredentials, PermissionDenied
from models import User, db
from permissions import get_permission_table, normalize_role_slug, parse_action, parse_resource
from session_store import SessionData

PUBLIC_ROUTE_PREFIXES = (
    "/login",
    "/register",
    "/api/auth",
    "/static",
    "/healthz",
    "/favicon.ico",
)
RETURN_TARGET_PARAM = "from"
DEFAULT_RETURN_TARGET = "/"

_DUMMY_HASH = {"value": None}


def _dummy_password_hash():
    if _DUMMY_HASH["value"] is None:
        _DUMMY_HASH["value"] = generate_password_hash("not-a-real-password")
    return _DUMMY_HASH["value"]


def is_public_path(path, prefixes=PUBLIC_ROUTE_PREFIXES):
    path = path or "/"
    for prefix in prefixes:
        prefix = prefix.rstrip("/")
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def safe_return_target(value, default=DEFAULT_RETURN_TARGET):
    """Only same-site absolute paths are accepted as post-login targets."""
    value = (value or "").strip()
    if not value.startswith("/") or value.startswith("//") or "\\" in value:
        return default
    if is_public_path(value.split("?", 1)[0]):
        return default
    return value


def request_path_with_query():
    path = request.full_path
    if path.endswith("?"):
        path = path[:-1]
    return path


def wants_json():
    return request.path.startswith("/api") or request.is_json


class LoginResult:
    def __init__(self, success, identity=None, role=None, error=None):
        self.success = success
        self.identity = identity
        self.role = role
        self.error = error

    def to_public(self):
        if self.success:
            return {"success": True}
        return {"success": False, "error": self.error}


class CredentialStore:
    """Read/write access to persisted credential records."""

    def find_by_login(self, username_or_email):
        if not username_or_email:
            return None
        return User.query.filter(
            or_(User.username == username_or_email, User.email == username_or_email)
        ).first()

    def get(self, user_id):
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    def record_login(self, user):
        user.last_login = datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
        db.session.commit()


class Authenticator:
    def __init__(self, credential_store, session_store):
        self.credential_store = credential_store
        self.session_store = session_store

    def _failure(self):
        return LoginResult(success=False, error=InvalidCredentials.message)

    def verify(self, username_or_email, password):
        username_or_email = (username_or_email or "").strip()
        password = password or ""
        if not username_or_email or not password:
            return self._failure()
        try:
            user = self.credential_store.find_by_login(username_or_email)
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.warning("credential lookup failed: %s", exc.__class__.__name__)
            return self._failure()
        if user is None:
            check_password_hash(_dummy_password_hash(), password)
            return self._failure()
        password_ok = check_password_hash(user.password_hash, password)
        role = normalize_role_slug(user.role)
        if not password_ok or not user.is_active or role is None:
            return self._failure()
        identity = SessionData(
            user_id=str(user.id),
            role=role,
            name=user.name,
            is_logged_in=True,
            username=user.username,
            email=user.email,
        )
        try:
            self.credential_store.record_login(user)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.warning("last_login not updated for user_id=%s", user.id)
        return LoginResult(success=True, identity=identity, role=role)

    def login(self, response, username_or_email, password):
        result = self.verify(username_or_email, password)
        if result.success:
            self.session_store.create_session(response, result.identity)
            g.identity = result.identity
            log_audit("login", "auth", entity_id=result.identity.user_id, details=result.identity.username)
        else:
            log_audit(
                "login_failed",
                "auth",
                success=False,
                details=(username_or_email or "").strip()[:80],
                username=(username_or_email or "").strip()[:80] or None,
            )
        return result

    def logout(self, response):
        identity = g.get("identity")
        self.session_store.destroy_session(response)
        if identity:
            log_audit("logout", "auth", entity_id=identity.user_id, details=identity.username)
        g.identity = None
        return response


class AuthorizationPipeline:
    """Resolves the session for every request and guards non-public routes."""

    def __init__(self, session_store, public_prefixes=PUBLIC_ROUTE_PREFIXES, login_endpoint="login"):
        self.session_store = session_store
        self.public_prefixes = tuple(public_prefixes)
        self.login_endpoint = login_endpoint

    def init_app(self, app):
        app.before_request(self.authorize)
        app.extensions["authorization_pipeline"] = self

    def authorize(self):
        identity = self.session_store.read_session(request)
        g.identity = identity
        g.user_id = identity.user_id if identity else None
        g.role = identity.role if identity else None
        if is_public_path(request.path, self.public_prefixes):
            return None
        if identity is not None:
            return None
        if wants_json():
            return jsonify({"success": False, "error": "Not authenticated"}), 401
        target = url_for(self.login_endpoint, **{RETURN_TARGET_PARAM: request_path_with_query()})
        return redirect(target)


def current_identity():
    return g.get("identity")


def has_permission_for_current(resource, action):
    identity = current_identity()
    if identity is None:
        return False
    return get_permission_table().has_permission(identity.role, resource, action)


def require_permission(resource, action):
    """Server-side guard for a view. Raises PermissionDenied when the
    session's role lacks ``action`` on ``resource``."""
    resource_key = parse_resource(resource)
    action_key = parse_action(action)
    if resource_key is None or action_key is None:
        raise ValueError(f"Unknown permission {resource}:{action}")

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            identity = current_identity()
            if identity is None:
                if wants_json():
                    return jsonify({"success": False, "error": "Not authenticated"}), 401
                pipeline = current_app.extensions["authorization_pipeline"]
                return redirect(url_for(pipeline.login_endpoint, **{RETURN_TARGET_PARAM: request_path_with_query()}))
            if not get_permission_table().has_permission(identity.role, resource_key, action_key):
                log_audit(
                    "permission_denied",
                    resource_key.value,
                    success=False,
                    details=f"{identity.role} lacks {action_key.value}",
                )
                raise PermissionDenied(resource_key.value, action_key.value)
            return view(*args, **kwargs)

        return wrapped

    return decorator
