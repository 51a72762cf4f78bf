import os
import re
import logging
from logging.handlers import RotatingFileHandler

import click
from flask import (
    Blueprint,
    Flask,
    abort,
    current_app,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from audit import format_changes, log_audit
from auth import (
    RETURN_TARGET_PARAM,
    AuthorizationPipeline,
    Authenticator,
    CredentialStore,
    current_identity,
    has_permission_for_current,
    request_path_with_query,
    require_permission,
    safe_return_target,
    wants_json,
)
from errors import ConfigurationError, PermissionDenied
from models import AuditLog, Role, RolePermission, Ticket, User, db, load_active_role_grants
from permissions import (
    BUILTIN_ROLE_DESCRIPTIONS,
    BUILTIN_ROLE_NAMES,
    DEFAULT_ROLE_PERMISSIONS,
    Action,
    BuiltinRole,
    PermissionTable,
    Resource,
    compile_grants,
    get_permission_table,
    normalize_role_slug,
    serialize_grants,
)
from session_store import DEFAULT_COOKIE_NAME, DEFAULT_LIFETIME_SECONDS, CookieSessionStore, SessionData

LOG_PAGE_EXCLUDE_PREFIXES = (
    "/static",
    "/favicon.ico",
    "/healthz",
)
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TICKET_PRIORITIES = ["low", "medium", "high", "critical"]
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6
AUDIT_PAGE_SIZE = 200

bp = Blueprint("desk", __name__)


def _parse_bool(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value, default):
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _engine_options(database_url, timeout):
    if database_url.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout}}
    options = {"pool_timeout": timeout, "pool_pre_ping": True}
    seconds = int(timeout)
    if database_url.startswith("postgresql"):
        millis = seconds * 1000
        options["connect_args"] = {
            "connect_timeout": seconds,
            "options": f"-c statement_timeout={millis} -c lock_timeout={millis}",
        }
    elif database_url.startswith("mysql"):
        options["connect_args"] = {
            "connect_timeout": seconds,
            "read_timeout": seconds,
            "write_timeout": seconds,
        }
    return options


def load_config(overrides=None):
    production = os.environ.get("APP_ENV", "production").strip().lower() == "production"
    config = {
        "SECRET_KEY": os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY"),
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL", "sqlite:///ticketing.db"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "LOG_DIR": os.environ.get("LOG_DIR", "logs"),
        "LOG_FILE": os.environ.get("LOG_FILE", "app.log"),
        "AUTH_COOKIE_NAME": os.environ.get("AUTH_COOKIE_NAME", DEFAULT_COOKIE_NAME),
        "AUTH_COOKIE_SECURE": _parse_bool(os.environ.get("AUTH_COOKIE_SECURE"), production),
        "AUTH_SESSION_LIFETIME_SECONDS": _parse_int(
            os.environ.get("AUTH_SESSION_LIFETIME_SECONDS"), DEFAULT_LIFETIME_SECONDS
        ),
        "PERMISSION_CACHE_SECONDS": _parse_int(os.environ.get("PERMISSION_CACHE_SECONDS"), 30),
        "CREDENTIAL_STORE_TIMEOUT": _parse_int(os.environ.get("CREDENTIAL_STORE_TIMEOUT"), 5),
        "ALLOW_REGISTRATION": _parse_bool(os.environ.get("ALLOW_REGISTRATION"), False),
        "DEFAULT_ADMIN_USERNAME": os.environ.get("DEFAULT_ADMIN_USERNAME", "admin"),
        "DEFAULT_ADMIN_EMAIL": os.environ.get("DEFAULT_ADMIN_EMAIL", "admin@example.com"),
        "DEFAULT_ADMIN_NAME": os.environ.get("DEFAULT_ADMIN_NAME", "Administrator"),
        "DEFAULT_ADMIN_PASSWORD": os.environ.get("DEFAULT_ADMIN_PASSWORD"),
    }
    config.update(overrides or {})
    config["SESSION_COOKIE_SECURE"] = config["AUTH_COOKIE_SECURE"]
    config["SESSION_COOKIE_HTTPONLY"] = True
    config["SESSION_COOKIE_SAMESITE"] = "Lax"
    config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        _engine_options(config["SQLALCHEMY_DATABASE_URI"], config["CREDENTIAL_STORE_TIMEOUT"]),
    )
    return config


def setup_logging(app):
    log_dir = app.config["LOG_DIR"]
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, app.config["LOG_FILE"])
    handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    handler.setLevel(logging.INFO)
    app.logger.setLevel(logging.INFO)
    for logger in (app.logger, logging.getLogger("werkzeug")):
        if not any(getattr(h, "baseFilename", None) == handler.baseFilename for h in logger.handlers):
            logger.addHandler(handler)


def _apply_grants(role, grants):
    existing = {perm.resource: perm for perm in role.permissions}
    for resource in Resource:
        actions = grants.get(resource, frozenset())
        perm = existing.get(resource.value)
        if not actions:
            if perm is not None:
                role.permissions.remove(perm)
            continue
        if perm is None:
            perm = RolePermission(resource=resource.value)
            role.permissions.append(perm)
        perm.set_actions(actions)


def ensure_default_roles():
    """Create or repair the built-in system roles. Returns the number created."""
    created = 0
    existing = {role.slug: role for role in Role.query.all()}
    for builtin, grants in DEFAULT_ROLE_PERMISSIONS.items():
        role = existing.get(builtin.value)
        if role is None:
            role = Role(
                slug=builtin.value,
                name=BUILTIN_ROLE_NAMES[builtin],
                description=BUILTIN_ROLE_DESCRIPTIONS[builtin],
                is_system=True,
                is_active=True,
                created_by="system",
            )
            db.session.add(role)
            created += 1
        else:
            role.is_system = True
            role.is_active = True
        _apply_grants(role, compile_grants(grants))
    db.session.commit()
    return created


def ensure_default_admin():
    if User.query.first():
        return None
    password = current_app.config.get("DEFAULT_ADMIN_PASSWORD")
    if not password:
        current_app.logger.warning(
            "No users exist and DEFAULT_ADMIN_PASSWORD is not set; run 'flask create-user'"
        )
        return None
    user = User(
        username=current_app.config["DEFAULT_ADMIN_USERNAME"],
        email=current_app.config["DEFAULT_ADMIN_EMAIL"],
        name=current_app.config["DEFAULT_ADMIN_NAME"],
        password_hash=generate_password_hash(password),
        role=BuiltinRole.ADMIN.value,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("Seeded default admin user=%s", user.username)
    return user


def init_db(app):
    with app.app_context():
        try:
            db.create_all()
            ensure_default_roles()
            ensure_default_admin()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise ConfigurationError(f"Credential store unavailable: {exc.__class__.__name__}") from exc


def create_app(config=None, session_store=None, credential_store=None, permission_table=None):
    app = Flask(__name__)
    app.config.update(load_config(config))
    if not app.config.get("SECRET_KEY"):
        raise ConfigurationError("SESSION_SECRET is not configured")

    setup_logging(app)
    db.init_app(app)

    if session_store is None:
        session_store = CookieSessionStore(
            app.config["SECRET_KEY"],
            cookie_name=app.config["AUTH_COOKIE_NAME"],
            lifetime_seconds=app.config["AUTH_SESSION_LIFETIME_SECONDS"],
            secure=app.config["AUTH_COOKIE_SECURE"],
        )
    if credential_store is None:
        credential_store = CredentialStore()
    if permission_table is None:
        permission_table = PermissionTable(
            loader=load_active_role_grants,
            ttl_seconds=app.config["PERMISSION_CACHE_SECONDS"],
        )
    app.extensions["session_store"] = session_store
    app.extensions["credential_store"] = credential_store
    app.extensions["permission_table"] = permission_table
    app.extensions["authenticator"] = Authenticator(credential_store, session_store)

    AuthorizationPipeline(session_store, login_endpoint="desk.login").init_app(app)
    app.before_request(log_page_views)
    app.teardown_request(log_unhandled_exception)
    app.context_processor(inject_user)
    app.register_error_handler(PermissionDenied, handle_permission_denied)
    app.register_error_handler(SQLAlchemyError, handle_storage_error)
    app.register_blueprint(bp)
    register_cli(app)

    init_db(app)
    return app


def get_session_store():
    return current_app.extensions["session_store"]


def get_authenticator():
    return current_app.extensions["authenticator"]


def log_page_views():
    if request.path.startswith("/api"):
        return
    if request.method != "GET":
        return
    path = request.path or ""
    for prefix in LOG_PAGE_EXCLUDE_PREFIXES:
        if path.startswith(prefix):
            return
    identity = current_identity()
    username = identity.username if identity else "-"
    ip_address = request.remote_addr or "-"
    current_app.logger.info(
        "page_view user=%s ip=%s url=%s", username, ip_address, request_path_with_query()
    )


def log_unhandled_exception(exc):
    if exc is not None:
        current_app.logger.exception("Unhandled exception", exc_info=exc)


def inject_user():
    identity = current_identity()
    table = get_permission_table()
    return {
        "current_user": identity,
        "permissions": table.permission_map(identity.role) if identity else {},
        "can": has_permission_for_current,
        "resources": list(Resource),
        "actions": list(Action),
    }


def handle_permission_denied(exc):
    if wants_json():
        return jsonify({"success": False, "error": exc.message}), 403
    return render_template("access_denied.html", resource=exc.resource, action=exc.action), 403


def handle_storage_error(exc):
    db.session.rollback()
    current_app.logger.error("storage error on %s: %s", request.path, exc.__class__.__name__)
    if wants_json():
        return jsonify({"success": False, "error": "Service unavailable"}), 503
    return "Service unavailable. Please try again shortly.", 503


def _current_user_record():
    identity = current_identity()
    if identity is None:
        return None
    return current_app.extensions["credential_store"].get(identity.user_id)


def _role_choices():
    return Role.query.filter_by(is_active=True).order_by(Role.name.asc()).all()


def _validate_user_fields(username, email, password, name, role_slug, existing=None):
    if not username or not email or not name or not role_slug or (existing is None and not password):
        return "All fields are required."
    if len(username) < MIN_USERNAME_LENGTH:
        return f"Username must be at least {MIN_USERNAME_LENGTH} characters long."
    if not EMAIL_PATTERN.match(email):
        return "Invalid email format."
    if password and len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
    slug = normalize_role_slug(role_slug)
    if slug is None or not Role.query.filter_by(slug=slug).first():
        return "Selected role does not exist."
    duplicate = User.query.filter((User.username == username) | (User.email == email))
    if existing is not None:
        duplicate = duplicate.filter(User.id != existing.id)
    duplicate = duplicate.first()
    if duplicate:
        if duplicate.username == username:
            return "Username already exists."
        return "Email already exists."
    return None


def _grants_from_form(form):
    grants = {}
    for resource in Resource:
        actions = frozenset(
            action for action in Action if f"perm_{resource.value}_{action.value}" in form
        )
        if actions:
            grants[resource] = actions
    return grants


def _grant_summary(grants):
    return {item["resource"]: item["actions"] for item in serialize_grants(grants)}


@bp.route("/healthz")
def healthz():
    return jsonify({"status": "ok"})


@bp.route("/login", methods=["GET", "POST"])
def login():
    target = safe_return_target(request.values.get(RETURN_TARGET_PARAM))
    if request.method == "POST":
        username = request.form.get("username", "")
        password = request.form.get("password", "")
        response = redirect(target)
        result = get_authenticator().login(response, username, password)
        if result.success:
            return response
        flash(result.error, "error")
        return redirect(url_for("desk.login", **{RETURN_TARGET_PARAM: target}))
    if current_identity():
        return redirect(target)
    return render_template("login.html", return_target=target)


@bp.route("/register", methods=["GET", "POST"])
def register():
    if not current_app.config["ALLOW_REGISTRATION"]:
        abort(404)
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        name = request.form.get("name", "").strip()
        error = _validate_user_fields(username, email, password, name, BuiltinRole.EMPLOYEE.value)
        if error:
            flash(error, "error")
            return redirect(url_for("desk.register"))
        user = User(
            username=username,
            email=email,
            name=name,
            password_hash=generate_password_hash(password),
            role=BuiltinRole.EMPLOYEE.value,
            is_active=True,
        )
        db.session.add(user)
        db.session.commit()
        log_audit("register", "user", entity_id=user.id, details=username, username=username)
        response = redirect(url_for("desk.index"))
        get_authenticator().login(response, username, password)
        return response
    return render_template("register.html")


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    response = redirect(url_for("desk.login"))
    return get_authenticator().logout(response)


@bp.route("/api/auth/login", methods=["POST"])
def api_login():
    payload = request.get_json(silent=True) or {}
    username = payload.get("usernameOrEmail", "")
    password = payload.get("password", "")
    if not isinstance(username, str) or not isinstance(password, str):
        username, password = "", ""
    response = jsonify({"success": True})
    result = get_authenticator().login(response, username, password)
    if not result.success:
        return jsonify(result.to_public()), 401
    return response


@bp.route("/api/auth/logout", methods=["POST"])
def api_logout():
    response = jsonify({"success": True})
    return get_authenticator().logout(response)


@bp.route("/api/auth/me")
def api_me():
    identity = current_identity()
    if identity is None:
        return jsonify({"success": False, "error": "Not authenticated"}), 401
    return jsonify(
        {
            "success": True,
            "user": identity.to_public(),
            "permissions": get_permission_table().permission_map(identity.role),
        }
    )


@bp.route("/")
def index():
    stats = {}
    if has_permission_for_current(Resource.TICKETS, Action.READ):
        stats["open_tickets"] = Ticket.query.filter_by(status="open").count()
        stats["total_tickets"] = Ticket.query.count()
    if has_permission_for_current(Resource.USERS, Action.READ):
        stats["active_users"] = User.query.filter_by(is_active=True).count()
    return render_template("index.html", stats=stats)


@bp.route("/tickets")
@require_permission(Resource.TICKETS, Action.READ)
def list_tickets():
    tickets = Ticket.query.order_by(Ticket.created_at.desc(), Ticket.id.desc()).all()
    return render_template("tickets.html", tickets=tickets)


def _create_ticket(title, description, priority):
    if not title:
        return None, "Title is required."
    if priority not in TICKET_PRIORITIES:
        priority = "medium"
    ticket = Ticket(
        title=title,
        description=description or None,
        priority=priority,
        created_by=int(g.user_id),
    )
    db.session.add(ticket)
    db.session.commit()
    log_audit("create", "ticket", entity_id=ticket.id, details=title)
    return ticket, None


@bp.route("/tickets/new", methods=["GET", "POST"])
@require_permission(Resource.TICKETS, Action.CREATE)
def create_ticket():
    if request.method == "POST":
        ticket, error = _create_ticket(
            request.form.get("title", "").strip(),
            request.form.get("description", "").strip(),
            request.form.get("priority", "medium").strip().lower(),
        )
        if error:
            flash(error, "error")
            return redirect(url_for("desk.create_ticket"))
        return redirect(url_for("desk.list_tickets"))
    return render_template("ticket_new.html", priorities=TICKET_PRIORITIES)


@bp.route("/api/tickets", methods=["GET"])
@require_permission(Resource.TICKETS, Action.READ)
def api_list_tickets():
    tickets = Ticket.query.order_by(Ticket.id.desc()).all()
    return jsonify(
        {
            "success": True,
            "data": [
                {
                    "id": ticket.id,
                    "title": ticket.title,
                    "priority": ticket.priority,
                    "status": ticket.status,
                }
                for ticket in tickets
            ],
        }
    )


@bp.route("/api/tickets", methods=["POST"])
@require_permission(Resource.TICKETS, Action.CREATE)
def api_create_ticket():
    payload = request.get_json(silent=True) or {}
    ticket, error = _create_ticket(
        str(payload.get("title") or "").strip(),
        str(payload.get("description") or "").strip(),
        str(payload.get("priority") or "medium").strip().lower(),
    )
    if error:
        return jsonify({"success": False, "error": error}), 400
    return jsonify({"success": True, "data": {"id": ticket.id}}), 201


@bp.route("/users")
@require_permission(Resource.USERS, Action.READ)
def list_users():
    users = User.query.order_by(User.created_at.desc(), User.id.desc()).all()
    query = (request.args.get("q") or "").strip().lower()
    if query:
        users = [
            user
            for user in users
            if any(query in (value or "").lower() for value in (user.username, user.email, user.name, user.role))
        ]
    return render_template("users.html", users=users, query=query)


@bp.route("/users/add", methods=["GET", "POST"])
@require_permission(Resource.USERS, Action.CREATE)
def add_user():
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        name = request.form.get("name", "").strip()
        role_slug = request.form.get("role", "").strip()
        error = _validate_user_fields(username, email, password, name, role_slug)
        if error:
            flash(error, "error")
            return redirect(url_for("desk.add_user"))
        user = User(
            username=username,
            email=email,
            name=name,
            password_hash=generate_password_hash(password),
            role=normalize_role_slug(role_slug),
            employee_id=request.form.get("employee_id", "").strip() or None,
            department=request.form.get("department", "").strip() or None,
            is_active=True,
        )
        db.session.add(user)
        db.session.commit()
        log_audit("create", "user", entity_id=user.id, details=username)
        return redirect(url_for("desk.list_users"))
    return render_template("user_form.html", user=None, roles=_role_choices())


@bp.route("/users/edit/<int:user_id>", methods=["GET", "POST"])
@require_permission(Resource.USERS, Action.UPDATE)
def edit_user(user_id):
    user = db.get_or_404(User, user_id)
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        name = request.form.get("name", "").strip()
        role_slug = request.form.get("role", "").strip()
        error = _validate_user_fields(username, email, password, name, role_slug, existing=user)
        if error:
            flash(error, "error")
            return redirect(url_for("desk.edit_user", user_id=user.id))
        old_values = {"username": user.username, "email": user.email, "role": user.role, "name": user.name}
        user.username = username
        user.email = email
        user.name = name
        user.role = normalize_role_slug(role_slug)
        user.employee_id = request.form.get("employee_id", "").strip() or None
        user.department = request.form.get("department", "").strip() or None
        if password:
            user.password_hash = generate_password_hash(password)
        db.session.commit()
        new_values = {"username": user.username, "email": user.email, "role": user.role, "name": user.name}
        details = user.username
        change_details = format_changes(old_values, new_values)
        if change_details:
            details = f"{details} changes={change_details}"
        if password:
            details = f"{details} password=reset"
        log_audit("update", "user", entity_id=user.id, details=details)
        return redirect(url_for("desk.list_users"))
    return render_template("user_form.html", user=user, roles=_role_choices())


@bp.route("/users/toggle/<int:user_id>", methods=["POST"])
@require_permission(Resource.USERS, Action.UPDATE)
def toggle_user(user_id):
    user = db.get_or_404(User, user_id)
    if str(user.id) == g.user_id:
        flash("You cannot deactivate your own account.", "error")
        return redirect(url_for("desk.list_users"))
    user.is_active = not user.is_active
    db.session.commit()
    log_audit(
        "activate" if user.is_active else "deactivate", "user", entity_id=user.id, details=user.username
    )
    return redirect(url_for("desk.list_users"))


@bp.route("/users/delete/<int:user_id>", methods=["POST"])
@require_permission(Resource.USERS, Action.DELETE)
def delete_user(user_id):
    user = db.get_or_404(User, user_id)
    if str(user.id) == g.user_id:
        flash("You cannot delete your own account.", "error")
        return redirect(url_for("desk.list_users"))
    Ticket.query.filter_by(created_by=user.id).update({"created_by": None})
    db.session.delete(user)
    db.session.commit()
    log_audit("delete", "user", entity_id=user_id, details=user.username)
    return redirect(url_for("desk.list_users"))


@bp.route("/roles")
@require_permission(Resource.ROLES, Action.READ)
def list_roles():
    roles = Role.query.order_by(Role.name.asc()).all()
    user_counts = dict(
        db.session.query(User.role, func.count(User.id)).group_by(User.role).all()
    )
    return render_template("roles.html", roles=roles, user_counts=user_counts)


@bp.route("/roles/add", methods=["GET", "POST"])
@require_permission(Resource.ROLES, Action.CREATE)
def add_role():
    if request.method == "POST":
        name = request.form.get("name", "").strip()
        slug = normalize_role_slug(request.form.get("slug", ""))
        if not name:
            flash("Role name is required.", "error")
            return redirect(url_for("desk.add_role"))
        if slug is None:
            flash("Slug must be 2-49 lowercase letters, digits, '-' or '_' and start with a letter.", "error")
            return redirect(url_for("desk.add_role"))
        if Role.query.filter_by(slug=slug).first():
            flash("Role with this slug already exists.", "error")
            return redirect(url_for("desk.add_role"))
        identity = current_identity()
        role = Role(
            slug=slug,
            name=name,
            description=request.form.get("description", "").strip() or None,
            is_system=False,
            is_active=True,
            created_by=identity.username,
        )
        db.session.add(role)
        grants = _grants_from_form(request.form)
        _apply_grants(role, grants)
        db.session.commit()
        get_permission_table().invalidate()
        log_audit("create", "role", entity_id=role.id, details=f"{slug} perms={_grant_summary(grants)}")
        return redirect(url_for("desk.list_roles"))
    return render_template("role_form.html", role=None, grants={})


@bp.route("/roles/edit/<int:role_id>", methods=["GET", "POST"])
@require_permission(Resource.ROLES, Action.UPDATE)
def edit_role(role_id):
    role = db.get_or_404(Role, role_id)
    if request.method == "POST":
        if role.is_system:
            flash("Cannot modify system roles.", "error")
            return redirect(url_for("desk.list_roles"))
        name = request.form.get("name", "").strip()
        if not name:
            flash("Role name is required.", "error")
            return redirect(url_for("desk.edit_role", role_id=role.id))
        old_values = {"name": role.name, "description": role.description}
        old_grants = _grant_summary(role.grants())
        role.name = name
        role.description = request.form.get("description", "").strip() or None
        role.updated_by = current_identity().username
        _apply_grants(role, _grants_from_form(request.form))
        db.session.commit()
        get_permission_table().invalidate()
        new_values = {"name": role.name, "description": role.description}
        new_grants = _grant_summary(role.grants())
        details = role.slug
        change_details = format_changes(old_values, new_values)
        if change_details:
            details = f"{details} changes={change_details}"
        perm_changes = format_changes(old_grants, new_grants)
        if perm_changes:
            details = f"{details} perms={perm_changes}"
        log_audit("update", "role", entity_id=role.id, details=details)
        return redirect(url_for("desk.list_roles"))
    return render_template("role_form.html", role=role, grants=role.grants())


@bp.route("/roles/toggle/<int:role_id>", methods=["POST"])
@require_permission(Resource.ROLES, Action.UPDATE)
def toggle_role(role_id):
    role = db.get_or_404(Role, role_id)
    if role.is_system:
        flash("Cannot modify system roles.", "error")
        return redirect(url_for("desk.list_roles"))
    role.is_active = not role.is_active
    role.updated_by = current_identity().username
    db.session.commit()
    get_permission_table().invalidate()
    log_audit(
        "activate" if role.is_active else "deactivate", "role", entity_id=role.id, details=role.slug
    )
    return redirect(url_for("desk.list_roles"))


@bp.route("/roles/delete/<int:role_id>", methods=["POST"])
@require_permission(Resource.ROLES, Action.DELETE)
def delete_role(role_id):
    role = db.get_or_404(Role, role_id)
    if role.is_system:
        flash("Cannot delete system roles.", "error")
        return redirect(url_for("desk.list_roles"))
    user_count = User.query.filter_by(role=role.slug).count()
    if user_count:
        flash(f"Cannot delete role. {user_count} user(s) are assigned to this role.", "error")
        return redirect(url_for("desk.list_roles"))
    db.session.delete(role)
    db.session.commit()
    get_permission_table().invalidate()
    log_audit("delete", "role", entity_id=role_id, details=role.slug)
    return redirect(url_for("desk.list_roles"))


@bp.route("/profile", methods=["GET", "POST"])
def profile():
    user = _current_user_record()
    if user is None:
        response = redirect(url_for("desk.login"))
        return get_session_store().destroy_session(response)
    if request.method == "POST":
        name = request.form.get("name", "").strip()
        email = request.form.get("email", "").strip()
        current_password = request.form.get("current_password", "")
        new_password = request.form.get("new_password", "")
        if not name or not email:
            flash("Name and email are required.", "error")
            return redirect(url_for("desk.profile"))
        if not EMAIL_PATTERN.match(email):
            flash("Invalid email format.", "error")
            return redirect(url_for("desk.profile"))
        if email != user.email and User.query.filter(User.email == email, User.id != user.id).first():
            flash("Email already in use.", "error")
            return redirect(url_for("desk.profile"))
        if new_password:
            if not check_password_hash(user.password_hash, current_password):
                flash("Current password is incorrect.", "error")
                return redirect(url_for("desk.profile"))
            if len(new_password) < MIN_PASSWORD_LENGTH:
                flash(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.", "error")
                return redirect(url_for("desk.profile"))
            user.password_hash = generate_password_hash(new_password)
        user.name = name
        user.email = email
        db.session.commit()
        log_audit("update", "profile", entity_id=user.id, details=user.username)
        flash("Profile updated.", "success")
        response = redirect(url_for("desk.profile"))
        identity = current_identity()
        if identity.name != user.name or identity.email != user.email:
            get_session_store().create_session(
                response,
                SessionData(
                    user_id=identity.user_id,
                    role=identity.role,
                    name=user.name,
                    is_logged_in=True,
                    username=identity.username,
                    email=user.email,
                ),
            )
        return response
    return render_template("profile.html", user=user)


@bp.route("/audit")
@require_permission(Resource.SETTINGS, Action.READ)
def audit_log():
    entries = AuditLog.query.order_by(AuditLog.id.desc()).limit(AUDIT_PAGE_SIZE).all()
    return render_template("audit.html", entries=entries)


def register_cli(app):
    @app.cli.command("seed-roles")
    def seed_roles_command():
        """Create or repair the built-in system roles."""
        created = ensure_default_roles()
        get_permission_table().invalidate()
        click.echo(f"Seeded {created} new role(s); {len(DEFAULT_ROLE_PERMISSIONS)} system roles in place.")

    @app.cli.command("create-user")
    @click.option("--username", required=True)
    @click.option("--email", required=True)
    @click.option("--name", required=True)
    @click.option("--role", "role_slug", default=BuiltinRole.ADMIN.value, show_default=True)
    @click.password_option()
    def create_user_command(username, email, name, role_slug, password):
        """Create a login account."""
        error = _validate_user_fields(username.strip(), email.strip(), password, name.strip(), role_slug)
        if error:
            raise click.ClickException(error)
        user = User(
            username=username.strip(),
            email=email.strip(),
            name=name.strip(),
            password_hash=generate_password_hash(password),
            role=normalize_role_slug(role_slug),
            is_active=True,
        )
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created user {user.username} with role {user.role}.")

    @app.cli.command("check-roles")
    def check_roles_command():
        """List roles with their permissions."""
        for role in Role.query.order_by(Role.slug.asc()).all():
            flags = []
            if role.is_system:
                flags.append("system")
            if not role.is_active:
                flags.append("inactive")
            suffix = f" ({', '.join(flags)})" if flags else ""
            click.echo(f"{role.slug}: {role.name}{suffix}")
            for entry in serialize_grants(role.grants()):
                click.echo(f"  {entry['resource']}: {', '.join(entry['actions'])}")


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000)
