import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func

from permissions import Action, compile_grants

db = SQLAlchemy()


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class User(db.Model):
    """Credential record. ``password_hash`` is the only form of the password kept."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(50), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    employee_id = db.Column(db.String(50), nullable=True)
    department = db.Column(db.String(120), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
    last_login = db.Column(db.DateTime, nullable=True)


class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(80), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
    created_by = db.Column(db.String(80), nullable=True)
    updated_by = db.Column(db.String(80), nullable=True)

    permissions = db.relationship(
        "RolePermission",
        backref="role",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="RolePermission.resource",
    )

    def grants(self):
        return compile_grants(
            {perm.resource: perm.actions() for perm in self.permissions}
        )


class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
    resource = db.Column(db.String(50), nullable=False)
    can_create = db.Column(db.Boolean, nullable=False, default=False)
    can_read = db.Column(db.Boolean, nullable=False, default=False)
    can_update = db.Column(db.Boolean, nullable=False, default=False)
    can_delete = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (db.UniqueConstraint("role_id", "resource", name="uq_role_resource"),)

    def actions(self):
        flags = (
            (Action.CREATE, self.can_create),
            (Action.READ, self.can_read),
            (Action.UPDATE, self.can_update),
            (Action.DELETE, self.can_delete),
        )
        return [action.value for action, allowed in flags if allowed]

    def set_actions(self, actions):
        actions = {Action(action) for action in actions}
        self.can_create = Action.CREATE in actions
        self.can_read = Action.READ in actions
        self.can_update = Action.UPDATE in actions
        self.can_delete = Action.DELETE in actions


class Ticket(db.Model):
    __tablename__ = "tickets"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open")
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())


class AuditLog(db.Model):
    __tablename__ = "audit_log"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=func.now())
    user_id = db.Column(db.String(40), nullable=True)
    username = db.Column(db.String(80), nullable=True)
    action = db.Column(db.String(50), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(80), nullable=True)
    success = db.Column(db.Boolean, nullable=False, default=True)
    ip_address = db.Column(db.String(45), nullable=True)
    details = db.Column(db.Text, nullable=True)


def load_active_role_grants():
    """Loader for the permission table: ``{slug: grants}`` for active roles."""
    roles = Role.query.filter_by(is_active=True).all()
    return {role.slug: role.grants() for role in roles}
