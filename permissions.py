# Central definition of resources, actions, built-in roles and the permission
# table every request is evaluated against.

import re
import threading
import time
from enum import Enum

from flask import current_app, has_app_context


class Resource(str, Enum):
    USERS = "users"
    INVENTORY = "inventory"
    TICKETS = "tickets"
    ISSUANCE = "issuance"
    DEPARTMENTS = "departments"
    EMPLOYEES = "employees"
    CATEGORIES = "categories"
    KNOWLEDGE = "knowledge"
    REPORTS = "reports"
    SETTINGS = "settings"
    ROLES = "roles"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class BuiltinRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    TECHNICIAN = "technician"


ALL_ACTIONS = frozenset(Action)
CRU = frozenset({Action.CREATE, Action.READ, Action.UPDATE})
CR = frozenset({Action.CREATE, Action.READ})
RU = frozenset({Action.READ, Action.UPDATE})
READ_ONLY = frozenset({Action.READ})

ROLE_SLUG_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{1,48}$")

BUILTIN_ROLE_NAMES = {
    BuiltinRole.ADMIN: "Administrator",
    BuiltinRole.MANAGER: "Manager",
    BuiltinRole.EMPLOYEE: "Employee",
    BuiltinRole.TECHNICIAN: "Technician",
}

BUILTIN_ROLE_DESCRIPTIONS = {
    BuiltinRole.ADMIN: "Full access to all system features.",
    BuiltinRole.MANAGER: "Runs day-to-day inventory, ticket and issuance work.",
    BuiltinRole.EMPLOYEE: "Raises tickets and views assets issued to staff.",
    BuiltinRole.TECHNICIAN: "Works tickets, repairs and issuance.",
}

# Seed data for the persisted system roles. After installation the roles table
# is authoritative; this mapping is only the starting point.
DEFAULT_ROLE_PERMISSIONS = {
    BuiltinRole.ADMIN: {
        Resource.USERS: ALL_ACTIONS,
        Resource.INVENTORY: ALL_ACTIONS,
        Resource.TICKETS: ALL_ACTIONS,
        Resource.ISSUANCE: ALL_ACTIONS,
        Resource.DEPARTMENTS: ALL_ACTIONS,
        Resource.EMPLOYEES: ALL_ACTIONS,
        Resource.CATEGORIES: ALL_ACTIONS,
        Resource.KNOWLEDGE: ALL_ACTIONS,
        Resource.REPORTS: READ_ONLY,
        Resource.SETTINGS: ALL_ACTIONS,
        Resource.ROLES: ALL_ACTIONS,
    },
    BuiltinRole.MANAGER: {
        Resource.INVENTORY: CRU,
        Resource.TICKETS: CRU,
        Resource.ISSUANCE: CRU,
        Resource.DEPARTMENTS: READ_ONLY,
        Resource.EMPLOYEES: READ_ONLY,
        Resource.KNOWLEDGE: CRU,
        Resource.REPORTS: READ_ONLY,
    },
    BuiltinRole.EMPLOYEE: {
        Resource.INVENTORY: READ_ONLY,
        Resource.TICKETS: CR,
        Resource.ISSUANCE: READ_ONLY,
        Resource.DEPARTMENTS: READ_ONLY,
        Resource.EMPLOYEES: READ_ONLY,
        Resource.KNOWLEDGE: READ_ONLY,
    },
    BuiltinRole.TECHNICIAN: {
        Resource.INVENTORY: RU,
        Resource.TICKETS: CRU,
        Resource.ISSUANCE: CRU,
        Resource.DEPARTMENTS: READ_ONLY,
        Resource.EMPLOYEES: READ_ONLY,
        Resource.CATEGORIES: READ_ONLY,
        Resource.KNOWLEDGE: CRU,
        Resource.REPORTS: READ_ONLY,
    },
}


def parse_resource(value):
    """Return the Resource for ``value`` or None when it is not one."""
    if isinstance(value, Resource):
        return value
    try:
        return Resource(str(value).strip().lower())
    except ValueError:
        return None


def parse_action(value):
    if isinstance(value, Action):
        return value
    try:
        return Action(str(value).strip().lower())
    except ValueError:
        return None


def normalize_role_slug(value):
    """Validate a role slug at the boundary; None means not a usable slug."""
    if isinstance(value, BuiltinRole):
        return value.value
    slug = (value or "").strip().lower() if isinstance(value, str) else ""
    if not ROLE_SLUG_PATTERN.match(slug):
        return None
    return slug


def compile_grants(permissions):
    """Turn ``[{"resource": ..., "actions": [...]}]`` or a resource mapping
    into ``{Resource: frozenset(Action)}``.

    Unknown resources and actions are dropped; a resource listed twice keeps
    the union of its actions so each resource appears once.
    """
    if isinstance(permissions, dict):
        items = permissions.items()
    else:
        items = ((entry.get("resource"), entry.get("actions") or []) for entry in permissions or [])
    grants = {}
    for raw_resource, raw_actions in items:
        resource = parse_resource(raw_resource)
        if resource is None:
            continue
        actions = {parse_action(action) for action in raw_actions}
        actions.discard(None)
        grants[resource] = frozenset(grants.get(resource, frozenset()) | actions)
    return grants


def check_grants(grants, resource, action):
    """Pure whitelist lookup: is ``action`` granted on ``resource``?"""
    if not grants:
        return False
    resource_key = parse_resource(resource)
    action_key = parse_action(action)
    if resource_key is None or action_key is None:
        return False
    return action_key in grants.get(resource_key, frozenset())


def serialize_grants(grants):
    return [
        {"resource": resource.value, "actions": sorted(action.value for action in actions)}
        for resource, actions in sorted(grants.items(), key=lambda item: item[0].value)
        if actions
    ]


def builtin_table():
    return {
        role.value: compile_grants(grants)
        for role, grants in DEFAULT_ROLE_PERMISSIONS.items()
    }


class PermissionTable:
    """In-memory role -> grants map, reloaded from the role store.

    ``loader`` returns ``{slug: grants}`` for every active role. Without a
    loader the table serves the built-in roles only.
    """

    def __init__(self, loader=None, ttl_seconds=30):
        self._loader = loader
        self._ttl = ttl_seconds
        self._lock = threading.Lock()
        self._table = None if loader else builtin_table()
        self._loaded_at = 0.0

    def invalidate(self):
        with self._lock:
            if self._loader is not None:
                self._table = None
                self._loaded_at = 0.0

    def snapshot(self):
        table = self._table
        if self._loader is None:
            return table
        if table is not None and time.monotonic() - self._loaded_at < self._ttl:
            return table
        with self._lock:
            if self._table is None or time.monotonic() - self._loaded_at >= self._ttl:
                loaded = self._loader()
                self._table = {
                    slug: compile_grants(grants) for slug, grants in loaded.items()
                }
                self._loaded_at = time.monotonic()
            return self._table

    def grants_for(self, role):
        slug = normalize_role_slug(role)
        if slug is None:
            return {}
        return self.snapshot().get(slug, {})

    def has_permission(self, role, resource, action):
        return check_grants(self.grants_for(role), resource, action)

    def permission_map(self, role):
        grants = self.grants_for(role)
        return {
            resource.value: {
                action.value: action in grants.get(resource, frozenset())
                for action in Action
            }
            for resource in Resource
        }


def get_permission_table():
    if has_app_context():
        table = current_app.extensions.get("permission_table")
        if table is not None:
            return table
    return _BUILTIN_TABLE


def has_permission(role, resource, action):
    """Can ``role`` perform ``action`` on ``resource``? Unknown input is a no."""
    return get_permission_table().has_permission(role, resource, action)


_BUILTIN_TABLE = PermissionTable()
