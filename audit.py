from flask import current_app, g, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from models import AuditLog, db


def log_audit(action, entity_type, entity_id=None, success=True, details=None, username=None):
    identity = g.get("identity") if has_request_context() else None
    user_id = identity.user_id if identity else None
    if username is None and identity:
        username = identity.username or identity.name
    ip_address = request.remote_addr if has_request_context() else None
    detail_text = None
    if details is not None:
        detail_text = str(details)
    current_app.logger.info(
        "audit action=%s entity=%s entity_id=%s user=%s ip=%s success=%s details=%s",
        action,
        entity_type,
        entity_id or "-",
        username or "-",
        ip_address or "-",
        "yes" if success else "no",
        detail_text or "-",
    )
    try:
        db.session.add(
            AuditLog(
                user_id=user_id,
                username=username,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                success=success,
                ip_address=ip_address,
                details=detail_text,
            )
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("audit entry not stored action=%s entity=%s", action, entity_type)


def format_changes(old_values, new_values):
    changes = []
    for key in sorted(set(old_values.keys()) | set(new_values.keys())):
        old = old_values.get(key)
        new = new_values.get(key)
        if old != new:
            changes.append(f"{key}: {old} -> {new}")
    return "; ".join(changes)
