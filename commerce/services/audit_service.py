"""Audit trail helper.

Flushes only; the audit row commits (or rolls back) with the change it
describes.
"""

from commerce.extensions import db
from commerce.models.audit import AuditEvent


def log_audit(action, entity=None, entity_id=None, metadata=None, actor_user_id=None):
    """Record an audit event. Actor is None for webhook-initiated actions."""
    event = AuditEvent(
        actor_user_id=actor_user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
