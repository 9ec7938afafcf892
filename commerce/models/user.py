"""User model.

Identity for buyers and admins. Authentication itself is a collaborator
(Flask-Login session); this table only anchors entitlements to a person.
Guest checkouts create a passwordless row keyed by email so a later
account signup links to the same entitlements.
"""

import uuid

from flask_login import UserMixin

from commerce.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)  # null for guests
    full_name = db.Column(db.String(255))
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    entitlements = db.relationship(
        "Entitlement", back_populates="user", lazy="dynamic"
    )
    audit_events = db.relationship(
        "AuditEvent", back_populates="actor", lazy="dynamic"
    )

    @property
    def is_guest(self):
        return self.password_hash is None

    def __repr__(self):
        return f"<User {self.email}>"
