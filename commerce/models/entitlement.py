"""Entitlement model.

One row per (user, product): a second purchase reactivates the existing
row instead of inserting a duplicate. Revocation is a soft delete
(active=False + revoked_at + revoke_reason) so the audit trail survives.

Callers read the lifecycle through `state_at()`, which folds the columns
into one of three states:

    Active(expires_at)      — access allowed
    Revoked(reason, at)     — refunded or manually revoked
    Expired(at)             — past expires_at (persisted or not yet)

The check constraint keeps `active=True` and `revoked_at` mutually
exclusive, so a row can never be "active but revoked".
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from commerce.extensions import db

EXPIRED_REASON = "entitlement expired"
REFUNDED_REASON = "order refunded"


def _as_utc(value):
    # SQLite returns naive datetimes; Postgres returns aware ones.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Active:
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class Revoked:
    reason: str
    at: datetime


@dataclass(frozen=True)
class Expired:
    at: datetime


class Entitlement(db.Model):
    __tablename__ = "entitlements"
    __table_args__ = (
        db.UniqueConstraint("user_id", "product_id", name="uq_entitlements_user_product"),
        db.CheckConstraint(
            "NOT (active AND revoked_at IS NOT NULL)",
            name="ck_entitlements_active_not_revoked",
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=True, index=True
    )  # provenance: the order that (last) granted this row
    active = db.Column(db.Boolean, nullable=False, default=True)
    expires_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # null = lifetime access
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoke_reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="entitlements")
    product = db.relationship("Product")
    order = db.relationship("Order", back_populates="entitlements")

    def state_at(self, now=None):
        """Return the lifecycle state of this grant as of `now`."""
        now = now or datetime.now(timezone.utc)
        expires_at = _as_utc(self.expires_at)

        if self.active:
            if expires_at is not None and expires_at < now:
                return Expired(at=expires_at)
            return Active(expires_at=expires_at)

        if self.revoke_reason == EXPIRED_REASON:
            return Expired(at=expires_at or _as_utc(self.revoked_at))
        return Revoked(
            reason=self.revoke_reason or "revoked",
            at=_as_utc(self.revoked_at),
        )

    @property
    def state(self):
        return self.state_at()

    def activate(self, order_id, expires_at=None):
        """(Re)activate the grant, clearing any previous revocation."""
        self.active = True
        self.order_id = order_id
        self.expires_at = expires_at
        self.revoked_at = None
        self.revoke_reason = None

    def mark_revoked(self, reason, at=None):
        """Revoke the grant. Returns False if it was already revoked."""
        if not self.active:
            return False
        self.active = False
        self.revoked_at = at or datetime.now(timezone.utc)
        self.revoke_reason = reason
        return True

    def __repr__(self):
        return f"<Entitlement user={self.user_id} product={self.product_id} active={self.active}>"
