"""Entitlement service — grant, revoke and check product access.

Business rules:
- One entitlement per (user, product). grant() upserts: an existing row
  is reactivated with the newest order, never duplicated.
- revoke() is idempotent. Revoking an already-revoked row changes nothing.
- check_access() is the enforcement point for expiry: an active row whose
  expires_at has passed is revoked ("entitlement expired") the first time
  it is checked, and access is denied.

grant/revoke only flush; the caller owns the transaction. check_access and
check_bulk_access commit when they persist a lazy expiry.
"""

import logging
from datetime import datetime, timezone

from commerce.extensions import db
from commerce.models.entitlement import (
    EXPIRED_REASON,
    Active,
    Entitlement,
    Expired,
)
from commerce.models.product import Product
from commerce.models.user import User

logger = logging.getLogger(__name__)


def get_entitlement(user_id, product_id):
    return Entitlement.query.filter_by(
        user_id=user_id, product_id=product_id
    ).first()


def grant(user_id, product_id, order_id, expires_at=None):
    """Grant (or reactivate) access for a user to a product.

    Returns the Entitlement row.
    """
    entitlement = get_entitlement(user_id, product_id)

    if entitlement:
        was_active = entitlement.active
        entitlement.activate(order_id, expires_at)
        logger.info(
            f"{'Refreshed' if was_active else 'Reactivated'} entitlement "
            f"{entitlement.id} for user {user_id} product {product_id} (order {order_id})"
        )
    else:
        entitlement = Entitlement(
            user_id=user_id,
            product_id=product_id,
            order_id=order_id,
            active=True,
            expires_at=expires_at,
        )
        db.session.add(entitlement)
        logger.info(f"Granted entitlement for user {user_id} product {product_id} (order {order_id})")

    db.session.flush()
    return entitlement


def revoke(user_id, product_id, reason):
    """Revoke a user's access to a product.

    Returns the Entitlement row (or None if none exists). No-op when the
    row is already revoked.
    """
    entitlement = get_entitlement(user_id, product_id)
    if entitlement is None:
        return None

    if entitlement.mark_revoked(reason):
        db.session.flush()
        logger.info(f"Revoked entitlement {entitlement.id}: {reason}")
    return entitlement


def revoke_for_order(order_id, reason):
    """Revoke every active entitlement whose provenance is `order_id`.

    Returns the list of rows that changed.
    """
    now = datetime.now(timezone.utc)
    revoked = []
    for entitlement in Entitlement.query.filter_by(order_id=order_id, active=True).all():
        if entitlement.mark_revoked(reason, at=now):
            revoked.append(entitlement)
    db.session.flush()
    return revoked


def _expire(entitlement):
    """Persist an observed expiry. Commits."""
    if entitlement.mark_revoked(EXPIRED_REASON):
        db.session.commit()
        logger.info(f"Entitlement {entitlement.id} expired, revoked on access check")


def check_access(user_id, product_id):
    """True if the user currently holds an active, unexpired entitlement."""
    entitlement = get_entitlement(user_id, product_id)
    if entitlement is None:
        return False

    state = entitlement.state
    if isinstance(state, Expired):
        _expire(entitlement)
        return False
    return isinstance(state, Active)


def check_bulk_access(user_id, product_ids):
    """Return {product_id: bool} for each requested product."""
    product_ids = list(product_ids)
    access = {product_id: False for product_id in product_ids}
    if not product_ids:
        return access

    rows = (
        Entitlement.query
        .filter(Entitlement.user_id == user_id)
        .filter(Entitlement.product_id.in_(product_ids))
        .all()
    )
    now = datetime.now(timezone.utc)
    expired = []
    for entitlement in rows:
        state = entitlement.state_at(now)
        if isinstance(state, Expired) and entitlement.active:
            expired.append(entitlement)
        access[entitlement.product_id] = isinstance(state, Active)

    if expired:
        for entitlement in expired:
            entitlement.mark_revoked(EXPIRED_REASON, at=now)
        db.session.commit()
        logger.info(f"Revoked {len(expired)} expired entitlement(s) for user {user_id}")

    return access


def list_active(user_id):
    """Active, unexpired entitlements for a user, newest first."""
    now = datetime.now(timezone.utc)
    rows = (
        Entitlement.query
        .filter_by(user_id=user_id, active=True)
        .order_by(Entitlement.created_at.desc())
        .all()
    )
    return [e for e in rows if isinstance(e.state_at(now), Active)]


def find_active_by_email(email, product_slug=None):
    """Active entitlements held by the user with this email.

    Optionally narrowed to one product slug. Used by the access-link
    resend flow.
    """
    query = (
        Entitlement.query
        .join(User, Entitlement.user_id == User.id)
        .filter(db.func.lower(User.email) == email.lower().strip())
        .filter(Entitlement.active.is_(True))
    )
    if product_slug:
        query = query.join(Product, Entitlement.product_id == Product.id).filter(
            Product.slug == product_slug
        )
    now = datetime.now(timezone.utc)
    return [e for e in query.all() if isinstance(e.state_at(now), Active)]
