"""Fulfillment engine — turns verified Stripe events into state changes.

State machine:
    payment succeeded:  (no order for session) -> Order(completed)
                        + one OrderItem and one active Entitlement per product
    refund:             Order(completed) -> Order(refunded)
                        + every Entitlement granted by that order revoked
    anything else:      accepted, no effect

Everything here only adds and flushes. The webhook ingestor commits the
changes together with the ledger update, or rolls all of them back, so a
crash between "order written" and "entitlement written" is never visible.

Repeating an event is safe. A second payment event for a checkout session
that already has an order is a business-level duplicate (Stripe may resend
the same payment under a new event id) and writes nothing. Refunds of an
already refunded order are no-ops.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError

from commerce.errors import DataIntegrityError, TransientProcessingError
from commerce.extensions import db
from commerce.models.entitlement import REFUNDED_REASON
from commerce.models.order import Order, OrderItem
from commerce.models.product import Product
from commerce.models.user import User
from commerce.services import entitlement_service
from commerce.services.audit_service import log_audit

logger = logging.getLogger(__name__)

FULFILLED = "fulfilled"
REFUNDED = "refunded"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
IGNORED = "ignored"

# Checkout payment_status values that mean "money received".
PAID_STATUSES = ("paid", "no_payment_required")

# Accepted and logged, fulfillment happens via the checkout events.
INFORMATIONAL_EVENTS = (
    "checkout.session.async_payment_failed",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
)


@dataclass
class FulfillmentResult:
    action: str
    order_id: Optional[str] = None
    refund_amount: Optional[int] = None


def apply_event(event):
    """Route a verified event to its transition. Returns FulfillmentResult.

    Raises DataIntegrityError for unresolvable references and
    TransientProcessingError when the datastore is unavailable.
    """
    event_type = event["type"]
    obj = event.get("data", {}).get("object", {}) or {}

    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "checkout.session.async_payment_succeeded": fulfill_checkout_session,
        "charge.refunded": _handle_charge_refunded,
        "payment_intent.refunded": _handle_payment_intent_refunded,
    }

    handler = handlers.get(event_type)
    if handler is None:
        if event_type in INFORMATIONAL_EVENTS:
            logger.info(f"{event_type} for {obj.get('id')} noted, no fulfillment action")
        else:
            logger.info(f"Unhandled event type: {event_type}")
        return FulfillmentResult(IGNORED)

    try:
        return handler(obj)
    except OperationalError as e:
        raise TransientProcessingError(f"Datastore unavailable during {event_type}: {e}") from e


# ──────────────────────────────────────────────
# Payment succeeded
# ──────────────────────────────────────────────

def _handle_checkout_completed(session):
    payment_status = session.get("payment_status")
    if payment_status not in PAID_STATUSES:
        logger.info(
            f"Skipping fulfillment for session {session.get('id')} — payment status: {payment_status}"
        )
        return FulfillmentResult(SKIPPED)
    return fulfill_checkout_session(session)


def _product_ids_from_metadata(metadata):
    """Metadata carries either product_id or a comma separated product_ids."""
    raw = metadata.get("product_ids") or metadata.get("product_id") or ""
    product_ids = []
    for product_id in raw.split(","):
        product_id = product_id.strip()
        if product_id and product_id not in product_ids:
            product_ids.append(product_id)
    return product_ids


def _resolve_entitled_user(buyer_id, email, name):
    """The user the entitlements attach to.

    Authenticated checkouts carry the buyer's user id. Guest checkouts are
    matched by email, creating a passwordless user when none exists.
    """
    if buyer_id:
        user = db.session.get(User, buyer_id)
        if user is None:
            raise DataIntegrityError(f"User {buyer_id} not found")
        return user

    user = User.query.filter(db.func.lower(User.email) == email).first()
    if user is None:
        user = User(email=email, full_name=name)
        db.session.add(user)
        db.session.flush()
        logger.info(f"Created guest user {user.id} for {email}")
    return user


def fulfill_checkout_session(session):
    """Create the order, its line items and the entitlements it grants."""
    session_id = session.get("id")
    if not session_id:
        raise DataIntegrityError("Checkout session has no id")

    metadata = session.get("metadata") or {}
    customer_details = session.get("customer_details") or {}
    email = (session.get("customer_email") or customer_details.get("email") or "").lower().strip()
    name = customer_details.get("name")

    product_ids = _product_ids_from_metadata(metadata)
    if not product_ids:
        raise DataIntegrityError(f"Missing product metadata in checkout session {session_id}")
    if not email:
        raise DataIntegrityError(f"Missing customer email in checkout session {session_id}")

    # --- Business-level idempotency: one order per checkout session ---
    existing = Order.query.filter_by(stripe_session_id=session_id).first()
    if existing:
        logger.info(f"Order {existing.id} already exists for session {session_id}, skipping fulfillment")
        return FulfillmentResult(DUPLICATE, order_id=existing.id)

    products = []
    for product_id in product_ids:
        product = db.session.get(Product, product_id)
        if product is None:
            raise DataIntegrityError(f"Product {product_id} not found")
        products.append(product)

    buyer_id = metadata.get("user_id") or None
    user = _resolve_entitled_user(buyer_id, email, name)

    amount_total = session.get("amount_total")
    if amount_total is None:
        amount_total = sum(p.price_cents for p in products)

    now = datetime.now(timezone.utc)
    order = Order(
        stripe_session_id=session_id,
        stripe_payment_intent_id=session.get("payment_intent"),
        buyer_email=email,
        buyer_name=name,
        buyer_id=buyer_id,
        total_amount=amount_total,
        currency=(session.get("currency") or products[0].currency or "usd").upper(),
        status=Order.COMPLETED,
        fulfilled_at=now,
    )
    db.session.add(order)

    try:
        db.session.flush()
    except IntegrityError:
        # A concurrent delivery inserted the same session (or payment) first.
        db.session.rollback()
        existing = Order.query.filter_by(stripe_session_id=session_id).first()
        if existing:
            logger.info(f"Order for session {session_id} created concurrently, skipping fulfillment")
            return FulfillmentResult(DUPLICATE, order_id=existing.id)
        raise DataIntegrityError(
            f"Checkout session {session_id} conflicts with an existing order"
        )

    for product in products:
        db.session.add(OrderItem(
            order_id=order.id,
            product_id=product.id,
            product_name=product.title,
            amount=product.price_cents,
            currency=product.currency,
        ))
        entitlement = entitlement_service.grant(user.id, product.id, order.id)
        log_audit("entitlement.granted", "entitlement", entitlement.id, {
            "user_id": user.id,
            "product_id": product.id,
            "order_id": order.id,
        })

    log_audit("order.fulfilled", "order", order.id, {
        "stripe_session_id": session_id,
        "product_ids": product_ids,
        "total_amount": order.total_amount,
    }, actor_user_id=buyer_id)

    logger.info(f"Fulfilled order {order.id} for session {session_id} ({len(products)} product(s))")
    return FulfillmentResult(FULFILLED, order_id=order.id)


# ──────────────────────────────────────────────
# Refunds
# ──────────────────────────────────────────────

def _handle_charge_refunded(charge):
    payment_intent_id = charge.get("payment_intent")
    if not payment_intent_id:
        logger.info(f"Charge {charge.get('id')} has no payment intent, skipping")
        return FulfillmentResult(SKIPPED)
    return refund_order(payment_intent_id, charge.get("amount_refunded"), charge.get("id"))


def _handle_payment_intent_refunded(payment_intent):
    # amount_received is what was paid; the refunded amount lives on the charge,
    # which is only present when Stripe expanded latest_charge.
    charge = payment_intent.get("latest_charge")
    refund_amount = charge.get("amount_refunded") if isinstance(charge, dict) else None
    return refund_order(payment_intent.get("id"), refund_amount)


def refund_order(payment_intent_id, refund_amount=None, charge_id=None):
    """Mark the order refunded and revoke every entitlement it granted.

    Refunds correlate through the payment intent captured at fulfillment,
    never the checkout session.
    """
    order = Order.query.filter_by(stripe_payment_intent_id=payment_intent_id).first()
    if order is None:
        raise DataIntegrityError(f"No order found for payment intent {payment_intent_id}")

    if order.status == Order.REFUNDED:
        logger.info(f"Order {order.id} already marked as refunded, skipping")
        return FulfillmentResult(DUPLICATE, order_id=order.id)

    if order.status != Order.COMPLETED:
        raise DataIntegrityError(f"Order {order.id} is {order.status}, cannot refund")

    order.status = Order.REFUNDED
    order.refunded_at = datetime.now(timezone.utc)

    revoked = entitlement_service.revoke_for_order(order.id, REFUNDED_REASON)
    for entitlement in revoked:
        log_audit("entitlement.revoked", "entitlement", entitlement.id, {
            "reason": REFUNDED_REASON,
            "order_id": order.id,
        })

    log_audit("order.refunded", "order", order.id, {
        "charge_id": charge_id,
        "payment_intent_id": payment_intent_id,
        "refund_amount": refund_amount,
        "revoked_entitlements": len(revoked),
    })

    logger.info(f"Refund processed for order {order.id}, {len(revoked)} entitlement(s) revoked")
    return FulfillmentResult(REFUNDED, order_id=order.id, refund_amount=refund_amount)
