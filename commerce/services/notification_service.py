"""Notification service — buyer-facing emails sent after a commit.

Nothing here runs inside the fulfillment transaction. Callers wrap these
functions in the reliability wrappers so an SMTP or template failure is
logged and swallowed instead of touching order/entitlement state.
"""

import logging

from flask import current_app, has_request_context

from commerce.extensions import db
from commerce.models.entitlement import Entitlement
from commerce.models.order import Order
from commerce.services.access_token_service import build_access_link
from commerce.services.email_service import send_email, send_email_sync

logger = logging.getLogger(__name__)


def _dispatch(**kwargs):
    if has_request_context():
        send_email(**kwargs)
    else:
        send_email_sync(**kwargs)


def format_amount(amount_cents, currency):
    """5900, "usd" -> "59.00 USD"."""
    return f"{(amount_cents or 0) / 100:.2f} {(currency or 'USD').upper()}"


def _links_for(entitlements):
    # Tokens carry the entitled user's email; access checks compare against it.
    return [
        {
            "title": e.product.title,
            "url": build_access_link(e.user.email, e.product, e),
        }
        for e in entitlements
    ]


def send_purchase_confirmation(order_id):
    """Email the buyer one magic link per entitlement granted by the order."""
    order = db.session.get(Order, order_id)
    if order is None:
        return

    entitlements = Entitlement.query.filter_by(order_id=order.id, active=True).all()
    if not entitlements:
        logger.info(f"No active entitlements for order {order.id}, no confirmation sent")
        return

    titles = ", ".join(e.product.title for e in entitlements)
    _dispatch(
        to=order.buyer_email,
        subject=f"Your purchase is ready — {titles}",
        template="emails/purchase_confirmation.html",
        context={
            "customer_name": order.buyer_name or "there",
            "order_id": order.id,
            "amount_paid": format_amount(order.total_amount, order.currency),
            "links": _links_for(entitlements),
            "ttl_days": current_app.config.get("ACCESS_TOKEN_TTL_DAYS", 7),
        },
    )
    logger.info(f"Purchase confirmation queued for order {order.id}")


def send_refund_notification(order_id, refund_amount=None):
    order = db.session.get(Order, order_id)
    if order is None:
        return

    _dispatch(
        to=order.buyer_email,
        subject=f"Refund processed — order {order.id}",
        template="emails/refund_notification.html",
        context={
            "customer_name": order.buyer_name or "there",
            "order_id": order.id,
            "refund_amount": format_amount(
                refund_amount if refund_amount is not None else order.total_amount,
                order.currency,
            ),
        },
    )
    logger.info(f"Refund notification queued for order {order.id}")


def send_access_links(email, entitlements):
    """Email fresh magic links for the given active entitlements."""
    if not entitlements:
        return

    _dispatch(
        to=email,
        subject="Your access links",
        template="emails/access_links.html",
        context={
            "links": _links_for(entitlements),
            "ttl_days": current_app.config.get("ACCESS_TOKEN_TTL_DAYS", 7),
        },
    )
    logger.info(f"Access links queued for {len(entitlements)} entitlement(s)")
