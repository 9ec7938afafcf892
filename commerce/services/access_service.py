"""Access service — magic-link downloads and link resend.

An access token only says which (email, product, entitlement) a link was
sent for. resolve_access() re-checks the live entitlement on every call,
so a link e-mailed before a refund stops working the moment the refund
lands.
"""

import logging

from commerce.errors import AccessDenied, ConfigurationError
from commerce.extensions import db
from commerce.models.entitlement import Entitlement, Expired, Revoked
from commerce.models.product import Product
from commerce.reliability import get_feature_flags, isolate
from commerce.services import entitlement_service, notification_service
from commerce.services.access_token_service import validate_access_token

logger = logging.getLogger(__name__)

RESEND_MESSAGE = (
    "If that email has active purchases, we've sent fresh access links to it."
)


def _deny(reason, detail):
    logger.info(f"Access denied ({reason}): {detail}")
    raise AccessDenied(reason, detail)


def resolve_access(product_slug, token):
    """Return the download manifest the token unlocks.

    Raises AccessDenied with a reason code the client can act on (most
    denials mean "ask for a fresh link").
    """
    if not token:
        _deny(AccessDenied.MISSING_TOKEN, "An access token is required")

    product = Product.query.filter_by(slug=product_slug, published=True).first()
    if product is None:
        _deny(AccessDenied.PRODUCT_NOT_FOUND, f"Product {product_slug} not found")

    claims = validate_access_token(token)
    if claims is None:
        _deny(AccessDenied.INVALID_TOKEN, "This link is invalid or has expired")

    if claims.product_id != product.id:
        _deny(AccessDenied.TOKEN_MISMATCH, "This link is for a different product")

    entitlement = db.session.get(Entitlement, claims.entitlement_id)
    if entitlement is None or entitlement.product_id != product.id:
        _deny(AccessDenied.ENTITLEMENT_NOT_FOUND, "No purchase found for this link")

    if entitlement.user.email.lower() != claims.email.lower():
        _deny(AccessDenied.TOKEN_MISMATCH, "This link was issued to a different email")

    if not entitlement_service.check_access(entitlement.user_id, product.id):
        state = entitlement.state
        if isinstance(state, Expired):
            _deny(AccessDenied.ENTITLEMENT_EXPIRED, "Your access to this product has expired")
        if isinstance(state, Revoked):
            _deny(AccessDenied.ENTITLEMENT_REVOKED, f"Access revoked: {state.reason}")
        _deny(AccessDenied.NO_ENTITLEMENT, "You do not have access to this product")

    logger.info(f"Access granted to {product.slug} via entitlement {entitlement.id}")
    return product.manifest()


def resend_access_links(email, product_slug=None):
    """E-mail fresh links for the buyer's active entitlements.

    Always returns the same message whether or not anything was found, so
    the endpoint cannot be used to discover which emails have purchases.
    A missing token secret is the only error that propagates.
    """
    email = (email or "").lower().strip()
    if not email:
        return RESEND_MESSAGE

    flags = get_feature_flags()
    if not flags.is_enabled("resend_emails"):
        logger.info("Resend emails disabled, no access links sent")
        return RESEND_MESSAGE

    entitlements = entitlement_service.find_active_by_email(email, product_slug)
    if not entitlements:
        logger.info("Resend requested with no matching active entitlements")
        return RESEND_MESSAGE

    isolate(
        lambda: notification_service.send_access_links(email, entitlements),
        boundary_name="email:access_links",
        critical_error=lambda e: isinstance(e, ConfigurationError),
    )
    return RESEND_MESSAGE
