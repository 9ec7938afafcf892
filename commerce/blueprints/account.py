"""Account blueprint — signed-in buyers.

Route Map:
  GET  /account/entitlements          — active entitlements of the current user
  GET  /downloads/<product_id>        — manifest, gated by a live access check
"""

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from commerce.errors import AccessDenied
from commerce.extensions import db
from commerce.models.product import Product
from commerce.services import entitlement_service

account_bp = Blueprint("account", __name__)


@account_bp.route("/account/entitlements", methods=["GET"])
@login_required
def entitlements():
    rows = entitlement_service.list_active(current_user.id)
    return jsonify({
        "entitlements": [
            {
                "entitlement_id": e.id,
                "product_id": e.product_id,
                "product_slug": e.product.slug,
                "title": e.product.title,
                "order_id": e.order_id,
                "expires_at": e.expires_at.isoformat() if e.expires_at else None,
            }
            for e in rows
        ]
    }), 200


@account_bp.route("/downloads/<product_id>", methods=["GET"])
@login_required
def download(product_id):
    product = db.session.get(Product, product_id)
    if product is None:
        denied = AccessDenied(AccessDenied.PRODUCT_NOT_FOUND, "Product not found")
        return jsonify(denied.to_dict()), denied.status_code

    if not entitlement_service.check_access(current_user.id, product.id):
        denied = AccessDenied(AccessDenied.NO_ENTITLEMENT, "You do not have access to this product")
        return jsonify(denied.to_dict()), denied.status_code

    return jsonify(product.manifest()), 200
