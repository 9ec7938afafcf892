"""Access blueprint — magic-link downloads.

Route Map:
  GET  /access/<product_slug>?token=...   — download manifest for a live grant
  POST /access/resend                     — e-mail fresh links ({email, product_slug?})

Both routes are public (the token is the credential) and CSRF-exempt.
"""

from flask import Blueprint, jsonify, request

from commerce.errors import AccessDenied
from commerce.extensions import limiter
from commerce.services import access_service

access_bp = Blueprint("access", __name__, url_prefix="/access")


@access_bp.route("/<product_slug>", methods=["GET"])
def download(product_slug):
    token = request.args.get("token")
    try:
        manifest = access_service.resolve_access(product_slug, token)
    except AccessDenied as e:
        return jsonify(e.to_dict()), e.status_code
    return jsonify(manifest), 200


@access_bp.route("/resend", methods=["POST"])
@limiter.limit("5 per hour")
def resend():
    """Resend access links. The answer never reveals whether the email exists."""
    data = request.get_json(silent=True) or request.form
    email = data.get("email") or ""
    product_slug = data.get("product_slug") or None

    if not email.strip():
        return jsonify({"error": "Email is required."}), 400

    message = access_service.resend_access_links(email, product_slug)
    return jsonify({"message": message}), 202
