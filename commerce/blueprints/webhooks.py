"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, request, jsonify

from commerce.errors import AuthenticationFailure, ConfigurationError
from commerce.services.stripe_service import ERROR, ingest

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET (fail closed)
    3. Pass to the ingestor (idempotent via stripe_events table)
    4. 200 for processed, duplicate or dead-lettered events; 500 asks
       Stripe to retry a transient failure

    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    try:
        outcome = ingest(payload, sig_header)
    except AuthenticationFailure as e:
        return jsonify({"error": str(e)}), 400
    except ConfigurationError as e:
        logger.critical(f"Webhook endpoint misconfigured: {e}")
        return jsonify({"error": "Webhook not configured"}), 500

    if outcome.status != ERROR:
        return jsonify({"status": outcome.status, "message": outcome.message}), 200

    if outcome.acknowledged:
        return jsonify({"status": ERROR, "error": outcome.message}), 200

    logger.error(f"Webhook processing failed: {outcome.message}")
    return jsonify({"error": outcome.message}), 500
