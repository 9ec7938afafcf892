"""Admin blueprint — /admin/*

Operator views over the webhook pipeline. JSON only.
All routes protected by @admin_required decorator.

Route Map:
  GET  /admin/failed-events                     — failed / dead-lettered events
  POST /admin/failed-events/<event_id>/retry    — replay from stored payload
  POST /admin/failed-events/<event_id>/abandon  — dead-letter without replay
  GET  /admin/reliability                       — bulkheads, flags, failed count
  POST /admin/features/<feature>                — enable/disable a feature flag
  GET  /admin/csrf-token                        — token for the X-CSRFToken header

State-changing routes are CSRF protected; clients send the token from
/admin/csrf-token in the X-CSRFToken header.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user
from flask_wtf.csrf import generate_csrf

from commerce.decorators import admin_required
from commerce.reliability import get_bulkheads, get_feature_flags, with_fallback
from commerce.services import ledger_service, stripe_service

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


# ══════════════════════════════════════════════
#  FAILED-EVENT QUEUE
# ══════════════════════════════════════════════

@admin_bp.route("/failed-events", methods=["GET"])
@admin_required
def failed_events():
    limit = request.args.get("limit", 50, type=int)
    events = ledger_service.get_failed_events(limit=limit)
    return jsonify({"events": [e.to_dict() for e in events]}), 200


@admin_bp.route("/failed-events/<event_id>/retry", methods=["POST"])
@admin_required
def retry_event(event_id):
    try:
        outcome = stripe_service.replay_event(event_id, actor_user_id=current_user.id)
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 409

    logger.info(f"Admin {current_user.email} replayed event {event_id}: {outcome.status}")
    return jsonify({
        "event_id": event_id,
        "status": outcome.status,
        "message": outcome.message,
    }), 200


@admin_bp.route("/failed-events/<event_id>/abandon", methods=["POST"])
@admin_required
def abandon_event(event_id):
    try:
        record = ledger_service.abandon_event(event_id, actor_user_id=current_user.id)
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 409

    return jsonify(record.to_dict()), 200


# ══════════════════════════════════════════════
#  RELIABILITY
# ══════════════════════════════════════════════

@admin_bp.route("/reliability", methods=["GET"])
@admin_required
def reliability():
    """Bulkhead and feature-flag state. The failed-event count fails open to null."""
    return jsonify({
        "bulkheads": get_bulkheads().all_stats(),
        "feature_flags": get_feature_flags().all(),
        "failed_events": with_fallback(
            ledger_service.count_failed_events,
            fallback=None,
            service_name="failed_event_count",
        ),
    }), 200


@admin_bp.route("/features/<feature>", methods=["POST"])
@admin_required
def toggle_feature(feature):
    flags = get_feature_flags()
    if feature not in flags.all():
        return jsonify({"error": f"Unknown feature {feature}"}), 404

    data = request.get_json(silent=True) or {}
    if data.get("enabled", True):
        flags.enable(feature)
    else:
        flags.disable(feature)

    logger.info(f"Admin {current_user.email} set feature {feature} -> {flags.is_enabled(feature)}")
    return jsonify({"feature": feature, "enabled": flags.is_enabled(feature)}), 200


@admin_bp.route("/csrf-token", methods=["GET"])
@admin_required
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()}), 200
