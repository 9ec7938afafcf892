"""Stripe service — webhook verification and idempotent ingestion.

Responsible for:
- Verifying the Stripe-Signature header on the raw request body
- Recording every event in the idempotency ledger before acting on it
- Running fulfillment and the ledger update in one transaction
- Counting attempts and dead-lettering events that keep failing
- Sending buyer notifications after the commit, isolated from it
- Replaying failed events from their stored payload
"""

import json
import logging
from dataclasses import dataclass

import stripe
from flask import current_app

from commerce.errors import (
    AuthenticationFailure,
    ConfigurationError,
    DataIntegrityError,
)
from commerce.extensions import db
from commerce.reliability import get_feature_flags, isolate, when_feature_enabled
from commerce.services import fulfillment_service, ledger_service, notification_service

logger = logging.getLogger(__name__)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"
ERROR = "error"


@dataclass
class WebhookOutcome:
    """Result of one ingestion.

    `acknowledged` tells the HTTP layer to answer 200 even for an error, so
    Stripe stops redelivering events that will never succeed on their own.
    """

    status: str
    message: str
    acknowledged: bool = True


# ──────────────────────────────────────────────
# Signature verification
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify the Stripe signature and return the event as a plain dict.

    Raises AuthenticationFailure for a missing or invalid signature and
    ConfigurationError when no webhook secret is configured.
    """
    if not sig_header:
        raise AuthenticationFailure("Missing signature")

    webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not webhook_secret:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

    try:
        stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise AuthenticationFailure("Invalid signature") from e

    event = json.loads(payload)
    if not event.get("id") or not event.get("type"):
        raise AuthenticationFailure("Malformed event")
    return event


def ingest(payload, sig_header):
    """Verify then handle one raw webhook delivery."""
    event = verify_webhook_signature(payload, sig_header)
    return handle_webhook_event(event, raw_payload=payload)


# ──────────────────────────────────────────────
# Ingestion
# ──────────────────────────────────────────────

def handle_webhook_event(event, raw_payload=None):
    """Process a verified Stripe event at most once.

    1. Processed events are acknowledged without doing anything.
    2. Dead-lettered events are acknowledged with an error; only a manual
       replay runs them again.
    3. New events are recorded, then processed.

    Returns a WebhookOutcome.
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    existing = ledger_service.get_event(event_id)
    if existing and existing.processed:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return WebhookOutcome(ALREADY_PROCESSED, "Event already processed")

    if existing and existing.is_dead_lettered:
        logger.warning(f"Webhook event {event_id} is dead-lettered, not retrying")
        return WebhookOutcome(ERROR, "Event is dead-lettered and must be replayed manually")

    if raw_payload is None:
        raw_payload = json.dumps(event)

    try:
        record = ledger_service.record_delivery(event_id, event_type, raw_payload)
    except ledger_service.EventInFlight:
        logger.info(f"Webhook event {event_id} is being processed by another worker")
        return WebhookOutcome(ALREADY_PROCESSED, "in_flight")

    if record.processed:
        return WebhookOutcome(ALREADY_PROCESSED, "Event already processed")

    return _process(record, event)


def _process(record, event):
    event_id = record.stripe_event_id
    event_type = event["type"]

    ledger_service.start_attempt(record)

    try:
        result = fulfillment_service.apply_event(event)
        ledger_service.mark_processed(record)
        db.session.commit()
    except DataIntegrityError as e:
        db.session.rollback()
        logger.error(f"Unrecoverable data error handling {event_type} ({event_id}): {e}")
        ledger_service.mark_failed(event_id, e, dead_letter=True)
        return WebhookOutcome(ERROR, str(e), acknowledged=True)
    except Exception as e:
        logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
        db.session.rollback()
        dead_lettered = ledger_service.mark_failed(event_id, f"{type(e).__name__}: {e}")
        return WebhookOutcome(ERROR, str(e), acknowledged=dead_lettered)

    logger.info(f"Webhook event {event_id} ({event_type}) processed: {result.action}")
    _after_commit(result)
    return WebhookOutcome(PROCESSED, "Event processed")


def _after_commit(result):
    """Buyer notifications. Nothing here can undo the committed fulfillment."""
    flags = get_feature_flags()

    if result.action == fulfillment_service.FULFILLED:
        if not flags.is_enabled("purchase_emails"):
            logger.info(f"Purchase emails disabled, no confirmation for order {result.order_id}")
            return
        isolate(
            lambda: notification_service.send_purchase_confirmation(result.order_id),
            boundary_name="email:purchase_confirmation",
        )
    elif result.action == fulfillment_service.REFUNDED:
        when_feature_enabled(
            flags,
            "refund_emails",
            lambda: notification_service.send_refund_notification(
                result.order_id, result.refund_amount
            ),
        )


# ──────────────────────────────────────────────
# Failed-event replay
# ──────────────────────────────────────────────

def replay_event(event_id, actor_user_id=None):
    """Re-run a failed or dead-lettered event from its stored payload.

    Raises LookupError / ValueError from the ledger for events that
    cannot be replayed.
    """
    record = ledger_service.reset_for_replay(event_id, actor_user_id=actor_user_id)
    event = json.loads(record.raw_payload)
    logger.info(f"Replaying webhook event {event_id} ({record.event_type})")
    return _process(record, event)
