"""Idempotency ledger — one stripe_events row per Stripe event id.

The ledger decides whether an event still needs work. Rows are inserted
before any fulfillment runs; the unique key on stripe_event_id makes a
concurrent second insert fail, and that failure means "someone else has
it", not an error.

Failed events keep their raw payload and error so the failed-event queue
can list them and an operator can replay or abandon them.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from commerce.extensions import db
from commerce.models.stripe_event import StripeEvent
from commerce.services.audit_service import log_audit

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class EventInFlight(Exception):
    """Another delivery of the same event inserted the ledger row first."""


def get_event(event_id):
    return StripeEvent.query.filter_by(stripe_event_id=event_id).first()


def record_delivery(event_id, event_type, raw_payload=None):
    """Return the ledger row for event_id, inserting it on first sight.

    The insert commits on its own so the event is on record even if
    processing later crashes. Raises EventInFlight when a concurrent
    delivery wins the insert and has not finished yet.
    """
    existing = get_event(event_id)
    if existing:
        if existing.raw_payload is None and raw_payload:
            existing.raw_payload = raw_payload
            db.session.commit()
        return existing

    record = StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        raw_payload=raw_payload,
        processed=False,
        attempts=0,
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = get_event(event_id)
        if winner is not None and not winner.processed:
            raise EventInFlight(event_id)
        return winner

    logger.info(f"Recorded webhook event {event_id} ({event_type})")
    return record


def start_attempt(record):
    record.attempts = (record.attempts or 0) + 1
    db.session.commit()


def mark_processed(record):
    """Stage the processed flag. Commits with the fulfillment writes."""
    record.processed = True
    record.processing_error = None
    record.processed_at = datetime.now(timezone.utc)


def mark_failed(event_id, error, dead_letter=False):
    """Record a processing failure after the fulfillment rollback.

    The event is dead-lettered immediately when `dead_letter` is set, or
    once its attempts reach WEBHOOK_MAX_ATTEMPTS. Returns True when the
    event is now dead-lettered.

    Failing to record the failure is logged, not raised: the caller is
    already on an error path and Stripe will redeliver.
    """
    try:
        record = get_event(event_id)
        if record is None:
            logger.error(f"Cannot record failure for unknown event {event_id}")
            return False

        record.processed = False
        record.processing_error = str(error)[:MAX_ERROR_LENGTH]

        max_attempts = current_app.config.get("WEBHOOK_MAX_ATTEMPTS", 5)
        if dead_letter or record.attempts >= max_attempts:
            record.dead_lettered_at = datetime.now(timezone.utc)
            log_audit("event.dead_lettered", "stripe_event", record.stripe_event_id, {
                "event_type": record.event_type,
                "attempts": record.attempts,
                "error": record.processing_error,
            })
            logger.critical(
                f"Webhook event {event_id} ({record.event_type}) dead-lettered "
                f"after {record.attempts} attempt(s): {record.processing_error}"
            )

        db.session.commit()
        return record.is_dead_lettered
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to record processing error for event {event_id}: {e}")
        return False


# ──────────────────────────────────────────────
# Failed-event queue
# ──────────────────────────────────────────────

def _failed_query():
    return StripeEvent.query.filter(
        StripeEvent.processed.is_(False),
        db.or_(
            StripeEvent.processing_error.isnot(None),
            StripeEvent.dead_lettered_at.isnot(None),
        ),
    )


def get_failed_events(limit=50):
    """Unprocessed events that have failed at least once, newest first."""
    return (
        _failed_query()
        .order_by(StripeEvent.received_at.desc())
        .limit(limit)
        .all()
    )


def count_failed_events():
    return _failed_query().count()


def reset_for_replay(event_id, actor_user_id=None):
    """Clear the failure state so the event can be processed again.

    Raises LookupError for unknown events and ValueError for events that
    were already processed or have no stored payload.
    """
    record = get_event(event_id)
    if record is None:
        raise LookupError(f"Event {event_id} not found")
    if record.processed:
        raise ValueError(f"Event {event_id} was already processed")
    if not record.raw_payload:
        raise ValueError(f"Event {event_id} has no stored payload to replay")

    record.processing_error = None
    record.dead_lettered_at = None
    record.attempts = 0
    log_audit("event.replayed", "stripe_event", event_id, {
        "event_type": record.event_type,
    }, actor_user_id=actor_user_id)
    db.session.commit()

    logger.info(f"Event {event_id} reset for replay")
    return record


def abandon_event(event_id, actor_user_id=None):
    """Dead-letter a failed event so it is never retried automatically."""
    record = get_event(event_id)
    if record is None:
        raise LookupError(f"Event {event_id} not found")
    if record.processed:
        raise ValueError(f"Event {event_id} was already processed")

    if record.dead_lettered_at is None:
        record.dead_lettered_at = datetime.now(timezone.utc)
    log_audit("event.dead_lettered", "stripe_event", event_id, {
        "event_type": record.event_type,
        "attempts": record.attempts,
        "abandoned": True,
    }, actor_user_id=actor_user_id)
    db.session.commit()

    logger.warning(f"Event {event_id} abandoned by operator")
    return record
