"""Tests for the fulfillment state machine.

Covers:
- Happy path: evt_1 / cs_1 / u1 / p1 / 5900
- Business-level dedup (same session, different event id)
- Atomicity: failure between order and entitlement writes
- Refunds via charge.refunded and payment_intent.refunded
- Checkout variants (unpaid, async payment, zero total)
- Losing the order insert race to a concurrent delivery
- Multi-product and guest checkouts
- Audit trail
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from commerce.extensions import db
from commerce.models.audit import AuditEvent
from commerce.models.entitlement import Entitlement, Revoked
from commerce.models.order import Order, OrderItem
from commerce.models.stripe_event import StripeEvent
from commerce.models.user import User

from conftest import charge_refunded_event, checkout_completed_event


class TestPaymentSucceeded:

    def test_happy_path_creates_order_and_entitlement(self, post_event, seed_data):
        resp = post_event(checkout_completed_event())
        assert resp.status_code == 200

        order = Order.query.filter_by(stripe_session_id="cs_1").one()
        assert order.status == Order.COMPLETED
        assert order.total_amount == 5900
        assert order.currency == "USD"
        assert order.buyer_id == "u1"
        assert order.stripe_payment_intent_id == "pi_1"
        assert order.fulfilled_at is not None

        items = OrderItem.query.filter_by(order_id=order.id).all()
        assert len(items) == 1
        assert items[0].product_name == "Intro to SQL"
        assert items[0].amount == 5900

        entitlement = Entitlement.query.filter_by(user_id="u1", product_id="p1").one()
        assert entitlement.active is True
        assert entitlement.order_id == order.id

    def test_same_session_new_event_id_is_business_duplicate(self, post_event, seed_data):
        post_event(checkout_completed_event(event_id="evt_1"))
        resp = post_event(checkout_completed_event(event_id="evt_1_retry"))

        assert resp.get_json()["status"] == "processed"
        assert Order.query.count() == 1
        assert Entitlement.query.count() == 1
        assert OrderItem.query.count() == 1
        # Both ledger rows are processed.
        assert StripeEvent.query.filter_by(processed=True).count() == 2

    def test_async_payment_succeeded_fulfills_same_session_once(self, post_event, seed_data):
        post_event(checkout_completed_event(event_id="evt_1"))
        post_event(checkout_completed_event(
            event_id="evt_async",
            event_type="checkout.session.async_payment_succeeded",
        ))
        assert Order.query.count() == 1

    def test_unpaid_checkout_is_skipped(self, post_event, seed_data):
        resp = post_event(checkout_completed_event(payment_status="unpaid"))

        assert resp.get_json()["status"] == "processed"
        assert Order.query.count() == 0
        assert Entitlement.query.count() == 0

    def test_zero_total_checkout_records_zero(self, post_event, seed_data):
        """A 100% coupon completes with no payment and an amount_total of 0."""
        resp = post_event(checkout_completed_event(amount=0, payment_status="no_payment_required"))
        assert resp.get_json()["status"] == "processed"

        order = Order.query.one()
        assert order.total_amount == 0
        assert OrderItem.query.one().amount == 5900
        assert Entitlement.query.filter_by(user_id="u1", product_id="p1", active=True).count() == 1

    def test_missing_amount_total_falls_back_to_catalogue_price(self, post_event, seed_data):
        post_event(checkout_completed_event(amount=None))
        assert Order.query.one().total_amount == 5900

    def test_async_payment_succeeded_fulfills_delayed_payment(self, post_event, seed_data):
        post_event(checkout_completed_event(payment_status="unpaid"))
        post_event(checkout_completed_event(
            event_id="evt_async",
            event_type="checkout.session.async_payment_succeeded",
            payment_status="paid",
        ))

        assert Order.query.filter_by(stripe_session_id="cs_1").count() == 1
        assert Entitlement.query.filter_by(user_id="u1", product_id="p1", active=True).count() == 1

    def test_multi_product_checkout(self, post_event, seed_data):
        post_event(checkout_completed_event(
            amount=13800,
            metadata={"user_id": "u1", "product_ids": "p1, p2"},
        ))

        order = Order.query.one()
        assert order.total_amount == 13800
        assert sorted(i.product_id for i in order.items) == ["p1", "p2"]
        assert Entitlement.query.filter_by(user_id="u1", order_id=order.id).count() == 2

    def test_guest_checkout_creates_passwordless_user(self, post_event, seed_data):
        post_event(checkout_completed_event(user_id=None, email="Guest@Example.com"))

        guest = User.query.filter_by(email="guest@example.com").one()
        assert guest.is_guest

        order = Order.query.one()
        assert order.buyer_id is None
        assert order.buyer_email == "guest@example.com"
        assert Entitlement.query.filter_by(user_id=guest.id, product_id="p1").count() == 1

    def test_guest_checkout_matches_existing_user_by_email(self, post_event, seed_data):
        post_event(checkout_completed_event(user_id=None, email="buyer@example.com"))

        assert User.query.filter_by(email="buyer@example.com").count() == 1
        assert Entitlement.query.filter_by(user_id="u1", product_id="p1").count() == 1

    def test_repurchase_reactivates_existing_entitlement(self, post_event, seed_data):
        post_event(checkout_completed_event())
        post_event(charge_refunded_event())
        post_event(checkout_completed_event(
            event_id="evt_3", session_id="cs_2", payment_intent="pi_2",
        ))

        rows = Entitlement.query.filter_by(user_id="u1", product_id="p1").all()
        assert len(rows) == 1
        second_order = Order.query.filter_by(stripe_session_id="cs_2").one()
        assert rows[0].active is True
        assert rows[0].order_id == second_order.id
        assert rows[0].revoked_at is None
        assert rows[0].revoke_reason is None

    def test_unknown_user_is_data_integrity_error(self, post_event, seed_data):
        resp = post_event(checkout_completed_event(user_id="u_missing"))
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "error"
        assert Order.query.count() == 0

    def test_missing_product_metadata_is_data_integrity_error(self, post_event, seed_data):
        resp = post_event(checkout_completed_event(metadata={"user_id": "u1"}))
        assert resp.get_json()["status"] == "error"
        record = StripeEvent.query.filter_by(stripe_event_id="evt_1").one()
        assert "Missing product metadata" in record.processing_error

    def test_audit_trail_written_with_fulfillment(self, post_event, seed_data):
        post_event(checkout_completed_event())

        order = Order.query.one()
        fulfilled = AuditEvent.query.filter_by(action="order.fulfilled").one()
        assert fulfilled.entity_id == order.id
        assert fulfilled.actor_user_id == "u1"
        assert AuditEvent.query.filter_by(action="entitlement.granted").count() == 1


class TestAtomicity:

    @patch("commerce.services.fulfillment_service.entitlement_service.grant")
    def test_failure_between_order_and_entitlement_leaves_nothing(self, mock_grant, post_event, seed_data):
        mock_grant.side_effect = RuntimeError("crash after order write")

        resp = post_event(checkout_completed_event())
        assert resp.status_code == 500

        assert Order.query.count() == 0
        assert OrderItem.query.count() == 0
        assert Entitlement.query.count() == 0
        assert AuditEvent.query.filter_by(action="order.fulfilled").count() == 0

        record = StripeEvent.query.filter_by(stripe_event_id="evt_1").one()
        assert record.processed is False
        assert "crash after order write" in record.processing_error

    def test_losing_order_insert_race_is_duplicate(self, post_event, seed_data):
        """Another delivery committed the order between the lookup and the insert."""
        post_event(checkout_completed_event(event_id="evt_a"))

        lookups = []

        def filter_by(**kwargs):
            lookups.append(kwargs)
            if len(lookups) == 1:
                return MagicMock(first=MagicMock(return_value=None))
            return db.session.query(Order).filter_by(**kwargs)

        query = MagicMock()
        query.filter_by.side_effect = filter_by
        with patch.object(Order, "query", query):
            resp = post_event(checkout_completed_event(event_id="evt_b"))

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "processed"
        assert len(lookups) == 2
        assert Order.query.count() == 1
        assert OrderItem.query.count() == 1
        assert Entitlement.query.count() == 1
        assert StripeEvent.query.filter_by(stripe_event_id="evt_b").one().processed is True

    @patch("commerce.services.stripe_service.ledger_service.mark_processed")
    def test_failure_marking_ledger_rolls_back_fulfillment(self, mock_mark, post_event, seed_data):
        mock_mark.side_effect = RuntimeError("ledger update failed")

        resp = post_event(checkout_completed_event())
        assert resp.status_code == 500
        assert Order.query.count() == 0
        assert Entitlement.query.count() == 0


class TestRefund:

    def test_charge_refunded_revokes_entitlement(self, post_event, seed_data):
        post_event(checkout_completed_event())
        resp = post_event(charge_refunded_event())
        assert resp.get_json()["status"] == "processed"

        order = Order.query.filter_by(stripe_session_id="cs_1").one()
        assert order.status == Order.REFUNDED
        assert order.refunded_at is not None

        entitlement = Entitlement.query.filter_by(user_id="u1", product_id="p1").one()
        assert entitlement.active is False
        assert entitlement.revoke_reason == "order refunded"
        assert isinstance(entitlement.state, Revoked)

        assert AuditEvent.query.filter_by(action="order.refunded").count() == 1
        assert AuditEvent.query.filter_by(action="entitlement.revoked").count() == 1

    def test_payment_intent_refunded_uses_object_id(self, post_event, seed_data):
        post_event(checkout_completed_event())
        post_event({
            "id": "evt_pi_refund",
            "type": "payment_intent.refunded",
            "data": {"object": {"id": "pi_1", "amount_received": 5900}},
        })

        assert Order.query.one().status == Order.REFUNDED
        assert Entitlement.query.one().active is False

    @patch("commerce.services.notification_service.send_email")
    def test_payment_intent_refund_amount_comes_from_charge(self, mock_send, post_event, seed_data):
        post_event(checkout_completed_event())
        mock_send.reset_mock()

        post_event({
            "id": "evt_pi_refund",
            "type": "payment_intent.refunded",
            "data": {"object": {
                "id": "pi_1",
                "amount_received": 5900,
                "latest_charge": {"id": "ch_1", "amount_refunded": 2000},
            }},
        })

        assert mock_send.call_args.kwargs["context"]["refund_amount"] == "20.00 USD"
        refunded = AuditEvent.query.filter_by(action="order.refunded").one()
        assert refunded.metadata_["refund_amount"] == 2000

    @patch("commerce.services.notification_service.send_email")
    def test_payment_intent_refund_without_charge_uses_order_total(self, mock_send, post_event, seed_data):
        post_event(checkout_completed_event(amount=5000))
        mock_send.reset_mock()

        post_event({
            "id": "evt_pi_refund",
            "type": "payment_intent.refunded",
            "data": {"object": {"id": "pi_1", "amount_received": 9999, "latest_charge": "ch_1"}},
        })

        assert mock_send.call_args.kwargs["context"]["refund_amount"] == "50.00 USD"

    def test_refund_twice_is_noop(self, post_event, seed_data):
        post_event(checkout_completed_event())
        post_event(charge_refunded_event(event_id="evt_2"))

        entitlement = Entitlement.query.one()
        revoked_at = entitlement.revoked_at

        resp = post_event(charge_refunded_event(event_id="evt_2_again"))
        assert resp.get_json()["status"] == "processed"
        assert Entitlement.query.one().revoked_at == revoked_at
        assert AuditEvent.query.filter_by(action="order.refunded").count() == 1

    def test_refund_revokes_every_entitlement_of_the_order(self, post_event, seed_data):
        post_event(checkout_completed_event(metadata={"user_id": "u1", "product_ids": "p1,p2"}))
        post_event(charge_refunded_event())

        assert Entitlement.query.filter_by(active=True).count() == 0
        assert Entitlement.query.filter_by(revoke_reason="order refunded").count() == 2

    def test_refund_for_unknown_payment_dead_letters(self, post_event, seed_data):
        resp = post_event(charge_refunded_event(payment_intent="pi_unknown"))

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "error"
        record = StripeEvent.query.filter_by(stripe_event_id="evt_2").one()
        assert record.dead_lettered_at is not None

    def test_charge_without_payment_intent_is_skipped(self, post_event, seed_data):
        resp = post_event(charge_refunded_event(payment_intent=None))
        assert resp.get_json()["status"] == "processed"


class TestOrderConstraints:

    def test_unknown_status_is_rejected(self, seed_data):
        db.session.add(Order(
            stripe_session_id="cs_bad",
            buyer_email="buyer@example.com",
            total_amount=0,
            status="shipped",
        ))
        with pytest.raises(IntegrityError):
            db.session.flush()
        db.session.rollback()
