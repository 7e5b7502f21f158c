"""Tests for the webhooks blueprint and Stripe event reconciliation.

Covers:
- Signature verification (missing, invalid, tampered, stale)
- Malformed payloads
- checkout.session.completed handler
- payment_intent.succeeded handler (commission settlement)
- payment_intent.payment_failed handler
- account.updated handler
- Idempotency (same event id, distinct events for one payment)
- Unknown event types and missing orders (acknowledged)
- Handler failures (500, nothing recorded)
"""

import json
import time
from unittest.mock import patch

from popstore.extensions import db
from popstore.models.audit import AuditEvent
from popstore.models.commission import Commission
from popstore.models.order import Order
from popstore.models.stripe_event import StripeEvent
from popstore.models.user import User
from popstore.services.webhook_service import _HANDLERS, EventType


def _fresh(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


def _commissions_for(order_id):
    db.session.expire_all()
    return Commission.query.filter_by(order_id=order_id).all()


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        """POST /stripe/webhooks without signature -> 400."""
        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    def test_invalid_signature_returns_400(self, client, seed_data):
        """POST /stripe/webhooks with bad signature -> 400."""
        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
            headers={"Stripe-Signature": "bad_sig"},
        )
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data

    def test_wrong_secret_returns_400(self, client, seed_data, sign_payload):
        payload = json.dumps({"id": "evt_x", "type": "account.updated",
                              "data": {"object": {}}})
        resp = client.post(
            "/stripe/webhooks",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload, secret="whsec_other")},
        )
        assert resp.status_code == 400

    def test_tampered_payload_is_rejected_and_not_processed(
        self, client, seed_data, make_order, sign_payload
    ):
        """A signature for one body must not authorize another."""
        order_id = make_order(session_id="cs_tamper")
        original = json.dumps({"id": "evt_t1", "type": "checkout.session.completed",
                               "data": {"object": {"id": "cs_other"}}})
        tampered = json.dumps({"id": "evt_t1", "type": "checkout.session.completed",
                               "data": {"object": {"id": "cs_tamper"}}})

        resp = client.post(
            "/stripe/webhooks",
            data=tampered,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(original)},
        )
        assert resp.status_code == 400
        assert _fresh(Order, order_id).status == "pending"
        assert StripeEvent.query.count() == 0

    def test_stale_timestamp_is_rejected(self, client, seed_data, sign_payload):
        payload = json.dumps({"id": "evt_old", "type": "account.updated",
                              "data": {"object": {}}})
        header = sign_payload(payload, timestamp=time.time() - 3600)
        resp = client.post(
            "/stripe/webhooks",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": header},
        )
        assert resp.status_code == 400

    def test_malformed_payload_returns_400(self, client, seed_data, sign_payload):
        """Signed but not a Stripe event envelope -> 400."""
        payload = json.dumps({"type": "checkout.session.completed"})
        resp = client.post(
            "/stripe/webhooks",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload)},
        )
        assert resp.status_code == 400
        assert b"Malformed payload" in resp.data


class TestWebhookIdempotency:
    """Tests for duplicate event handling."""

    def test_duplicate_event_returns_200(self, post_event, seed_data):
        """Pre-recorded event_id -> 200 with 'already_processed'."""
        db.session.add(StripeEvent(
            stripe_event_id="evt_duplicate_123",
            event_type="checkout.session.completed",
        ))
        db.session.commit()

        resp = post_event("evt_duplicate_123", "checkout.session.completed", {})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "already_processed"

    def test_same_event_delivered_twice_settles_once(
        self, post_event, seed_data, make_order
    ):
        order_id = make_order(total_price=5000, status="paid",
                              payment_intent_id="pi_twice")
        intent = {"id": "pi_twice", "amount_received": 5000}

        first = post_event("evt_pi_twice", "payment_intent.succeeded", intent)
        second = post_event("evt_pi_twice", "payment_intent.succeeded", intent)

        assert first.get_json()["status"] == "commission_settled"
        assert second.get_json()["status"] == "already_processed"
        assert len(_commissions_for(order_id)) == 1
        assert StripeEvent.query.filter_by(stripe_event_id="evt_pi_twice").count() == 1

    def test_distinct_events_for_one_payment_settle_once(
        self, post_event, seed_data, make_order
    ):
        """Two events describing the same payment -> exactly one commission."""
        order_id = make_order(total_price=5000, status="paid",
                              payment_intent_id="pi_o1")
        intent = {"id": "pi_o1", "amount_received": 5000}

        first = post_event("evt_o1_a", "payment_intent.succeeded", intent)
        second = post_event("evt_o1_b", "payment_intent.succeeded", intent)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.get_json()["status"] == "already_processed"

        commissions = _commissions_for(order_id)
        assert len(commissions) == 1
        assert commissions[0].commission_amount == 500
        assert commissions[0].net_amount == 4500

        order = _fresh(Order, order_id)
        assert order.commission_processed is True
        assert order.commission_id == commissions[0].id


class TestCheckoutCompleted:
    """Tests for checkout.session.completed webhook."""

    def test_marks_order_paid(self, post_event, seed_data, make_order):
        order_id = make_order(session_id="cs_test_1")

        resp = post_event("evt_cs_1", "checkout.session.completed", {
            "id": "cs_test_1",
            "payment_intent": "pi_test_1",
            "metadata": {"order_id": order_id},
        })

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "order_paid"
        order = _fresh(Order, order_id)
        assert order.status == "paid"
        assert order.stripe_payment_intent_id == "pi_test_1"
        assert order.commission_processed is False

        audit = AuditEvent.query.filter_by(action="order.paid").first()
        assert audit is not None
        assert audit.metadata_["order_id"] == order_id

    def test_expanded_payment_intent_object(self, post_event, seed_data, make_order):
        order_id = make_order(session_id="cs_test_2")
        post_event("evt_cs_2", "checkout.session.completed", {
            "id": "cs_test_2",
            "payment_intent": {"id": "pi_expanded"},
        })
        assert _fresh(Order, order_id).stripe_payment_intent_id == "pi_expanded"

    def test_already_paid_order(self, post_event, seed_data, make_order):
        make_order(session_id="cs_paid", status="paid", payment_intent_id="pi_paid")
        resp = post_event("evt_cs_3", "checkout.session.completed", {
            "id": "cs_paid", "payment_intent": "pi_paid",
        })
        assert resp.get_json()["status"] == "already_paid"

    def test_payment_intent_owned_by_another_order_is_acknowledged(
        self, post_event, seed_data, make_order
    ):
        """A payment intent already bound elsewhere -> 200, order untouched."""
        holder_id = make_order(status="paid", payment_intent_id="pi_taken")
        order_id = make_order(session_id="cs_clash")

        resp = post_event("evt_clash", "checkout.session.completed", {
            "id": "cs_clash", "payment_intent": "pi_taken",
        })

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "payment_intent_conflict"
        order = _fresh(Order, order_id)
        assert order.status == "pending"
        assert order.stripe_payment_intent_id is None
        assert _fresh(Order, holder_id).stripe_payment_intent_id == "pi_taken"
        assert StripeEvent.query.filter_by(stripe_event_id="evt_clash").count() == 1

    def test_order_not_found_returns_200(self, post_event, seed_data):
        """Unknown session -> acknowledged so Stripe stops retrying."""
        resp = post_event("evt_cs_missing", "checkout.session.completed", {
            "id": "cs_does_not_exist",
        })
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "order_not_found"
        assert StripeEvent.query.filter_by(stripe_event_id="evt_cs_missing").count() == 1


class TestPaymentSucceeded:
    """Tests for payment_intent.succeeded webhook (settlement)."""

    def test_settles_commission(self, post_event, seed_data, make_order):
        order_id = make_order(total_price=2500, status="paid",
                              payment_intent_id="pi_settle")

        resp = post_event("evt_pi_settle", "payment_intent.succeeded", {
            "id": "pi_settle", "amount_received": 2500,
        })

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "commission_settled"

        commission = _commissions_for(order_id)[0]
        assert commission.gross_amount == 2500
        assert commission.commission_amount == 250
        assert commission.net_amount == 2250
        assert commission.status == "completed"
        assert commission.store_owner_id == seed_data["owner_id"]
        assert commission.plan_id == seed_data["plan_id"]

        assert AuditEvent.query.filter_by(action="commission.settled").count() == 1

    def test_full_flow_checkout_then_payment(self, post_event, seed_data, make_order):
        order_id = make_order(total_price=10000, session_id="cs_flow")

        post_event("evt_flow_1", "checkout.session.completed", {
            "id": "cs_flow", "payment_intent": "pi_flow",
        })
        post_event("evt_flow_2", "payment_intent.succeeded", {
            "id": "pi_flow", "amount_received": 10000,
        })

        order = _fresh(Order, order_id)
        assert order.status == "paid"
        assert order.commission_processed is True
        assert _commissions_for(order_id)[0].commission_amount == 1000

    def test_arrives_before_checkout_completed(self, post_event, seed_data, make_order):
        """Order found through metadata.order_id when the intent is not yet recorded."""
        order_id = make_order(total_price=4000, session_id="cs_early")

        resp = post_event("evt_early_pi", "payment_intent.succeeded", {
            "id": "pi_early",
            "amount_received": 4000,
            "metadata": {"order_id": order_id},
        })
        assert resp.get_json()["status"] == "commission_settled"

        order = _fresh(Order, order_id)
        assert order.status == "paid"
        assert order.stripe_payment_intent_id == "pi_early"
        assert order.commission_processed is True

        late = post_event("evt_late_cs", "checkout.session.completed", {
            "id": "cs_early", "payment_intent": "pi_early",
        })
        assert late.get_json()["status"] == "already_paid"
        assert len(_commissions_for(order_id)) == 1

    def test_losing_settlement_race_keeps_payment_intent(
        self, post_event, seed_data, make_order
    ):
        """Another worker already wrote the commission; our writes still land."""
        order_id = make_order(total_price=5000, session_id="cs_race", fee=500)
        winner = Commission(
            order_id=order_id,
            store_id=seed_data["store_id"],
            store_owner_id=seed_data["owner_id"],
            plan_id=seed_data["plan_id"],
            gross_amount=5000,
            commission_percentage=10,
            commission_amount=500,
            net_amount=4500,
            status="completed",
        )
        db.session.add(winner)
        db.session.commit()
        winner_id = winner.id

        resp = post_event("evt_race", "payment_intent.succeeded", {
            "id": "pi_race",
            "amount_received": 5000,
            "metadata": {"order_id": order_id},
        })

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "commission_settled"

        order = _fresh(Order, order_id)
        assert order.stripe_payment_intent_id == "pi_race"
        assert order.status == "paid"
        assert order.commission_processed is True
        assert order.commission_id == winner_id
        assert len(_commissions_for(order_id)) == 1
        assert AuditEvent.query.filter_by(action="order.paid").count() == 1

    def test_metadata_pointing_at_another_intents_order_is_ignored(
        self, post_event, seed_data, make_order
    ):
        order_id = make_order(status="paid", payment_intent_id="pi_real")
        resp = post_event("evt_spoof", "payment_intent.succeeded", {
            "id": "pi_spoof", "metadata": {"order_id": order_id},
        })
        assert resp.get_json()["status"] == "order_not_found"
        assert _commissions_for(order_id) == []

    def test_order_not_found_returns_200(self, post_event, seed_data):
        resp = post_event("evt_pi_missing", "payment_intent.succeeded", {
            "id": "pi_unknown", "amount_received": 1000,
        })
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "order_not_found"
        assert Commission.query.count() == 0

    def test_handler_error_returns_500_and_records_nothing(
        self, post_event, seed_data, make_order
    ):
        """A failed settlement is retried by Stripe: no event row, no changes."""
        order_id = make_order(status="paid", payment_intent_id="pi_boom")

        with patch(
            "popstore.services.webhook_service.settle_order",
            side_effect=RuntimeError("database unavailable"),
        ):
            resp = post_event("evt_boom", "payment_intent.succeeded", {"id": "pi_boom"})

        assert resp.status_code == 500
        assert resp.get_json()["success"] is False
        assert StripeEvent.query.filter_by(stripe_event_id="evt_boom").count() == 0
        assert _fresh(Order, order_id).commission_processed is False

        # Stripe's retry then succeeds
        retry = post_event("evt_boom", "payment_intent.succeeded", {"id": "pi_boom"})
        assert retry.get_json()["status"] == "commission_settled"
        assert len(_commissions_for(order_id)) == 1


class TestPaymentFailed:
    """Tests for payment_intent.payment_failed webhook."""

    def test_cancels_pending_order(self, post_event, seed_data, make_order):
        order_id = make_order(session_id="cs_fail")
        resp = post_event("evt_fail_1", "payment_intent.payment_failed", {
            "id": "pi_fail",
            "metadata": {"order_id": order_id},
            "last_payment_error": {"message": "Your card was declined."},
        })

        assert resp.get_json()["status"] == "order_cancelled"
        order = _fresh(Order, order_id)
        assert order.status == "cancelled"
        assert order.stripe_payment_intent_id == "pi_fail"

        audit = AuditEvent.query.filter_by(action="order.cancelled").first()
        assert audit.metadata_["failure_message"] == "Your card was declined."

    def test_failed_after_settlement_leaves_order_paid(
        self, post_event, seed_data, make_order
    ):
        order_id = make_order(total_price=5000, status="paid",
                              payment_intent_id="pi_settled")
        post_event("evt_ok", "payment_intent.succeeded", {"id": "pi_settled"})

        resp = post_event("evt_late_fail", "payment_intent.payment_failed", {
            "id": "pi_settled",
        })

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "already_settled"
        order = _fresh(Order, order_id)
        assert order.status == "paid"
        assert order.commission_processed is True
        assert len(_commissions_for(order_id)) == 1

    def test_already_cancelled(self, post_event, seed_data, make_order):
        make_order(status="cancelled", payment_intent_id="pi_gone")
        resp = post_event("evt_fail_2", "payment_intent.payment_failed", {"id": "pi_gone"})
        assert resp.get_json()["status"] == "already_cancelled"


class TestAccountUpdated:
    """Tests for account.updated webhook (payout-account sync)."""

    def _account(self, charges=True, payouts=True, disabled_reason=None):
        return {
            "id": "acct_owner_123",
            "charges_enabled": charges,
            "payouts_enabled": payouts,
            "requirements": {"disabled_reason": disabled_reason},
        }

    def test_active_account(self, post_event, seed_data):
        resp = post_event("evt_acct_1", "account.updated", self._account())
        assert resp.get_json()["status"] == "account_updated"
        user = _fresh(User, seed_data["owner_id"])
        assert user.stripe_account_status == "active"
        assert user.stripe_onboarding_complete is True

    def test_restricted_account_disables_payouts(self, post_event, seed_data):
        post_event("evt_acct_2", "account.updated", self._account(
            charges=False, payouts=False,
            disabled_reason="requirements.past_due",
        ))
        user = _fresh(User, seed_data["owner_id"])
        assert user.stripe_account_status == "restricted"
        assert user.stripe_onboarding_complete is False

    def test_rejected_account(self, post_event, seed_data):
        post_event("evt_acct_3", "account.updated", self._account(
            charges=False, payouts=False, disabled_reason="rejected.fraud",
        ))
        assert _fresh(User, seed_data["owner_id"]).stripe_account_status == "rejected"

    def test_pending_account(self, post_event, seed_data):
        post_event("evt_acct_4", "account.updated", self._account(payouts=False))
        assert _fresh(User, seed_data["owner_id"]).stripe_account_status == "pending"

    def test_unknown_account(self, post_event, seed_data):
        resp = post_event("evt_acct_5", "account.updated", {"id": "acct_nobody"})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "user_not_found"


class TestUnknownEvents:
    """Unhandled event types are acknowledged and recorded."""

    def test_unknown_event_type_ignored(self, post_event, seed_data):
        resp = post_event("evt_unknown", "customer.created", {"id": "cus_123"})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ignored"
        assert StripeEvent.query.filter_by(stripe_event_id="evt_unknown").count() == 1


class TestDispatchTable:
    def test_every_event_type_has_a_handler(self):
        assert set(_HANDLERS) == set(EventType)
