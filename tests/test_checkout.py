"""Tests for the checkout orchestrator.

Covers:
- Duplicate requests in one bucket reuse one Stripe session
- Permanent gateway failure -> incomplete, blocked for the window
- Transient gateway failure -> pending, no second gateway call
- New bucket after a completed purchase -> independent order
- Lost claim race -> winner's order, no orphan order or claim
- In-flight wait for the winner's session
- Validation (unknown / unconfigured products, whitelists)
- Subscription and payment status queries
"""

from unittest.mock import patch

import pytest
import stripe

from checkout_broker.errors import (
    CheckoutConflict,
    GatewayRejected,
    GatewayUnavailable,
    OrderNotFound,
    ValidationError,
)
from checkout_broker.extensions import db
from checkout_broker.models.idempotency_claim import IdempotencyClaim
from checkout_broker.models.order import (
    ACTIVE,
    CANCELED,
    INCOMPLETE,
    PENDING,
    Order,
    utcnow,
)
from checkout_broker.services import checkout_service, order_store
from checkout_broker.services.idempotency_service import derive_key

from conftest import stripe_session

T0 = 1_700_000_040_000  # start of a 60s bucket
CREATE = "checkout_broker.services.stripe_service.stripe.checkout.Session.create"
RETRIEVE = "checkout_broker.services.stripe_service.stripe.checkout.Session.retrieve"
SUB_RETRIEVE = "checkout_broker.services.stripe_service.stripe.Subscription.retrieve"


def _no_orphan_claims():
    return all(
        order_store.get_by_id(claim.order_id) is not None
        for claim in IdempotencyClaim.query.all()
    )


class TestCreateCheckout:

    @patch(CREATE)
    def test_fresh_checkout(self, mock_create):
        mock_create.return_value = stripe_session("cs_fresh", customer="cus_1")

        result = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)

        assert result.status == PENDING
        assert result.session_id == "cs_fresh"
        assert result.checkout_url.endswith("cs_fresh")
        assert result.reused is False
        assert result.retry_after == 60

        order = order_store.get_by_id(result.order_id)
        assert order.external_session_id == "cs_fresh"
        assert order.external_customer_id == "cus_1"
        assert order.amount == 990
        assert order.currency == "usd"

        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_monthly_test", "quantity": 1}]
        assert kwargs["metadata"] == {"order_id": result.order_id}
        assert kwargs["subscription_data"]["metadata"]["order_id"] == result.order_id
        assert kwargs["idempotency_key"] == derive_key("u1", "monthly-plan", T0, 60000)

    @patch(CREATE)
    def test_default_product(self, mock_create):
        mock_create.return_value = stripe_session()
        result = checkout_service.create_checkout("u1", now_ms=T0)
        assert order_store.get_by_id(result.order_id).product_id == "monthly-plan"

    @patch(CREATE)
    def test_repeat_requests_share_one_session(self, mock_create):
        """Three requests in one bucket -> one gateway call, one order."""
        mock_create.return_value = stripe_session("cs_shared")

        results = [
            checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0 + i * 1000)
            for i in range(3)
        ]

        assert mock_create.call_count == 1
        assert len({r.order_id for r in results}) == 1
        assert len({r.checkout_url for r in results}) == 1
        assert [r.reused for r in results] == [False, True, True]
        assert Order.query.count() == 1
        assert _no_orphan_claims()

    @patch(CREATE)
    def test_different_subjects_are_independent(self, mock_create):
        mock_create.side_effect = [stripe_session("cs_a"), stripe_session("cs_b")]
        a = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)
        b = checkout_service.create_checkout("u2", "monthly-plan", now_ms=T0)
        assert a.order_id != b.order_id
        assert mock_create.call_count == 2

    @patch(CREATE)
    def test_permanent_failure_marks_incomplete(self, mock_create):
        """Rejected by Stripe -> incomplete, retry is blocked."""
        mock_create.side_effect = stripe.InvalidRequestError(
            "No such price: 'price_monthly_test'", "line_items[0][price]"
        )

        with pytest.raises(GatewayRejected) as exc:
            checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)
        order_id = exc.value.details["order_id"]
        assert exc.value.details["status"] == INCOMPLETE
        assert order_store.get_by_id(order_id).status == INCOMPLETE

        with pytest.raises(CheckoutConflict) as conflict:
            checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0 + 5000)
        assert conflict.value.details["order_id"] == order_id
        assert conflict.value.details["status"] == INCOMPLETE
        assert conflict.value.retry_after == 55
        assert mock_create.call_count == 1

    @patch(CREATE)
    def test_transient_failure_leaves_pending(self, mock_create):
        mock_create.side_effect = stripe.APIConnectionError("Connection reset")

        with pytest.raises(GatewayUnavailable) as exc:
            checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)
        assert exc.value.retryable is True
        order_id = exc.value.details["order_id"]
        order = order_store.get_by_id(order_id)
        assert order.status == PENDING
        assert order.gateway_error_at is not None

        # Same bucket: no second gateway call, the order is reported in progress
        result = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0 + 1000)
        assert result.status == checkout_service.IN_PROGRESS
        assert result.order_id == order_id
        assert result.checkout_url is None
        assert mock_create.call_count == 1

    @patch(CREATE)
    def test_rate_limit_is_transient(self, mock_create):
        mock_create.side_effect = stripe.RateLimitError("Too many requests")
        with pytest.raises(GatewayUnavailable):
            checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)

    @patch(CREATE)
    def test_completed_purchase_blocks_same_bucket(self, mock_create):
        mock_create.return_value = stripe_session("cs_done")
        first = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)
        order_store.update_order(first.order_id, status=ACTIVE)
        order_store.commit()

        with pytest.raises(CheckoutConflict) as exc:
            checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0 + 30_000)
        assert exc.value.details["status"] == ACTIVE
        assert exc.value.retry_after == 30

    @patch(CREATE)
    def test_next_bucket_is_new_purchase(self, mock_create):
        """Active order, 90s later -> a brand new order + session."""
        mock_create.side_effect = [stripe_session("cs_one"), stripe_session("cs_two")]
        first = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)
        order_store.update_order(first.order_id, status=ACTIVE)
        order_store.commit()

        second = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0 + 90_000)

        assert second.order_id != first.order_id
        assert second.session_id == "cs_two"
        assert second.reused is False
        assert mock_create.call_count == 2
        assert order_store.get_by_id(first.order_id).status == ACTIVE

    @patch(CREATE)
    def test_lost_race_returns_winner(self, mock_create, make_order):
        """A claim committed by another request wins; our order is discarded."""
        winner = make_order(
            external_session_id="cs_winner",
            checkout_url="https://checkout.stripe.com/c/pay/cs_winner",
        )
        key = derive_key("u1", "monthly-plan", T0, 60000)
        order_store.try_claim(key, "u1", winner, utcnow())
        order_store.commit()

        result = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)

        assert result.order_id == winner
        assert result.session_id == "cs_winner"
        assert result.reused is True
        assert Order.query.count() == 1
        mock_create.assert_not_called()
        assert _no_orphan_claims()

    @patch(CREATE)
    def test_waits_for_winner_session(self, mock_create, make_order, app, monkeypatch):
        winner = make_order()
        key = derive_key("u1", "monthly-plan", T0, 60000)
        order_store.try_claim(key, "u1", winner, utcnow())
        order_store.commit()
        monkeypatch.setitem(app.config, "CHECKOUT_INFLIGHT_WAIT_SECONDS", 5)

        def winner_finishes(seconds):
            order_store.update_order(
                winner, external_session_id="cs_late", checkout_url="https://pay/cs_late"
            )
            order_store.commit()

        with patch("checkout_broker.services.checkout_service.time.sleep",
                   side_effect=winner_finishes) as mock_sleep:
            result = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)

        assert mock_sleep.call_count == 1
        assert result.session_id == "cs_late"
        assert result.checkout_url == "https://pay/cs_late"
        mock_create.assert_not_called()

    @patch(CREATE)
    def test_wait_holds_no_transaction_while_sleeping(self, mock_create, make_order,
                                                      app, monkeypatch):
        winner = make_order()
        key = derive_key("u1", "monthly-plan", T0, 60000)
        order_store.try_claim(key, "u1", winner, utcnow())
        order_store.commit()
        monkeypatch.setitem(app.config, "CHECKOUT_INFLIGHT_WAIT_SECONDS", 5)
        in_transaction = []

        def winner_finishes_second_time(seconds):
            in_transaction.append(db.session().in_transaction())
            if len(in_transaction) == 2:
                order_store.update_order(
                    winner, external_session_id="cs_slow", checkout_url="https://pay/cs_slow"
                )
                order_store.commit()

        with patch("checkout_broker.services.checkout_service.time.sleep",
                   side_effect=winner_finishes_second_time):
            result = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)

        assert in_transaction == [False, False]
        assert result.session_id == "cs_slow"

    @patch(CREATE)
    def test_retry_after_transient_failure_does_not_wait(self, mock_create, app,
                                                         monkeypatch):
        mock_create.side_effect = stripe.APIConnectionError("Connection reset")
        with pytest.raises(GatewayUnavailable):
            checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0)
        monkeypatch.setitem(app.config, "CHECKOUT_INFLIGHT_WAIT_SECONDS", 5)

        with patch("checkout_broker.services.checkout_service.time.sleep") as mock_sleep:
            result = checkout_service.create_checkout("u1", "monthly-plan", now_ms=T0 + 1000)

        assert result.status == checkout_service.IN_PROGRESS
        mock_sleep.assert_not_called()
        assert mock_create.call_count == 1

    @patch(CREATE)
    def test_metadata_stored_on_order(self, mock_create):
        mock_create.return_value = stripe_session()
        result = checkout_service.create_checkout(
            "u1",
            "monthly-plan",
            request_metadata={
                "payment_method": "card",
                "platform": "ios",
                "customer_email": "joe@example.com",
                "client_ref": "ref-1",
                "idempotency_key": "client-chosen",
            },
            now_ms=T0,
        )
        order = order_store.get_by_id(result.order_id)
        assert order.platform == "ios"
        assert order.customer_email == "joe@example.com"
        assert order.client_idempotency_key == "client-chosen"
        assert mock_create.call_args.kwargs["customer_email"] == "joe@example.com"
        # The client key never replaces the derived one
        assert mock_create.call_args.kwargs["idempotency_key"] != "client-chosen"


class TestValidation:

    @patch(CREATE)
    def test_unknown_product(self, mock_create):
        with pytest.raises(ValidationError):
            checkout_service.create_checkout("u1", "lifetime", now_ms=T0)
        assert Order.query.count() == 0
        mock_create.assert_not_called()

    @patch(CREATE)
    def test_unconfigured_product(self, mock_create):
        with pytest.raises(ValidationError) as exc:
            checkout_service.create_checkout("u1", "monthly-plan-pro", now_ms=T0)
        assert "not configured" in exc.value.message

    @pytest.mark.parametrize("metadata", [
        {"payment_method": "cheque"},
        {"platform": "windows-phone"},
        {"customer_email": "not-an-email"},
        {"client_ref": 42},
    ])
    @patch(CREATE)
    def test_bad_metadata(self, mock_create, metadata):
        with pytest.raises(ValidationError):
            checkout_service.create_checkout("u1", "monthly-plan", metadata, now_ms=T0)
        assert Order.query.count() == 0

    def test_missing_subject(self):
        with pytest.raises(ValidationError):
            checkout_service.create_checkout("", "monthly-plan", now_ms=T0)


class TestQueries:

    def test_subscription_status(self, make_order):
        make_order(status=CANCELED)
        active = make_order(status=ACTIVE)

        status = checkout_service.get_subscription_status("u1")
        assert status["is_active"] is True
        assert status["active_subscription"]["order_id"] == active
        assert len(status["orders"]) == 2

    def test_subscription_status_none(self):
        status = checkout_service.get_subscription_status("nobody")
        assert status == {"is_active": False, "active_subscription": None, "orders": []}

    @pytest.mark.parametrize("order_status,expected", [
        (PENDING, "pending"),
        (ACTIVE, "success"),
        (CANCELED, "cancelled"),
        (INCOMPLETE, "failed"),
    ])
    def test_payment_status_mapping(self, make_order, order_status, expected):
        make_order(status=order_status, external_session_id="cs_map")
        data = checkout_service.get_payment_status("cs_map", "u1")
        assert data["status"] == expected
        assert data["order_status"] == order_status

    @patch(SUB_RETRIEVE)
    @patch(RETRIEVE)
    def test_payment_status_sync_completes_order(self, mock_retrieve, mock_sub, make_order):
        order_id = make_order(external_session_id="cs_sync")
        mock_retrieve.return_value = {
            "id": "cs_sync",
            "status": "complete",
            "payment_status": "paid",
            "subscription": "sub_sync",
            "customer": "cus_sync",
            "metadata": {"order_id": order_id},
        }
        mock_sub.return_value = {"id": "sub_sync", "current_period_end": 1798761600}

        data = checkout_service.get_payment_status("cs_sync", "u1", sync=True)

        assert data["status"] == "success"
        assert data["subscription_id"] == "sub_sync"
        order = order_store.get_by_id(order_id)
        assert order.status == ACTIVE
        assert order.external_customer_id == "cus_sync"
        assert order.expires_at is not None

    @patch(RETRIEVE)
    def test_payment_status_sync_unpaid_stays_pending(self, mock_retrieve, make_order):
        make_order(external_session_id="cs_open")
        mock_retrieve.return_value = {
            "id": "cs_open", "status": "open", "payment_status": "unpaid",
        }
        data = checkout_service.get_payment_status("cs_open", "u1", sync=True)
        assert data["status"] == "pending"

    @patch(RETRIEVE)
    def test_other_subjects_session_is_not_found(self, mock_retrieve, make_order):
        make_order(subject_id="u2", external_session_id="cs_theirs")
        with pytest.raises(OrderNotFound):
            checkout_service.get_payment_status("cs_theirs", "u1", sync=True)
        mock_retrieve.assert_not_called()

    @patch(SUB_RETRIEVE)
    @patch(RETRIEVE)
    def test_sync_calls_stripe_outside_a_transaction(self, mock_retrieve, mock_sub,
                                                     make_order):
        make_order(external_session_id="cs_tx")
        in_transaction = []

        def paid_session(session_id):
            in_transaction.append(db.session().in_transaction())
            return {"id": "cs_tx", "payment_status": "paid", "subscription": "sub_tx"}

        def subscription(subscription_id):
            in_transaction.append(db.session().in_transaction())
            return {"id": "sub_tx"}

        mock_retrieve.side_effect = paid_session
        mock_sub.side_effect = subscription

        data = checkout_service.get_payment_status("cs_tx", "u1", sync=True)

        assert data["status"] == "success"
        assert in_transaction == [False, False]

    @patch(RETRIEVE)
    def test_sync_skipped_for_finished_orders(self, mock_retrieve, make_order):
        make_order(status=ACTIVE, external_session_id="cs_done")
        checkout_service.get_payment_status("cs_done", "u1", sync=True)
        mock_retrieve.assert_not_called()
