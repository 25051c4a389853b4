"""Stripe service — every call we make to the payment gateway.

Responsible for:
- Creating Stripe Checkout Sessions (subscription mode)
- Retrieving sessions and subscriptions for reconciliation
- Verifying webhook signatures over the raw request body
- Classifying Stripe failures as transient (GatewayUnavailable) or
  permanent (GatewayRejected)

None of these calls retry internally; the caller decides.
"""

import json
import logging
from collections import namedtuple
from datetime import datetime, timezone

import stripe
from flask import current_app

from checkout_broker.errors import (
    GatewayRejected,
    GatewayUnavailable,
    InvalidSignature,
    MalformedPayload,
)

logger = logging.getLogger(__name__)

GatewaySession = namedtuple(
    "GatewaySession", ["session_id", "checkout_url", "customer_id"]
)
SessionSnapshot = namedtuple(
    "SessionSnapshot",
    ["session_id", "status", "payment_status", "subscription_id",
     "customer_id", "order_id"],
)


def field(obj, name, default=None):
    """Read ``name`` from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a timezone-aware datetime or None.
    """
    ts = field(sub_data, "current_period_end")

    if not ts:
        items = field(sub_data, "items")
        data = field(items, "data") or []
        if len(data) > 0:
            ts = field(data[0], "current_period_end")

    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


def _classify(error, action):
    """Map a Stripe exception onto our gateway error classes."""
    http_status = getattr(error, "http_status", None) or 0
    transient = (
        isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError))
        or isinstance(error, stripe.APIError)
        or http_status >= 500
    )
    if transient:
        logger.warning(f"Stripe unavailable during {action}: {error}")
        return GatewayUnavailable(f"Payment gateway unavailable: {error}")

    logger.error(f"Stripe rejected {action}: {error}")
    return GatewayRejected(f"Payment gateway rejected the request: {error}")


def _configure():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

def create_checkout_session(price_id, order_id, customer_email=None,
                            idempotency_key=None):
    """Create a subscription-mode Checkout Session for ``order_id``.

    The order id rides along in both session and subscription metadata so
    every later webhook can be traced back to the order. The derived
    idempotency key is forwarded to Stripe as a second line of defence.

    Returns a GatewaySession.
    Raises GatewayUnavailable or GatewayRejected.
    """
    _configure()
    success_url = current_app.config["CHECKOUT_SUCCESS_URL"]
    cancel_url = current_app.config["CHECKOUT_CANCEL_URL"]

    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": cancel_url,
        "client_reference_id": order_id,
        "metadata": {"order_id": order_id},
        "subscription_data": {"metadata": {"order_id": order_id}},
    }
    if customer_email:
        params["customer_email"] = customer_email
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        raise _classify(e, f"checkout session create for {order_id}") from e

    logger.info(f"Stripe checkout session {session.id} created for order {order_id}")
    return GatewaySession(
        session_id=session.id,
        checkout_url=session.url,
        customer_id=field(session, "customer"),
    )


def retrieve_session(session_id):
    """Fetch a Checkout Session and return a SessionSnapshot."""
    _configure()
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        raise _classify(e, f"session retrieve {session_id}") from e

    return SessionSnapshot(
        session_id=field(session, "id", session_id),
        status=field(session, "status"),
        payment_status=field(session, "payment_status"),
        subscription_id=field(session, "subscription"),
        customer_id=field(session, "customer"),
        order_id=field(field(session, "metadata"), "order_id"),
    )


def retrieve_subscription_period_end(subscription_id):
    """Current period end of a subscription, or None if it can't be read.

    Failure here never blocks an order transition; the expiry is filled
    in by the next subscription/invoice event instead.
    """
    if not subscription_id:
        return None
    _configure()
    try:
        sub = stripe.Subscription.retrieve(subscription_id)
    except stripe.StripeError as e:
        logger.warning(f"Failed to fetch subscription {subscription_id}: {e}")
        return None
    return extract_period_end(sub)


# ──────────────────────────────────────────────
# Webhook Verification
# ──────────────────────────────────────────────

def verify_webhook(payload, sig_header):
    """Verify the Stripe-Signature header, then decode the event body.

    ``payload`` must be the raw request body. The signature is checked
    before the body is parsed.

    Returns the event as a plain dict.
    Raises InvalidSignature or MalformedPayload.
    """
    if not sig_header:
        raise InvalidSignature("Missing signature")

    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    tolerance = current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300)

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignature("Payload is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, webhook_secret, tolerance
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(f"Invalid signature: {e}") from e

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise MalformedPayload("Webhook body is not valid JSON") from e

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise MalformedPayload("Webhook event is missing id or type")
    return event
