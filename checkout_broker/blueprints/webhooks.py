"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, request, jsonify

from checkout_broker.errors import InvalidSignature, MalformedPayload
from checkout_broker.services.webhook_service import handle_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Reconcile the order (idempotent via gateway_events table)
    4. Return 200 to acknowledge receipt

    Store outages propagate as 503 so Stripe redelivers.
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "invalid_signature", "message": "Missing signature"}), 400

    try:
        result = handle_event(payload, sig_header)
    except InvalidSignature as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify(e.to_dict()), 400
    except MalformedPayload as e:
        logger.warning(f"Webhook payload rejected: {e}")
        return jsonify(e.to_dict()), 400

    return jsonify({
        "received": True,
        "event_id": result.event_id,
        "outcome": result.outcome,
        "order_id": result.order_id,
    }), 200
