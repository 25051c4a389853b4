"""Checkout blueprint — /api/payment/*

JSON API used by the client apps. The caller's identity comes from the
upstream auth layer as the X-Subject-Id header.

Route Map:
  POST /api/payment/create-subscription  — idempotent checkout creation
  GET  /api/payment/subscription         — active order + order history
  GET  /api/payment/status/<session_id>  — payment status (?sync=1 asks Stripe)
  GET  /api/payment/products             — configured products
  GET  /api/payment/health               — liveness
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from checkout_broker.decorators import subject_required
from checkout_broker.errors import ValidationError
from checkout_broker.extensions import limiter
from checkout_broker.services import checkout_service
from checkout_broker.services.catalog_service import list_products

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/payment")


def _checkout_rate_limit():
    return current_app.config["CHECKOUT_RATE_LIMIT"]


# ──────────────────────────────────────────────
# POST /api/payment/create-subscription
# ──────────────────────────────────────────────

@checkout_bp.route("/create-subscription", methods=["POST"])
@limiter.limit(_checkout_rate_limit)
@subject_required
def create_subscription():
    """Create (or reuse) the Stripe Checkout Session for a product.

    Body (JSON, all optional): product_id, payment_method, customer_email,
    platform, client_ref, idempotency_key.

    200 with the checkout, 202 while another request for the same
    purchase is still creating it, 409 when the purchase already finished
    in the current window.
    """
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    product_id = data.get("product_id")
    if product_id is not None and not isinstance(product_id, str):
        raise ValidationError("product_id must be a string")

    result = checkout_service.create_checkout(
        subject_id=g.subject_id,
        product_id=product_id,
        request_metadata=data,
    )

    body = {
        "order_id": result.order_id,
        "status": result.status,
        "checkout_url": result.checkout_url,
        "session_id": result.session_id,
        "reused": result.reused,
    }
    if result.status == checkout_service.IN_PROGRESS:
        body["retry_after"] = result.retry_after
        response = jsonify(body)
        response.status_code = 202
        response.headers["Retry-After"] = str(result.retry_after)
        return response
    return jsonify(body), 200


# ──────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────

@checkout_bp.route("/subscription")
@subject_required
def subscription():
    """Whether the caller has an active subscription, plus order history."""
    return jsonify(checkout_service.get_subscription_status(g.subject_id))


@checkout_bp.route("/status/<session_id>")
@subject_required
def payment_status(session_id):
    """Payment status for the caller's Checkout Session, polled by the
    success page.

    ?sync=1 fetches the session from Stripe when the webhook hasn't
    arrived yet.
    """
    sync = request.args.get("sync", "").lower() in ("1", "true", "yes")
    return jsonify(checkout_service.get_payment_status(
        session_id, g.subject_id, sync=sync
    ))


@checkout_bp.route("/products")
def products():
    return jsonify({"products": list_products(current_app.config)})


@checkout_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "payment-service"})
