"""Checkout service — idempotent checkout creation and order queries.

Responsible for:
- Deriving the idempotency key for (subject, product, time bucket)
- Arbitrating concurrent requests through the idempotency claim, so that
  at most one request per key ever reaches Stripe
- Creating the pending order and its Stripe Checkout Session
- Subscription / payment status queries

Concurrency: no in-process locks. The claim row's primary key is the only
serialization point; whichever request commits the claim first owns the
checkout, every other request reads the winner's order.
"""

import logging
import time
from collections import namedtuple
from datetime import timedelta

from flask import current_app

from checkout_broker.errors import (
    CheckoutBrokerError,
    CheckoutConflict,
    DuplicateOrderId,
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransition,
    OrderNotFound,
    ValidationError,
)
from checkout_broker.extensions import db
from checkout_broker.models.order import (
    ACTIVE,
    CANCELED,
    EXPIRED,
    INCOMPLETE,
    PENDING,
    new_order_id,
    utcnow,
)
from checkout_broker.services import (
    idempotency_service,
    order_store,
    stripe_service,
    webhook_service,
)
from checkout_broker.services.catalog_service import (
    get_product,
    validate_request_metadata,
)

logger = logging.getLogger(__name__)

IN_PROGRESS = "in_progress"
MAX_ORDER_ID_ATTEMPTS = 3

CheckoutResult = namedtuple(
    "CheckoutResult",
    ["order_id", "status", "checkout_url", "session_id", "reused", "retry_after"],
)

# Order status -> (payment status shown to clients, error text)
PAYMENT_STATUS = {
    PENDING: ("pending", None),
    ACTIVE: ("success", None),
    CANCELED: ("cancelled", "Payment was cancelled"),
    EXPIRED: ("failed", "Payment expired"),
    INCOMPLETE: ("failed", "Payment incomplete"),
}


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

def create_checkout(subject_id, product_id=None, request_metadata=None,
                    now_ms=None):
    """Return the checkout for this purchase intent, creating it at most once.

    Outcomes:
      - fresh claim: new pending order + Stripe session, reused=False
      - key already claimed, order pending: the existing session, reused=True
        (status "in_progress" with no URL if the winner hasn't finished)
      - key already claimed, order active/incomplete/canceled/expired:
        CheckoutConflict with retry_after = seconds left in the bucket

    Raises ValidationError, CheckoutConflict, GatewayUnavailable (order
    stays pending), GatewayRejected (order moved to incomplete) or
    StoreUnavailable.
    """
    config = current_app.config
    if not subject_id:
        raise ValidationError("subject_id is required")

    product_id = product_id or config["DEFAULT_PRODUCT_ID"]
    product = get_product(product_id, config)
    metadata = validate_request_metadata(request_metadata)

    window_ms = config["IDEMPOTENCY_WINDOW_MS"]
    if now_ms is None:
        now_ms = idempotency_service.now_ms()
    key = idempotency_service.derive_key(subject_id, product_id, now_ms, window_ms)
    retry_after = idempotency_service.seconds_left_in_bucket(now_ms, window_ms)

    logger.info(
        f"Checkout request subject={subject_id} product={product_id} "
        f"key={key[:12]}"
    )
    if metadata["client_idempotency_key"]:
        logger.debug(
            f"Client idempotency key {metadata['client_idempotency_key']} "
            f"recorded as advisory for key={key[:12]}"
        )

    outcome = _claim_with_new_order(key, subject_id, product_id, product, metadata)
    if not outcome.fresh:
        return _resume_existing(outcome.order_id, key, retry_after)

    return _start_gateway_session(outcome.order_id, key, product, metadata, retry_after)


def _claim_with_new_order(key, subject_id, product_id, product, metadata):
    """Insert a pending order and claim ``key`` for it in one transaction.

    On a lost race our order is rolled back and the winner's order id is
    returned instead, so no claim is ever visible without its order.
    """
    ttl = timedelta(hours=current_app.config["IDEMPOTENCY_CLAIM_TTL_HOURS"])
    window = timedelta(milliseconds=current_app.config["IDEMPOTENCY_WINDOW_MS"])
    claim_expires_at = utcnow() + max(ttl, window)

    for attempt in range(1, MAX_ORDER_ID_ATTEMPTS + 1):
        order_id = new_order_id()
        try:
            order_store.create_order(
                order_id=order_id,
                subject_id=subject_id,
                product_id=product_id,
                plan=product_id,
                amount=product["amount"],
                currency=product["currency"],
                **metadata,
            )
            outcome = order_store.try_claim(key, subject_id, order_id, claim_expires_at)
            if outcome.fresh:
                order_store.commit()
                logger.info(f"Order {order_id} created and claimed key={key[:12]}")
            else:
                db.session.rollback()
                logger.info(
                    f"Key {key[:12]} already claimed by order {outcome.order_id}"
                )
            return outcome
        except DuplicateOrderId:
            db.session.rollback()
            logger.warning(
                f"Generated order id {order_id} collided (attempt {attempt})"
            )
        except CheckoutBrokerError:
            db.session.rollback()
            raise

    raise DuplicateOrderId("Could not allocate a unique order id")


def _resume_existing(order_id, key, retry_after):
    """Answer a request whose key was already claimed by another request."""
    order = order_store.get_by_id(order_id)
    if order is None:
        raise OrderNotFound(f"Claimed order {order_id} not found", order_id=order_id)

    if _awaiting_session(order):
        order = _wait_for_session(order.id)

    if order.status == PENDING:
        if order.external_session_id:
            logger.info(f"Returning existing session for order {order.id}")
            return CheckoutResult(
                order_id=order.id,
                status=PENDING,
                checkout_url=order.checkout_url,
                session_id=order.external_session_id,
                reused=True,
                retry_after=retry_after,
            )
        logger.info(f"Checkout for order {order.id} still in progress")
        return CheckoutResult(
            order_id=order.id,
            status=IN_PROGRESS,
            checkout_url=None,
            session_id=None,
            reused=True,
            retry_after=retry_after,
        )

    logger.info(
        f"Key {key[:12]} bound to order {order.id} in state {order.status}"
    )
    raise CheckoutConflict(
        f"A checkout for this product already finished with status "
        f"'{order.status}'. Try again once the current window has passed.",
        order_id=order.id,
        status=order.status,
        retry_after=retry_after,
    )


def _awaiting_session(order):
    """True while the winning request may still attach a Stripe session."""
    return (
        order.status == PENDING
        and not order.external_session_id
        and order.gateway_error_at is None
    )


def _wait_for_session(order_id):
    """Poll briefly for the winning request to attach its Stripe session.

    The session is rolled back before every sleep so that no connection
    or transaction is held while waiting.
    """
    wait = current_app.config.get("CHECKOUT_INFLIGHT_WAIT_SECONDS", 0)
    poll = current_app.config.get("CHECKOUT_INFLIGHT_POLL_SECONDS", 0.1)
    deadline = time.monotonic() + wait

    order = order_store.get_by_id(order_id)
    while _awaiting_session(order) and time.monotonic() < deadline:
        db.session.rollback()
        time.sleep(poll)
        order = order_store.get_by_id(order_id)
    return order


def _start_gateway_session(order_id, key, product, metadata, retry_after):
    """Create the Stripe session for a freshly claimed order."""
    try:
        session = stripe_service.create_checkout_session(
            price_id=product["price_id"],
            order_id=order_id,
            customer_email=metadata.get("customer_email"),
            idempotency_key=key,
        )
    except GatewayUnavailable as e:
        # The session may still exist at Stripe; leave the order pending so
        # a late webhook can find it through metadata.order_id.
        logger.warning(f"Gateway unavailable for order {order_id}, left pending")
        _note_gateway_error(order_id)
        e.details.update(order_id=order_id, status=PENDING, retry_after=retry_after)
        raise
    except GatewayRejected as e:
        _mark_incomplete(order_id)
        e.details.update(order_id=order_id, status=INCOMPLETE)
        raise

    fields = {
        "external_session_id": session.session_id,
        "checkout_url": session.checkout_url,
    }
    if session.customer_id:
        fields["external_customer_id"] = session.customer_id

    try:
        order = order_store.update_order(order_id, **fields)
        order_store.commit()
    except CheckoutBrokerError:
        db.session.rollback()
        raise

    logger.info(f"Checkout session {session.session_id} attached to order {order_id}")
    return CheckoutResult(
        order_id=order.id,
        status=order.status,
        checkout_url=session.checkout_url,
        session_id=session.session_id,
        reused=False,
        retry_after=retry_after,
    )


def _note_gateway_error(order_id):
    """Tell requests waiting on this order that no session is coming."""
    try:
        order_store.update_order(order_id, gateway_error_at=utcnow())
        order_store.commit()
    except CheckoutBrokerError as e:
        db.session.rollback()
        logger.error(f"Could not record gateway error on order {order_id}: {e}")


def _mark_incomplete(order_id):
    try:
        order_store.update_order(
            order_id, from_statuses=(PENDING,), status=INCOMPLETE
        )
        order_store.commit()
        logger.info(f"Order {order_id} marked incomplete after gateway rejection")
    except InvalidTransition as e:
        # A webhook already moved the order on; keep its state.
        db.session.rollback()
        logger.warning(f"Could not mark order {order_id} incomplete: {e}")
    except CheckoutBrokerError:
        db.session.rollback()
        raise


# ──────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────

def get_subscription_status(subject_id):
    """Whether a subject has an active order, plus its order history."""
    if not subject_id:
        raise ValidationError("subject_id is required")

    active = order_store.get_active_by_subject(subject_id)
    orders = order_store.list_by_subject(subject_id)
    return {
        "is_active": active is not None,
        "active_subscription": active.to_dict() if active else None,
        "orders": [o.to_dict() for o in orders],
    }


def get_payment_status(session_id, subject_id, sync=False):
    """Payment status for a Stripe session id owned by ``subject_id``.

    Another subject's session is reported as not found. With ``sync`` and
    a still-pending order, the session is fetched from Stripe and, if
    paid, the order is completed without waiting for the webhook.
    """
    order = order_store.get_by_external_session_id(session_id)
    if order is None or order.subject_id != subject_id:
        raise OrderNotFound("Order not found", session_id=session_id)

    if sync and order.status == PENDING:
        db.session.rollback()
        snapshot = stripe_service.retrieve_session(session_id)
        if snapshot.payment_status in ("paid", "no_payment_required"):
            order = webhook_service.sync_checkout_session(order, snapshot)
            logger.info(f"Synced order {order.id} from Stripe session {session_id}")

    payment_status, error = PAYMENT_STATUS[order.status]
    data = order.to_dict()
    data.update(status=payment_status, order_status=order.status, error=error)
    return data
