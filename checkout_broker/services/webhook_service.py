"""Webhook service — reconciles orders with Stripe webhook events.

Responsible for:
- Verifying the event signature before anything else (via stripe_service)
- Deduplicating deliveries through the gateway_events ledger
- Resolving an event to its order (session id, subscription id, then
  metadata.order_id)
- Applying the implied transition, restricted to the states that event
  may act on, so late or out-of-order deliveries never demote an order
- Notifying the main application once an order reaches a new terminal state

Planning only reads. The read transaction is rolled back before the
Stripe subscription lookup, and the ledger insert, the transition and the
outcome then commit as one short transaction.
"""

import logging
from collections import namedtuple
from datetime import datetime, timezone

from checkout_broker.errors import (
    CheckoutBrokerError,
    InvalidTransition,
    MalformedPayload,
)
from checkout_broker.extensions import db
from checkout_broker.models.gateway_event import (
    APPLIED,
    IGNORED,
    STALE,
    UNMATCHED,
)
from checkout_broker.models.order import (
    ACTIVE,
    CANCELED,
    EXPIRED,
    INCOMPLETE,
    PENDING,
    TERMINAL_STATUSES,
)
from checkout_broker.services import (
    notification_service,
    order_store,
    stripe_service,
)
from checkout_broker.services.stripe_service import field

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"

# Returned by a planner for events that are understood but need no action
NO_ACTION = object()

ReconcileResult = namedtuple("ReconcileResult", ["event_id", "outcome", "order_id"])

# What an event means for an order: target status, fields to attach, the
# order states the event may act on (None: the whole whitelist) and the
# subscription whose period end still has to be fetched from Stripe
Transition = namedtuple(
    "Transition",
    ["order", "status", "fields", "from_statuses", "period_of"],
    defaults=(None, None),
)

# A completed checkout only confirms a purchase nothing has moved on from
CHECKOUT_COMPLETION_SOURCES = (PENDING, ACTIVE)

# Stripe subscription status -> (order status, states it may act on)
SUBSCRIPTION_STATUS = {
    "active": (ACTIVE, (PENDING, ACTIVE)),
    "trialing": (ACTIVE, (PENDING, ACTIVE)),
    "canceled": (CANCELED, None),
    "unpaid": (CANCELED, None),
    "past_due": (INCOMPLETE, (ACTIVE,)),
    "incomplete": (INCOMPLETE, (PENDING,)),
    "incomplete_expired": (EXPIRED, (PENDING, INCOMPLETE)),
}


# ──────────────────────────────────────────────
# Entry Points
# ──────────────────────────────────────────────

def handle_event(payload, sig_header):
    """Verify and process one webhook delivery.

    Returns a ReconcileResult. Raises InvalidSignature / MalformedPayload
    (permanent) or StoreUnavailable (Stripe should redeliver).
    """
    event = stripe_service.verify_webhook(payload, sig_header)
    return process_event(event)


def process_event(event):
    """Process a verified Stripe event exactly once per event id."""
    event_id = event["id"]
    event_type = event["type"]

    if order_store.get_event(event_id) is not None:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return ReconcileResult(event_id, DUPLICATE, None)

    planner = PLANNERS.get(event_type)
    transition = None
    if planner is not None:
        obj = (event.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise MalformedPayload(f"Event {event_id} has no data.object")
        transition = planner(obj)

    # No transaction stays open across the Stripe call below
    db.session.rollback()
    if isinstance(transition, Transition) and transition.period_of:
        transition = _with_period_end(transition)

    try:
        if not order_store.record_event(event_id, event_type):
            db.session.rollback()
            logger.info(f"Webhook event {event_id} recorded concurrently, skipping")
            return ReconcileResult(event_id, DUPLICATE, None)

        if planner is None:
            logger.info(f"Unhandled event type {event_type} ({event_id})")
            outcome, order, previous = IGNORED, None, None
        elif transition is NO_ACTION:
            outcome, order, previous = IGNORED, None, None
        elif transition is None:
            logger.warning(f"{event_type}: no matching order for event {event_id}")
            outcome, order, previous = UNMATCHED, None, None
        else:
            previous = transition.order.status
            outcome, order = _apply(transition, event_type)

        order_store.set_event_outcome(
            event_id, outcome, order_id=order.id if order else None
        )
        order_store.commit()
    except CheckoutBrokerError:
        db.session.rollback()
        raise

    if outcome == APPLIED:
        _notify_if_changed(order, previous)
    return ReconcileResult(event_id, outcome, order.id if order else None)


def sync_checkout_session(order, snapshot):
    """Complete a pending order from a paid session fetched from Stripe.

    Used by the payment-status query when the client asks for a sync
    instead of waiting for checkout.session.completed. Writes no ledger
    row; the webhook that arrives later is a no-op transition.
    """
    order_id = order.id
    previous = order.status
    fields = _completion_fields(
        order, snapshot.session_id, snapshot.subscription_id, snapshot.customer_id
    )
    db.session.rollback()
    period_end = stripe_service.retrieve_subscription_period_end(
        snapshot.subscription_id
    )
    if period_end:
        fields["expires_at"] = period_end

    try:
        updated = order_store.update_order(
            order_id,
            from_statuses=CHECKOUT_COMPLETION_SOURCES,
            status=ACTIVE,
            **fields,
        )
        order_store.commit()
    except InvalidTransition:
        db.session.rollback()
        logger.info(f"Order {order_id} already moved on, sync skipped")
        return order_store.get_by_id(order_id)
    except CheckoutBrokerError:
        db.session.rollback()
        raise

    _notify_if_changed(updated, previous)
    return updated


# ──────────────────────────────────────────────
# Event Planners
# ──────────────────────────────────────────────

def _plan_checkout_completed(session):
    metadata = field(session, "metadata") or {}
    subscription_id = field(session, "subscription")
    order = _resolve_order(
        session_id=field(session, "id"),
        subscription_id=subscription_id,
        order_id=field(metadata, "order_id") or field(session, "client_reference_id"),
    )
    if order is None:
        return None

    fields = _completion_fields(
        order, field(session, "id"), subscription_id, field(session, "customer")
    )
    return Transition(
        order, ACTIVE, fields,
        from_statuses=CHECKOUT_COMPLETION_SOURCES,
        period_of=subscription_id,
    )


def _plan_checkout_expired(session):
    order = _resolve_order(
        session_id=field(session, "id"),
        order_id=field(field(session, "metadata"), "order_id"),
    )
    if order is None:
        return None
    return Transition(order, EXPIRED, {}, from_statuses=(PENDING,))


def _plan_subscription_changed(sub):
    stripe_status = field(sub, "status")
    mapped = SUBSCRIPTION_STATUS.get(stripe_status)
    if mapped is None:
        logger.info(f"Ignoring subscription {field(sub, 'id')} status {stripe_status}")
        return NO_ACTION
    status, from_statuses = mapped

    order = _resolve_order(
        subscription_id=field(sub, "id"),
        order_id=field(field(sub, "metadata"), "order_id"),
    )
    if order is None:
        return None

    fields = {"external_subscription_id": field(sub, "id")}
    if field(sub, "customer"):
        fields["external_customer_id"] = field(sub, "customer")
    period_end = stripe_service.extract_period_end(sub)
    if period_end:
        fields["expires_at"] = period_end
    return Transition(
        order, status, _drop_bound_ids(order, fields), from_statuses=from_statuses
    )


def _plan_subscription_deleted(sub):
    order = _resolve_order(
        subscription_id=field(sub, "id"),
        order_id=field(field(sub, "metadata"), "order_id"),
    )
    if order is None:
        return None
    return Transition(order, CANCELED, {})


def _plan_invoice_succeeded(invoice):
    order = _resolve_order(
        subscription_id=_invoice_subscription(invoice),
        order_id=_invoice_order_id(invoice),
    )
    if order is None:
        return None

    fields = {}
    period_end = _invoice_period_end(invoice)
    if period_end:
        fields["expires_at"] = period_end
    # The only way back from incomplete
    return Transition(
        order, ACTIVE, fields, from_statuses=(PENDING, INCOMPLETE, ACTIVE)
    )


def _plan_invoice_failed(invoice):
    order = _resolve_order(
        subscription_id=_invoice_subscription(invoice),
        order_id=_invoice_order_id(invoice),
    )
    if order is None:
        return None
    return Transition(order, INCOMPLETE, {}, from_statuses=(PENDING, ACTIVE))


PLANNERS = {
    "checkout.session.completed": _plan_checkout_completed,
    "checkout.session.expired": _plan_checkout_expired,
    "customer.subscription.created": _plan_subscription_changed,
    "customer.subscription.updated": _plan_subscription_changed,
    "customer.subscription.deleted": _plan_subscription_deleted,
    "invoice.payment_succeeded": _plan_invoice_succeeded,
    "invoice.payment_failed": _plan_invoice_failed,
}


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _resolve_order(session_id=None, subscription_id=None, order_id=None):
    """Find the order an event refers to, most specific reference first."""
    order = order_store.get_by_external_session_id(session_id)
    if order is None:
        order = order_store.get_by_external_subscription_id(subscription_id)
    if order is None and order_id:
        order = order_store.get_by_id(order_id)
    return order


def _completion_fields(order, session_id, subscription_id, customer_id):
    """Gateway ids to attach when a checkout completes."""
    fields = {
        "external_session_id": session_id,
        "external_subscription_id": subscription_id,
        "external_customer_id": customer_id,
    }
    fields = {k: v for k, v in fields.items() if v}
    return _drop_bound_ids(order, fields)


def _with_period_end(transition):
    period_end = stripe_service.retrieve_subscription_period_end(transition.period_of)
    if not period_end:
        return transition
    return transition._replace(fields=dict(transition.fields, expires_at=period_end))


def _drop_bound_ids(order, fields):
    """Leave already-attached Stripe ids alone."""
    for name in ("external_session_id", "external_subscription_id"):
        if name in fields and getattr(order, name) == fields[name]:
            del fields[name]
    return fields


def _invoice_subscription_details(invoice):
    """subscription_details of an invoice, new (parent.*) or old layout."""
    return (
        field(field(invoice, "parent"), "subscription_details")
        or field(invoice, "subscription_details")
    )


def _invoice_subscription(invoice):
    return field(invoice, "subscription") or field(
        _invoice_subscription_details(invoice), "subscription"
    )


def _invoice_order_id(invoice):
    """order_id copied from the subscription metadata onto the invoice."""
    details = _invoice_subscription_details(invoice)
    return field(field(details, "metadata"), "order_id")


def _invoice_period_end(invoice):
    lines = field(field(invoice, "lines"), "data") or []
    ts = field(field(lines[0], "period"), "end") if lines else None
    ts = ts or field(invoice, "period_end")
    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


def _apply(transition, event_type):
    order = transition.order
    try:
        updated = order_store.update_order(
            order.id,
            from_statuses=transition.from_statuses,
            status=transition.status,
            **transition.fields,
        )
    except InvalidTransition as e:
        logger.info(
            f"{event_type}: stale event for order {order.id} "
            f"({e.details.get('status')} -> {transition.status})"
        )
        return STALE, order

    logger.info(f"{event_type}: order {updated.id} now {updated.status}")
    return APPLIED, updated


def _notify_if_changed(order, previous_status):
    if order.status == previous_status or order.status not in TERMINAL_STATUSES:
        return
    try:
        notification_service.notify_order_status(order)
    except Exception as e:
        logger.error(f"Notifier failed for order {order.id}: {e}", exc_info=True)
