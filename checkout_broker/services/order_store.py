"""Order store — atomic persistence primitives for orders, claims and events.

Responsible for:
- Insert-if-absent for idempotency claims and the webhook event ledger
  (`INSERT ... ON CONFLICT DO NOTHING`, one round trip)
- Creating pending orders
- Compare-and-update of order state against the transition whitelist
  (one conditional UPDATE, no read-then-write)
- Point lookups by id / Stripe session id / Stripe subscription id

Nothing in here commits. Callers own the transaction boundary so that a
claim and its order, or a ledger row and its transition, become visible
together.
"""

import logging
from collections import namedtuple
from functools import wraps

from sqlalchemy import case, delete, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeout

from checkout_broker.errors import (
    CheckoutConflict,
    ClaimSubjectMismatch,
    DuplicateOrderId,
    InvalidTransition,
    OrderNotFound,
    StoreUnavailable,
)
from checkout_broker.extensions import db
from checkout_broker.models.gateway_event import GatewayEvent
from checkout_broker.models.idempotency_claim import IdempotencyClaim
from checkout_broker.models.order import (
    ACTIVE,
    PENDING,
    STATUSES,
    Order,
    sources_for,
    utcnow,
)

logger = logging.getLogger(__name__)

ClaimOutcome = namedtuple("ClaimOutcome", ["order_id", "fresh"])

IMMUTABLE_FIELDS = {
    "id", "subject_id", "product_id", "plan", "amount", "currency", "created_at",
}


def _store_call(fn):
    """Surface driver and pool failures as a retryable StoreUnavailable.

    IntegrityError is left alone; the primitives below translate it into
    their own conflict errors.
    """

    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except IntegrityError:
            raise
        except (DBAPIError, PoolTimeout) as e:
            cause = getattr(e, "orig", None) or e
            logger.error(f"Order store unavailable in {fn.__name__}: {cause}")
            raise StoreUnavailable(f"Order store unavailable: {cause}") from e

    return wrapper


@_store_call
def commit():
    """Commit the caller's unit of work."""
    db.session.commit()


def _insert_if_absent(model, values):
    """Insert a row unless its primary key already exists.

    Returns True if this call inserted the row.
    """
    dialect = db.engine.dialect.name
    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(model.__table__).values(**values).on_conflict_do_nothing()
        result = db.session.execute(stmt)
        return result.rowcount == 1

    # Other backends: savepoint + unique-violation fallback
    try:
        with db.session.begin_nested():
            db.session.add(model(**values))
        return True
    except IntegrityError:
        return False


# ──────────────────────────────────────────────
# Claims
# ──────────────────────────────────────────────

@_store_call
def try_claim(key, subject_id, order_id, expires_at):
    """Bind ``key`` to ``order_id`` unless the key is already claimed.

    Returns ClaimOutcome(order_id, fresh). When the key was already
    claimed, order_id is the existing claim's order and fresh is False.
    Raises ClaimSubjectMismatch if the existing claim belongs to another
    subject.
    """
    inserted = _insert_if_absent(IdempotencyClaim, {
        "key": key,
        "subject_id": subject_id,
        "order_id": order_id,
        "created_at": utcnow(),
        "expires_at": expires_at,
    })
    if inserted:
        return ClaimOutcome(order_id, True)

    claim = get_claim(key)
    if claim is None:
        # Swept between our insert and our read; the caller can retry.
        raise StoreUnavailable("Idempotency claim vanished during lookup")

    if claim.subject_id != subject_id:
        logger.error(
            f"Idempotency key {key[:12]} claimed by subject {claim.subject_id}, "
            f"requested by {subject_id}"
        )
        raise ClaimSubjectMismatch(
            "Idempotency key is bound to a different subject"
        )

    return ClaimOutcome(claim.order_id, False)


@_store_call
def get_claim(key):
    return db.session.get(IdempotencyClaim, key, populate_existing=True)


@_store_call
def sweep_expired_claims(now=None, dry_run=False):
    """Delete claims whose expiry has passed. Returns the number affected."""
    now = now or utcnow()
    if dry_run:
        return IdempotencyClaim.query.filter(
            IdempotencyClaim.expires_at < now
        ).count()

    result = db.session.execute(
        delete(IdempotencyClaim).where(IdempotencyClaim.expires_at < now)
    )
    return result.rowcount


# ──────────────────────────────────────────────
# Orders
# ──────────────────────────────────────────────

@_store_call
def create_order(order_id, subject_id, product_id, plan, amount, currency,
                 **metadata):
    """Insert a new pending order and flush it.

    Raises DuplicateOrderId if the generated id already exists.
    """
    now = utcnow()
    order = Order(
        id=order_id,
        subject_id=subject_id,
        product_id=product_id,
        plan=plan,
        amount=amount,
        currency=currency,
        status=PENDING,
        created_at=now,
        updated_at=now,
        customer_email=metadata.get("customer_email"),
        payment_method=metadata.get("payment_method"),
        platform=metadata.get("platform"),
        client_ref=metadata.get("client_ref"),
        client_idempotency_key=metadata.get("client_idempotency_key"),
    )
    db.session.add(order)
    try:
        db.session.flush()
    except IntegrityError as e:
        raise DuplicateOrderId(f"Order id {order_id} already exists") from e
    return order


@_store_call
def update_order(order_id, from_statuses=None, **fields):
    """Apply a partial update in one conditional UPDATE statement.

    A ``status`` change only matches rows whose current status is allowed
    to move to the target. ``from_statuses`` narrows the match further to
    the states a particular event may act on. updated_at always moves
    forward.
    Raises OrderNotFound, InvalidTransition, or CheckoutConflict when a
    Stripe id is already bound to another order.
    """
    illegal = IMMUTABLE_FIELDS.intersection(fields)
    if illegal:
        raise ValueError(f"Immutable order fields: {', '.join(sorted(illegal))}")

    target = fields.get("status")
    if target is not None and target not in STATUSES:
        raise ValueError(f"Unknown order status: {target}")

    now = utcnow()
    values = dict(fields)
    values["updated_at"] = case(
        (Order.updated_at > now, Order.updated_at), else_=now
    )

    stmt = update(Order).where(Order.id == order_id)
    allowed = sources_for(target) if target is not None else None
    if from_statuses is not None:
        allowed = [
            s for s in (allowed if allowed is not None else STATUSES)
            if s in from_statuses
        ]
    if allowed is not None:
        stmt = stmt.where(Order.status.in_(allowed))
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    try:
        result = db.session.execute(stmt)
    except IntegrityError as e:
        raise CheckoutConflict(
            "Stripe identifier already bound to another order",
            order_id=order_id,
        ) from e

    order = get_by_id(order_id)
    if result.rowcount == 0:
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        raise InvalidTransition(
            f"Order {order_id} cannot move from {order.status} "
            f"to {target or order.status}",
            order_id=order_id,
            status=order.status,
        )
    return order


@_store_call
def get_by_id(order_id):
    return db.session.get(Order, order_id, populate_existing=True)


@_store_call
def get_by_external_session_id(session_id):
    if not session_id:
        return None
    return Order.query.filter_by(external_session_id=session_id).first()


@_store_call
def get_by_external_subscription_id(subscription_id):
    if not subscription_id:
        return None
    return Order.query.filter_by(external_subscription_id=subscription_id).first()


@_store_call
def get_active_by_subject(subject_id, now=None):
    """Most recent active, unexpired order for a subject (or None)."""
    now = now or utcnow()
    return (
        Order.query
        .filter(
            Order.subject_id == subject_id,
            Order.status == ACTIVE,
            (Order.expires_at.is_(None)) | (Order.expires_at > now),
        )
        .order_by(Order.created_at.desc())
        .first()
    )


@_store_call
def list_by_subject(subject_id):
    return (
        Order.query
        .filter_by(subject_id=subject_id)
        .order_by(Order.created_at.desc())
        .all()
    )


# ──────────────────────────────────────────────
# Webhook event ledger
# ──────────────────────────────────────────────

@_store_call
def record_event(event_id, event_type):
    """Insert the event into the ledger. False means it was already there."""
    return _insert_if_absent(GatewayEvent, {
        "event_id": event_id,
        "event_type": event_type,
        "processed_at": utcnow(),
    })


@_store_call
def set_event_outcome(event_id, outcome, order_id=None):
    db.session.execute(
        update(GatewayEvent)
        .where(GatewayEvent.event_id == event_id)
        .values(outcome=outcome, order_id=order_id)
        .execution_options(synchronize_session=False)
    )


@_store_call
def get_event(event_id):
    return db.session.get(GatewayEvent, event_id, populate_existing=True)
