"""Order model — one row per logical purchase attempt.

status lifecycle:
    pending -> active | incomplete | canceled | expired
    active -> canceled | expired | incomplete (renewal payment failed)
    incomplete -> active (paid invoice or completed checkout) | canceled | expired
    canceled, expired -> (nothing)

Nothing ever moves back to pending. ALLOWED_TRANSITIONS is the outer
whitelist the order store enforces inside its conditional UPDATE; callers
narrow it per event with ``from_statuses`` so that, for example, a late
checkout.session.expired can only ever expire a still-pending order.
"""

import uuid
from datetime import datetime, timezone

from checkout_broker.extensions import db


PENDING = "pending"
ACTIVE = "active"
INCOMPLETE = "incomplete"
CANCELED = "canceled"
EXPIRED = "expired"

STATUSES = [PENDING, ACTIVE, INCOMPLETE, CANCELED, EXPIRED]
TERMINAL_STATUSES = {ACTIVE, CANCELED, EXPIRED}

ALLOWED_TRANSITIONS = {
    PENDING: {PENDING, ACTIVE, INCOMPLETE, CANCELED, EXPIRED},
    ACTIVE: {ACTIVE, INCOMPLETE, CANCELED, EXPIRED},
    INCOMPLETE: {ACTIVE, CANCELED, EXPIRED},
    CANCELED: set(),
    EXPIRED: set(),
}


def sources_for(target_status):
    """States from which an order may move to ``target_status``."""
    return sorted(
        state for state, targets in ALLOWED_TRANSITIONS.items()
        if target_status in targets
    )


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_order_id():
    return f"order_{uuid.uuid4().hex[:16]}"


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.String(64), primary_key=True, default=new_order_id)
    subject_id = db.Column(db.String(255), nullable=False, index=True)

    # --- Business attributes (immutable after creation) ---
    product_id = db.Column(db.String(100), nullable=False)
    plan = db.Column(db.String(100), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(10), nullable=False)

    status = db.Column(
        db.String(20), nullable=False, default=PENDING, index=True
    )  # pending | active | incomplete | canceled | expired

    # --- Gateway correlation, filled in as Stripe responds ---
    external_session_id = db.Column(db.String(255), unique=True, nullable=True)
    external_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    external_customer_id = db.Column(db.String(255), nullable=True, index=True)
    checkout_url = db.Column(db.Text, nullable=True)
    # Set when session creation failed transiently; waiters stop polling
    gateway_error_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Request metadata ---
    customer_email = db.Column(db.String(255), nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    platform = db.Column(db.String(20), nullable=True)
    client_ref = db.Column(db.String(255), nullable=True)
    client_idempotency_key = db.Column(
        db.String(255), nullable=True
    )  # advisory only, never the claim key

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def is_active_at(self, now):
        """True when the order grants access at ``now``."""
        if self.status != ACTIVE:
            return False
        expires_at = as_utc(self.expires_at)
        return expires_at is None or expires_at > now

    def to_dict(self):
        return {
            "order_id": self.id,
            "subject_id": self.subject_id,
            "product_id": self.product_id,
            "plan": self.plan,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "session_id": self.external_session_id,
            "checkout_url": self.checkout_url,
            "subscription_id": self.external_subscription_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
        }

    def __repr__(self):
        return f"<Order {self.id} {self.plan} ({self.status})>"


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None
