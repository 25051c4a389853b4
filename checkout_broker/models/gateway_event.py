"""Gateway event model (idempotency ledger for webhooks).

Every Stripe webhook event is recorded by its event ID. The row is
inserted before the event is applied, inside the same transaction as the
order transition, so a redelivered event finds its row and returns 200
without touching the order again.
"""

from checkout_broker.extensions import db
from checkout_broker.models.order import utcnow

# Outcomes recorded per event
APPLIED = "applied"      # order transitioned
UNMATCHED = "unmatched"  # no local order for this event
IGNORED = "ignored"      # event type we don't act on
STALE = "stale"          # transition refused by the whitelist


class GatewayEvent(db.Model):
    __tablename__ = "gateway_events"

    event_id = db.Column(db.String(255), primary_key=True)  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False, index=True
    )  # e.g. "checkout.session.completed"
    order_id = db.Column(db.String(64), nullable=True, index=True)
    outcome = db.Column(db.String(20), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<GatewayEvent {self.event_id} ({self.event_type})>"
