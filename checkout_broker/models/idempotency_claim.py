"""Idempotency claim model.

A claim binds a derived idempotency key to the single order that key is
allowed to produce. The key is the primary key, so a second insert with
the same key fails at the database instead of overwriting. Claims are
never updated; `flask sweep-claims` deletes them once expired.
"""

from checkout_broker.extensions import db
from checkout_broker.models.order import utcnow


class IdempotencyClaim(db.Model):
    __tablename__ = "idempotency_claims"

    key = db.Column(db.String(64), primary_key=True)  # sha256 hex
    subject_id = db.Column(db.String(255), nullable=False, index=True)
    order_id = db.Column(
        db.String(64), db.ForeignKey("orders.id"), nullable=False
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    order = db.relationship("Order")

    def __repr__(self):
        return f"<IdempotencyClaim {self.key[:12]} -> {self.order_id}>"
