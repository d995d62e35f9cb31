"""Subscription model.

One row per subscription term of a user. Rows are mutated only through
payhook.services.subscription_service; cancelled / expired rows are
superseded by a new row, never reactivated.
"""

import uuid

from payhook.clock import utcnow
from payhook.extensions import db


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # -- Valid statuses --
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    STATUSES = [INACTIVE, ACTIVE, CANCELLED, EXPIRED]

    # Statuses a renewal payment may extend in place.
    RENEWABLE = (ACTIVE, INACTIVE)

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    status = db.Column(
        db.String(20), nullable=False, default=INACTIVE
    )  # inactive | active | cancelled | expired
    plan_id = db.Column(db.String(255), nullable=True, index=True)
    amount = db.Column(db.Numeric(10, 2), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # Python-side default: renewal target is picked by creation order, so
    # sub-second precision matters.
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscriptions")
    payments = db.relationship(
        "Payment", back_populates="subscription", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Subscription {self.plan_id} ({self.status})>"
