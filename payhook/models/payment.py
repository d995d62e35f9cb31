"""Payment model (money-movement idempotency table).

external_payment_id is globally unique: a provider payment produces at
most one row no matter how many notifications reference it.
"""

import uuid

from payhook.clock import utcnow
from payhook.extensions import db


class Payment(db.Model):
    __tablename__ = "payments"

    # -- Valid statuses --
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    STATUSES = [PENDING, COMPLETED, FAILED, REFUNDED]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    external_payment_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # provider payment id, e.g. "pay_1Abc..."
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=True
    )
    plan_id = db.Column(db.String(255), nullable=True)  # as sent by the provider
    amount = db.Column(db.Numeric(10, 2), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(
        db.String(20), nullable=False, default=PENDING
    )  # pending | completed | failed | refunded
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
    user = db.relationship("User", back_populates="payments")
    subscription = db.relationship("Subscription", back_populates="payments")

    __table_args__ = (
        # Reconciler scan: completed + unlinked + recent.
        db.Index(
            "ix_payments_status_subscription_created",
            "status",
            "subscription_id",
            "created_at",
        ),
    )

    def __repr__(self):
        return f"<Payment {self.external_payment_id} ({self.status})>"
