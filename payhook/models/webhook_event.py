"""Webhook event model (delivery idempotency table).

Every provider notification is recorded by its external event ID. The
claim step in payhook.services.event_ledger reads this table before any
processing; a row that already exists short-circuits the request.

The raw payload is stored verbatim: it is the only replay/audit artifact.
"""

import uuid

from payhook.clock import utcnow
from payhook.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    # -- Valid statuses --
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    STATUSES = [PENDING, PROCESSED, FAILED, DUPLICATE]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    external_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(db.String(255), nullable=True)  # e.g. "payment.completed"
    external_payment_id = db.Column(db.String(255), nullable=True, index=True)
    payload = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default=PENDING
    )  # pending | processed | failed | duplicate
    error_code = db.Column(db.String(50), nullable=True)  # e.g. "amount_mismatch"
    error = db.Column(db.Text, nullable=True)
    retryable = db.Column(db.Boolean, nullable=False, default=False)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    received_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index("ix_webhook_events_status_retryable", "status", "retryable"),
    )

    def __repr__(self):
        return f"<WebhookEvent {self.external_event_id} ({self.status})>"
