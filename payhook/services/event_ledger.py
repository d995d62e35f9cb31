"""Event ledger — delivery deduplication via the webhook_events table.

Every notification is claimed by its external event ID before any
processing. The claim reads the row with SELECT ... FOR UPDATE SKIP LOCKED,
so the read never waits on a row held by a concurrent claim. The follow-up
INSERT does wait: on PostgreSQL it blocks on the other transaction's
uncommitted unique key until that transaction ends. If the other claim
commits, the INSERT raises IntegrityError and the loser is told "already
received"; if it rolls back, the INSERT succeeds and this claim wins.

Payment-level dedup (same payment, new event id) is handled separately by
the processor against the payments table.
"""

import logging
from dataclasses import dataclass
from typing import Union

from sqlalchemy.exc import IntegrityError

from payhook import clock
from payhook.models.webhook_event import WebhookEvent
from payhook.services.telemetry import emit

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Claim outcomes
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Claimed:
    event_record_id: str


@dataclass(frozen=True)
class AlreadyProcessed:
    event_record_id: str


@dataclass(frozen=True)
class AlreadyReceived:
    event_record_id: Union[str, None] = None
    status: Union[str, None] = None


ClaimResult = Union[Claimed, AlreadyProcessed, AlreadyReceived]


def claim_query(session, external_event_id):
    """Non-blocking exclusive read of an event row (skips locked rows)."""
    return (
        session.query(WebhookEvent)
        .filter(WebhookEvent.external_event_id == external_event_id)
        .with_for_update(skip_locked=True)
    )


def claim(session, payload):
    """Claim a notification for processing.

    Args:
        session: Transaction-scoped session; the inserted row stays
                 uncommitted until the caller's unit of work commits.
        payload: Validated WebhookPayload.

    Returns Claimed, AlreadyProcessed or AlreadyReceived.
    """
    existing = claim_query(session, payload.event_id).first()

    if existing is not None:
        if existing.status == WebhookEvent.PROCESSED:
            logger.info(f"Duplicate webhook event {payload.event_id}, already processed")
            return AlreadyProcessed(existing.id)
        # pending (in flight elsewhere), failed or duplicate: never reprocessed inline
        logger.info(
            f"Webhook event {payload.event_id} already received "
            f"(status={existing.status}), skipping"
        )
        return AlreadyReceived(existing.id, existing.status)

    event = WebhookEvent(
        external_event_id=payload.event_id,
        event_type=payload.event_type,
        external_payment_id=payload.payment_id,
        payload=payload.raw,
        status=WebhookEvent.PENDING,
    )
    session.add(event)
    try:
        session.flush()
    except IntegrityError:
        # A concurrent claim inserted the row (skipped above) and committed
        # while this INSERT waited on it. Nothing else is written in this unit yet.
        session.rollback()
        logger.info(f"Webhook event {payload.event_id} claimed concurrently, skipping")
        return AlreadyReceived()

    emit("webhook.claimed", event_id=payload.event_id, payment_id=payload.payment_id)
    return Claimed(event.id)


# ──────────────────────────────────────────────
# Status transitions
# ──────────────────────────────────────────────

def _close(event, status):
    if event.status not in (WebhookEvent.PENDING, WebhookEvent.FAILED):
        raise ValueError(
            f"webhook event {event.external_event_id} is {event.status}; "
            f"cannot move to {status}"
        )
    event.status = status
    event.processed_at = clock.utcnow()


def mark_processed(session, event):
    _close(event, WebhookEvent.PROCESSED)
    event.error_code = None
    event.error = None
    event.retryable = False
    session.flush()


def mark_duplicate(session, event):
    """Payment already exists for this event's payment id."""
    _close(event, WebhookEvent.DUPLICATE)
    event.retryable = False
    session.flush()


def mark_failed(session, event, error_code, reason):
    """Terminal validation failure, committed with the unit of work."""
    _close(event, WebhookEvent.FAILED)
    event.error_code = error_code
    event.error = reason
    event.retryable = False
    session.flush()


def record_failure(session, payload, error):
    """Record a transient processing failure in its own small transaction.

    Runs after the main unit of work rolled back, so the pending row it
    inserted is usually gone: recreate it as failed (keeping the raw payload
    for audit and the retry sweep), or bump retry_count on an existing row.
    Processed / duplicate rows are never touched.

    The caller owns the commit (use inside unit_of_work()).
    Returns the WebhookEvent row, or None if it was already closed.
    """
    event = (
        session.query(WebhookEvent)
        .filter(WebhookEvent.external_event_id == payload.event_id)
        .with_for_update()
        .first()
    )
    if event is None:
        event = WebhookEvent(
            external_event_id=payload.event_id,
            event_type=payload.event_type,
            external_payment_id=payload.payment_id,
            payload=payload.raw,
            retry_count=0,
        )
        session.add(event)
    elif event.status in (WebhookEvent.PROCESSED, WebhookEvent.DUPLICATE):
        logger.warning(
            f"Not recording failure for {payload.event_id}: already {event.status}"
        )
        return None

    event.status = WebhookEvent.FAILED
    event.error_code = "transient_failure"
    event.error = str(error)[:2000]
    event.retryable = True
    event.retry_count = (event.retry_count or 0) + 1
    session.flush()
    return event
