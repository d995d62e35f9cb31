"""Reconciler — repairs completed payments that never got a subscription.

An orphaned payment is a completed Payment with subscription_id NULL: the
payment committed but the renewal link did not (or was written by an older
code path). The sweep re-runs the same renewal logic the processor uses,
one payment per unit of work, so it is safe alongside live traffic and
safe to re-run: a linked payment drops out of the scan.

Also hosts the explicit retry sweep for failed, retryable webhook events.
Neither sweep is triggered from the request path.

Designed to be called from Flask CLI commands (`flask reconcile`,
`flask retry-failed-events`) on a fixed interval.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app

from payhook import clock
from payhook.extensions import db
from payhook.models.payment import Payment
from payhook.models.webhook_event import WebhookEvent
from payhook.services import payment_ledger, subscription_service
from payhook.services.telemetry import emit
from payhook.services.unit_of_work import unit_of_work
from payhook.services.webhook_processor import reprocess_event

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    scanned: int = 0
    repaired: int = 0
    skipped: int = 0
    failed: int = 0
    repaired_payment_ids: list = field(default_factory=list)


@dataclass
class RetryReport:
    scanned: int = 0
    outcomes: dict = field(default_factory=dict)  # event id -> WebhookResult value


def _config(key, default):
    return current_app.config.get(key, default)


# ──────────────────────────────────────────────
# Orphaned payments
# ──────────────────────────────────────────────

def find_orphaned_payment_ids(session, now=None, window=None, limit=None):
    """IDs of recent completed payments with no linked subscription."""
    if now is None:
        now = clock.utcnow()
    if window is None:
        window = timedelta(hours=_config("RECONCILE_WINDOW_HOURS", 72))
    if limit is None:
        limit = _config("RECONCILE_BATCH_SIZE", 100)

    rows = (
        payment_ledger.orphaned_payments_query(session, since=now - window)
        .with_entities(Payment.id)
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def repair_payment(session, payment_id, now=None):
    """Link one orphaned payment to its renewed subscription.

    Re-checks the orphan condition under a SKIP LOCKED row lock, so a
    payment already being handled elsewhere (or already linked) is left
    alone.

    Returns the Subscription, or None if there was nothing to do.
    """
    with unit_of_work(session):
        payment = (
            session.query(Payment)
            .filter(Payment.id == payment_id)
            .filter(Payment.status == Payment.COMPLETED)
            .filter(Payment.subscription_id.is_(None))
            .with_for_update(skip_locked=True)
            .first()
        )
        if payment is None:
            return None

        subscription, created = subscription_service.renew_for_user(
            session,
            payment.user_id,
            plan_id=payment.plan_id,
            amount=payment.amount,
            currency=payment.currency,
            now=now,
        )
        payment_ledger.link_subscription(session, payment, subscription)

        logger.info(
            f"Reconciled payment {payment.external_payment_id} -> "
            f"subscription {subscription.id} ({'created' if created else 'renewed'})"
        )
        emit(
            "reconciler.repaired",
            payment_id=payment.external_payment_id,
            subscription_id=subscription.id,
            created=created,
        )
        return subscription


def reconcile_orphaned_payments(session=None, now=None, window=None, limit=None):
    """One reconciler pass. Failures on one payment don't stop the sweep.

    Returns a ReconcileReport.
    """
    session = session or db.session
    report = ReconcileReport()

    payment_ids = find_orphaned_payment_ids(session, now=now, window=window, limit=limit)
    # Close the read transaction before the per-payment units of work.
    session.rollback()
    report.scanned = len(payment_ids)

    for payment_id in payment_ids:
        try:
            subscription = repair_payment(session, payment_id, now=now)
        except Exception as e:
            report.failed += 1
            logger.error(f"Failed to reconcile payment {payment_id}: {e}", exc_info=True)
            continue

        if subscription is None:
            report.skipped += 1
        else:
            report.repaired += 1
            report.repaired_payment_ids.append(payment_id)

    if report.scanned:
        logger.info(
            f"Reconciler pass: scanned={report.scanned} repaired={report.repaired} "
            f"skipped={report.skipped} failed={report.failed}"
        )
    return report


# ──────────────────────────────────────────────
# Failed-event retry sweep
# ──────────────────────────────────────────────

def retry_failed_events(session=None, limit=None, max_retries=None):
    """Replay failed events whose failure was transient.

    Only events with retryable=True and retry_count below MAX_EVENT_RETRIES
    are picked; terminal failures (amount mismatch, no user identifier)
    are never replayed.

    Returns a RetryReport.
    """
    session = session or db.session
    if limit is None:
        limit = _config("RECONCILE_BATCH_SIZE", 100)
    if max_retries is None:
        max_retries = _config("MAX_EVENT_RETRIES", 5)
    report = RetryReport()

    rows = (
        session.query(WebhookEvent.id)
        .filter(WebhookEvent.status == WebhookEvent.FAILED)
        .filter(WebhookEvent.retryable.is_(True))
        .filter(WebhookEvent.retry_count < max_retries)
        .order_by(WebhookEvent.received_at.asc())
        .limit(limit)
        .all()
    )
    session.rollback()
    report.scanned = len(rows)

    for row in rows:
        outcome = reprocess_event(row.id, session=session)
        if outcome is not None:
            report.outcomes[row.id] = outcome.result.value

    if report.scanned:
        logger.info(f"Retry sweep: scanned={report.scanned} outcomes={report.outcomes}")
    return report


# ──────────────────────────────────────────────
# Loop
# ──────────────────────────────────────────────

def run_forever(interval=None, retry_failed=None, sleep=time.sleep, max_passes=None):
    """Run reconciler passes on a fixed interval until interrupted.

    Args:
        interval:     Seconds between passes (RECONCILE_INTERVAL_SECONDS).
        retry_failed: Also run the failed-event retry sweep each pass
                      (RETRY_FAILED_EVENTS).
        max_passes:   Stop after this many passes (None = forever).
    """
    if interval is None:
        interval = _config("RECONCILE_INTERVAL_SECONDS", 60)
    if retry_failed is None:
        retry_failed = _config("RETRY_FAILED_EVENTS", True)

    passes = 0
    while max_passes is None or passes < max_passes:
        try:
            reconcile_orphaned_payments()
            if retry_failed:
                retry_failed_events()
        except Exception as e:
            # Database blips shouldn't kill the loop; next pass retries.
            db.session.rollback()
            logger.error(f"Reconciler pass failed: {e}", exc_info=True)
        passes += 1
        if max_passes is None or passes < max_passes:
            sleep(interval)
    return passes
