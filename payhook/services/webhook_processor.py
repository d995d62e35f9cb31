"""Webhook processor — turns a verified notification into ledger changes.

Responsible for:
- Validating the notification (signature + fields)
- Claiming it against the event ledger (delivery dedup)
- Running the processing steps in ONE unit of work:
    1. payment dedup (same payment id, new event id -> duplicate)
    2. user resolution (lookup-or-create by email)
    3. amount validation against the plan's known price
    4. payment creation
    5. subscription renewal (completed payments only)
    6. event closure
- Recording failures in a separate transaction after rollback
- Classifying the outcome as a WebhookResult

Terminal validation failures (no user identifier, amount mismatch) commit
the failed event row and nothing else. Any exception rolls the whole unit
back; the failure is then written on its own and reported as transient.
"""

import logging
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from payhook.errors import (
    AmountMismatch,
    InvalidSignature,
    MalformedPayload,
    NoUserIdentifier,
    PayloadRejected,
    ProcessingRejected,
)
from payhook.extensions import db
from payhook.models.payment import Payment
from payhook.models.user import User
from payhook.models.webhook_event import WebhookEvent
from payhook.results import ProcessingOutcome, WebhookResult
from payhook.services import event_ledger, payment_ledger, subscription_service
from payhook.services.payload_validator import (
    parse_payload,
    stripe_signature_verifier,
    validate_payload,
)
from payhook.services.telemetry import emit
from payhook.services.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

DEFAULT_AMOUNT_TOLERANCE = Decimal("0.01")


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def process_webhook(raw_body, signature, verifier=None, session=None):
    """Validate and process one inbound notification.

    Args:
        raw_body:  Body exactly as received (str). Stored verbatim.
        signature: Signature token from the transport (may be None).
        verifier:  Optional signature verifier override.

    Returns a ProcessingOutcome. Never raises for per-event problems.
    """
    config = current_app.config
    verifier = verifier or stripe_signature_verifier(
        tolerance=config.get("WEBHOOK_SIGNATURE_TOLERANCE", 300)
    )

    try:
        payload = validate_payload(
            raw_body,
            signature,
            config.get("WEBHOOK_SECRET"),
            verifier=verifier,
            default_currency=config.get("DEFAULT_CURRENCY", "USD"),
        )
    except InvalidSignature as e:
        logger.error(f"Webhook signature verification failed: {e.reason}")
        emit("webhook.rejected", level=logging.ERROR,
             result=e.result.value, reason=e.reason, severity="security")
        return ProcessingOutcome(e.result, e.reason)
    except PayloadRejected as e:
        logger.warning(f"Malformed webhook payload: {e.reason}")
        emit("webhook.rejected", level=logging.WARNING,
             result=e.result.value, reason=e.reason)
        return ProcessingOutcome(e.result, e.reason)

    return process_payload(payload, session=session)


def process_payload(payload, session=None):
    """Claim and process an already-validated payload."""
    session = session or db.session

    try:
        with unit_of_work(session):
            claimed = event_ledger.claim(session, payload)
            if isinstance(claimed, event_ledger.AlreadyProcessed):
                return ProcessingOutcome(
                    WebhookResult.ALREADY_PROCESSED,
                    "already_processed",
                    event_record_id=claimed.event_record_id,
                )
            if isinstance(claimed, event_ledger.AlreadyReceived):
                return ProcessingOutcome(
                    WebhookResult.ALREADY_RECEIVED,
                    claimed.status or "in_flight",
                    event_record_id=claimed.event_record_id,
                )

            event = session.get(WebhookEvent, claimed.event_record_id)
            return apply_event(session, event, payload)
    except Exception as e:
        logger.error(
            f"Error processing webhook event {payload.event_id}: {e}", exc_info=True
        )
        return _fail_transiently(session, payload, e)


def reprocess_event(event_record_id, session=None):
    """Re-run a failed, retryable event from its stored raw payload.

    Used by the explicit retry sweep. The signature was verified when the
    event was first received, so only the body is re-parsed.

    Returns a ProcessingOutcome, or None if the event was no longer
    eligible (closed or locked by another worker).
    """
    session = session or db.session
    payload = None

    try:
        with unit_of_work(session):
            event = (
                session.query(WebhookEvent)
                .filter(WebhookEvent.id == event_record_id)
                .filter(WebhookEvent.status == WebhookEvent.FAILED)
                .filter(WebhookEvent.retryable.is_(True))
                .with_for_update(skip_locked=True)
                .first()
            )
            if event is None:
                return None

            try:
                payload = parse_payload(
                    event.payload,
                    default_currency=current_app.config.get("DEFAULT_CURRENCY", "USD"),
                )
            except MalformedPayload as e:
                # Stored payload can't be replayed; stop retrying it.
                event.error_code = e.result.value
                event.error = e.reason
                event.retryable = False
                return ProcessingOutcome(e.result, e.reason, event_record_id=event.id)

            logger.info(
                f"Retrying webhook event {event.external_event_id} "
                f"(attempt {event.retry_count + 1})"
            )
            return apply_event(session, event, payload)
    except Exception as e:
        logger.error(f"Retry of webhook event {event_record_id} failed: {e}", exc_info=True)
        if payload is None:
            return ProcessingOutcome(WebhookResult.TRANSIENT_FAILURE, str(e))
        return _fail_transiently(session, payload, e)


# ──────────────────────────────────────────────
# Processing steps (inside the caller's unit of work)
# ──────────────────────────────────────────────

def apply_event(session, event, payload):
    """Steps 1-6 for a claimed event. Raises on unexpected errors."""

    # --- 1. Payment dedup ---
    existing = payment_ledger.find_payment(session, payload.payment_id)
    if existing is not None:
        event_ledger.mark_duplicate(session, event)
        logger.info(
            f"Payment {payload.payment_id} already recorded; "
            f"event {payload.event_id} marked duplicate"
        )
        emit("webhook.duplicate_payment",
             event_id=payload.event_id, payment_id=payload.payment_id)
        return ProcessingOutcome(
            WebhookResult.ACCEPTED,
            "duplicate",
            event_record_id=event.id,
            payment_id=existing.id,
            subscription_id=existing.subscription_id,
        )

    try:
        # --- 2. User identifier (lookup only) ---
        user_id = _identify_user(session, payload)
        # --- 3. Amount validation ---
        _validate_amount(session, payload)
    except ProcessingRejected as e:
        event_ledger.mark_failed(session, event, e.error_code, e.reason)
        logger.warning(f"Webhook event {payload.event_id} rejected: {e.reason}")
        emit("webhook.rejected", level=logging.WARNING,
             event_id=payload.event_id, result=e.result.value, reason=e.reason)
        return ProcessingOutcome(e.result, e.reason, event_record_id=event.id)

    # --- 2b. Create the user only once the event is known to be valid ---
    if user_id is None:
        user_id = _create_user(session, payload.email)

    # --- 4. Payment creation ---
    payment = payment_ledger.create_payment(session, user_id, payload)

    # --- 5. Subscription renewal ---
    subscription = None
    if payment.status == Payment.COMPLETED:
        subscription, _ = subscription_service.renew_for_user(
            session,
            user_id,
            plan_id=payload.plan_id,
            amount=payload.amount,
            currency=payload.currency,
        )
        payment_ledger.link_subscription(session, payment, subscription)

    # --- 6. Event closure ---
    event_ledger.mark_processed(session, event)

    emit(
        "webhook.processed",
        event_id=payload.event_id,
        payment_id=payload.payment_id,
        payment_status=payment.status,
        subscription_id=subscription.id if subscription else None,
    )
    return ProcessingOutcome(
        WebhookResult.ACCEPTED,
        "processed",
        event_record_id=event.id,
        payment_id=payment.id,
        subscription_id=subscription.id if subscription else None,
    )


def _identify_user(session, payload):
    """Find the user a payload belongs to without creating anything.

    Returns the user id, or None when a new user should be created for
    payload.email.
    Raises NoUserIdentifier when there is neither an email nor an earlier
    payment to recover the user from.
    """
    if payload.email:
        user = session.query(User).filter(User.email == payload.email).first()
        return user.id if user is not None else None

    prior = payment_ledger.find_payment(session, payload.payment_id)
    if prior is not None:
        return prior.user_id

    raise NoUserIdentifier(
        f"payment {payload.payment_id} has no email and no prior payment"
    )


def _create_user(session, email):
    """Insert a user for `email`, or return the one a concurrent event created.

    The insert runs in a savepoint so losing the race on users.email only
    undoes the insert, not the claim and the rest of the unit of work.
    """
    try:
        with session.begin_nested():
            user = User(email=email)
            session.add(user)
    except IntegrityError:
        user = session.query(User).filter(User.email == email).one()
        logger.info(f"User for {email} created concurrently, reusing {user.id}")
        return user.id

    logger.info(f"Created user {user.id} for {email}")
    return user.id


def _validate_amount(session, payload):
    """Reject a payment whose amount disagrees with the plan's known price."""
    if not payload.plan_id or payload.amount is None:
        return

    expected = subscription_service.find_plan_price(session, payload.plan_id)
    if expected is None:
        return

    tolerance = Decimal(
        str(current_app.config.get("AMOUNT_TOLERANCE", DEFAULT_AMOUNT_TOLERANCE))
    )
    if abs(Decimal(expected) - payload.amount) > tolerance:
        raise AmountMismatch(
            f"plan {payload.plan_id} costs {expected}, payment {payload.payment_id} "
            f"carries {payload.amount}"
        )


# ──────────────────────────────────────────────
# Failure recording
# ──────────────────────────────────────────────

def _fail_transiently(session, payload, error):
    """Write the failure in its own transaction; report TransientFailure."""
    event_record_id = None
    try:
        with unit_of_work(session):
            event = event_ledger.record_failure(session, payload, error)
            event_record_id = event.id if event else None
    except Exception as e:
        # Storage is likely down; the provider's retry is the recovery path.
        logger.error(
            f"Could not record failure for webhook event {payload.event_id}: {e}"
        )

    emit("webhook.failed", level=logging.ERROR,
         event_id=payload.event_id, payment_id=payload.payment_id, error=str(error))
    return ProcessingOutcome(
        WebhookResult.TRANSIENT_FAILURE,
        str(error),
        event_record_id=event_record_id,
    )
