"""Payment ledger — the idempotency boundary for money movement.

One Payment row per external payment id, ever. Lookups here back the
processor's payment-level dedup and the reconciler's orphan scan.
"""

from payhook.models.payment import Payment


def find_payment(session, external_payment_id):
    return (
        session.query(Payment)
        .filter(Payment.external_payment_id == external_payment_id)
        .first()
    )


def create_payment(session, user_id, payload):
    """Insert the payment for a validated notification.

    status is "completed" only when the provider says so; anything else is
    recorded as pending.
    """
    payment = Payment(
        external_payment_id=payload.payment_id,
        user_id=user_id,
        plan_id=payload.plan_id,
        amount=payload.amount,
        currency=payload.currency,
        status=Payment.COMPLETED if payload.is_completed else Payment.PENDING,
    )
    session.add(payment)
    session.flush()
    return payment


def link_subscription(session, payment, subscription):
    """Point a payment at the subscription it paid for.

    Raises ValueError if the subscription belongs to another user.
    """
    if subscription.user_id != payment.user_id:
        raise ValueError(
            f"subscription {subscription.id} belongs to user {subscription.user_id}, "
            f"not payment {payment.external_payment_id}'s user {payment.user_id}"
        )
    payment.subscription_id = subscription.id
    session.flush()
    return payment


def orphaned_payments_query(session, since):
    """Completed payments created after `since` with no linked subscription."""
    return (
        session.query(Payment)
        .filter(Payment.status == Payment.COMPLETED)
        .filter(Payment.subscription_id.is_(None))
        .filter(Payment.created_at >= since)
        .order_by(Payment.created_at.asc())
    )
